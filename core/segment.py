"""
Reorganize image/params pairs into folders.

- by model: ``<model>/<relative dir>/`` using the resolved model of each sidecar
- by upscaled: ``Upscaled/`` when the sidecar records a hires fix, else ``Non-Upscaled/``

Both keep each pair's relative folder and clean up folders left empty.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from pathlib import Path

from config import Config
from core.assembler import ModelRosterSource, parse_and_sort
from core.file_ops import find_with_ext, move_file, prune_params, remove_empty_folders
from core.log_utils import success
from core.models import FileNames

logger = logging.getLogger(__name__)

HIRES_MARKER = "Hires upscaler"


@dataclass
class UpscaledCounts:
    upscaled: int = 0
    non_upscaled: int = 0


def _move_pair(root: Path, file_name: str, dest_dir: Path, cfg: Config) -> None:
    for ext in (cfg.image_ext, cfg.params_ext):
        src = find_with_ext(root, file_name, ext)
        if src.exists():
            move_file(src, dest_dir)


async def segment_by_model(
    file_names: FileNames,
    *,
    client: ModelRosterSource,
    cfg: Config,
    root: Path = Path("."),
) -> dict[str, int]:
    """Move every parsable pair into a folder named after its model."""
    logger.info("Segmenting by model...")
    all_params = await parse_and_sort(file_names, client=client, cfg=cfg, root=root)

    counts: Counter[str] = Counter()
    for params in all_params:
        dest_dir = root / params.model / Path(params.file_name).parent
        _move_pair(root, params.file_name, dest_dir, cfg)
        counts[params.model] += 1
        logger.info("Moved %s to %s.", params.file_name, params.model)

    remove_empty_folders(root)
    success(logger, "Files segmented by model.")
    return dict(counts)


def is_upscaled(text: str) -> bool:
    return HIRES_MARKER in text


async def segment_by_upscaled(
    param_file_names: list[str],
    *,
    cfg: Config,
    root: Path = Path("."),
) -> UpscaledCounts:
    """Split pairs by whether their sidecar records a hires fix."""
    logger.info("Segmenting by upscaled...")
    dir_names = cfg.dir_names
    counts = UpscaledCounts()

    for file_name in param_file_names:
        params_path = find_with_ext(root, file_name, cfg.params_ext)
        text = await asyncio.to_thread(params_path.read_text, encoding="utf-8")
        if is_upscaled(text):
            target = dir_names.upscaled
            counts.upscaled += 1
        else:
            target = dir_names.non_upscaled
            counts.non_upscaled += 1
        _move_pair(root, file_name, root / target / Path(file_name).parent, cfg)
        logger.info("Moved %s to %s.", file_name, target)

    remove_empty_folders(root)
    success(
        logger,
        "Files segmented by upscaled. %d upscaled images. %d non-upscaled images.",
        counts.upscaled,
        counts.non_upscaled,
    )
    return counts


async def prune_and_segment_by_upscaled(
    file_names: FileNames,
    *,
    cfg: Config,
    root: Path = Path("."),
) -> UpscaledCounts:
    """Prune sidecars without an image, then segment the rest by upscaled."""
    pruned = set(
        prune_params(
            file_names,
            root=root,
            params_ext=cfg.params_ext,
            pruned_dir=cfg.dir_names.pruned_params,
        )
    )
    remaining = [name for name in file_names.param_file_names if name not in pruned]
    return await segment_by_upscaled(remaining, cfg=cfg, root=root)
