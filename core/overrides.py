"""
Directory-scoped txt2img overrides.

Each directory may hold a JSON overrides file. Keys are parameter names
(``"cfgScale"``) or dot paths into nested blocks (``"tiledDiffusion.enabled"``).
A file's effective overrides are the merge of every directory from the working
root down to its own, nearer directories winning.
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_TILED_DIFFUSION_SCHEMA: dict[str, Any] = {
    "enabled": bool,
    "method": str,
    "overwriteSize": str,
    "keepInputSize": str,
    "tileWidth": int,
    "tileHeight": int,
    "tileOverlap": int,
    "batchSize": int,
}

_TILED_VAE_SCHEMA: dict[str, Any] = {
    "enabled": bool,
    "encoderTileSize": int,
    "decoderTileSize": int,
    "vaeToGPU": str,
    "fastDecoderEnabled": str,
    "fastEncoderEnabled": str,
    "colorFixEnabled": str,
}

OVERRIDE_SCHEMA: dict[str, Any] = {
    "cfgScale": float,
    "clipSkip": int,
    "cutoffDisableForNeg": bool,
    "cutoffEnabled": bool,
    "cutoffInterpolation": str,
    "cutoffPadding": str,
    "cutoffStrong": bool,
    "cutoffTargets": list,
    "cutoffWeight": float,
    "height": int,
    "hiresDenoisingStrength": float,
    "hiresScale": float,
    "hiresSteps": int,
    "hiresUpscaler": str,
    "model": str,
    "negPrompt": str,
    "negTemplate": str,
    "prompt": str,
    "restoreFaces": bool,
    "restoreFacesStrength": float,
    "sampler": str,
    "seed": int,
    "steps": int,
    "subseed": int,
    "subseedStrength": float,
    "template": str,
    "tiledDiffusion": _TILED_DIFFUSION_SCHEMA,
    "tiledVAE": _TILED_VAE_SCHEMA,
    "vae": str,
    "width": int,
}


class OverridesError(RuntimeError):
    """An overrides file exists but cannot be used."""


@dataclass
class OverrideGroup:
    overrides: dict[str, Any] = field(default_factory=dict)
    file_paths: list[Path] = field(default_factory=list)


def flat_keys_to_tree(mapping: dict[str, Any]) -> dict[str, Any]:
    """Expand dot-path keys into nested dicts: ``{"a.b": 1}`` -> ``{"a": {"b": 1}}``."""
    tree: dict[str, Any] = {}
    for key, value in mapping.items():
        if isinstance(value, dict):
            value = flat_keys_to_tree(value)
        parts = [part for part in str(key).split(".") if part]
        if not parts:
            continue

        node = tree
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child

        leaf = parts[-1]
        if isinstance(value, dict) and isinstance(node.get(leaf), dict):
            node[leaf] = merge_overrides(node[leaf], value)
        else:
            node[leaf] = value
    return tree


def _matches(expected: type, value: Any) -> bool:
    if expected is float:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected is int:
        return isinstance(value, int) and not isinstance(value, bool)
    return isinstance(value, expected)


def validate_overrides(
    tree: dict[str, Any],
    schema: dict[str, Any] = OVERRIDE_SCHEMA,
    *,
    source: str = "",
    prefix: str = "",
) -> dict[str, Any]:
    """Drop keys that are unknown or hold the wrong type, warning about each."""
    valid: dict[str, Any] = {}
    for key, value in tree.items():
        path = f"{prefix}{key}"
        expected = schema.get(key)
        if expected is None:
            logger.warning("Ignoring unknown override %r in %s", path, source or "overrides")
            continue
        if isinstance(expected, dict):
            if not isinstance(value, dict):
                logger.warning("Override %r in %s must be an object", path, source or "overrides")
                continue
            valid[key] = validate_overrides(value, expected, source=source, prefix=f"{path}.")
            continue
        if value is None or not _matches(expected, value):
            logger.warning(
                "Ignoring override %r in %s: expected %s, got %r",
                path,
                source or "overrides",
                expected.__name__,
                value,
            )
            continue
        valid[key] = value
    return valid


def merge_overrides(parent: dict[str, Any], child: dict[str, Any]) -> dict[str, Any]:
    """Nested merge where ``child`` wins on every colliding leaf."""
    merged = copy.deepcopy(parent)
    for key, value in child.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_overrides(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_overrides(dir_path: Path | str, file_name: str) -> dict[str, Any]:
    """Read, expand and validate the overrides file in ``dir_path``; ``{}`` if absent."""
    path = Path(dir_path) / file_name
    if not path.is_file():
        return {}

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise OverridesError(f"Error reading txt2img overrides {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise OverridesError(f"Txt2img overrides {path} must contain a JSON object")

    overrides = validate_overrides(flat_keys_to_tree(raw), source=str(path))
    if overrides:
        logger.info("Loaded %d override(s) from %s", len(overrides), path)
    return overrides


def _relative_dir(file_path: Path, root: Path) -> Path:
    parent = file_path.parent
    if parent.is_absolute():
        try:
            return parent.relative_to(root.resolve())
        except ValueError:
            return parent.relative_to(parent.anchor)
    return parent


def build_override_tree(
    file_paths: list[Path | str],
    *,
    root: Path | str = ".",
    file_name: str,
) -> list[OverrideGroup]:
    """
    Group ``file_paths`` by directory with each directory's effective overrides.

    Every directory between ``root`` and a file is read once, whatever the
    number of files beneath it; groups keep the order in which their first
    file appears.
    """
    root_path = Path(root)
    effective: dict[Path, dict[str, Any]] = {Path("."): load_overrides(root_path, file_name)}
    groups: dict[Path, OverrideGroup] = {}

    for raw_path in file_paths:
        file_path = Path(raw_path)
        rel_dir = _relative_dir(file_path, root_path)

        current = Path(".")
        for part in rel_dir.parts:
            child = current / part
            if child not in effective:
                effective[child] = merge_overrides(
                    effective[current],
                    load_overrides(root_path / child, file_name),
                )
            current = child

        group = groups.get(rel_dir)
        if group is None:
            group = OverrideGroup(overrides=effective[rel_dir])
            groups[rel_dir] = group
        group.file_paths.append(file_path)

    return list(groups.values())
