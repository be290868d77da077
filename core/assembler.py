"""
Turn sidecar files into replay-ready ``GenerationParameters``.

Values resolve as override -> parsed sidecar -> configured default. The result
is sorted by model, then VAE, so a replay run switches the server's model and
VAE as rarely as possible.
"""

from __future__ import annotations

import asyncio
import errno
import logging
from dataclasses import fields
from pathlib import Path
from typing import Any, Protocol

from config import Config
from core.file_ops import find_with_ext, prune_params, strip_ext
from core.models import (
    CutoffSettings,
    FaceRestoration,
    FileNames,
    GenerationParameters,
    HiresSettings,
    Model,
    TiledDiffusionSettings,
    TiledVAESettings,
)
from core.overrides import build_override_tree
from core.param_parser import (
    ParamParseError,
    has_face_restoration,
    parse_bool_field,
    parse_cutoff_targets,
    parse_field,
    parse_int_field,
    parse_size,
    parse_templates,
    parse_vae,
    split_prompts,
)

logger = logging.getLogger(__name__)

EMFILE_RETRY_DELAY = 0.1
EMFILE_MAX_RETRIES = 50

# Override file keys -> dataclass fields for the nested extension blocks.
_TILED_DIFFUSION_KEYS = {
    "enabled": "enabled",
    "method": "method",
    "overwriteSize": "overwrite_size",
    "keepInputSize": "keep_input_size",
    "tileWidth": "tile_width",
    "tileHeight": "tile_height",
    "tileOverlap": "tile_overlap",
    "batchSize": "batch_size",
}

_TILED_VAE_KEYS = {
    "enabled": "enabled",
    "encoderTileSize": "encoder_tile_size",
    "decoderTileSize": "decoder_tile_size",
    "vaeToGPU": "vae_to_gpu",
    "fastDecoderEnabled": "fast_decoder",
    "fastEncoderEnabled": "fast_encoder",
    "colorFixEnabled": "color_fix",
}


class AssemblerError(RuntimeError):
    """The parameter set as a whole cannot be assembled."""


class ModelRosterSource(Protocol):
    async def list_models(self) -> list[Model] | None: ...


def _resolve(overrides: dict[str, Any], key: str, fallback: Any) -> Any:
    """Override value if present, else ``fallback`` (called first when callable)."""
    if overrides.get(key) is not None:
        return overrides[key]
    return fallback() if callable(fallback) else fallback


def remap_model_name(models: list[Model], model_hash: str | None) -> str | None:
    if not model_hash:
        return None
    for model in models:
        if model.hash == model_hash:
            return model.name
    return None


def _resolve_model(
    settings: str,
    overrides: dict[str, Any],
    models: list[Model],
    file_name: str,
) -> tuple[str, str | None]:
    model_hash = parse_field(settings, "Model hash", optional=True)
    model_hash = str(model_hash) if model_hash else None

    model = overrides.get("model") or remap_model_name(models, model_hash)
    if not model:
        model = parse_field(settings, "Model", optional=True)
        logger.warning(
            "Invalid model name %r found for %s (hash %s not on the server).",
            model,
            file_name,
            model_hash or "-",
        )
    if not model:
        raise ParamParseError("Neither a known model hash nor a model name was found")
    return str(model), model_hash


def _extension_block(
    cls: type,
    keys: dict[str, str],
    defaults: dict[str, Any] | None,
    overrides: dict[str, Any] | None,
) -> Any:
    if not defaults and not overrides:
        return None
    known = {f.name for f in fields(cls)}
    values: dict[str, Any] = {}
    for source in (defaults or {}, overrides or {}):
        for key, value in source.items():
            name = keys.get(key, key)
            if name in known and value is not None:
                values[name] = value
    return cls(**values)


def _cutoff_settings(settings: str, overrides: dict[str, Any]) -> CutoffSettings | None:
    enabled = _resolve(
        overrides, "cutoffEnabled", lambda: parse_bool_field(settings, "Cutoff enabled")
    )
    if not enabled:
        return None
    return CutoffSettings(
        enabled=True,
        targets=_resolve(overrides, "cutoffTargets", lambda: parse_cutoff_targets(settings)),
        weight=_resolve(
            overrides,
            "cutoffWeight",
            lambda: parse_field(settings, "Cutoff weight", numeric=True, optional=True),
        ),
        padding=_resolve(
            overrides,
            "cutoffPadding",
            lambda: parse_field(settings, "Cutoff padding", optional=True),
        ),
        disable_for_neg=bool(
            _resolve(
                overrides,
                "cutoffDisableForNeg",
                lambda: parse_bool_field(settings, "Cutoff disable_for_neg"),
            )
        ),
        strong=bool(
            _resolve(overrides, "cutoffStrong", lambda: parse_bool_field(settings, "Cutoff strong"))
        ),
        interpolation=_resolve(
            overrides,
            "cutoffInterpolation",
            lambda: parse_field(settings, "Cutoff interpolation", optional=True),
        ),
    )


def build_parameters(
    text: str,
    *,
    file_name: str,
    overrides: dict[str, Any],
    models: list[Model],
    cfg: Config,
) -> GenerationParameters:
    """Resolve one sidecar's text into ``GenerationParameters``; raises ``ParamParseError``."""
    prompt, negative_prompt, settings = split_prompts(text)
    model, model_hash = _resolve_model(settings, overrides, models, file_name)

    if overrides.get("width") is not None and overrides.get("height") is not None:
        width, height = overrides["width"], overrides["height"]
    else:
        parsed_width, parsed_height = parse_size(settings)
        width = _resolve(overrides, "width", parsed_width)
        height = _resolve(overrides, "height", parsed_height)

    template, negative_template = parse_templates(settings)

    return GenerationParameters(
        file_name=file_name,
        prompt=_resolve(overrides, "prompt", prompt),
        negative_prompt=_resolve(overrides, "negPrompt", negative_prompt),
        sampler=_resolve(overrides, "sampler", lambda: str(parse_field(settings, "Sampler"))),
        steps=_resolve(overrides, "steps", lambda: parse_int_field(settings, "Steps")),
        cfg_scale=_resolve(
            overrides, "cfgScale", lambda: parse_field(settings, "CFG scale", numeric=True)
        ),
        seed=_resolve(overrides, "seed", lambda: parse_int_field(settings, "Seed")),
        subseed=_resolve(
            overrides,
            "subseed",
            lambda: parse_int_field(settings, "Variation seed", optional=True),
        ),
        subseed_strength=_resolve(
            overrides,
            "subseedStrength",
            lambda: parse_field(settings, "Variation seed strength", numeric=True, optional=True),
        ),
        clip_skip=_resolve(
            overrides, "clipSkip", lambda: parse_int_field(settings, "Clip skip", optional=True)
        ),
        width=width,
        height=height,
        vae=_resolve(overrides, "vae", lambda: parse_vae(settings)),
        model=model,
        model_hash=model_hash,
        hires=HiresSettings(
            scale=_resolve(overrides, "hiresScale", cfg.hires_scale),
            denoising_strength=_resolve(
                overrides, "hiresDenoisingStrength", cfg.hires_denoising_strength
            ),
            steps=_resolve(
                overrides,
                "hiresSteps",
                lambda: parse_int_field(settings, "Hires steps", optional=True),
            ),
            upscaler=_resolve(overrides, "hiresUpscaler", cfg.hires_upscaler),
        ),
        face_restoration=FaceRestoration(
            enabled=bool(
                _resolve(overrides, "restoreFaces", lambda: has_face_restoration(settings))
            ),
            strength=_resolve(overrides, "restoreFacesStrength", cfg.restore_faces_strength),
        ),
        cutoff=_cutoff_settings(settings, overrides),
        tiled_diffusion=_extension_block(
            TiledDiffusionSettings,
            _TILED_DIFFUSION_KEYS,
            cfg.tiled_diffusion,
            overrides.get("tiledDiffusion"),
        ),
        tiled_vae=_extension_block(
            TiledVAESettings,
            _TILED_VAE_KEYS,
            cfg.tiled_vae,
            overrides.get("tiledVAE"),
        ),
        template=_resolve(overrides, "template", template),
        negative_template=_resolve(overrides, "negTemplate", negative_template),
        raw_params=text,
    )


async def _read_text(path: Path) -> str:
    """Read ``path``, retrying while the process is out of file descriptors."""
    attempt = 0
    while True:
        try:
            return await asyncio.to_thread(path.read_text, encoding="utf-8")
        except OSError as exc:
            attempt += 1
            if exc.errno != errno.EMFILE or attempt >= EMFILE_MAX_RETRIES:
                raise
            await asyncio.sleep(EMFILE_RETRY_DELAY)


async def parse_params_file(
    params_path: Path,
    *,
    root: Path,
    overrides: dict[str, Any],
    models: list[Model],
    cfg: Config,
) -> GenerationParameters | None:
    """Parse one sidecar, logging and returning ``None`` on any per-file failure."""
    try:
        text = await _read_text(root / params_path)
        return build_parameters(
            text,
            file_name=strip_ext(params_path),
            overrides=overrides,
            models=models,
            cfg=cfg,
        )
    except (OSError, UnicodeDecodeError, ParamParseError, TypeError, ValueError) as exc:
        logger.error("Error parsing %s: %s", params_path, exc)
        return None


def replay_sort_key(params: GenerationParameters) -> tuple[str, int, str]:
    """Model first, then VAE; a recorded VAE sorts before a missing one."""
    return (params.model, 0 if params.vae else 1, params.vae or "")


async def parse_and_sort(
    file_names: FileNames,
    *,
    client: ModelRosterSource,
    cfg: Config,
    root: Path = Path("."),
) -> list[GenerationParameters]:
    """Parse every sidecar in ``file_names`` and sort the survivors for replay."""
    param_file_names = list(file_names.param_file_names)

    if len(param_file_names) > len(file_names.image_file_names):
        logger.info(
            "Pruning %d unused generation parameters...",
            len(param_file_names) - len(file_names.image_file_names),
        )
        pruned = set(
            prune_params(
                file_names,
                root=root,
                params_ext=cfg.params_ext,
                pruned_dir=cfg.dir_names.pruned_params,
            )
        )
        param_file_names = [name for name in param_file_names if name not in pruned]

    logger.info("Parsing and sorting generation parameters...")
    models = await client.list_models()
    if models is None:
        raise AssemblerError("Unable to fetch the model list from the server")

    groups = build_override_tree(
        [
            find_with_ext(root, name, cfg.params_ext).relative_to(root)
            for name in param_file_names
        ],
        root=root,
        file_name=cfg.overrides_file_name,
    )

    parsed = await asyncio.gather(
        *(
            parse_params_file(path, root=root, overrides=group.overrides, models=models, cfg=cfg)
            for group in groups
            for path in group.file_paths
        )
    )

    all_params = sorted((params for params in parsed if params is not None), key=replay_sort_key)
    skipped = len(parsed) - len(all_params)
    if skipped:
        logger.warning("%d generation parameter file(s) could not be parsed.", skipped)
    logger.info("Generation parameters parsed and sorted.")
    return all_params
