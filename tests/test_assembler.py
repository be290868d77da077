from __future__ import annotations

import asyncio
import errno
from pathlib import Path

import pytest

from config import Config
from core import assembler
from core.assembler import (
    AssemblerError,
    build_parameters,
    parse_and_sort,
    parse_params_file,
    replay_sort_key,
)
from core.file_ops import list_image_and_param_file_names
from core.models import GenerationParameters, Model
from core.param_parser import ParamParseError

MODELS = [Model(hash="h1", name="modelA", path=""), Model(hash="h2", name="modelB", path="")]


def _sidecar(model_hash: str = "h1", *, extra: str = "", seed: bool = True) -> str:
    seed_field = "Seed: 42, " if seed else ""
    return (
        "a cat\nNegative prompt: blurry\n"
        f"Steps: 20, Sampler: Euler a, CFG scale: 7, {seed_field}Size: 512x768, "
        f"Model hash: {model_hash}, Model: ignored{extra}"
    )


class RosterClient:
    def __init__(self, models: list[Model] | None = MODELS) -> None:
        self.models = models

    async def list_models(self) -> list[Model] | None:
        return self.models


def test_build_parameters_from_sidecar() -> None:
    params = build_parameters(
        _sidecar(extra=", VAE hash: v1"), file_name="img", overrides={}, models=MODELS, cfg=Config()
    )

    assert params.prompt == "a cat"
    assert params.negative_prompt == "blurry"
    assert params.steps == 20
    assert params.sampler == "Euler a"
    assert params.seed == 42
    assert (params.width, params.height) == (512, 768)
    assert params.model == "modelA"
    assert params.vae == "v1"
    assert params.clip_skip is None
    assert params.hires.upscaler == "ESRGAN_4x"
    assert params.hires.denoising_strength == 0.3
    assert params.tiled_diffusion is None


FULL_SIDECAR = (
    "a cat, {red|blue} hat\n"
    "Negative prompt: blurry\n"
    "Steps: 30, Sampler: DPM++ 2M Karras, CFG scale: 6.5, Seed: 1234, "
    "Face restoration: CodeFormer, Size: 512x768, Model hash: h2, Model: modelB, "
    "Variation seed: 99, Variation seed strength: 0.25, Denoising strength: 0.4, "
    "Clip skip: 2, Hires upscale: 2, Hires steps: 12, Hires upscaler: Latent, "
    "Cutoff enabled: True, Cutoff targets: ['red', 'blue'], Cutoff padding: _, "
    "Cutoff weight: 0.7, Cutoff disable_for_neg: True, Cutoff strong: False, "
    "Cutoff interpolation: lerp, VAE hash: v9\n"
    "Template: a cat, {red|blue} hat\n"
    "Negative Template: blurry"
)


def test_build_parameters_reads_every_recorded_field() -> None:
    params = build_parameters(
        FULL_SIDECAR, file_name="img", overrides={}, models=MODELS, cfg=Config()
    )

    assert params.prompt == "a cat, {red|blue} hat"
    assert params.sampler == "DPM++ 2M Karras"
    assert params.cfg_scale == 6.5
    assert params.model == "modelB"
    assert params.subseed == 99
    assert params.subseed_strength == 0.25
    assert params.clip_skip == 2
    assert params.hires.steps == 12
    assert params.hires.upscaler == "ESRGAN_4x"
    assert params.face_restoration.enabled is True
    assert params.vae == "v9"
    assert params.template == "a cat, {red|blue} hat"
    assert params.negative_template == "blurry"

    cutoff = params.cutoff
    assert cutoff is not None
    assert cutoff.targets == ["red", "blue"]
    assert cutoff.weight == 0.7
    assert cutoff.padding == "_"
    assert cutoff.disable_for_neg is True
    assert cutoff.strong is False
    assert cutoff.interpolation == "lerp"


def test_template_lines_after_last_field() -> None:
    text = _sidecar(extra=", Clip skip: 2") + "\nTemplate: a {b|c}\nNegative Template: bad"

    params = build_parameters(text, file_name="img", overrides={}, models=MODELS, cfg=Config())

    assert params.clip_skip == 2
    assert (params.template, params.negative_template) == ("a {b|c}", "bad")


def test_override_beats_sidecar_and_default() -> None:
    params = build_parameters(
        _sidecar(),
        file_name="img",
        overrides={"steps": 35, "hiresScale": 1.5, "model": "modelB"},
        models=MODELS,
        cfg=Config(),
    )

    assert params.steps == 35
    assert params.hires.scale == 1.5
    assert params.model == "modelB"


def test_override_fills_missing_required_field() -> None:
    with pytest.raises(ParamParseError):
        build_parameters(_sidecar(seed=False), file_name="img", overrides={}, models=MODELS,
                         cfg=Config())

    params = build_parameters(
        _sidecar(seed=False), file_name="img", overrides={"seed": 7}, models=MODELS, cfg=Config()
    )
    assert params.seed == 7


def test_unknown_hash_falls_back_to_model_name() -> None:
    params = build_parameters(
        _sidecar("zzz"), file_name="img", overrides={}, models=MODELS, cfg=Config()
    )
    assert params.model == "ignored"


def test_extension_blocks_merge_config_and_overrides() -> None:
    cfg = Config(tiled_diffusion={"enabled": True, "tileWidth": 128})
    params = build_parameters(
        _sidecar(),
        file_name="img",
        overrides={"tiledDiffusion": {"tileHeight": 64}},
        models=MODELS,
        cfg=cfg,
    )

    assert params.tiled_diffusion is not None
    assert params.tiled_diffusion.tile_width == 128
    assert params.tiled_diffusion.tile_height == 64
    assert params.tiled_diffusion.method == "MultiDiffusion"


def test_sort_key_model_then_vae() -> None:
    items = [
        GenerationParameters(file_name="1", model="b", vae="x"),
        GenerationParameters(file_name="2", model="a", vae=None),
        GenerationParameters(file_name="3", model="a", vae="y"),
        GenerationParameters(file_name="4", model="a", vae="x"),
    ]

    ordered = [params.file_name for params in sorted(items, key=replay_sort_key)]

    assert ordered == ["4", "3", "2", "1"]


def _write_pair(root: Path, name: str, text: str) -> None:
    (root / f"{name}.jpg").write_bytes(b"")
    (root / f"{name}.txt").write_text(text, encoding="utf-8")


def test_parse_and_sort_skips_bad_files(tmp_path: Path) -> None:
    _write_pair(tmp_path, "one", _sidecar("h2"))
    _write_pair(tmp_path, "two", _sidecar("h1", seed=False))
    _write_pair(tmp_path, "three", _sidecar("h1"))
    (tmp_path / "orphan.txt").write_text(_sidecar(), encoding="utf-8")

    cfg = Config()
    file_names = list_image_and_param_file_names(tmp_path, image_ext="jpg", params_ext="txt")
    result = asyncio.run(parse_and_sort(file_names, client=RosterClient(), cfg=cfg, root=tmp_path))

    assert [(params.file_name, params.model) for params in result] == [
        ("three", "modelA"),
        ("one", "modelB"),
    ]
    assert (tmp_path / cfg.dir_names.pruned_params / "orphan.txt").exists()


def test_parse_and_sort_needs_model_roster(tmp_path: Path) -> None:
    _write_pair(tmp_path, "one", _sidecar())
    file_names = list_image_and_param_file_names(tmp_path, image_ext="jpg", params_ext="txt")

    with pytest.raises(AssemblerError):
        asyncio.run(
            parse_and_sort(file_names, client=RosterClient(None), cfg=Config(), root=tmp_path)
        )


def test_parse_params_file_retries_when_out_of_descriptors(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    (tmp_path / "one.txt").write_text(_sidecar(), encoding="utf-8")
    calls: list[str] = []
    original = Path.read_text

    def flaky_read_text(self: Path, *args: object, **kwargs: object) -> str:
        calls.append(self.name)
        if len(calls) < 3:
            raise OSError(errno.EMFILE, "Too many open files")
        return original(self, *args, **kwargs)

    monkeypatch.setattr(Path, "read_text", flaky_read_text)
    monkeypatch.setattr(assembler, "EMFILE_RETRY_DELAY", 0)

    params = asyncio.run(
        parse_params_file(
            Path("one.txt"), root=tmp_path, overrides={}, models=MODELS, cfg=Config()
        )
    )

    assert params is not None
    assert params.seed == 42
    assert calls == ["one.txt", "one.txt", "one.txt"]


def test_parse_params_file_gives_up_on_other_errors(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    calls: list[str] = []

    def denied(self: Path, *args: object, **kwargs: object) -> str:
        calls.append(self.name)
        raise OSError(errno.EACCES, "Permission denied")

    monkeypatch.setattr(Path, "read_text", denied)
    monkeypatch.setattr(assembler, "EMFILE_MAX_RETRIES", 2)
    monkeypatch.setattr(assembler, "EMFILE_RETRY_DELAY", 0)

    params = asyncio.run(
        parse_params_file(
            Path("one.txt"), root=tmp_path, overrides={}, models=MODELS, cfg=Config()
        )
    )

    assert params is None
    assert calls == ["one.txt"]
