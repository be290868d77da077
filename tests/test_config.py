from __future__ import annotations

import pytest

from config import Config, DirNames


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SDAPI_URL", "http://gpu-box:7860/sdapi/v1/")
    monkeypatch.setenv("REPROD_DIFF_TOLERANCE", "0.05")
    monkeypatch.setenv("IMAGE_EXT", ".png")
    monkeypatch.setenv("DIR_NAMES", '{"upscaled": "Hires", "unknown": "x"}')
    monkeypatch.setenv("TILED_VAE", '{"enabled": true}')

    cfg = Config.from_env()

    assert cfg.sdapi_url == "http://gpu-box:7860/sdapi/v1"
    assert cfg.reproduce_tolerance == 0.05
    assert cfg.image_ext == "png"
    assert cfg.dir_names.upscaled == "Hires"
    assert cfg.tiled_vae == {"enabled": True}
    assert cfg.tiled_diffusion is None


def test_from_env_rejects_bad_json(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TILED_DIFFUSION", "{nope")
    with pytest.raises(ValueError, match="TILED_DIFFUSION"):
        Config.from_env()


def test_listing_keeps_non_upscaled_and_reproducible() -> None:
    excluded = DirNames().excluded_from_listing()

    assert "Non-Upscaled" not in excluded
    assert "Reproducible" not in excluded
    assert "Non-Reproducible" in excluded
    assert "Upscaled" in excluded
