from __future__ import annotations

import json
from pathlib import Path

import pytest

from core.overrides import (
    OverridesError,
    build_override_tree,
    flat_keys_to_tree,
    load_overrides,
    merge_overrides,
    validate_overrides,
)

FILE_NAME = "txt2img-overrides.json"


def _write_overrides(directory: Path, data: object) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    (directory / FILE_NAME).write_text(json.dumps(data), encoding="utf-8")


def test_flat_keys_to_tree_expands_dot_paths() -> None:
    tree = flat_keys_to_tree(
        {"tiledDiffusion.enabled": True, "tiledDiffusion.tileWidth": 128, "steps": 30}
    )
    assert tree == {"tiledDiffusion": {"enabled": True, "tileWidth": 128}, "steps": 30}


def test_flat_keys_merge_with_nested_objects() -> None:
    tree = flat_keys_to_tree({"tiledVAE": {"enabled": True}, "tiledVAE.encoderTileSize": 512})
    assert tree == {"tiledVAE": {"enabled": True, "encoderTileSize": 512}}


def test_validate_drops_unknown_and_mistyped_keys() -> None:
    valid = validate_overrides(
        {"cfgScale": 6, "steps": "many", "bogus": 1, "tiledVAE": {"enabled": True, "x": 1}}
    )
    assert valid == {"cfgScale": 6, "tiledVAE": {"enabled": True}}


def test_merge_child_wins() -> None:
    parent = {"steps": 20, "tiledDiffusion": {"enabled": True, "tileWidth": 96}}
    child = {"steps": 30, "tiledDiffusion": {"tileWidth": 128}}

    merged = merge_overrides(parent, child)

    assert merged == {"steps": 30, "tiledDiffusion": {"enabled": True, "tileWidth": 128}}
    assert parent["tiledDiffusion"]["tileWidth"] == 96


def test_load_overrides_missing_file(tmp_path: Path) -> None:
    assert load_overrides(tmp_path, FILE_NAME) == {}


def test_load_overrides_malformed_file_raises(tmp_path: Path) -> None:
    (tmp_path / FILE_NAME).write_text("{not json", encoding="utf-8")
    with pytest.raises(OverridesError):
        load_overrides(tmp_path, FILE_NAME)


def test_nearer_directory_wins(tmp_path: Path) -> None:
    _write_overrides(tmp_path, {"steps": 20, "cfgScale": 5})
    _write_overrides(tmp_path / "a", {"steps": 30})
    _write_overrides(tmp_path / "a" / "b", {"cfgScale": 9})

    groups = build_override_tree(
        ["top.txt", "a/mid.txt", "a/b/deep.txt", "a/b/deep2.txt"],
        root=tmp_path,
        file_name=FILE_NAME,
    )
    by_file = {str(path): group.overrides for group in groups for path in group.file_paths}

    assert by_file["top.txt"] == {"steps": 20, "cfgScale": 5}
    assert by_file[str(Path("a/mid.txt"))] == {"steps": 30, "cfgScale": 5}
    assert by_file[str(Path("a/b/deep.txt"))] == {"steps": 30, "cfgScale": 9}
    assert len(groups) == 3


def test_directory_without_file_inherits(tmp_path: Path) -> None:
    _write_overrides(tmp_path, {"sampler": "Euler a"})

    groups = build_override_tree(["x/y/img.txt"], root=tmp_path, file_name=FILE_NAME)

    assert groups[0].overrides == {"sampler": "Euler a"}
