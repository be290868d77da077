from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path

from config import DirNames
from core.file_ops import (
    find_with_ext,
    list_image_and_param_file_names,
    list_vaes,
    move_file,
    prune_params,
    strip_ext,
    unique_path,
    with_ext,
    write_file,
)


def test_ext_helpers() -> None:
    assert with_ext("sub/img", "jpg") == Path("sub/img.jpg")
    assert with_ext("img.v2", ".txt") == Path("img.v2.txt")
    assert strip_ext("sub/img.jpg") == str(Path("sub/img"))


def test_unique_path_suffixes(tmp_path: Path) -> None:
    target = tmp_path / "img.jpg"
    assert unique_path(target) == target

    target.write_bytes(b"1")
    (tmp_path / "img (1).jpg").write_bytes(b"2")

    assert unique_path(target) == tmp_path / "img (2).jpg"


def test_move_file_never_overwrites(tmp_path: Path) -> None:
    dest = tmp_path / "dest"
    dest.mkdir()
    (dest / "img.jpg").write_bytes(b"old")
    src = tmp_path / "img.jpg"
    src.write_bytes(b"new")

    moved = move_file(src, dest)

    assert moved == dest / "img (1).jpg"
    assert moved.read_bytes() == b"new"
    assert (dest / "img.jpg").read_bytes() == b"old"
    assert not src.exists()


def test_write_file_creates_parents_and_suffixes(tmp_path: Path) -> None:
    first = write_file(tmp_path / "out" / "a.txt", "one")
    second = write_file(tmp_path / "out" / "a.txt", b"two")

    assert first.read_text(encoding="utf-8") == "one"
    assert second == tmp_path / "out" / "a (1).txt"


def test_listing_skips_output_dirs(tmp_path: Path) -> None:
    names = DirNames()
    for rel in (
        "a.jpg",
        "a.txt",
        "sub/b.jpg",
        f"{names.upscaled}/c.jpg",
        f"{names.reproducible}/d.jpg",
        "notes.md",
    ):
        path = tmp_path / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"")

    flat = list_image_and_param_file_names(
        tmp_path,
        image_ext="jpg",
        params_ext="txt",
        excluded_dirs=names.excluded_from_listing(),
    )
    deep = list_image_and_param_file_names(
        tmp_path,
        image_ext="jpg",
        params_ext="txt",
        recursive=True,
        excluded_dirs=names.excluded_from_listing(),
    )

    assert flat.image_file_names == ["a"]
    assert flat.param_file_names == ["a"]
    assert sorted(deep.image_file_names) == sorted(
        ["a", str(Path("sub/b")), str(Path(names.reproducible) / "d")]
    )


def test_prune_params_moves_orphans(tmp_path: Path) -> None:
    for rel in ("a.jpg", "a.txt", "b.txt"):
        (tmp_path / rel).write_bytes(b"")

    file_names = list_image_and_param_file_names(tmp_path, image_ext="jpg", params_ext="txt")
    pruned = prune_params(file_names, root=tmp_path, params_ext="txt", pruned_dir="Pruned Params")

    assert pruned == ["b"]
    assert (tmp_path / "Pruned Params" / "b.txt").exists()
    assert (tmp_path / "a.txt").exists()


def test_list_vaes_hashes_files(tmp_path: Path) -> None:
    (tmp_path / "kl-f8.safetensors").write_bytes(b"vae weights")
    (tmp_path / "readme.txt").write_bytes(b"skip me")

    vaes = asyncio.run(list_vaes(tmp_path))

    assert [vae.file_name for vae in vaes] == ["kl-f8.safetensors"]
    assert vaes[0].hash == hashlib.sha256(b"vae weights").hexdigest()[:10]


def test_list_vaes_without_dir() -> None:
    assert asyncio.run(list_vaes("")) == []


def test_extension_match_ignores_case(tmp_path: Path) -> None:
    for rel in ("IMG.JPG", "IMG.TXT", "b.Jpg"):
        (tmp_path / rel).write_bytes(b"")

    names = list_image_and_param_file_names(tmp_path, image_ext="jpg", params_ext="txt")

    assert names.image_file_names == ["IMG", "b"]
    assert names.param_file_names == ["IMG"]
    assert find_with_ext(tmp_path, "IMG", "jpg").name == "IMG.JPG"
    assert find_with_ext(tmp_path, "b", "jpg").name == "b.Jpg"
    assert find_with_ext(tmp_path, "missing", "jpg") == tmp_path / "missing.jpg"


def test_prune_params_finds_upper_case_sidecar(tmp_path: Path) -> None:
    (tmp_path / "ORPHAN.TXT").write_bytes(b"")

    file_names = list_image_and_param_file_names(tmp_path, image_ext="jpg", params_ext="txt")
    pruned = prune_params(file_names, root=tmp_path, params_ext="txt", pruned_dir="Pruned Params")

    assert pruned == ["ORPHAN"]
    assert (tmp_path / "Pruned Params" / "ORPHAN.TXT").exists()
