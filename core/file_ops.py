from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import shutil
from pathlib import Path

from core.models import VAE, FileNames

logger = logging.getLogger(__name__)

VAE_SUFFIXES = (".ckpt", ".safetensors", ".pt")
VAE_HASH_LENGTH = 10
_HASH_CHUNK = 1024 * 1024


def with_ext(file_name: str | Path, ext: str) -> Path:
    """``"sub/img"`` + ``"jpg"`` -> ``Path("sub/img.jpg")``."""
    path = Path(file_name)
    return path.with_name(f"{path.name}.{ext.lstrip('.')}")


def find_with_ext(root: Path, file_name: str | Path, ext: str) -> Path:
    """
    ``root / with_ext(file_name, ext)``, or the existing sibling whose extension
    only differs in case (``IMG.JPG`` for ``jpg``).
    """
    path = root / with_ext(file_name, ext)
    if path.exists() or not path.parent.is_dir():
        return path
    name = Path(file_name).name
    for candidate in sorted(path.parent.iterdir()):
        suffix = candidate.suffix.lstrip(".")
        if candidate.stem == name and suffix.lower() == ext.lstrip(".").lower():
            return candidate
    return path


def strip_ext(file_path: str | Path) -> str:
    path = Path(file_path)
    return str(path.with_name(path.stem)) if path.suffix else str(path)


def unique_path(path: Path) -> Path:
    """Return ``path`` or the first free ``"<stem> (n)<suffix>"`` sibling."""
    if not path.exists():
        return path
    index = 1
    while True:
        candidate = path.with_name(f"{path.stem} ({index}){path.suffix}")
        if not candidate.exists():
            return candidate
        index += 1


def move_file(src: Path, dest_dir: Path) -> Path:
    """Move ``src`` into ``dest_dir`` keeping its name, suffixing on collision."""
    dest_dir.mkdir(parents=True, exist_ok=True)
    while True:
        dest = unique_path(dest_dir / src.name)
        try:
            # link() refuses an existing target where rename() would replace it.
            os.link(src, dest)
        except FileExistsError:
            continue
        except OSError:
            # Cross-device move or a filesystem without hard links.
            shutil.move(str(src), str(dest))
            return dest
        src.unlink()
        return dest


def write_file(path: Path, data: bytes | str) -> Path:
    """Write ``data`` to ``path`` or a suffixed sibling if ``path`` is taken."""
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = data.encode("utf-8") if isinstance(data, str) else data
    while True:
        target = unique_path(path)
        try:
            with target.open("xb") as handle:
                handle.write(payload)
            return target
        except FileExistsError:
            continue


def _is_excluded(rel_path: Path, excluded_dirs: list[str]) -> bool:
    excluded = {name.casefold() for name in excluded_dirs}
    return any(part.casefold() in excluded for part in rel_path.parts[:-1])


def list_image_and_param_file_names(
    root: Path,
    *,
    image_ext: str,
    params_ext: str,
    recursive: bool = False,
    excluded_dirs: list[str] | None = None,
) -> FileNames:
    """Collect base names of images and sidecars under ``root``."""
    logger.info("Reading files%s...", " (recursively)" if recursive else "")
    candidates = root.rglob("*") if recursive else root.iterdir()

    names = FileNames()
    for path in sorted(candidates):
        if not path.is_file():
            continue
        rel_path = path.relative_to(root)
        if _is_excluded(rel_path, excluded_dirs or []):
            continue
        ext = path.suffix.lstrip(".").lower()
        if ext == image_ext.lower():
            names.image_file_names.append(strip_ext(rel_path))
        elif ext == params_ext.lower():
            names.param_file_names.append(strip_ext(rel_path))

    logger.info(
        "%d images found. %d params found.",
        len(names.image_file_names),
        len(names.param_file_names),
    )
    return names


def prune_params(
    file_names: FileNames,
    *,
    root: Path,
    params_ext: str,
    pruned_dir: str,
) -> list[str]:
    """Move sidecars without a matching image into ``pruned_dir``; return their names."""
    images = set(file_names.image_file_names)
    target_dir = root / pruned_dir
    pruned: list[str] = []

    for name in file_names.param_file_names:
        if name in images:
            continue
        src = find_with_ext(root, name, params_ext)
        if not src.exists():
            continue
        move_file(src, target_dir)
        pruned.append(name)
        logger.info("%s pruned.", src.name)

    logger.info("%d unused params pruned.", len(pruned))
    return pruned


def remove_empty_folders(root: Path) -> int:
    """Delete empty folders below ``root`` (never ``root`` itself); return how many."""
    removed = 0
    for dirpath, _, _ in os.walk(root, topdown=False):
        path = Path(dirpath)
        if path == root or any(path.iterdir()):
            continue
        path.rmdir()
        removed += 1
    if removed:
        logger.debug("Removed %d empty folders.", removed)
    return removed


def sha256_short(path: Path, length: int = VAE_HASH_LENGTH) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_HASH_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()[:length]


async def list_vaes(vae_dir: str | Path) -> list[VAE]:
    """Hash every VAE file under ``vae_dir`` the way the web UI does."""
    if not vae_dir:
        logger.warning("VAE_DIR is not configured; VAE hashes cannot be resolved.")
        return []
    directory = Path(vae_dir)
    if not directory.is_dir():
        logger.warning("VAE directory %s does not exist.", directory)
        return []

    files = sorted(
        path
        for path in directory.rglob("*")
        if path.is_file() and path.suffix.lower() in VAE_SUFFIXES
    )
    hashes = await asyncio.gather(*(asyncio.to_thread(sha256_short, path) for path in files))
    return [VAE(file_name=path.name, hash=vae_hash) for path, vae_hash in zip(files, hashes)]
