from __future__ import annotations

import base64
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path

import numpy as np
from PIL import Image

# Largest YIQ distance between two colours (pixelmatch's constant).
MAX_YIQ_DELTA = 35215.0
DEFAULT_DIFF_THRESHOLD = 0.1

_JPEG_EXTS = {"jpg", "jpeg"}


@dataclass(frozen=True)
class ImageDiff:
    pixel_diff: int
    percent_diff: float


def decode_base64_image(data: str) -> bytes:
    """Decode a base64 image, tolerating a ``data:image/...;base64,`` prefix."""
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    return base64.b64decode(data)


def encode_base64_image(image_bytes: bytes) -> str:
    return base64.b64encode(image_bytes).decode("ascii")


def encode_for_ext(image_bytes: bytes, ext: str) -> bytes:
    """Re-encode ``image_bytes`` to match a file extension (JPEG or as-is)."""
    if ext.lower().lstrip(".") not in _JPEG_EXTS:
        return image_bytes

    with Image.open(BytesIO(image_bytes)) as image:
        if image.format == "JPEG":
            return image_bytes
        if image.mode == "RGBA":
            background = Image.new("RGB", image.size, (255, 255, 255))
            background.paste(image, mask=image.split()[3])
            converted = background
        else:
            converted = image.convert("RGB")
        buffer = BytesIO()
        converted.save(buffer, format="JPEG", quality=95)
        return buffer.getvalue()


def _load_rgba(source: str | Path | bytes) -> np.ndarray:
    opened = Image.open(BytesIO(source)) if isinstance(source, bytes) else Image.open(source)
    with opened as image:
        return np.asarray(image.convert("RGBA"), dtype=np.float64)


def _blend_on_white(pixels: np.ndarray) -> np.ndarray:
    rgb = pixels[..., :3]
    alpha = pixels[..., 3:4] / 255.0
    return 255.0 + (rgb - 255.0) * alpha


def _yiq(rgb: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    r, g, b = rgb[..., 0], rgb[..., 1], rgb[..., 2]
    y = r * 0.29889531 + g * 0.58662247 + b * 0.11448223
    i = r * 0.59597799 - g * 0.27417610 - b * 0.32180189
    q = r * 0.21147017 - g * 0.52261711 + b * 0.31114694
    return y, i, q


def compare_images(
    image_a: str | Path | bytes,
    image_b: str | Path | bytes,
    *,
    threshold: float = DEFAULT_DIFF_THRESHOLD,
) -> ImageDiff:
    """
    Count pixels that differ perceptually between two images.

    Both images are decoded to RGBA and must have the same dimensions. A pixel
    counts as different when its YIQ colour distance (alpha blended onto white)
    exceeds ``threshold`` of the maximum distance, squared, as pixelmatch does;
    its anti-aliasing detection is not applied. ``percent_diff`` is the count
    divided by the pixel area, in ``[0, 1]``.
    """
    pixels_a = _load_rgba(image_a)
    pixels_b = _load_rgba(image_b)
    if pixels_a.shape != pixels_b.shape:
        height_a, width_a = pixels_a.shape[:2]
        height_b, width_b = pixels_b.shape[:2]
        raise ValueError(
            f"Image sizes do not match: {width_a}x{height_a} vs {width_b}x{height_b}"
        )

    height, width = pixels_a.shape[:2]
    area = width * height
    if area == 0:
        return ImageDiff(pixel_diff=0, percent_diff=0.0)

    y_a, i_a, q_a = _yiq(_blend_on_white(pixels_a))
    y_b, i_b, q_b = _yiq(_blend_on_white(pixels_b))
    delta = 0.5053 * (y_a - y_b) ** 2 + 0.299 * (i_a - i_b) ** 2 + 0.1957 * (q_a - q_b) ** 2

    max_delta = MAX_YIQ_DELTA * threshold * threshold
    pixel_diff = int(np.count_nonzero(delta > max_delta))
    return ImageDiff(pixel_diff=pixel_diff, percent_diff=pixel_diff / area)


def is_reproducible(percent_diff: float, tolerance: float) -> bool:
    return percent_diff < tolerance
