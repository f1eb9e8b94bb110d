from __future__ import annotations

import io
from typing import Tuple

from PIL import Image, UnidentifiedImageError

THUMBNAIL_WIDTHS: Tuple[int, ...] = (500, 250, 100)

# Errors Pillow raises for bytes it cannot decode as an image.
IMAGE_DECODE_ERRORS = (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError, SyntaxError)


class ThumbnailError(Exception):
    """Raised when source bytes cannot be decoded or resized."""


def inspect_image(source: bytes) -> Tuple[str, int, int]:
    """Return (format, width, height) or raise ``ThumbnailError``."""
    try:
        with Image.open(io.BytesIO(source)) as image:
            image.load()
            return image.format or "PNG", image.width, image.height
    except IMAGE_DECODE_ERRORS as exc:
        raise ThumbnailError(f"Source is not a readable image: {exc}") from exc


def scaled_size(width: int, height: int, target_width: int) -> Tuple[int, int]:
    """Size for ``target_width`` keeping the aspect ratio; never below 1px."""
    target_height = max(1, round(height * target_width / width))
    return target_width, target_height


def render_thumbnail(source: bytes, width: int) -> bytes:
    """Resize ``source`` to ``width`` pixels wide, encoded in the source format.

    Output depends only on the input bytes and width.
    """
    try:
        with Image.open(io.BytesIO(source)) as image:
            image.load()
            fmt = image.format or "PNG"
            resized = image.resize(scaled_size(image.width, image.height, width), Image.Resampling.LANCZOS)
    except IMAGE_DECODE_ERRORS as exc:
        raise ThumbnailError(f"Source is not a readable image: {exc}") from exc

    if fmt == "JPEG" and resized.mode not in ("RGB", "L", "CMYK"):
        resized = resized.convert("RGB")

    buffer = io.BytesIO()
    try:
        resized.save(buffer, format=fmt)
    except (KeyError, OSError, ValueError):
        # Formats Pillow can read but not write fall back to PNG.
        buffer = io.BytesIO()
        resized.save(buffer, format="PNG")
    return buffer.getvalue()


__all__ = ["THUMBNAIL_WIDTHS", "ThumbnailError", "inspect_image", "render_thumbnail", "scaled_size"]
