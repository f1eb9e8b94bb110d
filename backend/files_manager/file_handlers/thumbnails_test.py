from __future__ import annotations

import io

import pytest
from PIL import Image

from backend.files_manager.file_handlers.thumbnails import ThumbnailError, inspect_image, render_thumbnail, scaled_size


def _jpeg(width: int, height: int) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), (200, 40, 40)).save(buffer, format="JPEG")
    return buffer.getvalue()


def test_scaled_size_keeps_aspect_ratio():
    assert scaled_size(800, 600, 100) == (100, 75)
    assert scaled_size(1000, 2, 100) == (100, 1)


def test_render_keeps_source_format(png_bytes):
    jpeg = render_thumbnail(_jpeg(640, 480), 250)
    with Image.open(io.BytesIO(jpeg)) as image:
        assert image.format == "JPEG"
        assert image.size == (250, 188)

    assert inspect_image(render_thumbnail(png_bytes, 100)) == ("PNG", 100, 75)


def test_render_is_deterministic(png_bytes):
    assert render_thumbnail(png_bytes, 500) == render_thumbnail(png_bytes, 500)


def test_undecodable_bytes_raise():
    with pytest.raises(ThumbnailError):
        inspect_image(b"\x00\x01not-an-image")
    with pytest.raises(ThumbnailError):
        render_thumbnail(b"\x00\x01not-an-image", 100)
