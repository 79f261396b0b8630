# studio_ingest/utils/thumbs.py
# Pillow helpers for thumbnails, previews and enhanced previews.
# Inputs are a path or raw bytes; outputs are JPEG bytes + final size.

from __future__ import annotations

import io
from pathlib import Path
from typing import Optional, Tuple, Union

from PIL import Image, ImageOps

Source = Union[Path, str, bytes]


def _open(src: Source) -> Image.Image:
    if isinstance(src, (bytes, bytearray)):
        return Image.open(io.BytesIO(src))
    return Image.open(src)


def _to_jpeg(im: Image.Image, quality: int) -> bytes:
    if im.mode not in ("RGB", "L"):
        im = im.convert("RGB")
    buf = io.BytesIO()
    im.save(buf, format="JPEG", quality=int(quality), optimize=True)
    return buf.getvalue()


def image_size(src: Source) -> Optional[Tuple[int, int]]:
    """(width, height) without decoding pixels; None if Pillow can't read it."""
    try:
        with _open(src) as im:
            return im.size
    except (OSError, ValueError, Image.DecompressionBombError):
        return None


def cover_thumbnail(src: Source, width: int, height: int, quality: int = 80,
                    *, orient: bool = True) -> Tuple[bytes, Tuple[int, int]]:
    """Center-crop to fill exactly width x height."""
    with _open(src) as im:
        im.draft("RGB", (width * 2, height * 2))  # JPEG fast path
        if orient:
            im = ImageOps.exif_transpose(im)
        im = im.convert("RGB")
        thumb = ImageOps.fit(im, (int(width), int(height)), method=Image.LANCZOS, centering=(0.5, 0.5))
        return _to_jpeg(thumb, quality), thumb.size


def bounded_jpeg(src: Source, max_dimension: int, quality: int = 85,
                 *, orient: bool = True) -> Tuple[bytes, Tuple[int, int]]:
    """Longest side <= max_dimension (never upscales)."""
    with _open(src) as im:
        if orient:
            im = ImageOps.exif_transpose(im)
        im = im.convert("RGB")
        im.thumbnail((int(max_dimension), int(max_dimension)), Image.LANCZOS)
        return _to_jpeg(im, quality), im.size


def scale_to_width(src: Source, width: int, quality: int = 90) -> Tuple[bytes, Tuple[int, int]]:
    """Resize (up or down) to an exact width, keeping aspect ratio."""
    with _open(src) as im:
        im = im.convert("RGB")
        w, h = im.size
        scale = (width / w) if w else 1.0
        new_h = max(int(round(h * scale)), 1)
        im = im.resize((int(width), new_h), Image.LANCZOS)
        return _to_jpeg(im, quality), im.size


def render_raw(path: Path, max_dimension: int, quality: int = 85) -> Tuple[bytes, Tuple[int, int]]:
    """Demosaic a camera RAW in-process (rawpy/libraw) and bound it like a preview."""
    import rawpy  # heavy native module; only needed on this path

    with rawpy.imread(str(path)) as raw:
        rgb = raw.postprocess(use_camera_wb=True, half_size=True, no_auto_bright=False, output_bps=8)
    im = Image.fromarray(rgb)
    im.thumbnail((int(max_dimension), int(max_dimension)), Image.LANCZOS)
    return _to_jpeg(im, quality), im.size
