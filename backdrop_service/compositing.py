"""Solid-color backdrop compositing for background-removed cutouts."""

from __future__ import annotations

from io import BytesIO
import logging
from pathlib import Path
from typing import Optional, Tuple

import numpy as np
from PIL import Image

from . import errors

logger = logging.getLogger(__name__)

RGB = Tuple[int, int, int]


def parse_hex_color(value: Optional[str]) -> RGB:
    """Parse `#rrggbb` or `#rgb` (leading '#' optional) into an RGB tuple."""
    raw = (value or "").strip()
    if raw.startswith("#"):
        raw = raw[1:]
    if len(raw) == 3:
        raw = "".join(ch * 2 for ch in raw)
    if len(raw) != 6:
        raise errors.InvalidColor()
    try:
        return (int(raw[0:2], 16), int(raw[2:4], 16), int(raw[4:6], 16))
    except ValueError as exc:
        raise errors.InvalidColor() from exc


def composite_over(foreground: Image.Image, color: RGB) -> Image.Image:
    """
    Alpha-blend `foreground` over a canvas of `color` with the same size.

    Integer "over" blend per channel: out = (fg*a + bg*(255-a) + 127) // 255.
    Exact at a=0 and a=255 and fully deterministic.
    """
    rgba = np.asarray(foreground.convert("RGBA"), dtype=np.uint32)
    fg = rgba[..., :3]
    alpha = rgba[..., 3:4]
    bg = np.empty_like(fg)
    bg[...] = np.array(color, dtype=np.uint32)

    out = (fg * alpha + bg * (255 - alpha) + 127) // 255
    return Image.fromarray(out.astype(np.uint8), mode="RGB")


def encode_png(image: Image.Image) -> bytes:
    buf = BytesIO()
    try:
        image.save(buf, format="PNG")
    except (OSError, ValueError) as exc:
        raise errors.ImageEncodeError() from exc
    return buf.getvalue()


def composite_onto_color(foreground_path: Path, color: RGB, output_path: Path) -> Tuple[int, int]:
    """
    Composite the cutout at `foreground_path` onto `color` and write a PNG.

    Returns the (width, height) of the written image. Blocking; run it in a
    worker thread from async code.
    """
    try:
        with Image.open(foreground_path) as src:
            src.load()
            foreground = src.copy()
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        logger.error("compositing: cannot decode %s: %s", foreground_path, exc)
        raise errors.ImageDecodeError() from exc

    result = composite_over(foreground, color)
    png_bytes = encode_png(result)
    try:
        output_path.write_bytes(png_bytes)
    except OSError as exc:
        logger.error("compositing: cannot write %s: %s", output_path, exc)
        raise errors.ImageEncodeError() from exc
    return result.size
