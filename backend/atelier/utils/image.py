"""Pillow helpers: data-URI encoding and the placeholder renders used by the mock generator."""

from __future__ import annotations

import base64
import io

from PIL import Image, ImageDraw, ImageFont

PLACEHOLDER_SIZE = (512, 384)

# Muted interior palette; cycled by variation index
PLACEHOLDER_COLORS = [
    "#C8B8A6",  # sand
    "#8A9A87",  # sage
    "#B57F64",  # terracotta
    "#6E7F8D",  # slate
]

FONT_SIZE = 28


def image_to_bytes(image: Image.Image, fmt: str = "PNG") -> bytes:
    """Convert PIL Image to bytes."""
    buf = io.BytesIO()
    image.save(buf, format=fmt)
    return buf.getvalue()


def image_to_data_uri(image: Image.Image, fmt: str = "PNG") -> str:
    fmt = "JPEG" if fmt.upper() == "JPG" else fmt.upper()
    if fmt == "JPEG" and image.mode != "RGB":
        image = image.convert("RGB")
    encoded = base64.b64encode(image_to_bytes(image, fmt)).decode("ascii")
    return f"data:image/{fmt.lower()};base64,{encoded}"


def render_placeholder(label: str, index: int = 0, size: tuple[int, int] = PLACEHOLDER_SIZE) -> Image.Image:
    """Flat-colour card with a centred caption. Stands in for a generated room."""
    color = PLACEHOLDER_COLORS[index % len(PLACEHOLDER_COLORS)]
    image = Image.new("RGB", size, color)
    draw = ImageDraw.Draw(image)
    font = _load_font(FONT_SIZE)

    w, h = size
    bbox = draw.textbbox((0, 0), label, font=font)
    tw = bbox[2] - bbox[0]
    th = bbox[3] - bbox[1]
    draw.text(((w - tw) // 2, (h - th) // 2 - bbox[1]), label, fill="white", font=font)
    # Floor line so the card reads as a room at a glance
    draw.line([(0, int(h * 0.75)), (w, int(h * 0.75))], fill="white", width=2)
    return image


def _load_font(size: int) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    """Load a font, falling back to default if system fonts unavailable."""
    font_paths = [
        "/System/Library/Fonts/Helvetica.ttc",
        "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
        "/usr/share/fonts/TTF/DejaVuSans-Bold.ttf",
    ]
    for path in font_paths:
        try:
            return ImageFont.truetype(path, size)
        except OSError:
            continue
    return ImageFont.load_default()
