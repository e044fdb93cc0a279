"""
Shared watermark stamped on every still preview (PDF pages and images).

A 200x50 label box, black at 10% opacity with white text at 80% opacity,
anchored to the bottom-right corner.
"""

from functools import lru_cache

from PIL import Image, ImageDraw, ImageFont

LABEL_SIZE = (200, 50)
BOX_FILL = (0, 0, 0, 26)
TEXT_FILL = (255, 255, 255, 204)
BOX_RADIUS = 5
FONT_SIZE = 12


@lru_cache
def _font(size: int = FONT_SIZE):
    try:
        return ImageFont.truetype("DejaVuSans.ttf", size)
    except OSError:
        return ImageFont.load_default(size=size)


@lru_cache
def render_label(text: str) -> Image.Image:
    """Render the label box once per text."""
    label = Image.new("RGBA", LABEL_SIZE, (0, 0, 0, 0))
    draw = ImageDraw.Draw(label)
    draw.rounded_rectangle((0, 0, LABEL_SIZE[0] - 1, LABEL_SIZE[1] - 1), radius=BOX_RADIUS, fill=BOX_FILL)

    font = _font()
    bbox = draw.textbbox((0, 0), text, font=font)
    text_w, text_h = bbox[2] - bbox[0], bbox[3] - bbox[1]
    pos = ((LABEL_SIZE[0] - text_w) // 2 - bbox[0], (LABEL_SIZE[1] - text_h) // 2 - bbox[1])
    draw.text(pos, text, fill=TEXT_FILL, font=font)
    return label


def apply_watermark(image: Image.Image, text: str) -> Image.Image:
    """Return an RGBA copy of ``image`` with the label composited bottom-right."""
    base = image.convert("RGBA")
    label = render_label(text)
    w, h = base.size

    # Images smaller than the label get the bottom-right part of it
    crop_w, crop_h = min(w, label.width), min(h, label.height)
    if (crop_w, crop_h) != label.size:
        label = label.crop((label.width - crop_w, label.height - crop_h, label.width, label.height))

    overlay = Image.new("RGBA", base.size, (0, 0, 0, 0))
    overlay.paste(label, (w - crop_w, h - crop_h))
    return Image.alpha_composite(base, overlay)


def watermark_file(source: str, destination: str, text: str, max_size: tuple[int, int] | None = None) -> tuple[int, int]:
    """Optionally shrink ``source`` to fit ``max_size``, watermark it and save as PNG."""
    with Image.open(source) as img:
        img.load()
        if max_size:
            # thumbnail() only ever shrinks
            img.thumbnail(max_size)
        stamped = apply_watermark(img, text)
    stamped.save(destination, format="PNG")
    return stamped.size
