"""Shrink attachment images so they fit inline in a chat.send frame."""

from __future__ import annotations

import base64
import binascii
import logging
import re
from io import BytesIO

from PIL import Image

logger = logging.getLogger(__name__)

# Sizes are measured on the data URL text, since that is what goes on the wire
IMAGE_SEND_TARGET_BYTES = 1_500_000
IMAGE_SEND_HARD_MAX_BYTES = 4_000_000
IMAGE_SEND_TOTAL_MAX_BYTES = 6_000_000
IMAGE_SEND_MAX_DIMENSION_PX = 2048

SCALE_STEPS = (1.0, 0.85, 0.7, 0.55, 0.4, 0.3, 0.2)
QUALITY_STEPS = (90, 80, 70, 60, 50, 40)

_DATA_URL_RE = re.compile(r"^data:([^;,]+);base64,(.+)$", re.IGNORECASE | re.DOTALL)


def parse_data_url(data_url: str) -> tuple[str, str] | None:
    """Split ``data:<mime>;base64,<content>`` into ``(mime, content)``."""
    match = _DATA_URL_RE.match(data_url.strip())
    if not match:
        return None
    return match.group(1).strip().lower(), match.group(2).strip()


def to_data_url(mime_type: str, content: str) -> str:
    return f"data:{mime_type};base64,{content}"


def data_url_size(data_url: str) -> int:
    return len(data_url.encode("utf-8"))


def _flatten_on_white(img: Image.Image) -> Image.Image:
    """JPEG has no alpha channel; composite transparent pixels onto white."""
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return img.convert("RGB")


def _encode_jpeg(img: Image.Image, quality: int) -> str:
    buf = BytesIO()
    img.save(buf, format="JPEG", quality=quality, optimize=True)
    return to_data_url("image/jpeg", base64.b64encode(buf.getvalue()).decode("ascii"))


def normalize_image_data_url(
    data_url: str,
    *,
    target_bytes: int = IMAGE_SEND_TARGET_BYTES,
    hard_max_bytes: int = IMAGE_SEND_HARD_MAX_BYTES,
    max_dimension: int = IMAGE_SEND_MAX_DIMENSION_PX,
) -> str:
    """Return *data_url* re-encoded as JPEG until it fits *target_bytes*.

    Images already under the target pass through untouched. Otherwise the
    longest side is capped at *max_dimension* and swept down through
    ``SCALE_STEPS``; each size is tried at every ``QUALITY_STEPS`` level and the
    first candidate under the target wins. If nothing fits, the smallest
    candidate is returned even above *hard_max_bytes*: size alone never
    blocks a send. The result is never larger than the input.

    Raises ``ValueError`` for input that is not a base64 data URL or that
    trips Pillow's decompression-bomb guard, and ``OSError``
    (``PIL.UnidentifiedImageError``) for undecodable image bytes.
    """
    if data_url_size(data_url) <= target_bytes:
        return data_url

    parsed = parse_data_url(data_url)
    if parsed is None:
        raise ValueError("not a base64 data URL")
    try:
        raw = base64.b64decode(parsed[1], validate=False)
    except binascii.Error as exc:
        raise ValueError(f"invalid base64 image payload: {exc}") from exc

    try:
        with Image.open(BytesIO(raw)) as source:
            source.load()
            flat = _flatten_on_white(source)
    except Image.DecompressionBombError as exc:
        raise ValueError(str(exc)) from exc

    width, height = flat.size
    base_dimension = min(max(width, height), max_dimension)
    smallest = data_url

    for scale in SCALE_STEPS:
        limit = max(1, round(base_dimension * scale))
        resized = flat.copy()
        resized.thumbnail((limit, limit), Image.Resampling.LANCZOS)
        for quality in QUALITY_STEPS:
            candidate = _encode_jpeg(resized, quality)
            size = data_url_size(candidate)
            if size <= target_bytes:
                logger.debug(
                    "Image %dx%d -> %dx%d q%d: %d bytes",
                    width, height, resized.width, resized.height, quality, size,
                )
                return candidate
            if size < data_url_size(smallest):
                smallest = candidate

    if data_url_size(smallest) > hard_max_bytes:
        logger.warning(
            "Image still %d bytes after compression (hard max %d); sending anyway",
            data_url_size(smallest), hard_max_bytes,
        )
    return smallest
