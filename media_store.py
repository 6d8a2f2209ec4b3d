"""Prepare binaries for upload.

Images are re-encoded to a Meta-safe JPEG with Pillow. Videos are passed
through as bytes; transcoding is handled upstream.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from PIL import Image, UnidentifiedImageError

from errors import ValidationError

MIN_MEDIA_BYTES = 1024


@dataclass(frozen=True)
class PreparedMedia:
    data: bytes
    filename: str
    content_type: str


def _read(source: Union[str, Path, bytes]) -> tuple[bytes, str]:
    if isinstance(source, (bytes, bytearray)):
        return bytes(source), ""
    p = Path(source)
    if not p.exists():
        raise ValidationError(f"Media file not found: {p}")
    return p.read_bytes(), p.name


def normalize_to_jpeg_bytes(raw: bytes) -> bytes:
    """Re-encode any image bytes to a Meta-safe JPEG."""
    try:
        img = Image.open(io.BytesIO(raw))
        img = img.convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError(f"Uploaded image is not a valid image: {e}") from e

    out = io.BytesIO()
    img.save(out, format="JPEG", quality=92, optimize=True)
    return out.getvalue()


def prepare_image(source: Union[str, Path, bytes], *, filename: str = "image.jpg") -> PreparedMedia:
    raw, name = _read(source)
    if not raw:
        raise ValidationError("Image is empty.")
    jpeg = normalize_to_jpeg_bytes(raw)
    stem = Path(name or filename).stem or "image"
    return PreparedMedia(data=jpeg, filename=f"{stem}.jpg", content_type="image/jpeg")


def prepare_video(source: Union[str, Path, bytes], *, filename: str = "video.mp4") -> PreparedMedia:
    raw, name = _read(source)
    if not raw or len(raw) < MIN_MEDIA_BYTES:
        raise ValidationError("Video is empty or too small.")
    return PreparedMedia(data=raw, filename=name or filename, content_type="video/mp4")
