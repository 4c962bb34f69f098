"""
ghostchat_image.py
──────────────────
Boundary adapter around the image codec (Pillow).

The session engine never touches pixels; it only consumes ImagePayload.
Inputs are validated against the allowed MIME set and the 10 MiB ceiling
*before* the codec is invoked.  Output is always JPEG, fitted inside
1200×1200, carried as a data URL so it can ride inside a JSON frame.
"""

from __future__ import annotations

import base64
import binascii
import dataclasses
import io
import logging
import re
import secrets
import time
from pathlib import Path
from typing import Tuple

from PIL import Image, UnidentifiedImageError

_log = logging.getLogger("ghostchat.image")

ALLOWED_MIME_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp")
MAX_IMAGE_BYTES    = 10 * 1024 * 1024
MAX_WIDTH          = 1200
MAX_HEIGHT         = 1200
JPEG_QUALITY       = 80

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.*)$", re.DOTALL)


class ImageValidationError(ValueError):
    """Image rejected locally before any codec work or network I/O."""


@dataclasses.dataclass(frozen=True)
class ImageInput:
    data     : bytes
    mime_type: str
    byte_size: int
    width    : int
    height   : int
    name     : str = ""


@dataclasses.dataclass(frozen=True)
class ImagePayload:
    data_url       : str
    mime_type      : str
    byte_size      : int
    width          : int
    height         : int
    original_size  : int = 0
    original_width : int = 0
    original_height: int = 0

    @property
    def compression_ratio(self) -> float:
        if not self.original_size:
            return 0.0
        return round((self.original_size - self.byte_size) / self.original_size * 100, 1)


def validate_image(mime_type: str, byte_size: int) -> None:
    if mime_type not in ALLOWED_MIME_TYPES:
        raise ImageValidationError("Only JPEG, PNG, GIF, and WebP images are allowed.")
    if byte_size > MAX_IMAGE_BYTES:
        raise ImageValidationError("Image size must be less than 10MB.")


def read_image(data: bytes, name: str = "") -> ImageInput:
    """Read type and dimensions without decoding the full raster."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            mime = Image.MIME.get(img.format or "", "application/octet-stream")
            width, height = img.size
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageValidationError(f"Not a readable image: {exc}") from exc
    return ImageInput(data=data, mime_type=mime, byte_size=len(data),
                      width=width, height=height, name=name)


def fit_within(width: int, height: int,
               max_width: int = MAX_WIDTH, max_height: int = MAX_HEIGHT) -> Tuple[int, int]:
    """Scale down along the dominant axis only, keeping aspect ratio."""
    if width > height:
        if width > max_width:
            height = round(height * max_width / width)
            width  = max_width
    elif height > max_height:
        width  = round(width * max_height / height)
        height = max_height
    return max(1, width), max(1, height)


def compress_image(image: ImageInput, quality: int = JPEG_QUALITY,
                   max_width: int = MAX_WIDTH, max_height: int = MAX_HEIGHT) -> ImagePayload:
    validate_image(image.mime_type, image.byte_size)

    try:
        with Image.open(io.BytesIO(image.data)) as img:
            img.load()
            target = fit_within(img.width, img.height, max_width, max_height)
            if target != img.size:
                img = img.resize(target, Image.LANCZOS)
            if img.mode != "RGB":
                img = img.convert("RGB")
            out = io.BytesIO()
            img.save(out, format="JPEG", quality=quality)
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageValidationError(f"Could not process image: {exc}") from exc

    raw = out.getvalue()
    _log.debug("image compressed %d → %d bytes", image.byte_size, len(raw))
    return ImagePayload(
        data_url        =bytes_to_data_url(raw, "image/jpeg"),
        mime_type       ="image/jpeg",
        byte_size       =len(raw),
        width           =target[0],
        height          =target[1],
        original_size   =image.byte_size,
        original_width  =image.width,
        original_height =image.height,
    )


def prepare_image_file(path) -> ImagePayload:
    """Read, validate and compress a file from disk."""
    p = Path(path)
    if not p.is_file():
        raise ImageValidationError(f"File not found: {p}")
    size = p.stat().st_size
    if size > MAX_IMAGE_BYTES:
        raise ImageValidationError("Image size must be less than 10MB.")
    image = read_image(p.read_bytes(), name=p.name)
    return compress_image(image)


def bytes_to_data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def data_url_to_bytes(data_url: str) -> Tuple[str, bytes]:
    """Inverse of bytes_to_data_url → (mime_type, raw bytes)."""
    m = _DATA_URL_RE.match(data_url or "")
    if not m:
        raise ImageValidationError("Not a base64 data URL.")
    try:
        return m.group("mime"), base64.b64decode(m.group("data"), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ImageValidationError(f"Corrupt image data: {exc}") from exc


def generate_image_id() -> str:
    return f"img_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"
