# media.py -- Local storage for uploaded images
# Clients send images inline as base64 data URLs; we write them to MEDIA_DIR
# and hand back a URL served by the /media static mount.

from __future__ import annotations

import base64
import binascii
import logging
import re
import uuid
from pathlib import Path

from .config import config

log = logging.getLogger(__name__)

MEDIA_URL_PREFIX = "/media"

_EXTENSIONS = {"png": "png", "jpeg": "jpg", "jpg": "jpg", "gif": "gif", "webp": "webp"}
_DATA_URL = re.compile(r"^data:image/(?P<kind>[a-z]+);base64,(?P<body>.+)$", re.DOTALL)


class InvalidImageError(ValueError):
    """Payload is not a supported base64 image data URL."""


class MediaStore:
    def __init__(self, root: str | Path | None = None, max_bytes: int | None = None) -> None:
        self.root = Path(root) if root else config.media_dir
        self.root.mkdir(parents=True, exist_ok=True)
        self.max_bytes = max_bytes or config.media_max_bytes

    def store_image(self, payload: str) -> str:
        """Decode a data URL, write it to disk, and return its public URL."""
        match = _DATA_URL.match(payload.strip()) if payload else None
        if not match:
            raise InvalidImageError("Image must be a base64 data URL")
        ext = _EXTENSIONS.get(match["kind"])
        if ext is None:
            raise InvalidImageError(f"Unsupported image type: {match['kind']}")
        try:
            data = base64.b64decode(match["body"], validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidImageError("Image data is not valid base64") from e
        if not data:
            raise InvalidImageError("Image is empty")
        if len(data) > self.max_bytes:
            raise InvalidImageError(f"Image exceeds {self.max_bytes} bytes")

        name = f"{uuid.uuid4().hex}.{ext}"
        (self.root / name).write_bytes(data)
        log.debug("Stored image %s (%d bytes)", name, len(data))
        return f"{MEDIA_URL_PREFIX}/{name}"
