import io
import re
import hmac
import time
import hashlib
import logging
import secrets
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import urlencode

from PIL import Image, UnidentifiedImageError

from errors import NotFoundError, UploadError

logger = logging.getLogger(__name__)

ALLOWED_FORMATS = {"JPEG", "PNG", "GIF", "WEBP"}
MAX_DIMENSION = 8192
JPEG_QUALITY = 80

_SEGMENT = re.compile(r"^[A-Za-z0-9_.-]+$")


def _clean_path(value: str) -> str:
    parts = [p for p in (value or "").strip("/").split("/") if p]
    for part in parts:
        if part in (".", "..") or not _SEGMENT.match(part):
            raise UploadError(f"Invalid storage path '{value}'.")
    return "/".join(parts)


class ImageStorage:
    """Local image store handing out HMAC-signed, expiring download URLs."""

    def __init__(
        self,
        root: str,
        signing_key: str,
        max_bytes: int = 10 * 1024 * 1024,
        url_ttl_s: int = 60 * 60 * 24 * 365 * 2,
        base_url: str = "/files",
    ):
        self.root = Path(root)
        self.signing_key = signing_key.encode()
        self.max_bytes = max_bytes
        self.url_ttl_s = url_ttl_s
        self.base_url = base_url.rstrip("/")

    def _sign(self, key: str, expires: int) -> str:
        return hmac.new(self.signing_key, f"{key}:{expires}".encode(), hashlib.sha256).hexdigest()

    def _to_jpeg(self, data: bytes) -> bytes:
        try:
            with Image.open(io.BytesIO(data)) as img:
                if img.format not in ALLOWED_FORMATS:
                    raise UploadError("Please upload a JPEG, PNG, GIF or WebP image.")
                width, height = img.size
                if width > MAX_DIMENSION or height > MAX_DIMENSION:
                    raise UploadError(f"Image dimensions must be at most {MAX_DIMENSION}x{MAX_DIMENSION}.")
                img.load()
                if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
                    rgba = img.convert("RGBA")
                    flat = Image.new("RGB", rgba.size, (255, 255, 255))
                    flat.paste(rgba, mask=rgba.getchannel("A"))
                else:
                    flat = img.convert("RGB")
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
            raise UploadError("The file is not a valid image.", original=e) from e

        out = io.BytesIO()
        flat.save(out, format="JPEG", quality=JPEG_QUALITY)
        return out.getvalue()

    def save(self, bucket: str, path: str, data: bytes) -> Dict[str, object]:
        """Validate, re-encode as JPEG and store an upload; returns its key and signed URL."""
        if not data:
            raise UploadError("The file is empty.")
        if len(data) > self.max_bytes:
            raise UploadError(f"File size must be less than {self.max_bytes // (1024 * 1024)}MB.")

        encoded = self._to_jpeg(data)
        prefix = "/".join(p for p in (_clean_path(bucket), _clean_path(path)) if p)
        if not prefix:
            raise UploadError("A storage bucket is required.")
        key = f"{prefix}/{secrets.token_hex(8)}.jpg"

        target = self.root / key
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(encoded)
        logger.info("[UPLOAD] stored %s (%d bytes)", key, len(encoded))
        return {"key": key, "url": self.signed_url(key), "size": len(encoded)}

    def signed_url(self, key: str, now: Optional[float] = None) -> str:
        expires = int(now if now is not None else time.time()) + self.url_ttl_s
        query = urlencode({"expires": expires, "signature": self._sign(key, expires)})
        return f"{self.base_url}/{key}?{query}"

    def verify(self, key: str, expires: int, signature: str, now: Optional[float] = None) -> bool:
        if int(expires) < int(now if now is not None else time.time()):
            return False
        return hmac.compare_digest(self._sign(key, int(expires)), signature or "")

    def open(self, key: str, expires: int, signature: str) -> Path:
        key = _clean_path(key)
        if not self.verify(key, expires, signature):
            raise UploadError("This link is invalid or has expired.", status_code=403)
        target = self.root / key
        if not target.is_file():
            raise NotFoundError("File not found.")
        return target

    def delete(self, key: str) -> bool:
        target = self.root / _clean_path(key)
        if not target.is_file():
            return False
        target.unlink()
        logger.info("[UPLOAD] deleted %s", key)
        return True
