# roomchat/services/attachments.py

from __future__ import annotations

import base64
import binascii
import io
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import httpx
from PIL import Image, ImageOps, UnidentifiedImageError

from roomchat.core.errors import InvalidInputError, UploadFailedError

logger = logging.getLogger(__name__)

MAX_DIMENSION = 1600
JPEG_QUALITY = 0.7
OUTPUT_CONTENT_TYPE = "image/jpeg"
OUTPUT_EXTENSION = ".jpg"

# Declared types that may carry animation; re-encoding would keep one frame
ANIMATED_TYPES = {"image/gif"}

# Same cap as the image host
MAX_ATTACHMENT_BYTES = 32 * 1024 * 1024


# ============================================================================
# ATTACHMENT (LOCALLY OWNED PAYLOAD + PREVIEW)
# ============================================================================

class Attachment:
    """
    An image the user picked but has not sent yet.

    Owns the raw bytes and a preview file on disk. The preview must be
    released when the attachment is discarded or after it was sent;
    ``release()`` is safe to call more than once.
    """

    def __init__(self, filename: str, content_type: str, data: bytes, preview_dir: Optional[str] = None) -> None:
        self.filename = filename
        self.content_type = content_type
        self.data = data
        suffix = Path(filename).suffix
        fd, path = tempfile.mkstemp(prefix="roomchat-preview-", suffix=suffix, dir=preview_dir)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        self.preview_path: Optional[Path] = Path(path)

    @property
    def preview_uri(self) -> Optional[str]:
        return self.preview_path.as_uri() if self.preview_path else None

    @property
    def released(self) -> bool:
        return self.preview_path is None

    def release(self) -> None:
        if self.preview_path is None:
            return
        try:
            self.preview_path.unlink()
        except FileNotFoundError:
            pass
        logger.debug("Released preview %s", self.preview_path)
        self.preview_path = None

    def describe(self) -> dict:
        return {
            "filename": self.filename,
            "content_type": self.content_type,
            "size": len(self.data),
            "preview_uri": self.preview_uri,
        }


def decode_attachment(
    filename: Optional[str],
    content_type: Optional[str],
    data: Optional[str],
    max_bytes: int = MAX_ATTACHMENT_BYTES,
) -> Attachment:
    """
    Build an Attachment from a base64 payload sent by the browser.

    Raises:
        InvalidInputError: a field is not a string, the payload is not valid
            base64, or it is empty or over ``max_bytes``
    """
    for value in (filename, content_type, data):
        if value is not None and not isinstance(value, str):
            raise InvalidInputError("Attachment fields must be strings.")
    try:
        payload = base64.b64decode(data or "", validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidInputError("Attachment is not valid base64.") from e
    if not payload or len(payload) > max_bytes:
        raise InvalidInputError("Attachment is empty or too large.")
    return Attachment(filename or "image", content_type or "application/octet-stream", payload)


@dataclass(frozen=True)
class UploadPayload:
    filename: str
    content_type: str
    data: bytes
    compressed: bool = False


# ============================================================================
# COMPRESSION
# ============================================================================

def scaled_size(width: int, height: int, bound: int = MAX_DIMENSION) -> Tuple[int, int]:
    """Largest size within ``bound`` x ``bound`` keeping the aspect ratio. Never scales up."""
    longest = max(width, height)
    if longest <= bound:
        return width, height
    ratio = bound / longest
    return max(1, round(width * ratio)), max(1, round(height * ratio))


def jpeg_filename(filename: str) -> str:
    stem, ext = os.path.splitext(filename)
    return (stem if ext else filename) + OUTPUT_EXTENSION


def compress_image(
    filename: str,
    content_type: str,
    data: bytes,
    max_dimension: int = MAX_DIMENSION,
    quality: float = JPEG_QUALITY,
) -> UploadPayload:
    """
    Downscale and re-encode a static image as JPEG.

    The EXIF orientation is applied to the pixels first, so the output is
    upright without the tag. Anything that is not a static raster image, or
    that fails to decode or encode, is returned unchanged. The same goes for
    an image that already fits the bound and would not get smaller by
    re-encoding. An image over the bound is always downscaled, even if the
    JPEG ends up larger than the input.
    """
    original = UploadPayload(filename, content_type, data)
    content_type = (content_type or "").lower()

    if not content_type.startswith("image/") or content_type in ANIMATED_TYPES:
        return original

    try:
        with Image.open(io.BytesIO(data)) as img:
            if getattr(img, "n_frames", 1) > 1:
                return original

            # The re-encode drops EXIF, so bake the orientation into the pixels
            upright = ImageOps.exif_transpose(img) or img
            target = scaled_size(upright.width, upright.height, max_dimension)
            resized = target != upright.size

            frame = upright if upright.mode == "RGB" else upright.convert("RGB")
            if resized:
                frame = frame.resize(target, Image.Resampling.LANCZOS)

            out = io.BytesIO()
            frame.save(out, format="JPEG", quality=round(quality * 100), optimize=True)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        logger.warning(f"Compression skipped for {filename}: {e}")
        return original

    encoded = out.getvalue()
    if not resized and len(encoded) >= len(data):
        return original

    logger.info(
        "Compressed %s: %d -> %d bytes (%dx%d)", filename, len(data), len(encoded), target[0], target[1]
    )
    return UploadPayload(jpeg_filename(filename), OUTPUT_CONTENT_TYPE, encoded, compressed=True)


# ============================================================================
# IMAGE HOST
# ============================================================================

class ImageHostClient:
    """
    Client for the public image host.

    Contract:
        POST {upload_url}?key={api_key}, multipart field "image"
        Response: {"success": bool, "data": {"url": ..., "display_url": ...}, "status": int}
    """

    def __init__(self, api_key: str, upload_url: str, client: Optional[httpx.AsyncClient] = None) -> None:
        self.api_key = api_key
        self.upload_url = upload_url
        self._client = client

    async def upload(self, payload: UploadPayload) -> str:
        files = {"image": (payload.filename, payload.data, payload.content_type)}
        try:
            if self._client is not None:
                response = await self._client.post(self.upload_url, params={"key": self.api_key}, files=files)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self.upload_url, params={"key": self.api_key}, files=files)
        except httpx.HTTPError as e:
            logger.error(f"Image upload transport error: {e}")
            raise UploadFailedError() from e

        if response.is_error:
            logger.error(f"Image upload rejected: {response.status_code} {response.text[:200]}")
            raise UploadFailedError()

        try:
            body = response.json()
            if not body.get("success"):
                raise UploadFailedError()
            url = body["data"]["url"]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"Malformed image host response: {e}")
            raise UploadFailedError() from e
        if not isinstance(url, str) or not url:
            raise UploadFailedError()

        logger.info(f"✓ Uploaded {payload.filename} -> {url}")
        return url

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


class AttachmentPipeline:
    """Compress, then upload. Returns the public URL of the image."""

    def __init__(self, host: ImageHostClient, max_dimension: int = MAX_DIMENSION, quality: float = JPEG_QUALITY) -> None:
        self.host = host
        self.max_dimension = max_dimension
        self.quality = quality

    def prepare(self, attachment: Attachment) -> UploadPayload:
        return compress_image(
            attachment.filename,
            attachment.content_type,
            attachment.data,
            max_dimension=self.max_dimension,
            quality=self.quality,
        )

    async def upload(self, attachment: Attachment) -> str:
        return await self.host.upload(self.prepare(attachment))
