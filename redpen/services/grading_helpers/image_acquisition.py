# /redpen/services/grading_helpers/image_acquisition.py

"""
Specialists for getting hold of a submission's page image.

A submission can carry its image as raw bytes (`image_blob`), as a base64
string (`image_base64`, either a data URL or bare base64), or only in remote
storage. `ImageRef` wraps whichever form we have and converts lazily, caching
each conversion.
"""

import base64
import binascii
import io
import logging
import re
from typing import Optional, Tuple

from PIL import Image

from redpen.models.grading_model import SubmissionRecord
from .errors import ImageUnavailable

logger = logging.getLogger(__name__)

_DATA_URL = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[^,]*)?,", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


def sniff_mime_type(data: bytes) -> str:
    """Guesses the image MIME type from its magic bytes."""
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    return "application/octet-stream"


def decode_base64_image(payload: Optional[str]) -> Optional[bytes]:
    """
    Decodes a data URL or bare base64 string, repairing the common damage
    (surrounding whitespace, line breaks, URL-safe alphabet, missing padding).
    Returns None when nothing decodable is left.
    """
    if not payload or not isinstance(payload, str):
        return None
    text = _DATA_URL.sub("", payload.strip(), count=1)
    text = _WHITESPACE.sub("", text).replace("-", "+").replace("_", "/").rstrip("=")
    if not text:
        return None
    text += "=" * (-len(text) % 4)
    try:
        data = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return None
    return data or None


class ImageRef:
    """An image payload held as bytes, base64, or both."""

    def __init__(self, data: Optional[bytes] = None, base64_payload: Optional[str] = None, mime_type: Optional[str] = None):
        if not data and not base64_payload:
            raise ValueError("ImageRef needs either bytes or a base64 payload.")
        self._data = data or None
        self._base64 = base64_payload or None
        self._mime_type = mime_type

    def to_bytes(self) -> bytes:
        if self._data is None:
            decoded = decode_base64_image(self._base64)
            if decoded is None:
                raise ImageUnavailable("The stored base64 image could not be decoded.")
            self._data = decoded
        return self._data

    @property
    def mime_type(self) -> str:
        if self._mime_type is None:
            match = _DATA_URL.match(self._base64 or "")
            if self._data is None and match and match.group("mime"):
                self._mime_type = match.group("mime").lower()
            else:
                self._mime_type = sniff_mime_type(self.to_bytes())
        return self._mime_type

    def to_base64(self) -> str:
        """Returns the image as a data URL, the form submissions persist."""
        if self._base64 is None or not self._base64.startswith("data:"):
            encoded = base64.b64encode(self.to_bytes()).decode("ascii")
            self._base64 = f"data:{self.mime_type};base64,{encoded}"
        return self._base64

    def to_pil_image(self) -> Image.Image:
        try:
            image = Image.open(io.BytesIO(self.to_bytes()))
            image.load()
        except (OSError, Image.DecompressionBombError) as e:
            raise ImageUnavailable(f"The image payload is not a readable image: {e}")
        return image


def has_usable_blob(submission: SubmissionRecord) -> bool:
    return bool(submission.image_blob)


def image_from_cache(submission: SubmissionRecord) -> Optional[ImageRef]:
    if has_usable_blob(submission):
        return ImageRef(data=submission.image_blob)
    return None


def image_from_base64(submission: SubmissionRecord) -> Optional[ImageRef]:
    data = decode_base64_image(submission.image_base64)
    if data is None:
        return None
    return ImageRef(data=data)


async def image_from_remote(submission: SubmissionRecord, remote_store) -> Optional[ImageRef]:
    if remote_store is None:
        return None
    data = await remote_store.download_image(submission.id)
    if not data:
        return None
    return ImageRef(data=data)


async def acquire_image(submission: SubmissionRecord, remote_store=None) -> Tuple[ImageRef, str]:
    """
    Resolves a submission's image, trying the cached blob, then the stored
    base64, then the remote store. Returns the image with the name of the
    source that produced it.

    Raises:
        ImageUnavailable: if every source comes up empty.
    """
    image = image_from_cache(submission)
    if image is not None:
        return image, "cache"

    image = image_from_base64(submission)
    if image is not None:
        return image, "base64"
    if submission.image_base64:
        logger.warning("Submission %s has an undecodable base64 image; falling back to remote storage.", submission.id)

    image = await image_from_remote(submission, remote_store)
    if image is not None:
        return image, "remote"

    raise ImageUnavailable(f"No image is available for submission {submission.id}.", submission_id=submission.id)
