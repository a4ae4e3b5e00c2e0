# /tests/test_image_acquisition.py

import base64
import io

import pytest
from unittest.mock import AsyncMock
from PIL import Image

from redpen.models.grading_model import SubmissionRecord
from redpen.services.grading_helpers.errors import ImageUnavailable
from redpen.services.grading_helpers.image_acquisition import (
    ImageRef,
    acquire_image,
    decode_base64_image,
    sniff_mime_type,
)

# --- Test Data Fixtures ---

@pytest.fixture
def png_bytes():
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), color="white").save(buffer, format="PNG")
    return buffer.getvalue()


def _submission(**kwargs):
    return SubmissionRecord(id="sub_1", assignment_id="asg_1", student_id="stu_1", status="scanned", **kwargs)


# --- Base64 Repair Tests ---

def test_decode_data_url_with_broken_padding_and_whitespace(png_bytes):
    encoded = base64.b64encode(png_bytes).decode("ascii").rstrip("=")
    damaged = "data:image/png;base64," + encoded[:10] + "\n  " + encoded[10:]
    assert decode_base64_image(damaged) == png_bytes


def test_decode_url_safe_alphabet():
    raw = b"\xfb\xff\xfe-image"
    encoded = base64.urlsafe_b64encode(raw).decode("ascii")
    assert decode_base64_image(encoded) == raw


@pytest.mark.parametrize("payload", [None, "", "data:image/png;base64,", "!!!not base64!!!"])
def test_decode_rejects_unusable_payloads(payload):
    assert decode_base64_image(payload) is None


# --- ImageRef Tests ---

def test_image_ref_converts_both_ways(png_bytes):
    ref = ImageRef(data=png_bytes)
    assert ref.mime_type == "image/png"
    data_url = ref.to_base64()
    assert data_url.startswith("data:image/png;base64,")
    assert ImageRef(base64_payload=data_url).to_bytes() == png_bytes
    assert ref.to_pil_image().size == (4, 4)


def test_image_ref_requires_a_payload():
    with pytest.raises(ValueError):
        ImageRef()


def test_sniff_mime_type_for_webp():
    assert sniff_mime_type(b"RIFF\x00\x00\x00\x00WEBPVP8 ") == "image/webp"


# --- Acquisition Order Tests ---

@pytest.mark.asyncio
async def test_cached_blob_wins(png_bytes):
    remote = AsyncMock()
    image, source = await acquire_image(_submission(image_blob=png_bytes, image_base64="garbage"), remote)
    assert source == "cache"
    assert image.to_bytes() == png_bytes
    remote.download_image.assert_not_called()


@pytest.mark.asyncio
async def test_base64_is_used_before_remote(png_bytes):
    remote = AsyncMock()
    payload = base64.b64encode(png_bytes).decode("ascii")
    image, source = await acquire_image(_submission(image_base64=payload), remote)
    assert source == "base64"
    remote.download_image.assert_not_called()


@pytest.mark.asyncio
async def test_remote_download_is_the_last_resort(png_bytes):
    remote = AsyncMock()
    remote.download_image.return_value = png_bytes
    image, source = await acquire_image(_submission(image_base64="%%%"), remote)
    assert source == "remote"
    remote.download_image.assert_awaited_once_with("sub_1")


@pytest.mark.asyncio
async def test_no_source_raises_image_unavailable():
    remote = AsyncMock()
    remote.download_image.return_value = b""
    with pytest.raises(ImageUnavailable):
        await acquire_image(_submission(), remote)
