"""Image decoding and reference photo fetching."""
import base64
import logging
import os
from typing import Optional, Union

import cv2
import httpx
import numpy as np

from . import settings

logger = logging.getLogger(__name__)

ReferenceSource = Union[str, bytes, np.ndarray]


class ImageDecodeError(ValueError):
    pass


class ReferenceFetchError(RuntimeError):
    pass


def decode_image(raw: bytes) -> np.ndarray:
    """Decode JPEG/PNG bytes to a BGR array."""
    if not raw:
        raise ImageDecodeError("Empty image payload")
    img = cv2.imdecode(np.frombuffer(raw, np.uint8), cv2.IMREAD_COLOR)
    if img is None:
        raise ImageDecodeError("Invalid image payload")
    return img


def decode_data_url(url: str) -> np.ndarray:
    """Decode a ``data:image/...;base64,`` URL (or bare base64) to BGR."""
    _, _, payload = url.partition(",") if url.startswith("data:") else ("", "", url)
    try:
        raw = base64.b64decode(payload, validate=True)
    except ValueError as e:
        raise ImageDecodeError(f"Invalid base64 image: {e}") from e
    return decode_image(raw)


REMOTE_SCHEMES = ("http://", "https://", "data:")


def _too_large(max_bytes: int) -> ReferenceFetchError:
    return ReferenceFetchError(f"Reference image exceeds {max_bytes} bytes")


async def _download(client: httpx.AsyncClient, url: str, max_bytes: int) -> bytes:
    async with client.stream("GET", url) as resp:
        resp.raise_for_status()
        declared = resp.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > max_bytes:
            raise _too_large(max_bytes)
        buf = bytearray()
        async for chunk in resp.aiter_bytes():
            buf.extend(chunk)
            if len(buf) > max_bytes:
                raise _too_large(max_bytes)
    return bytes(buf)


async def fetch_image(
    source: ReferenceSource,
    timeout: float = settings.REFERENCE_FETCH_TIMEOUT_S,
    client: Optional[httpx.AsyncClient] = None,
    max_bytes: int = settings.IMG_MAX_MB * 1024 * 1024,
) -> np.ndarray:
    """Resolve a reference source to a BGR image.

    Accepts an http(s) URL, a ``data:`` URL, a local file path, encoded bytes
    or an already decoded array. ``client`` overrides the HTTP client used for
    URLs; by default a short-lived one is opened per fetch. Downloads and
    files larger than ``max_bytes`` are rejected without being read in full.
    Local paths are for in-process callers; the HTTP API only forwards
    ``REMOTE_SCHEMES``.
    """
    if isinstance(source, np.ndarray):
        return source
    if isinstance(source, (bytes, bytearray)):
        return decode_image(bytes(source))
    if source.startswith("data:"):
        return decode_data_url(source)
    if source.startswith(("http://", "https://")):
        logger.info("Fetching reference image: %s", source)
        try:
            if client is not None:
                raw = await _download(client, source, max_bytes)
            else:
                async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as own:
                    raw = await _download(own, source, max_bytes)
        except httpx.HTTPError as e:
            raise ReferenceFetchError(f"Failed to fetch {source}: {e}") from e
        return decode_image(raw)
    if os.path.isfile(source):
        if os.path.getsize(source) > max_bytes:
            raise _too_large(max_bytes)
        with open(source, "rb") as f:
            return decode_image(f.read())
    raise ReferenceFetchError(f"Unsupported reference source: {source[:80]}")
