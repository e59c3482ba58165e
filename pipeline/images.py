"""Image normalization for vision payloads.

Generated shots reach the engine as data URLs (inline base64), remote URLs or
local file paths. `load_image()` turns any of them into an `ImagePayload`
(raw bytes + mime type) so every provider adapter sees one shape.
"""

from __future__ import annotations

import base64
import binascii
import logging
import mimetypes
import re
from dataclasses import dataclass
from pathlib import Path

import httpx

import config

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "image/jpeg"
_DATA_URL_RE = re.compile(r"^data:(?P<mime>[^;,]*)(?P<params>(?:;[^,]*)?),(?P<data>.*)$", re.DOTALL)


class ImageLoadError(Exception):
    """An image reference could not be normalized into bytes."""


@dataclass(frozen=True)
class ImagePayload:
    data: bytes
    mime_type: str = DEFAULT_MIME_TYPE

    @property
    def base64_data(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64_data}"


def base64_encoded_size(raw_size: int) -> int:
    return ((int(raw_size) + 2) // 3) * 4


def parse_data_url(value: str) -> ImagePayload:
    match = _DATA_URL_RE.match(value.strip())
    if not match:
        raise ImageLoadError("Malformed data URL")
    mime_type = match.group("mime") or DEFAULT_MIME_TYPE
    payload = match.group("data")
    if ";base64" not in match.group("params"):
        raise ImageLoadError("Only base64 data URLs are supported")
    try:
        data = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ImageLoadError(f"Invalid base64 image data: {exc}") from exc
    if not data:
        raise ImageLoadError("Empty image data")
    return ImagePayload(data=data, mime_type=mime_type)


async def fetch_image(url: str, *, http_client: httpx.AsyncClient | None = None) -> ImagePayload:
    """Download a remote image; mime type comes from the response header."""
    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(
        timeout=config.IMAGE_FETCH_TIMEOUT_SECONDS,
        follow_redirects=True,
    )
    try:
        response = await client.get(url)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        raise ImageLoadError(f"Image fetch failed for {url}: {exc}") from exc
    finally:
        if owns_client:
            await client.aclose()

    data = response.content
    if not data:
        raise ImageLoadError(f"Image fetch returned no bytes: {url}")
    header = response.headers.get("content-type", "")
    mime_type = header.split(";")[0].strip() or mimetypes.guess_type(url)[0] or DEFAULT_MIME_TYPE
    logger.debug("Fetched image %s (%d bytes, %s)", url, len(data), mime_type)
    return ImagePayload(data=data, mime_type=mime_type)


def read_image_file(path: Path) -> ImagePayload:
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise ImageLoadError(f"Cannot read image file {path}: {exc}") from exc
    if not data:
        raise ImageLoadError(f"Image file is empty: {path}")
    mime_type = mimetypes.guess_type(path.name)[0] or DEFAULT_MIME_TYPE
    return ImagePayload(data=data, mime_type=mime_type)


async def load_image(
    source: str | Path | ImagePayload,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> ImagePayload:
    """Normalize an image reference. Raises ImageLoadError when it can't."""
    if isinstance(source, ImagePayload):
        return source
    if isinstance(source, Path):
        return read_image_file(source)

    text = str(source or "").strip()
    if not text:
        raise ImageLoadError("Empty image reference")
    if text.startswith("data:"):
        return parse_data_url(text)
    if text.startswith(("http://", "https://")):
        return await fetch_image(text, http_client=http_client)
    if text.startswith("file://"):
        return read_image_file(Path(text[len("file://"):]))

    path = Path(text).expanduser()
    try:
        is_file = path.is_file()
    except OSError:
        is_file = False
    if is_file:
        return read_image_file(path)
    raise ImageLoadError("Unsupported image reference (expected data URL, http(s) URL or file path)")
