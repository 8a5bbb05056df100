"""Background image resolution.

Turns an image reference (data URL, http(s) URL, file URL or local path)
into a decoded RGBA image. Resolution never raises into the compositor:
any failure comes back as an ``ImageResolutionFailure`` value and the frame
falls back to the default background colour.

Local references (file URLs and paths) read the server's own filesystem and
are refused unless ``image_allow_local_paths`` is enabled.
"""

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Optional, Union
from urllib.parse import unquote, unquote_to_bytes, urlparse

import httpx
from PIL import Image, ImageOps

from storyforge.config import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedImage:
    """A decoded background image."""

    reference: str
    image: Image.Image

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height


@dataclass(frozen=True)
class ImageResolutionFailure:
    """A reference that could not be turned into an image."""

    reference: str
    reason: str


ResolveResult = Union[ResolvedImage, ImageResolutionFailure]


class ImageLoadError(Exception):
    """Raised internally while loading or decoding; never leaves ``resolve``."""


class ImageResolver:
    """Service for resolving background image references."""

    def __init__(
        self,
        timeout_s: Optional[float] = None,
        max_bytes: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        allow_local_paths: Optional[bool] = None,
    ):
        settings = get_settings()
        self.timeout_s = timeout_s or settings.image_fetch_timeout_s
        self.max_bytes = max_bytes or settings.image_max_bytes
        self.allow_local_paths = (
            settings.image_allow_local_paths if allow_local_paths is None else allow_local_paths
        )
        self._transport = transport
        self._cache: dict[str, ResolveResult] = {}

    def clear_cache(self) -> None:
        """Forget resolved references (called at the start of every run)."""
        self._cache.clear()

    async def resolve(self, reference: str) -> ResolveResult:
        """Resolve a reference into a drawable image.

        Args:
            reference: data URL, http(s) URL, file URL or filesystem path

        Returns:
            ResolvedImage on success, ImageResolutionFailure otherwise
        """
        cached = self._cache.get(reference)
        if cached is not None:
            return cached

        try:
            data = await self._load_bytes(reference)
            image = await asyncio.to_thread(self._decode, data)
            result: ResolveResult = ResolvedImage(reference=reference, image=image)
            logger.info(f"[IMAGE] Resolved {_describe(reference)} ({image.width}x{image.height})")
        except ImageLoadError as e:
            result = ImageResolutionFailure(reference=reference, reason=str(e))
            logger.warning(f"[IMAGE] Failed to resolve {_describe(reference)}: {e}")

        self._cache[reference] = result
        return result

    async def _load_bytes(self, reference: str) -> bytes:
        if not reference:
            raise ImageLoadError("Empty image reference")

        try:
            parsed = urlparse(reference)
        except ValueError as e:
            raise ImageLoadError(f"Malformed image reference: {e}") from e

        scheme = parsed.scheme.lower()
        if scheme == "data":
            data = self._decode_data_url(reference)
        elif scheme in ("http", "https"):
            data = await self._fetch(reference)
        elif not self.allow_local_paths:
            raise ImageLoadError("Local image paths are disabled (set IMAGE_ALLOW_LOCAL_PATHS to enable)")
        elif scheme == "file":
            data = await self._read_file(Path(unquote(parsed.path)))
        else:
            data = await self._read_file(Path(reference))

        if len(data) > self.max_bytes:
            raise ImageLoadError(f"Image is too large ({len(data)} bytes > {self.max_bytes})")
        return data

    def _decode_data_url(self, reference: str) -> bytes:
        header, sep, payload = reference.partition(",")
        if not sep:
            raise ImageLoadError("Malformed data URL (missing ',')")
        if header.lower().endswith(";base64"):
            try:
                return base64.b64decode(payload, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ImageLoadError(f"Invalid base64 payload: {e}") from e
        return unquote_to_bytes(payload)

    async def _fetch(self, url: str) -> bytes:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_s,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    buffer = bytearray()
                    async for chunk in response.aiter_bytes():
                        buffer.extend(chunk)
                        # Stop reading as soon as the limit is passed
                        if len(buffer) > self.max_bytes:
                            raise ImageLoadError(
                                f"Image is too large (more than {self.max_bytes} bytes)"
                            )
                    return bytes(buffer)
        except httpx.TimeoutException as e:
            raise ImageLoadError(f"Timed out fetching image after {self.timeout_s}s") from e
        except httpx.HTTPStatusError as e:
            raise ImageLoadError(f"HTTP {e.response.status_code} fetching image") from e
        except httpx.HTTPError as e:
            raise ImageLoadError(f"Network error fetching image: {e}") from e
        except httpx.InvalidURL as e:
            raise ImageLoadError(f"Malformed image URL: {e}") from e

    async def _read_file(self, path: Path) -> bytes:
        try:
            return await asyncio.to_thread(path.read_bytes)
        except (OSError, ValueError) as e:
            # ValueError: embedded null byte in the path
            raise ImageLoadError(f"Cannot read image file: {e}") from e

    @staticmethod
    def _decode(data: bytes) -> Image.Image:
        """Decode into a standalone RGBA copy with EXIF orientation applied."""
        try:
            with Image.open(BytesIO(data)) as source:
                source.load()
                oriented = ImageOps.exif_transpose(source)
                return oriented.convert("RGBA")
        except Image.DecompressionBombError as e:
            raise ImageLoadError(f"Image exceeds pixel limit: {e}") from e
        except (OSError, ValueError, SyntaxError) as e:
            # UnidentifiedImageError is an OSError
            raise ImageLoadError(f"Cannot decode image: {e}") from e


def _describe(reference: str) -> str:
    if reference.startswith("data:"):
        return f"data URL ({len(reference)} chars)"
    return reference[:120]
