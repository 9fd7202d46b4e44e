"""Image normalization stage.

Turns an ``ImageReference`` into a size-bounded, provider-ready
``NormalizedImage``:

- inline payloads are checked against the size ceiling *before* decoding
- remote images are streamed with a byte cap and their own fetch timeout
- oversized dimensions are downscaled with Pillow, preserving aspect ratio
- GIF and animated images pass through untouched
- a failed re-encode degrades to the original bytes with a warning
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from dataclasses import dataclass, field
import io
import logging
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

import httpx
from PIL import Image, UnidentifiedImageError

from vision_bridge.constants import (
    DEFAULT_FETCH_TIMEOUT,
    DEFAULT_IMAGE_QUALITY,
    DEFAULT_MAX_DIMENSION,
    DEFAULT_MAX_IMAGE_BYTES,
    DEFAULT_MAX_PIXELS,
    FETCH_USER_AGENT,
    SUPPORTED_IMAGE_FORMATS,
)
from vision_bridge.core.exceptions import (
    ImageDecodeError,
    ImageForbiddenError,
    ImageInputError,
    ImageNotFoundError,
    ImageTooLargeError,
    ImageUnreachableError,
    InvalidImageInputError,
    UnsupportedImageFormatError,
)
from vision_bridge.core.types import (
    Failure,
    ImageReference,
    InlineEncoded,
    NormalizedImage,
    RemoteURL,
    Result,
    Success,
    ValidationResult,
)
from vision_bridge.pipeline.base import BaseAsyncHandler
from vision_bridge.telemetry import TelemetryContext

if TYPE_CHECKING:
    from vision_bridge.core.models import ModelCapability
    from vision_bridge.telemetry import TelemetryContextProtocol

log = logging.getLogger(__name__)

_PIL_SAVE_FORMAT = {
    "jpeg": "JPEG",
    "jpg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
}
_PASSTHROUGH_FORMATS = frozenset({"gif"})
# Pillow format name -> accepted policy names, canonical first.
_DECODED_FORMATS = {
    "JPEG": ("jpeg", "jpg"),
    "MPO": ("jpeg", "jpg"),
    "PNG": ("png",),
    "WEBP": ("webp",),
    "GIF": ("gif",),
}


@dataclass(frozen=True, slots=True)
class ImagePolicy:
    """Size, format and re-encoding limits for incoming images."""

    max_bytes: int = DEFAULT_MAX_IMAGE_BYTES
    allowed_formats: frozenset[str] = field(
        default_factory=lambda: frozenset(SUPPORTED_IMAGE_FORMATS)
    )
    max_dimension: int = DEFAULT_MAX_DIMENSION
    max_pixels: int = DEFAULT_MAX_PIXELS
    quality: int = DEFAULT_IMAGE_QUALITY
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT

    def __post_init__(self) -> None:
        if self.max_bytes <= 0:
            raise ValueError("max_bytes: must be positive")
        if self.max_dimension <= 0:
            raise ValueError("max_dimension: must be positive")
        if self.max_pixels <= 0:
            raise ValueError("max_pixels: must be positive")
        if not 1 <= self.quality <= 100:
            raise ValueError("quality: must be within [1, 100]")
        unknown = set(self.allowed_formats) - set(SUPPORTED_IMAGE_FORMATS)
        if unknown:
            raise ValueError(f"allowed_formats: unknown formats {sorted(unknown)}")


@dataclass(frozen=True, slots=True)
class _Encoded:
    data: bytes
    format: str
    width: int | None
    height: int | None
    reencoded: bool


def estimate_decoded_size(encoded: bytes) -> int:
    """Decoded byte count of a base64 payload, computed without decoding."""
    length = len(encoded)
    padding = len(encoded) - len(encoded.rstrip(b"="))
    return max((length * 3) // 4 - min(padding, 2), 0)


class ImageNormalizer(
    BaseAsyncHandler[ImageReference, NormalizedImage, ImageInputError]
):
    """Validates, fetches and re-encodes image references."""

    def __init__(
        self,
        policy: ImagePolicy | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        telemetry: TelemetryContextProtocol | None = None,
    ) -> None:
        self._policy = policy or ImagePolicy()
        self._client = client
        self._telemetry: TelemetryContextProtocol = telemetry or TelemetryContext()

    @property
    def policy(self) -> ImagePolicy:
        return self._policy

    async def handle(
        self, command: ImageReference
    ) -> Result[NormalizedImage, ImageInputError]:
        try:
            return Success(await self.normalize(command))
        except ImageInputError as e:
            return Failure(e)

    async def normalize(self, ref: ImageReference) -> NormalizedImage:
        """Normalize a reference; raises ``ImageInputError`` subclasses."""
        source = "inline" if isinstance(ref, InlineEncoded) else "remote"
        with self._telemetry("image.normalize", source=source):
            if isinstance(ref, InlineEncoded):
                raw, image_format = self._decode_inline(ref)
            elif isinstance(ref, RemoteURL):
                raw, image_format = await self._fetch_remote(ref)
            else:
                raise InvalidImageInputError(
                    f"Unsupported image reference type: {type(ref).__name__}"
                )

            encoded = await asyncio.to_thread(self._reencode, raw, image_format)

            if len(encoded.data) > self._policy.max_bytes:
                raise ImageTooLargeError(
                    f"Image size ({len(encoded.data)} bytes) exceeds limit "
                    f"({self._policy.max_bytes} bytes)",
                    size=len(encoded.data),
                    limit=self._policy.max_bytes,
                )

            image_format = encoded.format
            image = NormalizedImage(
                encoded=base64.b64encode(encoded.data).decode("ascii"),
                format=image_format,
                byte_size=len(encoded.data),
                original_size=len(raw),
                width=encoded.width,
                height=encoded.height,
                reencoded=encoded.reencoded,
            )
            self._telemetry.gauge("image.bytes", image.byte_size, format=image_format)
        log.debug(
            "Normalized %s image: format=%s original=%d final=%d reencoded=%s",
            source,
            image.format,
            image.original_size,
            image.byte_size,
            image.reencoded,
        )
        return image

    def validate_for_model(
        self, image: NormalizedImage, capability: ModelCapability
    ) -> ValidationResult:
        """Check a normalized image against one model's format and size limits."""
        issues: list[str] = []
        if not capability.supports_images:
            issues.append("Model does not support images")
        if not capability.accepts_format(image.format):
            issues.append(f"Model does not accept {image.format} images")
        if image.byte_size > capability.max_image_bytes:
            issues.append(
                f"Image size ({image.byte_size} bytes) exceeds model limit "
                f"({capability.max_image_bytes} bytes)"
            )
        return ValidationResult(valid=not issues, issues=tuple(issues))

    # --- Inline payloads ---

    def _decode_inline(self, ref: InlineEncoded) -> tuple[bytes, str]:
        image_format = ref.declared_format
        self._check_format(image_format)
        estimated = estimate_decoded_size(ref.encoded)
        if estimated > self._policy.max_bytes:
            raise ImageTooLargeError(
                f"Image size (~{estimated} bytes) exceeds limit "
                f"({self._policy.max_bytes} bytes)",
                size=estimated,
                limit=self._policy.max_bytes,
            )
        try:
            raw = base64.b64decode(ref.encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ImageDecodeError(f"Image payload is not valid base64: {e}") from e
        if not raw:
            raise ImageDecodeError("Image payload decoded to zero bytes")
        return raw, image_format

    # --- Remote images ---

    async def _fetch_remote(self, ref: RemoteURL) -> tuple[bytes, str]:
        url = ref.url.strip()
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https"):
            raise InvalidImageInputError("Image URL must use HTTP or HTTPS protocol")
        if not parts.hostname:
            raise InvalidImageInputError("Invalid URL format")

        if self._client is not None:
            return await self._download(self._client, url)
        async with httpx.AsyncClient(timeout=self._policy.fetch_timeout) as client:
            return await self._download(client, url)

    async def _download(self, client: httpx.AsyncClient, url: str) -> tuple[bytes, str]:
        limit = self._policy.max_bytes
        try:
            async with client.stream(
                "GET",
                url,
                headers={"User-Agent": FETCH_USER_AGENT},
                timeout=self._policy.fetch_timeout,
                follow_redirects=True,
            ) as response:
                self._raise_for_fetch_status(response, url)

                declared_length = response.headers.get("content-length")
                if declared_length and declared_length.isdigit():
                    if int(declared_length) > limit:
                        raise ImageTooLargeError(
                            f"Image size ({declared_length} bytes) exceeds limit "
                            f"({limit} bytes)",
                            size=int(declared_length),
                            limit=limit,
                        )

                buffer = bytearray()
                async for chunk in response.aiter_bytes():
                    buffer.extend(chunk)
                    if len(buffer) > limit:
                        raise ImageTooLargeError(
                            f"Image exceeds limit ({limit} bytes) while downloading",
                            size=len(buffer),
                            limit=limit,
                        )
                content_type = response.headers.get("content-type", "")
        except httpx.TimeoutException as e:
            raise ImageUnreachableError(f"Image URL request timed out: {url}") from e
        except httpx.RequestError as e:
            raise ImageUnreachableError(f"Cannot access image URL: {e}") from e

        raw = bytes(buffer)
        if not raw:
            raise ImageDecodeError("Image URL returned an empty body")
        image_format = (
            _format_from_content_type(content_type)
            or _format_from_url(url)
            or _sniff_format(raw)
        )
        if image_format is None:
            raise UnsupportedImageFormatError("Unable to detect image format")
        self._check_format(image_format)
        return raw, image_format

    @staticmethod
    def _raise_for_fetch_status(response: httpx.Response, url: str) -> None:
        status = response.status_code
        if status == 404:
            raise ImageNotFoundError("Image not found at the provided URL")
        if status == 403:
            raise ImageForbiddenError("Access to image is forbidden")
        if not response.is_success:
            raise ImageUnreachableError(f"Failed to download image: HTTP {status} {url}")

    # --- Format & re-encoding ---

    def _check_format(self, image_format: str) -> None:
        if image_format not in self._policy.allowed_formats:
            raise UnsupportedImageFormatError(
                f"Image format '{image_format}' is not supported"
            )

    def _reencode(self, raw: bytes, image_format: str) -> _Encoded:
        """Downscale and re-encode; never returns more bytes unless resized.

        The returned format is the one the bytes actually decode as, which
        may differ from the declared or advertised one.
        """
        try:
            img = Image.open(io.BytesIO(raw))
        except Image.DecompressionBombError as e:
            raise ImageTooLargeError(
                f"Image dimensions exceed the decoder pixel limit: {e}",
                size=len(raw),
                limit=self._policy.max_bytes,
            ) from e
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise ImageDecodeError(f"Unable to decode image data: {e}") from e

        with img:
            image_format = self._decoded_format(img, image_format)
            width, height = img.size
            if width * height > self._policy.max_pixels:
                raise ImageTooLargeError(
                    f"Image dimensions ({width}x{height}) exceed the pixel limit "
                    f"({self._policy.max_pixels} pixels)",
                    size=len(raw),
                    limit=self._policy.max_bytes,
                )
            try:
                img.load()
            except (OSError, ValueError) as e:
                raise ImageDecodeError(f"Unable to decode image data: {e}") from e

            if image_format in _PASSTHROUGH_FORMATS or getattr(img, "is_animated", False):
                return _Encoded(raw, image_format, width, height, reencoded=False)

            max_dim = self._policy.max_dimension
            needs_resize = width > max_dim or height > max_dim
            try:
                work = img.copy()
                if needs_resize:
                    work.thumbnail((max_dim, max_dim), Image.Resampling.LANCZOS)
                candidate = self._save(work, image_format)
            except (OSError, ValueError) as e:
                log.warning(
                    "Image re-encode failed, using original bytes (format=%s): %s",
                    image_format,
                    e,
                )
                self._telemetry.count("image.reencode_failed", format=image_format)
                return _Encoded(raw, image_format, width, height, reencoded=False)

            if not needs_resize and len(candidate) >= len(raw):
                return _Encoded(raw, image_format, width, height, reencoded=False)
            return _Encoded(
                candidate, image_format, work.width, work.height, reencoded=True
            )

    def _decoded_format(self, img: Image.Image, claimed: str) -> str:
        accepted = _DECODED_FORMATS.get(img.format or "")
        if accepted is None:
            raise UnsupportedImageFormatError(
                f"Image data is {img.format or 'an unknown format'}, which is not supported"
            )
        if claimed in accepted:
            return claimed
        detected = accepted[0]
        log.info("Image declared as %s decodes as %s; using %s", claimed, detected, detected)
        self._check_format(detected)
        return detected

    def _save(self, img: Image.Image, image_format: str) -> bytes:
        save_format = _PIL_SAVE_FORMAT[image_format]
        out = io.BytesIO()
        if save_format == "JPEG":
            if img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            img.save(out, format="JPEG", quality=self._policy.quality, optimize=True)
        elif save_format == "PNG":
            img.save(out, format="PNG", optimize=True)
        else:
            img.save(out, format="WEBP", quality=self._policy.quality)
        return out.getvalue()


def _format_from_content_type(content_type: str) -> str | None:
    mime = content_type.split(";")[0].strip().lower()
    if not mime.startswith("image/"):
        return None
    return mime.removeprefix("image/") or None


def _format_from_url(url: str) -> str | None:
    path = urlsplit(url).path.lower()
    if "." not in path:
        return None
    extension = path.rsplit(".", 1)[-1]
    return extension if extension in SUPPORTED_IMAGE_FORMATS else None


def _sniff_format(raw: bytes) -> str | None:
    try:
        with Image.open(io.BytesIO(raw)) as img:
            detected = img.format
    except (UnidentifiedImageError, OSError):
        return None
    return detected.lower() if detected else None
