from __future__ import annotations

import asyncio
import base64
import io
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Mapping, Sequence, Tuple, Union

import httpx
from PIL import Image

from ..config import Settings
from .cache import CachedImage, ImageCache
from .placeholder import generate_placeholder
from .projection import (
    InvalidCoordinatesError,
    ProjectedCoordinates,
    TileCoordinates,
    project,
    validate_coordinates,
)
from .providers import TILE_PIXELS, ProviderDescriptor, list_providers
from .usage import ProviderUsage

logger = logging.getLogger(__name__)

CACHE_KEY_PRECISION = 3
DEFAULT_IMAGE_SIZE = 512
MAX_IMAGE_DIMENSION = 2048
PLACEHOLDER_SOURCE = "placeholder"
SVG_CONTENT_TYPE = "image/svg+xml"
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})

# Leading bytes of the XML/HTML documents WMS servers send back as "images"
# when a GetMap request is rejected.
_MARKUP_PREFIXES = (b"<?xml", b"<!doctype", b"<html", b"<serviceexceptionreport", b"<ows:")
# First element name, skipping declarations, doctypes and comments.
_ROOT_ELEMENT = re.compile(rb"<([A-Za-z][\w:.-]*)")


class ImageryCancellationError(Exception):
    """Raised when imagery resolution is abandoned because the caller went away."""


@dataclass(frozen=True)
class ImageRequest:
    latitude: float
    longitude: float
    width: int = DEFAULT_IMAGE_SIZE
    height: int = DEFAULT_IMAGE_SIZE

    @classmethod
    def create(
        cls,
        latitude: float,
        longitude: float,
        width: int = DEFAULT_IMAGE_SIZE,
        height: int = DEFAULT_IMAGE_SIZE,
    ) -> "ImageRequest":
        latitude = float(latitude)
        longitude = float(longitude)
        validate_coordinates(latitude, longitude)
        for label, value in (("width", width), ("height", height)):
            if isinstance(value, bool) or int(value) != value:
                raise ValueError(f"Image {label} must be an integer.")
            if not 1 <= int(value) <= MAX_IMAGE_DIMENSION:
                raise ValueError(
                    f"Image {label} must be between 1 and {MAX_IMAGE_DIMENSION} pixels."
                )
        return cls(latitude=latitude, longitude=longitude, width=int(width), height=int(height))


def cache_key(request: ImageRequest) -> str:
    """Quantize the request location to ~100 m so nearby lookups share an entry."""

    lat = round(request.latitude, CACHE_KEY_PRECISION) + 0.0
    lon = round(request.longitude, CACHE_KEY_PRECISION) + 0.0
    precision = CACHE_KEY_PRECISION
    return f"{lat:.{precision}f}:{lon:.{precision}f}:{request.width}x{request.height}"


@dataclass(frozen=True)
class FetchSuccess:
    content_type: str
    payload: bytes
    source_name: str
    width: int
    height: int


@dataclass(frozen=True)
class TransientFailure:
    reason: str
    retryable: bool = True


@dataclass(frozen=True)
class InvalidResponse:
    reason: str


FetchOutcome = Union[FetchSuccess, TransientFailure, InvalidResponse]


@dataclass(frozen=True)
class ResolvedImage:
    image: CachedImage
    cached: bool

    @property
    def source(self) -> str:
        return self.image.source_name

    @property
    def placeholder(self) -> bool:
        return self.image.placeholder

    @property
    def data_url(self) -> str:
        return build_data_url(self.image.content_type, self.image.payload)


def build_data_url(content_type: str, payload: bytes) -> str:
    encoded = base64.b64encode(payload).decode("ascii")
    return f"data:{content_type};base64,{encoded}"


async def fetch_provider_image(
    client: httpx.AsyncClient,
    descriptor: ProviderDescriptor,
    projected: ProjectedCoordinates,
    width: int,
    height: int,
    *,
    timeout: float | None = None,
    min_bytes: int = 1000,
) -> FetchOutcome:
    """Issue a single GET against ``descriptor`` and classify the response."""

    url, params = descriptor.build_request(projected, width, height)
    request_kwargs: Dict[str, object] = {}
    if params:
        request_kwargs["params"] = params
    if descriptor.headers:
        request_kwargs["headers"] = dict(descriptor.headers)
    if timeout is not None:
        request_kwargs["timeout"] = httpx.Timeout(timeout)

    try:
        response = await client.get(url, **request_kwargs)
    except httpx.TimeoutException as exc:
        return TransientFailure(f"timed out ({exc.__class__.__name__})")
    except httpx.RequestError as exc:
        return TransientFailure(str(exc) or exc.__class__.__name__)

    status = response.status_code
    if status >= 400:
        detail = _short_error_detail(response.text)
        retryable = status >= 500 or status in RETRYABLE_STATUS_CODES
        return TransientFailure(f"{status} {detail}", retryable=retryable)

    content_type = response.headers.get("Content-Type", "")
    media_type = content_type.split(";", 1)[0].strip().lower()
    if not media_type.startswith("image/"):
        detail = _short_error_detail(response.text)
        return InvalidResponse(f"unexpected payload ({content_type or 'unknown'}): {detail}")

    payload = response.content
    if media_type == SVG_CONTENT_TYPE:
        disguised = not _is_svg_document(payload)
    else:
        disguised = _looks_like_markup(payload)
    if disguised:
        detail = _short_error_detail(payload.decode("utf-8", errors="replace"))
        return InvalidResponse(f"error document disguised as {media_type}: {detail}")

    if len(payload) < min_bytes:
        return InvalidResponse(
            f"payload too small ({len(payload)} bytes, expected at least {min_bytes})"
        )

    fallback_size = (width, height)
    if isinstance(projected, TileCoordinates):
        fallback_size = (TILE_PIXELS, TILE_PIXELS)
    actual_width, actual_height = _probe_image_size(payload) or fallback_size

    return FetchSuccess(
        content_type=media_type,
        payload=payload,
        source_name=descriptor.name,
        width=actual_width,
        height=actual_height,
    )


class ImageResolver:
    """Resolve imagery for a location: cache, then providers in order, then a placeholder."""

    def __init__(
        self,
        cache: ImageCache,
        *,
        settings: Settings | None = None,
        providers: Sequence[ProviderDescriptor] | None = None,
        usage: ProviderUsage | None = None,
        sleep=asyncio.sleep,
    ) -> None:
        self.cache = cache
        self.settings = settings or Settings()
        if providers is None:
            providers = list_providers(self.settings.provider_names)
        self.providers: Tuple[ProviderDescriptor, ...] = tuple(providers)
        self.usage = usage or ProviderUsage()
        self._sleep = sleep
        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._key_waiters: Dict[str, int] = {}

    def provider_labels(self) -> Mapping[str, str]:
        labels = {descriptor.name: descriptor.label for descriptor in self.providers}
        labels[PLACEHOLDER_SOURCE] = "Placeholder (imagery unavailable)"
        return labels

    async def resolve(
        self, request: ImageRequest, *, cancel_event: asyncio.Event | None = None
    ) -> ResolvedImage:
        key = cache_key(request)

        async with self._single_flight(key):
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug("Serving %s from cache (source %s)", key, cached.source_name)
                return ResolvedImage(image=cached, cached=True)

            success, failure_reason = await self._fetch_from_providers(request, cancel_event)
            if success is not None:
                image = CachedImage(
                    payload=success.payload,
                    content_type=success.content_type,
                    source_name=success.source_name,
                    width=success.width,
                    height=success.height,
                )
                stored = self.cache.set(key, image, self.settings.cache_ttl)
                return ResolvedImage(image=stored, cached=False)

            reason = failure_reason or "no imagery providers configured"
            logger.info(
                "All imagery providers failed for lat %.5f lon %.5f; serving placeholder (%s)",
                request.latitude,
                request.longitude,
                reason,
            )
            placeholder = generate_placeholder(
                request.latitude, request.longitude, request.width, request.height, reason
            )
            image = CachedImage(
                payload=placeholder.payload,
                content_type=placeholder.content_type,
                source_name=PLACEHOLDER_SOURCE,
                width=request.width,
                height=request.height,
                placeholder=True,
                reason=reason,
            )
            stored = self.cache.set(key, image, self.settings.placeholder_ttl)
            return ResolvedImage(image=stored, cached=False)

    async def _fetch_from_providers(
        self, request: ImageRequest, cancel_event: asyncio.Event | None
    ) -> Tuple[FetchSuccess | None, str | None]:
        last_reason: str | None = None
        headers = {"User-Agent": self.settings.user_agent}

        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.request_timeout),
            headers=headers,
            follow_redirects=True,
        ) as client:
            for index, descriptor in enumerate(self.providers):
                _raise_if_cancelled(cancel_event)
                projected = project(request.latitude, request.longitude, descriptor)
                outcome = await self._attempt_provider(
                    client, descriptor, projected, request, cancel_event
                )

                if isinstance(outcome, FetchSuccess):
                    if index > 0:
                        logger.info(
                            "Imagery for lat %.5f lon %.5f served by fallback provider %s",
                            request.latitude,
                            request.longitude,
                            descriptor.name,
                        )
                    return outcome, None

                last_reason = f"{descriptor.name}: {outcome.reason}"
                logger.warning(
                    "Imagery provider %s failed (%s): %s",
                    descriptor.name,
                    "invalid response" if isinstance(outcome, InvalidResponse) else "transient",
                    outcome.reason,
                )

        return None, last_reason

    async def _attempt_provider(
        self,
        client: httpx.AsyncClient,
        descriptor: ProviderDescriptor,
        projected: ProjectedCoordinates,
        request: ImageRequest,
        cancel_event: asyncio.Event | None,
    ) -> FetchOutcome:
        attempts = max(1, self.settings.fetch_attempts)
        outcome: FetchOutcome = TransientFailure("not attempted")

        for attempt in range(1, attempts + 1):
            outcome = await fetch_provider_image(
                client,
                descriptor,
                projected,
                request.width,
                request.height,
                timeout=self.settings.request_timeout,
                min_bytes=self.settings.min_image_bytes,
            )
            self.usage.record(descriptor.name, success=isinstance(outcome, FetchSuccess))

            if not isinstance(outcome, TransientFailure) or not outcome.retryable:
                return outcome
            if attempt == attempts:
                break

            delay = self.settings.retry_backoff * (2 ** (attempt - 1))
            logger.info(
                "Retrying %s in %.2fs after transient failure (attempt %s of %s): %s",
                descriptor.name,
                delay,
                attempt,
                attempts,
                outcome.reason,
            )
            if delay > 0:
                await self._backoff(delay, cancel_event)
            _raise_if_cancelled(cancel_event)

        return outcome

    async def _backoff(self, delay: float, cancel_event: asyncio.Event | None) -> None:
        if cancel_event is None:
            await self._sleep(delay)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    @asynccontextmanager
    async def _single_flight(self, key: str) -> AsyncIterator[None]:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[key] = lock
        self._key_waiters[key] = self._key_waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._key_waiters[key] -= 1
            if not self._key_waiters[key]:
                del self._key_waiters[key]
                del self._key_locks[key]


def _raise_if_cancelled(cancel_event: asyncio.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise ImageryCancellationError("Imagery request cancelled")


def _looks_like_markup(payload: bytes) -> bool:
    head = payload[:64].lstrip().lower()
    return head.startswith(_MARKUP_PREFIXES)


def _is_svg_document(payload: bytes) -> bool:
    match = _ROOT_ELEMENT.search(payload[:2048])
    if match is None:
        return False
    return match.group(1).split(b":")[-1].lower() == b"svg"


def _probe_image_size(payload: bytes) -> Tuple[int, int] | None:
    try:
        with Image.open(io.BytesIO(payload)) as image:
            width, height = image.size
    except (OSError, ValueError, Image.DecompressionBombError):
        return None
    if width <= 0 or height <= 0:
        return None
    return int(width), int(height)


def _short_error_detail(detail: str) -> str:
    detail = " ".join(detail.split())
    if len(detail) > 160:
        return f"{detail[:157]}..."
    return detail or "(no detail)"


__all__ = [
    "FetchOutcome",
    "FetchSuccess",
    "ImageRequest",
    "ImageResolver",
    "ImageryCancellationError",
    "InvalidCoordinatesError",
    "InvalidResponse",
    "ResolvedImage",
    "TransientFailure",
    "build_data_url",
    "cache_key",
    "fetch_provider_image",
]
