from __future__ import annotations

import asyncio
import logging
import math
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Sequence

import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .config import DIAGNOSTICS_FLAG_ENV, Settings
from .security import extract_api_key, is_authorized
from .services.cache import ImageCache
from .services.imagery import (
    DEFAULT_IMAGE_SIZE,
    ImageRequest,
    ImageResolver,
    ImageryCancellationError,
    ResolvedImage,
)
from .services.projection import lat_lon_to_tile, project
from .services.providers import DEFAULT_TILE_ZOOM, ProviderDescriptor
from .services.usage import ProviderUsage

logger = logging.getLogger(__name__)

DEBUG_DEFAULT_LAT = 59.9139
DEBUG_DEFAULT_LON = 10.7522
DISCONNECT_POLL_INTERVAL = 0.25
OUTPUT_FORMATS = {"data-url", "binary"}
CLIENT_CLOSED_REQUEST = 499

router = APIRouter()


def get_resolver(request: Request) -> ImageResolver:
    return request.app.state.resolver


def get_cache(request: Request) -> ImageCache:
    return request.app.state.cache


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


@router.get("/satellite-image")
async def satellite_image(
    request: Request,
    lat: str | None = Query(None),
    lon: str | None = Query(None),
    width: str | None = Query(None),
    height: str | None = Query(None),
    output_format: str | None = Query(None, alias="format"),
    resolver: ImageResolver = Depends(get_resolver),
):
    latitude = _parse_coordinate("lat", lat)
    longitude = _parse_coordinate("lon", lon)
    pixel_width = _parse_dimension("width", width)
    pixel_height = _parse_dimension("height", height)

    normalized_format = (output_format or "data-url").strip().lower()
    if normalized_format not in OUTPUT_FORMATS:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported format '{output_format}'. Use one of: {', '.join(sorted(OUTPUT_FORMATS))}.",
        )

    try:
        image_request = ImageRequest.create(latitude, longitude, pixel_width, pixel_height)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    resolved = await _resolve_until_disconnected(request, resolver, image_request)

    if normalized_format == "binary":
        return Response(
            content=resolved.image.payload,
            media_type=resolved.image.content_type,
            headers={
                "X-Image-Source": resolved.source,
                "X-Image-Cached": "true" if resolved.cached else "false",
            },
        )

    return {
        "success": True,
        "data": _image_payload(resolved, image_request, resolver.provider_labels()),
    }


@router.delete("/satellite-image/cache/clear")
def clear_image_cache(
    request: Request,
    cache: ImageCache = Depends(get_cache),
    settings: Settings = Depends(get_settings),
) -> Dict[str, object]:
    if not is_authorized(extract_api_key(request), settings.admin_api_key):
        client_host = request.client.host if request.client else "unknown"
        logger.warning("Rejected satellite image cache clear from %s", client_host)
        raise HTTPException(
            status_code=403,
            detail="Forbidden - a valid administrative API key is required",
        )

    cleared = cache.clear()
    logger.info("Satellite image cache cleared by administrator (%s entries)", cleared)
    return {"success": True, "message": "Image cache cleared"}


@router.get("/satellite-image/cache/stats")
def image_cache_stats(
    request: Request,
    cache: ImageCache = Depends(get_cache),
    settings: Settings = Depends(get_settings),
):
    if not settings.diagnostics_enabled:
        return _diagnostics_disabled()

    resolver = get_resolver(request)
    return {
        "success": True,
        "data": {
            **cache.stats().as_dict(),
            "providers": resolver.usage.snapshot(),
        },
        "diagnosticsEnabled": True,
    }


@router.get("/satellite-image/debug")
def satellite_image_debug(
    lat: str | None = Query(None),
    lon: str | None = Query(None),
    resolver: ImageResolver = Depends(get_resolver),
    settings: Settings = Depends(get_settings),
):
    if not settings.diagnostics_enabled:
        return _diagnostics_disabled()

    latitude = _parse_coordinate("lat", lat) if lat else DEBUG_DEFAULT_LAT
    longitude = _parse_coordinate("lon", lon) if lon else DEBUG_DEFAULT_LON
    try:
        tile = lat_lon_to_tile(latitude, longitude, DEFAULT_TILE_ZOOM)
        test_urls = _provider_test_urls(resolver.providers, latitude, longitude)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return {
        "success": True,
        "message": "Debug endpoint for satellite images",
        "diagnosticsEnabled": True,
        "testUrls": test_urls,
        "coordinates": {"lat": latitude, "lon": longitude},
        "tileCoords": {"zoom": tile.zoom, "x": tile.column, "y": tile.row},
    }


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    resolver: ImageResolver = app.state.resolver
    logger.info(
        "Satellite imagery providers (priority order): %s",
        ", ".join(descriptor.name for descriptor in resolver.providers) or "none",
    )
    yield
    app.state.cache.clear()


def create_app(
    settings: Settings | None = None,
    *,
    cache: ImageCache | None = None,
    providers: Sequence[ProviderDescriptor] | None = None,
) -> FastAPI:
    """Build the application with its own cache and resolver instances."""

    settings = settings or Settings.from_env()
    if cache is None:
        cache = ImageCache(
            max_entries=settings.cache_max_entries,
            max_bytes=settings.cache_max_bytes,
        )
    resolver = ImageResolver(
        cache,
        settings=settings,
        providers=providers,
        usage=ProviderUsage(),
    )

    application = FastAPI(
        title="Solar Imagery Service",
        version=__version__,
        lifespan=lifespan,
    )
    application.state.settings = settings
    application.state.cache = cache
    application.state.resolver = resolver
    application.include_router(router)
    _register_exception_handlers(application)
    return application


def _register_exception_handlers(application: FastAPI) -> None:
    @application.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @application.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Invalid request", "details": exc.errors()},
        )

    @application.exception_handler(ImageryCancellationError)
    async def cancellation_handler(request: Request, exc: ImageryCancellationError) -> JSONResponse:
        return JSONResponse(
            status_code=CLIENT_CLOSED_REQUEST,
            content={"success": False, "error": str(exc)},
        )

    @application.exception_handler(Exception)
    async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error while serving %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error"},
        )


async def _resolve_until_disconnected(
    request: Request, resolver: ImageResolver, image_request: ImageRequest
) -> ResolvedImage:
    cancel_event = asyncio.Event()
    task = asyncio.create_task(resolver.resolve(image_request, cancel_event=cancel_event))
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_INTERVAL)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info(
                    "Client disconnected; abandoning imagery lookup for lat %.5f lon %.5f",
                    image_request.latitude,
                    image_request.longitude,
                )
                cancel_event.set()
                task.cancel()
                raise ImageryCancellationError("Client disconnected before imagery was resolved")
    finally:
        if not task.done():
            task.cancel()


def _image_payload(
    resolved: ResolvedImage, image_request: ImageRequest, labels: Dict[str, str]
) -> Dict[str, object]:
    image = resolved.image
    return {
        "dataUrl": resolved.data_url,
        "contentType": image.content_type,
        "width": image.width,
        "height": image.height,
        "source": image.source_name,
        "sourceLabel": labels.get(image.source_name, image.source_name),
        "cached": resolved.cached,
        "placeholder": image.placeholder,
        "reason": image.reason,
        "coordinates": {"lat": image_request.latitude, "lon": image_request.longitude},
    }


def _provider_test_urls(
    providers: Sequence[ProviderDescriptor], lat: float, lon: float
) -> Dict[str, str]:
    urls: Dict[str, str] = {}
    for descriptor in providers:
        projected = project(lat, lon, descriptor)
        url, params = descriptor.build_request(projected, DEFAULT_IMAGE_SIZE, DEFAULT_IMAGE_SIZE)
        urls[descriptor.name] = str(httpx.URL(url, params=params or None))
    return urls


def _diagnostics_disabled() -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={
            "success": False,
            "error": "Satellite diagnostics endpoint is disabled",
            "featureFlag": DIAGNOSTICS_FLAG_ENV,
        },
    )


def _parse_coordinate(name: str, raw: str | None) -> float:
    if raw is None or not raw.strip():
        raise HTTPException(status_code=400, detail=f"Query parameter '{name}' is required")
    try:
        value = float(raw)
    except ValueError:
        raise HTTPException(
            status_code=400, detail=f"Query parameter '{name}' must be a number"
        ) from None
    if not math.isfinite(value):
        raise HTTPException(status_code=400, detail=f"Query parameter '{name}' must be finite")
    return value


def _parse_dimension(name: str, raw: str | None) -> int:
    if raw is None or not raw.strip():
        return DEFAULT_IMAGE_SIZE
    try:
        return int(raw)
    except ValueError:
        raise HTTPException(
            status_code=400, detail=f"Query parameter '{name}' must be an integer"
        ) from None


app = create_app()
