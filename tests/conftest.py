import asyncio
import io
import os
from typing import Callable, Dict, List, Union

import httpx
import pytest
from PIL import Image

from solar_imagery.config import Settings
from solar_imagery.services.projection import ProjectionKind
from solar_imagery.services.providers import (
    ProviderDescriptor,
    tile_params,
    wms_getmap_params,
)

Responder = Union[httpx.Response, Exception, Callable[[str, dict], Union[httpx.Response, Exception]]]


def png_bytes(size: int = 32) -> bytes:
    # Random pixels keep the PNG well above the minimum payload size.
    image = Image.frombytes("RGB", (size, size), os.urandom(size * size * 3))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def image_response(url: str = "https://upstream.test/", *, content: bytes | None = None,
                   content_type: str = "image/png", status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code,
        headers={"Content-Type": content_type},
        content=png_bytes() if content is None else content,
        request=httpx.Request("GET", url),
    )


def tile_provider(name: str, host: str | None = None) -> ProviderDescriptor:
    host = host or f"{name}.test"
    return ProviderDescriptor(
        name=name,
        label=f"{name} tiles",
        base_url=f"https://{host}/{{zoom}}/{{column}}/{{row}}.png",
        projection_kind=ProjectionKind.PROJECTED_TILE,
        build_request_params=tile_params,
        response_format="image/png",
    )


def wms_provider(name: str, version: str = "1.3.0", host: str | None = None) -> ProviderDescriptor:
    host = host or f"{name}.test"
    return ProviderDescriptor(
        name=name,
        label=f"{name} WMS",
        base_url=f"https://{host}/wms",
        projection_kind=ProjectionKind.GEOGRAPHIC,
        build_request_params=wms_getmap_params,
        response_format="image/jpeg",
        half_width_degrees=0.002,
        wms_version=version,
        layer="ortofoto",
    )


class Upstream:
    """Scripted upstream map services keyed by host name."""

    def __init__(self) -> None:
        self.responders: Dict[str, Responder] = {}
        self.calls: List[dict] = []

    def respond(self, host: str, responder: Responder) -> None:
        self.responders[host] = responder

    def hosts_called(self) -> List[str]:
        return [call["host"] for call in self.calls]

    def handle(self, url: str, params: dict | None) -> httpx.Response:
        host = httpx.URL(url).host
        self.calls.append({"host": host, "url": url, "params": params or {}})
        responder = self.responders.get(host)
        if responder is None:
            raise httpx.ConnectError(f"no route to {host}", request=httpx.Request("GET", url))
        if callable(responder) and not isinstance(responder, httpx.Response):
            responder = responder(url, params or {})
        if isinstance(responder, Exception):
            raise responder
        return responder


@pytest.fixture
def upstream(monkeypatch) -> Upstream:
    recorder = Upstream()

    class MockAsyncClient:
        def __init__(self, *args, **kwargs):
            self.kwargs = kwargs

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return None

        async def get(self, url: str, params=None, headers=None, **kwargs):
            # Yield to the loop like a real request would.
            await asyncio.sleep(0)
            return recorder.handle(url, params)

    monkeypatch.setattr(httpx, "AsyncClient", MockAsyncClient)
    return recorder


@pytest.fixture
def settings() -> Settings:
    return Settings(fetch_attempts=1, retry_backoff=0.0)
