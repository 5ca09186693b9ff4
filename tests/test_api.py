import base64

import pytest
from fastapi.testclient import TestClient

from conftest import image_response, tile_provider
from solar_imagery.config import Settings
from solar_imagery.main import create_app


def _client(settings=None, providers=None, **kwargs):
    settings = settings or Settings(fetch_attempts=1, retry_backoff=0.0)
    providers = [tile_provider("a"), tile_provider("b")] if providers is None else providers
    return TestClient(create_app(settings, providers=providers), **kwargs)


@pytest.mark.parametrize(
    "query",
    [
        "lon=10.75",
        "lat=59.91&lon=east",
        "lat=91&lon=10.75",
        "lat=59.91&lon=10.75&width=abc",
        "lat=59.91&lon=10.75&height=0",
        "lat=59.91&lon=10.75&format=xml",
    ],
)
def test_invalid_queries_are_rejected(upstream, query):
    response = _client().get(f"/satellite-image?{query}")

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"]
    assert upstream.calls == []


def test_image_is_returned_as_data_url(upstream):
    upstream.respond("a.test", image_response())
    client = _client()

    response = client.get("/satellite-image", params={"lat": "59.9139", "lon": "10.7522", "width": "256"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    data = body["data"]
    assert data["dataUrl"].startswith("data:image/png;base64,")
    assert base64.b64decode(data["dataUrl"].split(",", 1)[1]).startswith(b"\x89PNG")
    assert data["source"] == "a"
    assert data["sourceLabel"] == "a tiles"
    assert data["cached"] is False
    assert data["placeholder"] is False
    assert (data["width"], data["height"]) == (32, 32)
    assert data["coordinates"] == {"lat": 59.9139, "lon": 10.7522}

    repeat = client.get("/satellite-image", params={"lat": "59.9141", "lon": "10.7519", "width": "256"})
    assert repeat.json()["data"]["cached"] is True
    assert repeat.json()["data"]["dataUrl"] == data["dataUrl"]
    assert len(upstream.calls) == 1


def test_upstream_outage_still_returns_an_image(upstream):
    upstream.respond("a.test", image_response(content=b"down", content_type="text/plain", status_code=502))

    response = _client().get("/satellite-image?lat=-33.9&lon=18.4")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["placeholder"] is True
    assert data["source"] == "placeholder"
    assert data["dataUrl"].startswith("data:image/svg+xml;base64,")
    assert (data["width"], data["height"]) == (512, 512)
    assert upstream.hosts_called() == ["a.test", "b.test"]


def test_binary_format_returns_raw_image(upstream):
    payload = image_response().content
    upstream.respond("a.test", image_response(content=payload))

    response = _client().get("/satellite-image?lat=59.9&lon=10.7&format=binary")

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.headers["x-image-source"] == "a"
    assert response.headers["x-image-cached"] == "false"
    assert response.content == payload


def test_cache_clear_requires_a_configured_key(upstream):
    upstream.respond("a.test", image_response())
    client = _client()
    client.get("/satellite-image?lat=59.9&lon=10.7")

    response = client.delete("/satellite-image/cache/clear", headers={"x-api-key": "anything"})

    assert response.status_code == 403
    assert response.json()["success"] is False
    assert len(client.app.state.cache) == 1


def test_cache_clear_rejects_wrong_key(upstream):
    upstream.respond("a.test", image_response())
    client = _client(Settings(fetch_attempts=1, admin_api_key="s3cret"))
    client.get("/satellite-image?lat=59.9&lon=10.7")

    assert client.delete("/satellite-image/cache/clear").status_code == 403
    assert client.delete("/satellite-image/cache/clear", headers={"x-api-key": "wrong"}).status_code == 403
    assert len(client.app.state.cache) == 1


@pytest.mark.parametrize("headers", [{"x-api-key": "s3cret"}, {"Authorization": "Bearer s3cret"}])
def test_cache_clear_with_valid_key(upstream, headers):
    upstream.respond("a.test", image_response())
    client = _client(Settings(fetch_attempts=1, admin_api_key="s3cret"))
    client.get("/satellite-image?lat=59.9&lon=10.7")

    response = client.delete("/satellite-image/cache/clear", headers=headers)

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Image cache cleared"}
    again = client.get("/satellite-image?lat=59.9&lon=10.7")
    assert again.json()["data"]["cached"] is False
    assert len(upstream.calls) == 2


@pytest.mark.parametrize("path", ["/satellite-image/cache/stats", "/satellite-image/debug"])
def test_diagnostics_are_hidden_by_default(upstream, path):
    response = _client().get(path)

    assert response.status_code == 404
    assert response.json() == {
        "success": False,
        "error": "Satellite diagnostics endpoint is disabled",
        "featureFlag": "ENABLE_SATELLITE_DIAGNOSTICS",
    }


def test_cache_stats_when_diagnostics_enabled(upstream):
    upstream.respond("a.test", image_response(content=b"oops", content_type="text/plain", status_code=500))
    upstream.respond("b.test", image_response())
    client = _client(Settings(fetch_attempts=1, diagnostics_enabled=True))
    client.get("/satellite-image?lat=59.9&lon=10.7")
    client.get("/satellite-image?lat=59.9&lon=10.7")

    body = client.get("/satellite-image/cache/stats").json()

    assert body["success"] is True
    stats = body["data"]
    assert (stats["entries"], stats["hits"], stats["misses"]) == (1, 1, 1)
    providers = {entry["provider"]: entry for entry in stats["providers"]}
    assert providers["a"]["failures"] == 1
    assert providers["b"]["successes"] == 1


def test_debug_reports_tile_coordinates_and_provider_urls(upstream):
    client = _client(Settings(diagnostics_enabled=True))

    body = client.get("/satellite-image/debug").json()

    assert body["tileCoords"] == {"zoom": 17, "x": 69450, "y": 38125}
    assert body["testUrls"]["a"] == "https://a.test/17/69450/38125.png"
    assert upstream.calls == []


def test_unexpected_errors_return_a_generic_500(upstream, monkeypatch):
    app = create_app(Settings(), providers=[tile_provider("a")])

    async def explode(*args, **kwargs):
        raise RuntimeError("database on fire")

    monkeypatch.setattr(app.state.resolver, "resolve", explode)
    client = TestClient(app, raise_server_exceptions=False)

    response = client.get("/satellite-image?lat=1&lon=1")

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "Internal server error"}
