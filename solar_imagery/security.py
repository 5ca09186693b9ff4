from __future__ import annotations

import hmac

from fastapi import Request

API_KEY_HEADER = "x-api-key"


def extract_api_key(request: Request) -> str | None:
    """Return the credential sent via ``x-api-key`` or the ``Authorization`` header."""

    api_key = request.headers.get(API_KEY_HEADER, "").strip()
    if api_key:
        return api_key

    authorization = request.headers.get("authorization", "").strip()
    if not authorization:
        return None
    if authorization.lower().startswith("bearer "):
        authorization = authorization[7:].strip()
    return authorization or None


def is_authorized(provided: str | None, configured: str | None) -> bool:
    # Administrative operations stay locked until a key has been configured.
    if not configured or not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), configured.encode("utf-8"))
