"""
Clear the satellite image cache of a running service.

Usage:
    clear-satellite-cache --base-url http://localhost:8000 --api-key <key>
    CACHE_ADMIN_API_KEY=<key> clear-satellite-cache
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, Sequence

import httpx

logger = logging.getLogger("clear_satellite_cache")

DEFAULT_BASE_URL = "http://localhost:8000"
CLEAR_PATH = "/satellite-image/cache/clear"


def clear_satellite_cache(
    base_url: str | None = None,
    api_key: str | None = None,
    *,
    transport: httpx.BaseTransport | None = None,
) -> Dict[str, Any]:
    """Send the administrative DELETE and return the decoded JSON body."""

    resolved_base_url = (
        base_url
        or os.getenv("CACHE_ADMIN_BASE_URL")
        or os.getenv("API_BASE_URL")
        or DEFAULT_BASE_URL
    ).rstrip("/")
    resolved_api_key = (
        api_key
        or os.getenv("CACHE_ADMIN_API_KEY")
        or os.getenv("SATELLITE_CACHE_ADMIN_KEY")
        or os.getenv("API_ACCESS_KEY")
    )
    headers = {"x-api-key": resolved_api_key} if resolved_api_key else {}

    with httpx.Client(timeout=httpx.Timeout(10.0), transport=transport) as client:
        response = client.delete(f"{resolved_base_url}{CLEAR_PATH}", headers=headers)
        response.raise_for_status()
        return response.json()


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Clear the satellite image cache")
    parser.add_argument(
        "-b",
        "--base-url",
        help=f"Service base URL (default: CACHE_ADMIN_BASE_URL or {DEFAULT_BASE_URL})",
    )
    parser.add_argument("-k", "--api-key", help="Administrative API key")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    try:
        result = clear_satellite_cache(args.base_url, args.api_key)
    except httpx.HTTPStatusError as exc:
        logger.error("Failed to clear satellite image cache: %s", exc.response.status_code)
        logger.error("%s", exc.response.text)
        return 1
    except httpx.RequestError as exc:
        logger.error("Failed to clear satellite image cache: %s", exc)
        return 1

    logger.info("Satellite image cache cleared successfully.")
    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
