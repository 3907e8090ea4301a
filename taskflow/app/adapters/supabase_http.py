"""Helpers shared by the Supabase REST adapters (auth, PostgREST, storage)."""

from __future__ import annotations

from typing import Any, Optional

import httpx


def api_headers(api_key: str, access_token: Optional[str] = None) -> dict[str, str]:
    return {
        "apikey": api_key,
        "Authorization": f"Bearer {access_token or api_key}",
    }


def error_message(response: httpx.Response) -> str:
    """Pick the human readable message out of a GoTrue/PostgREST/Storage error."""
    try:
        data: Any = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        for key in ("msg", "error_description", "message", "error"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
    text = (response.text or "").strip()
    return text or f"HTTP {response.status_code}"


def error_status(response: httpx.Response) -> int:
    """HTTP status, or the ``statusCode`` Storage puts in the body (400 + "409" for duplicates)."""
    try:
        data: Any = response.json()
    except ValueError:
        return response.status_code
    status = data.get("statusCode") if isinstance(data, dict) else None
    if isinstance(status, (int, str)) and str(status).isdigit():
        return int(status)
    return response.status_code
