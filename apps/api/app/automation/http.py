from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import httpx

from app.context import get_correlation_id
from app.core.config import get_settings
from app.core.errors import UnavailableError


logger = logging.getLogger("app.automation.http")

HttpSender = Callable[..., tuple[int, Any]]


def send_request(
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    body: Any = None,
) -> tuple[int, Any]:
    """Call a remote endpoint with the configured timeout and return (status, parsed body)."""
    settings = get_settings()
    request_headers = dict(headers or {})
    correlation_id = get_correlation_id()
    if correlation_id:
        request_headers.setdefault("x-correlation-id", correlation_id)

    try:
        resp = httpx.request(
            method,
            url,
            headers=request_headers,
            json=body if body is not None and method != "GET" else None,
            timeout=settings.external_call_timeout_seconds,
        )
    except httpx.TimeoutException as exc:
        logger.warning("automation.http_timeout", extra={"path": url, "error": str(exc)})
        raise UnavailableError(f"{method} {url} timed out", details={"url": url}) from exc
    except httpx.TransportError as exc:
        logger.warning("automation.http_unreachable", extra={"path": url, "error": str(exc)})
        raise UnavailableError(f"{method} {url} is unreachable", details={"url": url}) from exc

    try:
        payload = resp.json()
    except ValueError:
        payload = {"text": resp.text}
    return resp.status_code, payload
