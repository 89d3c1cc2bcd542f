from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.errors import EngineError


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None
    retryable: bool = False


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    retryable: bool = False,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
        retryable=retryable,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def failure_response(request: Request, exc: Exception, *, fallback_code: str) -> JSONResponse:
    """Render an engine error or an HTTPException raised by a route guard."""
    if isinstance(exc, EngineError):
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.to_details(),
            retryable=exc.retryable,
        )
    if isinstance(exc, HTTPException):
        return error_response(
            request,
            status_code=exc.status_code,
            code=fallback_code,
            message=str(exc.detail),
            details=exc.detail,
        )
    raise exc
