# backend/consultflow/errors.py
"""
RFC 7807 problem+json responses for every error the API can return.

Domain exceptions go through their own ``to_http_exception()`` mapping, so
routes never build error bodies by hand.
"""

from http import HTTPStatus
import logging
from typing import Any, Dict, Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.exceptions import DomainException, ExternalServiceException

logger = logging.getLogger(__name__)

PROBLEM_MEDIA_TYPE = "application/problem+json"


def problem_response(
    request: Request,
    status_code: int,
    *,
    detail: Optional[str] = None,
    code: Optional[str] = None,
    errors: Any = None,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    try:
        title = HTTPStatus(status_code).phrase
    except ValueError:
        title = "Error"
    body: Dict[str, Any] = {
        "type": "about:blank",
        "title": title,
        "status": status_code,
        "detail": detail or "",
        "instance": request.url.path,
    }
    if code:
        body["code"] = code
    if errors:
        body["errors"] = jsonable_encoder(errors)
    return JSONResponse(body, status_code=status_code, media_type=PROBLEM_MEDIA_TYPE, headers=dict(headers or {}))


def _unpack_detail(detail: Any) -> tuple[Optional[str], Optional[str], Any]:
    """Split an HTTPException detail into (message, code, errors)."""
    if isinstance(detail, dict):
        message = detail.get("message") or detail.get("detail")
        code = detail.get("code")
        return (
            message if isinstance(message, str) else None,
            code if isinstance(code, str) else None,
            detail.get("details") or detail.get("errors"),
        )
    if detail is None:
        return None, None, None
    return str(detail), None, None


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        message, code, errors = _unpack_detail(exc.detail)
        return problem_response(
            request, exc.status_code, detail=message, code=code, errors=errors, headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(DomainException)
    async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
        http_exc = exc.to_http_exception()
        if isinstance(exc, ExternalServiceException):
            logger.warning(f"{exc.service} failure on {request.url.path}: {exc.message}")
        elif http_exc.status_code >= 500:
            logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
        message, code, errors = _unpack_detail(http_exc.detail)
        return problem_response(request, http_exc.status_code, detail=message, code=code, errors=errors)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return problem_response(
            request, 422, detail="Request validation failed", code="validation_error", errors=exc.errors()
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return problem_response(request, 500, detail="Internal Server Error", code="internal_server_error")
