from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger


@dataclass
class APIError(Exception):
    status_code: int
    code: str
    message: str
    details: dict[str, Any] | None = None

    @classmethod
    def not_found(cls, what: str) -> APIError:
        return cls(status_code=404, code="not_found", message=f"{what} not found.")

    @classmethod
    def not_configured(cls, exc: Exception) -> APIError:
        return cls(status_code=503, code="not_configured", message=str(exc), details={"type": type(exc).__name__})


def error_response(*, status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> JSONResponse:
    body: dict[str, Any] = {"code": code, "message": message}
    if details:
        body["details"] = details
    return JSONResponse(status_code=int(status_code), content={"error": body})


async def api_error_handler(_req: Request, exc: APIError) -> JSONResponse:
    return error_response(status_code=exc.status_code, code=exc.code, message=exc.message, details=exc.details)


async def validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        status_code=400,
        code="invalid_argument",
        message="Request validation failed.",
        details={"errors": exc.errors()},
    )


async def unhandled_error_handler(req: Request, exc: Exception) -> JSONResponse:
    logger.opt(exception=exc).error("Unhandled error on {} {}", req.method, req.url.path)
    return error_response(
        status_code=500,
        code="internal",
        message="Internal server error.",
        details={"type": type(exc).__name__},
    )
