"""
Common — エラーとレスポンスエンベロープ

全サービスが失敗を同じエンベロープで返す:

    {"error": {"code": "SCREAMING_SNAKE", "message": "...",
               "traceId": "...", "details": {...}}}

ハンドラは ServiceError のサブクラスを raise し、
install_error_handlers() が登録した例外ハンドラがそれを描画する。
成功レスポンスは with_trace() を通して同じ traceId を載せる。
"""

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .context import current_trace_id

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details


class ValidationFailed(ServiceError):
    status_code = 400
    code = "VALIDATION_FAILED"


class NotFound(ServiceError):
    status_code = 404
    code = "NOT_FOUND"


class Conflict(ServiceError):
    status_code = 409
    code = "CONFLICT"


class UpstreamUnavailable(ServiceError):
    status_code = 503
    code = "SERVICE_UNAVAILABLE"


def error_body(code: str, message: str, details: dict | list | None = None) -> dict:
    error = {"code": code, "message": message, "traceId": current_trace_id()}
    if details is not None:
        error["details"] = details
    return {"error": error}


def with_trace(payload: dict) -> dict:
    return {**payload, "traceId": current_trace_id()}


async def _service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s -> %s %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(error_body(exc.code, exc.message, exc.details)),
    )


async def _request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content=error_body(
            "INVALID_REQUEST",
            "Request body failed validation",
            {"errors": jsonable_encoder(exc.errors())},
        ),
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, _service_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
