"""
Common — エラー分類とハンドラ

エラーは種類(ErrorKind)ごとに HTTP ステータスが決まる。
協調サービスから返ってきたステータスをそのまま伝播したい場合は
status_code で上書きする。
"""

import logging
from enum import Enum

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .responses import api_response

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    UNAVAILABLE = "UNAVAILABLE"
    REJECTED = "REJECTED"
    INVALID_STATE = "INVALID_STATE"
    CONFLICT = "CONFLICT"
    INTERNAL = "INTERNAL"


DEFAULT_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNAVAILABLE: 503,
    ErrorKind.REJECTED: 400,
    ErrorKind.INVALID_STATE: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INTERNAL: 500,
}


class ServiceError(Exception):
    """
    サービス境界で扱うエラー。

    message: 人が読むメッセージ (レスポンスの message)
    error:   詳細 (レスポンスの error)。省略時は付けない
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.INTERNAL,
        status_code: int | None = None,
        error: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code or DEFAULT_STATUS[kind]
        self.error = error

    def to_response(self) -> dict:
        return api_response(False, message=self.message, error=self.error)


def install_error_handlers(app: FastAPI) -> None:
    """ServiceError とリクエスト検証エラーをエンベロープ形式に変換する。"""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        if exc.kind is ErrorKind.INTERNAL:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        details = ", ".join(
            f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}"
            for err in exc.errors()
        )
        return JSONResponse(
            status_code=400,
            content=api_response(False, message="Validation failed", error=details),
        )
