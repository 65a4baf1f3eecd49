# app/core/exceptions.py

"""
애플리케이션 공통 예외와 예외 핸들러를 정의하는 모듈입니다.

모든 예외는 FastAPI의 HTTPException을 상속하며, 클라이언트가 분기할 수 있도록
안정적인 오류 코드(code)를 함께 가집니다. 응답 본문은 다음 형식입니다.

    {"code": "ETL_RESULT_NOT_FOUND", "message": "...", "status": 404}
"""

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppException(HTTPException):
    """안정적인 오류 코드를 가지는 기본 애플리케이션 예외."""

    default_code = "APP_ERROR"
    default_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        self.code = code or self.default_code
        self.message = message
        super().__init__(status_code=status_code or self.default_status, detail=message)


class NotFoundError(AppException):
    default_code = "NOT_FOUND"
    default_status = status.HTTP_404_NOT_FOUND


class BadRequestError(AppException):
    default_code = "VALIDATION_ERROR"
    default_status = status.HTTP_400_BAD_REQUEST


class UnauthorizedError(AppException):
    default_code = "AUTH_REQUIRED"
    default_status = status.HTTP_401_UNAUTHORIZED


class ForbiddenError(AppException):
    default_code = "FORBIDDEN"
    default_status = status.HTTP_403_FORBIDDEN


class ConflictError(AppException):
    default_code = "CONFLICT"
    default_status = status.HTTP_409_CONFLICT


class UpstreamError(AppException):
    """인증 서비스, 객체 스토리지, 외부 ETL 서비스 호출 실패."""
    default_code = "UPSTREAM_ERROR"
    default_status = status.HTTP_502_BAD_GATEWAY


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s -> %s %s", request.method, request.url.path, exc.code, exc.message)
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.code, "message": exc.message, "status": exc.status_code},
        headers=headers,
    )


def install_exception_handlers(app: FastAPI) -> None:
    """FastAPI 애플리케이션에 예외 핸들러를 등록합니다."""
    app.add_exception_handler(AppException, app_exception_handler)
