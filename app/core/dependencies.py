# app/core/dependencies.py

"""
FastAPI 애플리케이션의 의존성 주입(Dependency Injection)을 정의하는 모듈입니다.

- 데이터베이스 세션 관리 (get_db_session).
- 현재 인증된 사용자 정보 획득 (get_current_user) 과 역할 기반 권한 부여 의존성.
- 객체 스토리지, 파이프라인 실행기, 알림 허브 같은 프로세스 공용 컴포넌트.
- ETL 큐 접수 엔드포인트의 공유 토큰 확인.

테스트는 main_app.dependency_overrides 로 이 함수들을 교체합니다.
"""

import secrets
from typing import AsyncGenerator, Optional

from fastapi import Header
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.config import settings
from app.core.database import get_session as get_main_app_session
from app.core.exceptions import UnauthorizedError
from app.core.storage import S3BlobStore, get_blob_store as _get_blob_store
# flake8: noqa
from app.core.security import (
    AuthenticatedUser,
    UserRole,
    get_current_user,  # Bearer 토큰 -> 외부 인증 서비스 검증
    require_roles,
)
from app.domains.analysis.pipeline import EtlPipelineRunner, get_pipeline_runner as _get_pipeline_runner
from app.domains.notification.hub import NotificationHub, notification_hub


# --- 데이터베이스 세션 의존성 주입 ---
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI 의존성 주입을 위한 비동기 데이터베이스 세션 제너레이터입니다.
    app.core.database.get_session을 래핑하여 사용합니다.
    """
    async for session in get_main_app_session():
        yield session


# --- 역할 기반 권한 의존성 ---
require_staff = require_roles(UserRole.STAFF)
require_lab_testing_technician = require_roles(UserRole.LAB_TESTING_TECHNICIAN)
require_analysis_technician = require_roles(UserRole.ANALYSIS_TECHNICIAN)
require_validation_technician = require_roles(UserRole.VALIDATION_TECHNICIAN)


# --- 프로세스 공용 컴포넌트 ---
def get_blob_store() -> S3BlobStore:
    return _get_blob_store()


def get_pipeline_runner() -> EtlPipelineRunner:
    return _get_pipeline_runner()


def get_notification_hub() -> NotificationHub:
    return notification_hub


# --- ETL 큐 접수 토큰 ---
async def verify_queue_token(x_queue_token: Optional[str] = Header(None)) -> None:
    """ETL_QUEUE_TOKEN 이 설정된 경우에만 X-Queue-Token 헤더를 요구합니다."""
    expected = settings.ETL_QUEUE_TOKEN
    if expected is None:
        return
    if not x_queue_token or not secrets.compare_digest(x_queue_token, expected.get_secret_value()):
        raise UnauthorizedError("Invalid queue token", code="QUEUE_TOKEN_INVALID")
