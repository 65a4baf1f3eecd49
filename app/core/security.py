# app/core/security.py

"""
애플리케이션의 인증/인가 관련 유틸리티와 의존성 주입을 정의하는 모듈입니다.

- 사용자 계정과 토큰 발급은 외부 인증 서비스가 담당합니다.
  이 모듈은 Bearer 토큰을 인증 서비스의 /auth/verify/{token} 엔드포인트로 검증하고,
  결과로 받은 사용자 정보와 역할(role) 목록을 AuthenticatedUser로 변환합니다.
- 역할 코드는 작은 정수이며, 엔드포인트마다 요구 역할 집합과 비교합니다.
"""

import logging
from enum import IntEnum
from typing import List, Optional

import httpx
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field as PydanticField

from app.core.config import settings
from app.core.exceptions import ForbiddenError, UnauthorizedError, UpstreamError

logger = logging.getLogger(__name__)


class UserRole(IntEnum):
    """인증 서비스가 부여하는 역할 코드. 역할 행의 code 값('3' 등)과 비교합니다."""
    STAFF = 1
    LAB_TESTING_TECHNICIAN = 2
    ANALYSIS_TECHNICIAN = 3
    VALIDATION_TECHNICIAN = 4
    DOCTOR = 5


class RoleInfo(BaseModel):
    # 인증 서비스가 code 를 숫자로 내려주는 경우도 문자열로 받습니다.
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: int
    name: Optional[str] = None
    code: Optional[str] = None


class AuthenticatedUser(BaseModel):
    id: int
    email: Optional[str] = None
    name: Optional[str] = None
    roles: List[RoleInfo] = PydanticField(default_factory=list)

    @property
    def role_codes(self) -> set:
        """역할 코드(숫자 문자열)를 정수로 바꾼 집합. 역할 행의 id 가 아니라 code 를 비교하며, 숫자가 아닌 코드는 건너뜁니다."""
        return {int(role.code) for role in self.roles if role.code and role.code.strip().isdigit()}

    def has_any_role(self, *roles: UserRole) -> bool:
        return bool(self.role_codes & {int(role) for role in roles})


class TokenVerification(BaseModel):
    valid: bool
    user: Optional[AuthenticatedUser] = None


# --- 외부 인증 서비스 클라이언트 ---
class IdentityServiceClient:
    """외부 인증 서비스에 토큰 검증을 위임하는 클라이언트."""

    def __init__(self, base_url: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def verify(self, token: str) -> TokenVerification:
        url = f"{self.base_url}/auth/verify/{token}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            logger.error("Identity service unreachable: %s", e)
            raise UpstreamError("Identity service is unavailable", code="AUTH_SERVICE_UNAVAILABLE")

        if response.status_code in (401, 403, 404):
            return TokenVerification(valid=False)
        if response.status_code >= 400:
            logger.error("Identity service returned %d", response.status_code)
            raise UpstreamError("Identity service rejected the verification request", code="AUTH_SERVICE_UNAVAILABLE")
        return TokenVerification.model_validate(response.json())


identity_client = IdentityServiceClient(settings.AUTH_SERVICE_URL, timeout=settings.AUTH_VERIFY_TIMEOUT_SECONDS)

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> AuthenticatedUser:
    """Authorization 헤더의 Bearer 토큰을 검증하고 현재 사용자를 반환합니다."""
    if credentials is None or not credentials.credentials:
        raise UnauthorizedError("Authentication token is required", code="AUTH_REQUIRED")

    verification = await identity_client.verify(credentials.credentials)
    if not verification.valid or verification.user is None:
        raise UnauthorizedError("Invalid or expired token", code="AUTH_INVALID_TOKEN")
    return verification.user


def require_roles(*roles: UserRole):
    """
    요구 역할 중 하나라도 가진 사용자만 통과시키는 의존성을 생성합니다.

    사용 예:
        current_user: AuthenticatedUser = Depends(require_roles(UserRole.ANALYSIS_TECHNICIAN))
    """
    async def _role_checker(current_user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
        if not current_user.has_any_role(*roles):
            raise ForbiddenError(
                "User does not have the required role for this operation",
                code="ROLE_FORBIDDEN",
            )
        return current_user

    return _role_checker
