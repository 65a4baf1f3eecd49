# app/domains/notification/models.py

"""
'notification' 도메인의 데이터베이스 ORM 모델을 정의하는 모듈입니다.
"""

from enum import Enum
from typing import Optional
from datetime import datetime, UTC

from sqlalchemy import String
from sqlalchemy.sql import func
from sqlalchemy.types import TIMESTAMP

from sqlmodel import Field, SQLModel, Column


class NotificationTaskType(str, Enum):
    SYSTEM = "system"
    LAB_TASK = "lab_task"
    ANALYSIS_TASK = "analysis_task"
    VALIDATION_TASK = "validation_task"


class NotificationType(str, Enum):
    ACTION = "action"
    PROCESS = "process"
    INFO = "info"


class NotificationSubType(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    ASSIGN = "assign"
    RESEND = "resend"
    RETRY = "retry"


# =============================================================================
# notifications 테이블 모델
# =============================================================================
class Notification(SQLModel, table=True):
    __tablename__ = "notifications"

    id: Optional[int] = Field(default=None, primary_key=True)
    title: str = Field(max_length=255)
    message: str = Field(description="알림 본문")
    task_type: NotificationTaskType = Field(sa_column=Column(String(32), nullable=False, index=True))
    type: NotificationType = Field(sa_column=Column(String(16), nullable=False))
    sub_type: Optional[NotificationSubType] = Field(default=None, sa_column=Column(String(16), nullable=True))
    sender_id: Optional[int] = Field(default=None, description="발신 사용자 ID")
    receiver_id: int = Field(index=True, description="수신 사용자 ID")
    labcode: Optional[str] = Field(default=None, max_length=50, index=True)
    barcode: Optional[str] = Field(default=None, max_length=50)
    is_read: bool = Field(default=False)
    created_at: Optional[datetime] = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False),
        description="레코드 생성 일시"
    )
