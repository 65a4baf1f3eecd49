# app/domains/notification/schemas.py

"""
'notification' 도메인의 Pydantic 스키마를 정의하는 모듈입니다.
"""

from typing import List, Literal, Optional
from datetime import datetime

from pydantic import BaseModel, Field as PydanticField

from .models import NotificationSubType, NotificationTaskType, NotificationType


class NotificationCreate(BaseModel):
    title: str = PydanticField(max_length=255)
    message: str
    task_type: NotificationTaskType
    type: NotificationType
    sub_type: Optional[NotificationSubType] = None
    sender_id: Optional[int] = None
    receiver_id: int
    labcode: Optional[str] = None
    barcode: Optional[str] = None


class NotificationResponse(NotificationCreate):
    id: int
    is_read: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class NotificationQuery(BaseModel):
    task_type: Optional[NotificationTaskType] = None
    type: Optional[NotificationType] = None
    sub_type: Optional[NotificationSubType] = None
    labcode: Optional[str] = None
    barcode: Optional[str] = None
    is_read: Optional[bool] = None
    sort_order: Literal["ASC", "DESC", "asc", "desc"] = "DESC"
    skip: int = PydanticField(0, ge=0)
    limit: int = PydanticField(50, ge=1, le=200)


class SystemNotificationRequest(BaseModel):
    title: str = PydanticField(min_length=1, max_length=255)
    message: str = PydanticField(min_length=1)
    data: Optional[dict] = None


class BroadcastResult(BaseModel):
    delivered: int


class StreamDebugInfo(BaseModel):
    active_streams: int
    active_user_ids: List[int]


class StreamEntryInfo(BaseModel):
    user_id: int
    is_active: bool
    idle_seconds: float
    connected_seconds: float
    delivered: int
    pending: int
    buffered: int
