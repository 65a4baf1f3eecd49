# app/domains/notification/services.py

"""
알림 저장과 실시간 전달을 묶는 서비스 모듈입니다.

업무 로직은 notify()를 호출합니다. notify()는 알림을 저장한 뒤 수신자에게
`notification_created` 이벤트를 발행하며, 실패하더라도 예외를 올리지 않고 로그만 남깁니다.
"""

import logging
from typing import Optional

from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.exceptions import NotFoundError

from . import crud as notification_crud
from . import models as notification_models
from . import schemas as notification_schemas
from .hub import (
    EVENT_NOTIFICATION_CREATED,
    EVENT_NOTIFICATION_UPDATED,
    EVENT_SYSTEM_NOTIFICATION,
    NotificationHub,
    notification_hub,
)

logger = logging.getLogger(__name__)


def _payload(notification: notification_models.Notification) -> dict:
    return notification_schemas.NotificationResponse.model_validate(notification).model_dump(mode="json")


async def create_notification(
    db: AsyncSession,
    *,
    obj_in: notification_schemas.NotificationCreate,
    hub: NotificationHub = notification_hub,
) -> notification_models.Notification:
    """알림을 저장하고 수신자에게 발행합니다."""
    db_obj = await notification_crud.notification.create(db, obj_in=obj_in)
    hub.publish(db_obj.receiver_id, EVENT_NOTIFICATION_CREATED, _payload(db_obj))
    return db_obj


async def notify(
    db: AsyncSession,
    *,
    receiver_id: Optional[int],
    title: str,
    message: str,
    task_type: notification_models.NotificationTaskType,
    type: notification_models.NotificationType,
    sub_type: Optional[notification_models.NotificationSubType] = None,
    sender_id: Optional[int] = None,
    labcode: Optional[str] = None,
    barcode: Optional[str] = None,
    hub: NotificationHub = notification_hub,
) -> Optional[notification_models.Notification]:
    """
    업무 이벤트 알림. 수신자가 없으면 건너뛰고, 저장/발행 실패는 로그로만 남깁니다.
    """
    if receiver_id is None:
        return None
    obj_in = notification_schemas.NotificationCreate(
        title=title,
        message=message,
        task_type=task_type,
        type=type,
        sub_type=sub_type,
        sender_id=sender_id,
        receiver_id=receiver_id,
        labcode=labcode,
        barcode=barcode,
    )
    try:
        return await create_notification(db, obj_in=obj_in, hub=hub)
    except Exception:
        logger.exception("Failed to deliver notification '%s' to user %s", title, receiver_id)
        await db.rollback()
        return None


async def mark_as_read(
    db: AsyncSession, *, notification_id: int, receiver_id: int, hub: NotificationHub = notification_hub
) -> notification_models.Notification:
    db_obj = await notification_crud.notification.get(db, id=notification_id)
    if db_obj is None or db_obj.receiver_id != receiver_id:
        raise NotFoundError(f"Notification {notification_id} not found", code="NOTIFICATION_NOT_FOUND")
    if not db_obj.is_read:
        db_obj.is_read = True
        db_obj = await notification_crud.notification.save(db, db_obj)
    hub.publish(db_obj.receiver_id, EVENT_NOTIFICATION_UPDATED, _payload(db_obj))
    return db_obj


def broadcast_system_notification(
    *, title: str, message: str, data: Optional[dict] = None, sender_id: Optional[int] = None,
    hub: NotificationHub = notification_hub,
) -> int:
    """접속 중인 모든 사용자에게 시스템 알림을 보냅니다 (저장/버퍼링하지 않음)."""
    payload = {
        "title": title,
        "message": message,
        "task_type": notification_models.NotificationTaskType.SYSTEM.value,
        "type": notification_models.NotificationType.INFO.value,
        "sender_id": sender_id,
        "data": data or {},
    }
    delivered = hub.broadcast(EVENT_SYSTEM_NOTIFICATION, payload)
    logger.info("System notification '%s' delivered to %d subscribers", title, delivered)
    return delivered
