# app/domains/notification/crud.py

"""
'notification' 도메인의 CRUD 로직을 담당하는 모듈입니다.
"""

from typing import List

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.crud_base import CRUDBase

from . import models as notification_models
from . import schemas as notification_schemas


class CRUDNotification(CRUDBase[notification_models.Notification, notification_schemas.NotificationCreate, notification_schemas.NotificationCreate]):
    def __init__(self):
        super().__init__(model=notification_models.Notification)

    async def get_for_receiver(
        self, db: AsyncSession, *, receiver_id: int, query: notification_schemas.NotificationQuery
    ) -> List[notification_models.Notification]:
        """수신자 기준으로 필터링한 알림 목록을 생성일 순으로 반환합니다."""
        statement = select(self.model).where(self.model.receiver_id == receiver_id)
        for attribute in ("task_type", "type", "sub_type", "labcode", "barcode", "is_read"):
            value = getattr(query, attribute)
            if value is not None:
                statement = statement.where(getattr(self.model, attribute) == getattr(value, "value", value))

        if query.sort_order.upper() == "ASC":
            statement = statement.order_by(self.model.created_at, self.model.id)
        else:
            statement = statement.order_by(self.model.created_at.desc(), self.model.id.desc())

        statement = statement.offset(query.skip).limit(query.limit)
        result = await db.execute(statement)
        return list(result.scalars().all())


notification = CRUDNotification()
