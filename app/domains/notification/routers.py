# app/domains/notification/routers.py

"""
'notification' 도메인과 관련된 API 엔드포인트를 정의하는 모듈입니다.

- 알림 목록 조회 / 읽음 처리 / 시스템 알림 브로드캐스트
- SSE(Server-Sent Events) 알림 스트림과 진단용 엔드포인트
"""

import json
from typing import AsyncIterator, List, Literal, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core import dependencies as deps
from app.core.exceptions import NotFoundError
from app.core.security import AuthenticatedUser

from . import crud as notification_crud
from . import schemas as notification_schemas
from . import services as notification_services
from .hub import NotificationHub, Subscriber
from .models import NotificationSubType, NotificationTaskType, NotificationType


router = APIRouter(
    tags=["Notification (알림)"],
    responses={404: {"description": "Not found"}},
)


# =============================================================================
# 1. 실시간 스트림 (SSE)
# =============================================================================
def render_sse(message: dict) -> str:
    return f"event: {message['event']}\ndata: {json.dumps(message, default=str)}\n\n"


async def _event_iterator(request: Request, hub: NotificationHub, subscriber: Subscriber) -> AsyncIterator[str]:
    try:
        async for message in hub.stream(subscriber):
            if await request.is_disconnected():
                break
            yield render_sse(message)
    finally:
        hub.disconnect(subscriber.user_id, subscriber)


@router.get("/stream", summary="알림 SSE 스트림")
async def stream_notifications(
    request: Request,
    user_id: int = Query(..., ge=1, description="구독할 사용자 ID"),
    hub: NotificationHub = Depends(deps.get_notification_hub),
):
    """
    사용자별 알림 스트림. 연결 시 버퍼에 쌓인 알림부터 전달하며,
    메시지가 없는 동안에는 주기적으로 ping 이벤트를 보냅니다.
    """
    subscriber = hub.subscribe(user_id)
    headers = {
        "Cache-Control": "no-cache",
        "X-Accel-Buffering": "no",
        "Connection": "keep-alive",
    }
    return StreamingResponse(_event_iterator(request, hub, subscriber), media_type="text/event-stream", headers=headers)


@router.get("/sse-debug", response_model=notification_schemas.StreamDebugInfo, summary="활성 스트림 현황")
async def read_stream_debug(hub: NotificationHub = Depends(deps.get_notification_hub)):
    return notification_schemas.StreamDebugInfo(active_streams=hub.active_count(), active_user_ids=hub.active_user_ids())


@router.get("/sse-debug/{user_id}", response_model=notification_schemas.StreamEntryInfo, summary="사용자 스트림 상태")
async def read_stream_entry(user_id: int, hub: NotificationHub = Depends(deps.get_notification_hub)):
    info = hub.stream_info(user_id)
    if info is None:
        raise NotFoundError(f"No notification stream for user {user_id}", code="NOTIFICATION_STREAM_NOT_FOUND")
    return info


@router.get("/sse-activate/{user_id}", response_model=notification_schemas.StreamEntryInfo, summary="사용자 스트림 재활성화")
async def activate_stream(user_id: int, hub: NotificationHub = Depends(deps.get_notification_hub)):
    if not hub.mark_active(user_id):
        raise NotFoundError(f"No notification stream for user {user_id}", code="NOTIFICATION_STREAM_NOT_FOUND")
    return hub.stream_info(user_id)


# =============================================================================
# 2. 알림 조회 / 읽음 처리
# =============================================================================
@router.get("", response_model=List[notification_schemas.NotificationResponse], summary="내 알림 목록 조회")
async def read_notifications(
    task_type: Optional[NotificationTaskType] = Query(None),
    type: Optional[NotificationType] = Query(None),
    sub_type: Optional[NotificationSubType] = Query(None),
    labcode: Optional[str] = Query(None),
    barcode: Optional[str] = Query(None),
    is_read: Optional[bool] = Query(None),
    sort_order: Literal["ASC", "DESC", "asc", "desc"] = Query("DESC"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(deps.get_db_session),
    current_user: AuthenticatedUser = Depends(deps.get_current_user),
):
    query = notification_schemas.NotificationQuery(
        task_type=task_type, type=type, sub_type=sub_type, labcode=labcode, barcode=barcode,
        is_read=is_read, sort_order=sort_order, skip=skip, limit=limit,
    )
    return await notification_crud.notification.get_for_receiver(db, receiver_id=current_user.id, query=query)


@router.put("/{notification_id}", response_model=notification_schemas.NotificationResponse, summary="알림 읽음 처리")
async def mark_notification_read(
    notification_id: int,
    db: AsyncSession = Depends(deps.get_db_session),
    hub: NotificationHub = Depends(deps.get_notification_hub),
    current_user: AuthenticatedUser = Depends(deps.get_current_user),
):
    return await notification_services.mark_as_read(
        db, notification_id=notification_id, receiver_id=current_user.id, hub=hub
    )


@router.post("/system", response_model=notification_schemas.BroadcastResult, summary="시스템 알림 브로드캐스트")
async def broadcast_system_notification(
    request: notification_schemas.SystemNotificationRequest,
    hub: NotificationHub = Depends(deps.get_notification_hub),
    current_user: AuthenticatedUser = Depends(deps.require_staff),
):
    """접속 중인 모든 사용자에게 전달합니다. 저장하거나 오프라인 사용자를 위해 버퍼링하지 않습니다."""
    delivered = notification_services.broadcast_system_notification(
        title=request.title, message=request.message, data=request.data,
        sender_id=current_user.id, hub=hub,
    )
    return notification_schemas.BroadcastResult(delivered=delivered)
