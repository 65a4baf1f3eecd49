# app/domains/notification/hub.py

"""
프로세스 단위 알림 전달 허브 (SSE 구독자 레지스트리).

- subscribe(user_id): 사용자별 전달 채널(asyncio.Queue)을 만들거나 재활성화합니다.
  채널이 만들어지거나 다시 활성화될 때 버퍼에 쌓인 메시지를 원래 순서대로 채널에 넣고 버퍼를 비웁니다.
- publish(user_id, event, data): 활성 구독자에게는 즉시 전달하고, 아니면 사용자별 링 버퍼
  (기본 10건, 가장 오래된 것부터 제거)에 보관합니다.
- broadcast(event, data): 활성 구독자에게만 전달하며 버퍼링하지 않습니다.
- forwarder: 설정되면(ARQ 워커 프로세스) publish/broadcast 를 로컬에 전달하지 않고 forwarder 로 넘깁니다.
  API 프로세스의 허브가 Redis 로 중계된 메시지를 받아 실제 구독자에게 전달합니다 (relay.py).
- reap_idle(): 마지막 활동 이후 idle_timeout 을 넘긴 구독자를 정리합니다.
  활동 시각은 subscribe 와 publish 전달 때만 갱신되며, 하트비트(ping)는 활동으로 치지 않습니다.

모든 상태 변경 메서드는 await 지점이 없는 동기 메서드이므로 단일 이벤트 루프 안에서
사용자 키 단위로 직렬화됩니다. 테스트는 reset()으로 레지스트리를 초기화합니다.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Deque, Dict, List, Optional

from app.core.config import settings
from app.utils.dates import utcnow

logger = logging.getLogger(__name__)

EVENT_NOTIFICATION_CREATED = "notification_created"
EVENT_NOTIFICATION_UPDATED = "notification_updated"
EVENT_SYSTEM_NOTIFICATION = "system_notification"
EVENT_PING = "ping"

# 채널 종료 신호
_CLOSE = object()


def build_message(event: str, data: Any) -> Dict[str, Any]:
    return {"event": event, "data": data, "timestamp": utcnow().isoformat()}


@dataclass
class Subscriber:
    user_id: int
    channel: asyncio.Queue
    last_activity: float
    connected_at: float
    is_active: bool = True
    closed: bool = False
    delivered: int = 0


@dataclass
class NotificationHub:
    buffer_size: int = 10
    idle_timeout: float = 60.0
    reap_interval: float = 30.0
    heartbeat_interval: float = 25.0
    clock: Callable[[], float] = time.monotonic
    forwarder: Optional[Callable[[Optional[int], str, Any], None]] = None
    _subscribers: Dict[int, Subscriber] = field(default_factory=dict)
    _buffers: Dict[int, Deque[Dict[str, Any]]] = field(default_factory=dict)
    _reaper_task: Optional[asyncio.Task] = None

    # --- 구독 ---
    def subscribe(self, user_id: int) -> Subscriber:
        """구독 채널을 반환합니다. 같은 사용자의 반복 호출은 하나의 항목을 공유합니다."""
        now = self.clock()
        subscriber = self._subscribers.get(user_id)
        if subscriber is None or subscriber.closed:
            subscriber = Subscriber(user_id=user_id, channel=asyncio.Queue(), last_activity=now, connected_at=now)
            self._subscribers[user_id] = subscriber
            logger.info("Notification subscriber created for user %d", user_id)
        else:
            subscriber.last_activity = now
            subscriber.is_active = True

        self._flush_buffer(subscriber)
        return subscriber

    def disconnect(self, user_id: int, subscriber: Optional[Subscriber] = None) -> None:
        """
        전송 계층이 끊겼을 때 호출합니다. 항목은 비활성으로 남아 이후 메시지를 버퍼에 모으고,
        같은 ID 로 다시 구독하면 그대로 재활성화됩니다. 정리는 reap_idle()이 담당합니다.
        """
        current = self._subscribers.get(user_id)
        if current is None or (subscriber is not None and current is not subscriber):
            return
        current.is_active = False

    def _flush_buffer(self, subscriber: Subscriber) -> None:
        buffered = self._buffers.pop(subscriber.user_id, None)
        if not buffered:
            return
        for message in buffered:
            subscriber.channel.put_nowait(message)
        logger.info("Flushed %d buffered notifications to user %d", len(buffered), subscriber.user_id)

    # --- 발행 ---
    def publish(self, user_id: int, event: str, data: Any) -> bool:
        """활성 구독자에게 전달하면 True, 버퍼에 보관하거나 다른 프로세스로 중계하면 False 를 반환합니다."""
        if self.forwarder is not None:
            self.forwarder(user_id, event, data)
            return False

        message = build_message(event, data)
        subscriber = self._subscribers.get(user_id)
        if subscriber is not None and subscriber.is_active and not subscriber.closed:
            try:
                subscriber.channel.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("Channel for user %d is full, buffering %s", user_id, event)
            else:
                subscriber.last_activity = self.clock()
                subscriber.delivered += 1
                return True

        self._buffer(user_id, message)
        return False

    def _buffer(self, user_id: int, message: Dict[str, Any]) -> None:
        buffer = self._buffers.get(user_id)
        if buffer is None:
            buffer = deque(maxlen=self.buffer_size)
            self._buffers[user_id] = buffer
        if len(buffer) == buffer.maxlen:
            logger.info("Notification buffer for user %d is full, dropping the oldest message", user_id)
        buffer.append(message)

    def broadcast(self, event: str, data: Any) -> int:
        """활성 구독자 모두에게 전달하고 전달 건수를 반환합니다. 중계 중이면 0 입니다."""
        if self.forwarder is not None:
            self.forwarder(None, event, data)
            return 0

        delivered = 0
        for subscriber in list(self._subscribers.values()):
            if not subscriber.is_active or subscriber.closed:
                continue
            try:
                subscriber.channel.put_nowait(build_message(event, data))
            except asyncio.QueueFull:
                logger.warning("Dropping broadcast %s for user %d: channel full", event, subscriber.user_id)
                continue
            subscriber.last_activity = self.clock()
            subscriber.delivered += 1
            delivered += 1
        return delivered

    # --- 유휴 정리 ---
    def reap_idle(self, now: Optional[float] = None) -> List[int]:
        """idle_timeout 을 넘긴 구독자의 채널을 닫고 항목을 제거합니다."""
        now = self.clock() if now is None else now
        reaped = []
        for user_id, subscriber in list(self._subscribers.items()):
            if now - subscriber.last_activity > self.idle_timeout:
                self._close(subscriber)
                del self._subscribers[user_id]
                reaped.append(user_id)
        if reaped:
            logger.info("Reaped %d idle notification subscribers: %s", len(reaped), reaped)
        return reaped

    def _close(self, subscriber: Subscriber) -> None:
        subscriber.closed = True
        subscriber.is_active = False
        subscriber.channel.put_nowait(_CLOSE)

    async def _reap_forever(self) -> None:
        while True:
            await asyncio.sleep(self.reap_interval)
            try:
                self.reap_idle()
            except Exception:
                logger.exception("Notification reaper iteration failed")

    def start_reaper(self) -> None:
        if self._reaper_task is None or self._reaper_task.done():
            self._reaper_task = asyncio.create_task(self._reap_forever(), name="notification-reaper")

    async def stop_reaper(self) -> None:
        if self._reaper_task is not None:
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
            self._reaper_task = None

    # --- 스트림 ---
    async def stream(self, subscriber: Subscriber) -> AsyncIterator[Dict[str, Any]]:
        """
        구독자 채널의 메시지를 내보내고, 채널이 닫히면(유휴 정리) 종료합니다.

        ping 은 고정 주기로 나가지 않습니다. 채널이 heartbeat_interval 동안 조용할 때만 끼워 넣는
        keepalive 이므로, 메시지가 계속 오는 동안에는 ping 이 없습니다.
        """
        while True:
            try:
                message = await asyncio.wait_for(subscriber.channel.get(), timeout=self.heartbeat_interval)
            except asyncio.TimeoutError:
                if subscriber.closed:
                    return
                yield build_message(EVENT_PING, {"t": utcnow().isoformat()})
                continue
            if message is _CLOSE:
                return
            yield message

    # --- 진단 ---
    def active_user_ids(self) -> List[int]:
        return sorted(uid for uid, s in self._subscribers.items() if s.is_active and not s.closed)

    def active_count(self) -> int:
        return len(self.active_user_ids())

    def buffered_messages(self, user_id: int) -> List[Dict[str, Any]]:
        return list(self._buffers.get(user_id, ()))

    def stream_info(self, user_id: int) -> Optional[Dict[str, Any]]:
        subscriber = self._subscribers.get(user_id)
        if subscriber is None:
            return None
        now = self.clock()
        return {
            "user_id": user_id,
            "is_active": subscriber.is_active,
            "idle_seconds": round(now - subscriber.last_activity, 3),
            "connected_seconds": round(now - subscriber.connected_at, 3),
            "delivered": subscriber.delivered,
            "pending": subscriber.channel.qsize(),
            "buffered": len(self._buffers.get(user_id, ())),
        }

    def mark_active(self, user_id: int) -> bool:
        subscriber = self._subscribers.get(user_id)
        if subscriber is None or subscriber.closed:
            return False
        subscriber.is_active = True
        subscriber.last_activity = self.clock()
        self._flush_buffer(subscriber)
        return True

    def reset(self) -> None:
        """모든 채널을 닫고 레지스트리와 버퍼를 비웁니다."""
        for subscriber in self._subscribers.values():
            if not subscriber.closed:
                self._close(subscriber)
        self._subscribers.clear()
        self._buffers.clear()
        self.forwarder = None


notification_hub = NotificationHub(
    buffer_size=settings.NOTIFICATION_BUFFER_SIZE,
    idle_timeout=settings.NOTIFICATION_IDLE_TIMEOUT_SECONDS,
    reap_interval=settings.NOTIFICATION_REAP_INTERVAL_SECONDS,
    heartbeat_interval=settings.NOTIFICATION_HEARTBEAT_SECONDS,
)
