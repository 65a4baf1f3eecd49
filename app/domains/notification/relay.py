# app/domains/notification/relay.py

"""
프로세스 간 알림 중계 (Redis pub/sub).

ETL 스윕은 ARQ 워커 프로세스에서 실행되지만 SSE 구독자는 API 프로세스의 허브에 붙어 있습니다.
워커 쪽 허브에 forward()를 연결하면 publish/broadcast 가 로컬 버퍼 대신 Redis 채널로 나가고,
API 프로세스의 listen()이 채널의 메시지를 자기 허브에 그대로 publish/broadcast 합니다.

메시지 형식: {"user_id": int | null, "event": str, "data": ...}. user_id 가 null 이면 broadcast 입니다.
"""

import asyncio
import json
import logging
from contextlib import suppress
from typing import Any, Dict, Optional

import redis.asyncio as redis

from app.core.config import settings

from .hub import NotificationHub

logger = logging.getLogger(__name__)


def encode_relay_message(user_id: Optional[int], event: str, data: Any) -> str:
    return json.dumps({"user_id": user_id, "event": event, "data": data}, default=str)


def decode_relay_message(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    message = json.loads(raw)
    if not isinstance(message, dict) or not message.get("event"):
        raise ValueError(f"Malformed notification relay message: {raw!r}")
    return message


class RedisNotificationRelay:
    """하나의 Redis 채널로 허브 메시지를 내보내거나(워커) 받아서 적용합니다(API)."""

    def __init__(
        self,
        client: "redis.Redis",
        *,
        channel: str = settings.NOTIFICATION_RELAY_CHANNEL,
        retry_seconds: float = settings.NOTIFICATION_RELAY_RETRY_SECONDS,
    ):
        self.client = client
        self.channel = channel
        self.retry_seconds = retry_seconds
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._sender_task: Optional[asyncio.Task] = None
        self._listener_task: Optional[asyncio.Task] = None

    # --- 워커 쪽: 발행 ---
    def forward(self, user_id: Optional[int], event: str, data: Any) -> None:
        """허브의 forwarder 로 쓰입니다. 동기 호출이므로 전송은 백그라운드 송신 태스크가 맡습니다."""
        self._outbox.put_nowait(encode_relay_message(user_id, event, data))

    async def _send_forever(self) -> None:
        while True:
            raw = await self._outbox.get()
            try:
                await self.client.publish(self.channel, raw)
            except redis.RedisError:
                logger.exception("Failed to relay notification over Redis channel %s", self.channel)
            finally:
                self._outbox.task_done()

    def attach(self, hub: NotificationHub) -> None:
        hub.forwarder = self.forward
        if self._sender_task is None or self._sender_task.done():
            self._sender_task = asyncio.create_task(self._send_forever(), name="notification-relay-sender")
        logger.info("Notification hub relaying to Redis channel %s", self.channel)

    async def detach(self, hub: NotificationHub, timeout: float = 5.0) -> None:
        """forwarder 를 떼고, 남은 메시지를 timeout 안에서 내보낸 뒤 송신 태스크를 멈춥니다."""
        if hub.forwarder == self.forward:
            hub.forwarder = None
        if self._sender_task is None:
            return
        try:
            await asyncio.wait_for(self._outbox.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Dropping %d unsent relayed notifications", self._outbox.qsize())
        self._sender_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._sender_task
        self._sender_task = None

    # --- API 쪽: 수신 ---
    def apply(self, hub: NotificationHub, raw: Any) -> bool:
        """채널 메시지 하나를 허브에 적용합니다. 형식이 잘못된 메시지는 기록만 하고 버립니다."""
        try:
            message = decode_relay_message(raw)
        except ValueError:
            logger.warning("Ignoring malformed relayed notification: %r", raw)
            return False

        user_id = message.get("user_id")
        if user_id is None:
            hub.broadcast(message["event"], message.get("data"))
        else:
            hub.publish(int(user_id), message["event"], message.get("data"))
        return True

    async def listen(self, hub: NotificationHub) -> None:
        pubsub = self.client.pubsub()
        await pubsub.subscribe(self.channel)
        logger.info("Listening for relayed notifications on Redis channel %s", self.channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                self.apply(hub, message.get("data"))
        finally:
            with suppress(redis.RedisError):
                await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()

    async def _listen_forever(self, hub: NotificationHub) -> None:
        while True:
            try:
                await self.listen(hub)
            except (redis.RedisError, OSError):
                logger.exception("Notification relay listener lost Redis, retrying in %.0fs", self.retry_seconds)
            await asyncio.sleep(self.retry_seconds)

    def start_listener(self, hub: NotificationHub) -> None:
        if self._listener_task is None or self._listener_task.done():
            self._listener_task = asyncio.create_task(self._listen_forever(hub), name="notification-relay-listener")

    async def stop_listener(self) -> None:
        if self._listener_task is not None:
            self._listener_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._listener_task
            self._listener_task = None


def create_relay_client() -> "redis.Redis":
    """ARQ 워커와 같은 Redis 에 붙는 클라이언트를 만듭니다."""
    return redis.Redis(host=settings.REDIS_HOST, port=settings.REDIS_PORT)
