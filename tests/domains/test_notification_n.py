# tests/domains/test_notification_n.py

"""
'notification' 도메인 (알림 저장 + 실시간 전달 허브) 에 대한 테스트 모듈입니다.

- NotificationHub: 오프라인 버퍼링, 구독 시 순서 보존 전달, 브로드캐스트, 유휴 정리, 하트비트.
- API: 내 알림 목록/읽음 처리, 시스템 알림 브로드캐스트 권한, SSE 진단 엔드포인트.
- Redis 중계: 워커 프로세스 알림이 API 프로세스 구독자에게 전달되는지.
"""

import asyncio
import json

import pytest
from httpx import AsyncClient
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.config import settings
from app.domains.notification import models as notification_models
from app.domains.notification import services as notification_services
from app.domains.notification.hub import (
    EVENT_NOTIFICATION_CREATED,
    EVENT_PING,
    EVENT_SYSTEM_NOTIFICATION,
    NotificationHub,
    notification_hub,
)
from app.domains.notification.relay import RedisNotificationRelay
from app.domains.notification.routers import render_sse
from app.main import on_worker_shutdown, on_worker_startup

API = "/api/v1/notification"


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _drain_channel(subscriber) -> list:
    messages = []
    while not subscriber.channel.empty():
        messages.append(subscriber.channel.get_nowait())
    return messages


async def _notify(db: AsyncSession, receiver_id: int, title: str, **kwargs):
    return await notification_services.notify(
        db,
        receiver_id=receiver_id,
        title=title,
        message=f"{title} message",
        task_type=kwargs.pop("task_type", notification_models.NotificationTaskType.ANALYSIS_TASK),
        type=kwargs.pop("type", notification_models.NotificationType.INFO),
        **kwargs,
    )


# =============================================================================
# 1. NotificationHub
# =============================================================================
@pytest.mark.asyncio
async def test_offline_messages_are_flushed_in_order_on_subscribe():
    """[성공] 오프라인 사용자에게 발행된 메시지는 버퍼에 쌓였다가 구독 시 순서대로 전달되고 버퍼는 비워집니다."""
    print("\n--- Running test_offline_messages_are_flushed_in_order_on_subscribe ---")
    hub = NotificationHub(clock=FakeClock())

    assert hub.publish(7, EVENT_NOTIFICATION_CREATED, {"seq": 1}) is False
    assert hub.publish(7, EVENT_NOTIFICATION_CREATED, {"seq": 2}) is False
    assert [m["data"]["seq"] for m in hub.buffered_messages(7)] == [1, 2]

    subscriber = hub.subscribe(7)
    assert [m["data"]["seq"] for m in _drain_channel(subscriber)] == [1, 2]
    assert hub.buffered_messages(7) == []

    assert hub.publish(7, EVENT_NOTIFICATION_CREATED, {"seq": 3}) is True
    assert [m["data"]["seq"] for m in _drain_channel(subscriber)] == [3]


@pytest.mark.asyncio
async def test_subscribe_is_idempotent():
    """[성공] 같은 사용자의 반복 구독은 같은 항목을 공유하고 메시지를 중복 전달하지 않습니다."""
    print("\n--- Running test_subscribe_is_idempotent ---")
    hub = NotificationHub(clock=FakeClock())
    hub.publish(7, EVENT_NOTIFICATION_CREATED, {"seq": 1})

    first = hub.subscribe(7)
    second = hub.subscribe(7)
    assert first is second
    assert len(_drain_channel(first)) == 1
    assert hub.active_user_ids() == [7]


@pytest.mark.asyncio
async def test_buffer_drops_oldest_when_full():
    """[성공] 버퍼 크기를 넘으면 가장 오래된 메시지부터 버립니다."""
    print("\n--- Running test_buffer_drops_oldest_when_full ---")
    hub = NotificationHub(buffer_size=3, clock=FakeClock())
    for seq in range(1, 6):
        hub.publish(9, EVENT_NOTIFICATION_CREATED, {"seq": seq})

    assert [m["data"]["seq"] for m in hub.buffered_messages(9)] == [3, 4, 5]
    subscriber = hub.subscribe(9)
    assert [m["data"]["seq"] for m in _drain_channel(subscriber)] == [3, 4, 5]


@pytest.mark.asyncio
async def test_broadcast_reaches_only_active_subscribers():
    """[성공] 브로드캐스트는 활성 구독자에게만 전달되고 오프라인 사용자 버퍼에는 쌓이지 않습니다."""
    print("\n--- Running test_broadcast_reaches_only_active_subscribers ---")
    hub = NotificationHub(clock=FakeClock())
    online = hub.subscribe(1)
    dropped = hub.subscribe(2)
    hub.disconnect(2, dropped)

    delivered = hub.broadcast(EVENT_SYSTEM_NOTIFICATION, {"title": "maintenance"})
    assert delivered == 1
    assert [m["event"] for m in _drain_channel(online)] == [EVENT_SYSTEM_NOTIFICATION]
    assert _drain_channel(dropped) == []
    assert hub.buffered_messages(2) == []
    assert hub.buffered_messages(3) == []


@pytest.mark.asyncio
async def test_disconnected_subscriber_buffers_until_resubscribe():
    """[성공] 연결이 끊긴 구독자는 메시지를 버퍼에 모으고, 다시 구독하면 같은 항목이 재활성화됩니다."""
    print("\n--- Running test_disconnected_subscriber_buffers_until_resubscribe ---")
    hub = NotificationHub(clock=FakeClock())
    subscriber = hub.subscribe(5)
    hub.disconnect(5, subscriber)
    assert hub.active_user_ids() == []

    assert hub.publish(5, EVENT_NOTIFICATION_CREATED, {"seq": 1}) is False
    assert len(hub.buffered_messages(5)) == 1

    again = hub.subscribe(5)
    assert again is subscriber
    assert again.is_active is True
    assert [m["data"]["seq"] for m in _drain_channel(again)] == [1]


@pytest.mark.asyncio
async def test_reap_idle_closes_inactive_subscribers():
    """[성공] 마지막 활동 이후 idle_timeout 을 넘긴 구독자만 정리됩니다."""
    print("\n--- Running test_reap_idle_closes_inactive_subscribers ---")
    clock = FakeClock()
    hub = NotificationHub(idle_timeout=60, clock=clock)
    idle = hub.subscribe(1)
    clock.advance(30)
    busy = hub.subscribe(2)

    clock.advance(31)
    hub.publish(2, EVENT_NOTIFICATION_CREATED, {"seq": 1})
    assert hub.reap_idle() == [1]
    assert idle.closed is True
    assert busy.closed is False
    assert hub.stream_info(1) is None

    clock.advance(61)
    assert hub.reap_idle() == [2]
    assert hub.active_count() == 0


@pytest.mark.asyncio
async def test_heartbeat_does_not_count_as_activity():
    """[성공] 메시지가 없으면 ping 을 보내지만 활동 시각은 갱신되지 않아 유휴 정리 대상이 됩니다."""
    print("\n--- Running test_heartbeat_does_not_count_as_activity ---")
    clock = FakeClock()
    hub = NotificationHub(idle_timeout=60, heartbeat_interval=0.01, clock=clock)
    subscriber = hub.subscribe(3)
    stream = hub.stream(subscriber)

    message = await stream.__anext__()
    assert message["event"] == EVENT_PING
    assert subscriber.last_activity == 1000.0

    clock.advance(61)
    assert hub.reap_idle() == [3]
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()


@pytest.mark.asyncio
async def test_ping_is_sent_only_after_silence():
    """[성공] heartbeat_interval 보다 짧은 간격으로 메시지가 오면 ping 없이 메시지만 나갑니다."""
    print("\n--- Running test_ping_is_sent_only_after_silence ---")
    hub = NotificationHub(heartbeat_interval=0.5, clock=FakeClock())
    subscriber = hub.subscribe(5)
    stream = hub.stream(subscriber)

    async def publish_steadily():
        for seq in range(3):
            await asyncio.sleep(0.05)
            hub.publish(5, EVENT_NOTIFICATION_CREATED, {"seq": seq})

    publisher = asyncio.create_task(publish_steadily())
    events = [(await stream.__anext__())["event"] for _ in range(3)]
    await publisher
    assert events == [EVENT_NOTIFICATION_CREATED] * 3

    hub.heartbeat_interval = 0.01
    assert (await stream.__anext__())["event"] == EVENT_PING


@pytest.mark.asyncio
async def test_stream_yields_published_messages():
    """[성공] 스트림은 채널에 들어온 메시지를 그대로 내보냅니다."""
    print("\n--- Running test_stream_yields_published_messages ---")
    hub = NotificationHub(clock=FakeClock())
    subscriber = hub.subscribe(4)
    hub.publish(4, EVENT_NOTIFICATION_CREATED, {"seq": 1})

    message = await hub.stream(subscriber).__anext__()
    assert message["event"] == EVENT_NOTIFICATION_CREATED
    assert message["data"] == {"seq": 1}
    assert "timestamp" in message


def test_render_sse_frame():
    """[성공] SSE 프레임은 event 줄, data 줄, 빈 줄로 구성됩니다."""
    print("\n--- Running test_render_sse_frame ---")
    frame = render_sse({"event": "ping", "data": {"t": "now"}, "timestamp": "now"})
    event_line, data_line, *rest = frame.split("\n")
    assert event_line == "event: ping"
    assert json.loads(data_line[len("data: "):]) == {"event": "ping", "data": {"t": "now"}, "timestamp": "now"}
    assert frame.endswith("\n\n")


# =============================================================================
# 2. notify() 서비스
# =============================================================================
@pytest.mark.asyncio
async def test_notify_persists_and_publishes(db_session: AsyncSession):
    """[성공] 알림을 저장하고, 오프라인 수신자에게는 버퍼로 전달합니다."""
    print("\n--- Running test_notify_persists_and_publishes ---")
    created = await _notify(db_session, 30, "ETL analysis completed", labcode="LAB-1")
    assert created.id is not None
    assert created.is_read is False

    buffered = notification_hub.buffered_messages(30)
    assert [m["event"] for m in buffered] == [EVENT_NOTIFICATION_CREATED]
    assert buffered[0]["data"]["id"] == created.id
    assert buffered[0]["data"]["labcode"] == "LAB-1"


@pytest.mark.asyncio
async def test_notify_without_receiver_is_skipped(db_session: AsyncSession):
    """[성공] 수신자가 없으면 저장/발행 없이 None 을 반환합니다."""
    print("\n--- Running test_notify_without_receiver_is_skipped ---")
    assert await _notify(db_session, None, "nobody") is None
    assert notification_hub.active_count() == 0


# =============================================================================
# 3. API
# =============================================================================
@pytest.mark.asyncio
async def test_list_and_mark_read(analysis_client: AsyncClient, validation_client: AsyncClient, db_session: AsyncSession):
    """[성공/실패] 내 알림만 조회되고, 다른 사용자의 알림은 읽음 처리할 수 없습니다."""
    print("\n--- Running test_list_and_mark_read ---")
    mine = await _notify(db_session, 30, "first")
    await _notify(db_session, 30, "second", sub_type=notification_models.NotificationSubType.RETRY)
    others = await _notify(db_session, 40, "not yours")

    response = await analysis_client.get(API)
    print(f"Response: {response.json()}")
    assert response.status_code == 200
    assert sorted(n["title"] for n in response.json()) == ["first", "second"]

    response = await analysis_client.get(API, params={"sub_type": "retry"})
    assert [n["title"] for n in response.json()] == ["second"]

    response = await analysis_client.put(f"{API}/{mine.id}")
    assert response.status_code == 200
    assert response.json()["is_read"] is True

    response = await analysis_client.get(API, params={"is_read": "false"})
    assert [n["title"] for n in response.json()] == ["second"]

    response = await analysis_client.put(f"{API}/{others.id}")
    assert response.status_code == 404
    assert response.json()["code"] == "NOTIFICATION_NOT_FOUND"


@pytest.mark.asyncio
async def test_system_broadcast_requires_staff(staff_client: AsyncClient, analysis_client: AsyncClient):
    """[성공/실패] 시스템 알림은 스태프만 보낼 수 있고 활성 구독자 수를 반환합니다."""
    print("\n--- Running test_system_broadcast_requires_staff ---")
    subscriber = notification_hub.subscribe(30)
    payload = {"title": "Maintenance", "message": "LIMS restarts at 18:00"}

    response = await analysis_client.post(f"{API}/system", json=payload)
    assert response.status_code == 403

    response = await staff_client.post(f"{API}/system", json=payload)
    print(f"Response: {response.json()}")
    assert response.status_code == 200
    assert response.json() == {"delivered": 1}

    messages = _drain_channel(subscriber)
    assert [m["event"] for m in messages] == [EVENT_SYSTEM_NOTIFICATION]
    assert messages[0]["data"]["title"] == "Maintenance"


@pytest.mark.asyncio
async def test_stream_debug_endpoints(client: AsyncClient):
    """[성공/실패] 활성 스트림 현황과 사용자별 상태를 조회하고, 비활성 스트림을 다시 활성화합니다."""
    print("\n--- Running test_stream_debug_endpoints ---")
    subscriber = notification_hub.subscribe(11)
    notification_hub.subscribe(12)
    notification_hub.disconnect(11, subscriber)

    response = await client.get(f"{API}/sse-debug")
    assert response.status_code == 200
    assert response.json() == {"active_streams": 1, "active_user_ids": [12]}

    response = await client.get(f"{API}/sse-debug/11")
    assert response.status_code == 200
    assert response.json()["is_active"] is False

    response = await client.get(f"{API}/sse-activate/11")
    assert response.status_code == 200
    assert response.json()["is_active"] is True

    response = await client.get(f"{API}/sse-debug/999")
    assert response.status_code == 404
    assert response.json()["code"] == "NOTIFICATION_STREAM_NOT_FOUND"


# =============================================================================
# 4. 프로세스 간 중계 (Redis pub/sub)
# =============================================================================
class FakePubSub:
    def __init__(self, messages):
        self.messages = messages
        self.channels = []
        self.closed = False

    async def subscribe(self, channel):
        self.channels.append(channel)

    async def unsubscribe(self, channel):
        self.channels.remove(channel)

    async def listen(self):
        for message in self.messages:
            yield message

    async def aclose(self):
        self.closed = True


class RecordingRedis:
    """publish 호출을 기록하고, 미리 정한 메시지를 내보내는 pubsub 을 돌려주는 Redis 대역."""

    def __init__(self, incoming=()):
        self.published = []
        self.pubsub_client = FakePubSub(list(incoming))

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    def pubsub(self):
        return self.pubsub_client


@pytest.mark.asyncio
async def test_worker_notifications_are_relayed_to_api_subscribers(db_session: AsyncSession):
    """[성공] 워커 허브의 알림은 로컬 버퍼에 남지 않고 Redis 로 나가며, API 허브의 구독자가 받습니다."""
    print("\n--- Running test_worker_notifications_are_relayed_to_api_subscribers ---")
    worker_hub, api_hub = NotificationHub(), NotificationHub()
    redis_client = RecordingRedis()
    relay = RedisNotificationRelay(redis_client, channel="test:notifications")
    relay.attach(worker_hub)

    created = await notification_services.notify(
        db_session,
        receiver_id=30,
        title="ETL analysis completed",
        message="ETL analysis for LAB-9 has completed.",
        task_type=notification_models.NotificationTaskType.ANALYSIS_TASK,
        type=notification_models.NotificationType.PROCESS,
        labcode="LAB-9",
        hub=worker_hub,
    )
    assert worker_hub.broadcast(EVENT_SYSTEM_NOTIFICATION, {"title": "Maintenance"}) == 0
    await relay.detach(worker_hub)

    assert worker_hub.forwarder is None
    assert worker_hub.buffered_messages(30) == []
    assert [channel for channel, _ in redis_client.published] == ["test:notifications"] * 2

    subscriber = api_hub.subscribe(30)
    for _, raw in redis_client.published:
        assert relay.apply(api_hub, raw.encode("utf-8")) is True

    messages = _drain_channel(subscriber)
    assert [m["event"] for m in messages] == [EVENT_NOTIFICATION_CREATED, EVENT_SYSTEM_NOTIFICATION]
    assert messages[0]["data"]["id"] == created.id
    assert messages[0]["data"]["labcode"] == "LAB-9"


@pytest.mark.asyncio
async def test_relay_listener_applies_channel_messages():
    """[성공/실패] 수신 루프는 구독 확인 메시지와 잘못된 메시지를 건너뛰고, 오프라인 사용자 메시지는 버퍼에 쌓습니다."""
    print("\n--- Running test_relay_listener_applies_channel_messages ---")
    api_hub = NotificationHub()
    redis_client = RecordingRedis(incoming=[
        {"type": "subscribe", "data": 1},
        {"type": "message", "data": b"not json"},
        {"type": "message", "data": b'{"user_id": 30}'},
        {"type": "message", "data": json.dumps({"user_id": 30, "event": EVENT_NOTIFICATION_CREATED, "data": {"id": 7}}).encode()},
    ])
    relay = RedisNotificationRelay(redis_client, channel="test:notifications")

    await relay.listen(api_hub)

    assert [m["data"] for m in api_hub.buffered_messages(30)] == [{"id": 7}]
    assert redis_client.pubsub_client.channels == []
    assert redis_client.pubsub_client.closed is True


@pytest.mark.asyncio
async def test_arq_worker_startup_attaches_relay(db_session: AsyncSession, monkeypatch):
    """[성공] 워커 시작 시 프로세스 허브에 중계가 연결되고, 종료 시 남은 알림을 내보낸 뒤 해제됩니다."""
    print("\n--- Running test_arq_worker_startup_attaches_relay ---")
    monkeypatch.setattr(settings, "NOTIFICATION_RELAY_ENABLED", True)
    ctx = {"redis": RecordingRedis()}

    await on_worker_startup(ctx)
    assert notification_hub.forwarder is not None

    await _notify(db_session, 30, "ETL analysis failed")
    await on_worker_shutdown(ctx)

    assert notification_hub.forwarder is None
    assert notification_hub.buffered_messages(30) == []
    assert len(ctx["redis"].published) == 1
    assert json.loads(ctx["redis"].published[0][1])["event"] == EVENT_NOTIFICATION_CREATED
