# tests/domains/test_intake_n.py

"""
ETL 큐 접수 (외부 파이프라인 완료 이벤트) 에 대한 테스트 모듈입니다.

- HTTP 접수: 202 와 예약 시각 반환, 형식 오류 422, 공유 토큰 검사.
- 접수는 예약 작업만 만들고 결과를 처리하지 않음.
- ARQ 큐 접수 태스크의 성공/실패 응답.
"""

import pytest
from httpx import AsyncClient
from pydantic import SecretStr
from sqlalchemy import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.config import settings
from app.domains.analysis import models as analysis_models
from app.domains.analysis.tasks import receive_etl_result_task

API = "/api/v1/analysis-queue"

EtlResultStatus = analysis_models.EtlResultStatus
ScheduledTaskStatus = analysis_models.ScheduledTaskStatus


async def _tasks(db: AsyncSession):
    result = await db.execute(select(analysis_models.ScheduledEtlTask).order_by(analysis_models.ScheduledEtlTask.id))
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_intake_queues_event_without_processing(client: AsyncClient, db_session: AsyncSession, builder):
    """[성공] 이벤트를 PENDING 예약 작업으로 저장하고 202 를 반환합니다. 결과 행은 바뀌지 않습니다."""
    print("\n--- Running test_intake_queues_event_without_processing ---")
    session = await builder.session("LAB-IN")
    etl = await builder.etl(session, status=EtlResultStatus.PROCESSING)
    payload = {
        "etlResultId": etl.id,
        "labcode": "LAB-IN",
        "htmlResult": "http://minio.test/analysis-results/LAB-IN.html",
        "genome": "GATK.GRCh38",
    }

    response = await client.post(f"{API}/result", json=payload)
    print(f"Response: {response.status_code} {response.json()}")
    assert response.status_code == 202
    body = response.json()
    assert body["success"] is True
    assert "taskId" in body and "scheduledFor" in body

    tasks = await _tasks(db_session)
    assert [t.id for t in tasks] == [body["taskId"]]
    assert tasks[0].status == ScheduledTaskStatus.PENDING
    assert tasks[0].etl_data == payload

    await db_session.refresh(etl)
    assert etl.status == EtlResultStatus.PROCESSING


@pytest.mark.asyncio
async def test_intake_rejects_malformed_event(client: AsyncClient, db_session: AsyncSession):
    """[실패] etlResultId 가 없거나 정수가 아니면 422 와 오류 상세를 반환하고 아무것도 저장하지 않습니다."""
    print("\n--- Running test_intake_rejects_malformed_event ---")
    for payload in ({"labcode": "LAB-1"}, {"etlResultId": "abc"}, {"etlResultId": 1, "status": "exploded"}):
        response = await client.post(f"{API}/result", json=payload)
        print(f"Response: {response.status_code} {response.json()}")
        assert response.status_code == 422
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "Invalid ETL event payload"
        assert body["details"]

    assert await _tasks(db_session) == []


@pytest.mark.asyncio
async def test_intake_requires_queue_token_when_configured(client: AsyncClient, monkeypatch):
    """[실패/성공] 공유 토큰이 설정되면 X-Queue-Token 헤더가 일치해야 접수합니다."""
    print("\n--- Running test_intake_requires_queue_token_when_configured ---")
    monkeypatch.setattr(settings, "ETL_QUEUE_TOKEN", SecretStr("s3cret"))
    payload = {"etlResultId": 1, "labcode": "LAB-1"}

    response = await client.post(f"{API}/result", json=payload)
    assert response.status_code == 401
    assert response.json()["code"] == "QUEUE_TOKEN_INVALID"

    response = await client.post(f"{API}/result", json=payload, headers={"X-Queue-Token": "wrong"})
    assert response.status_code == 401

    response = await client.post(f"{API}/result", json=payload, headers={"X-Queue-Token": "s3cret"})
    assert response.status_code == 202


@pytest.mark.asyncio
async def test_queue_task_receives_event(db_session: AsyncSession, session_factory):
    """[성공] Redis 큐로 들어온 이벤트도 같은 방식으로 예약 작업이 됩니다."""
    print("\n--- Running test_queue_task_receives_event ---")
    result = await receive_etl_result_task({}, {"etl_result_id": 7, "labcode": "LAB-7"}, session_factory=session_factory)
    print(f"Task result: {result}")
    assert result["status"] == "success"

    tasks = await _tasks(db_session)
    assert [t.id for t in tasks] == [result["task_id"]]
    assert tasks[0].etl_data == {"etl_result_id": 7, "labcode": "LAB-7"}


@pytest.mark.asyncio
async def test_queue_task_reports_malformed_event(db_session: AsyncSession, session_factory):
    """[실패] 형식이 잘못된 이벤트는 실패 결과를 돌려주고 저장하지 않습니다."""
    print("\n--- Running test_queue_task_reports_malformed_event ---")
    result = await receive_etl_result_task({}, {"labcode": "LAB-7"}, session_factory=session_factory)
    assert result["status"] == "failed"
    assert result["details"]
    assert await _tasks(db_session) == []
