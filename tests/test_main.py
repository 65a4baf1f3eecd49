# tests/test_main.py

"""
FastAPI 애플리케이션의 메인 엔드포인트에 대한 통합 테스트를 정의하는 모듈입니다.

- 애플리케이션의 루트 경로 (`/`) 응답을 테스트합니다.
- 데이터베이스 연결 헬스 체크 엔드포인트 (`/health-check`)를 테스트합니다.
- ARQ 워커 설정(태스크 함수와 두 스케줄러 스윕 주기)을 확인합니다.
"""

import pytest
from httpx import AsyncClient

from app.core.config import settings
from app.main import ArqWorkerSettings


@pytest.mark.asyncio
async def test_read_root(client: AsyncClient):
    """
    루트 엔드포인트 (`GET /`)가 올바르게 응답하는지 테스트합니다.
    """
    print("\n--- Running test_read_root ---")
    response = await client.get("/")
    print(f"Response JSON: {response.json()}")

    assert response.status_code == 200
    assert response.json() == {"message": f"Welcome to {settings.APP_NAME}. Visit /docs for interactive API documentation."}


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    """
    헬스 체크 엔드포인트 (`GET /health-check`)가 데이터베이스 연결 상태를 올바르게 반환하는지 테스트합니다.
    """
    print("\n--- Running test_health_check ---")
    response = await client.get("/health-check")
    print(f"Response JSON: {response.json()}")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "database_connection": "successful"}


def test_worker_settings_register_both_sweeps():
    """[성공] 예약 작업 처리는 매분, 정체 결과 복구는 짝수 분에 실행되도록 등록되어 있는지 확인합니다."""
    print("\n--- Running test_worker_settings_register_both_sweeps ---")
    jobs = {job.name: job for job in ArqWorkerSettings.cron_jobs}

    assert set(jobs) == {"dispatch_due_etl_tasks", "recover_stale_etl_results"}
    assert jobs["dispatch_due_etl_tasks"].minute is None
    assert jobs["recover_stale_etl_results"].minute == set(range(0, 60, 2))
    assert all(job.unique for job in jobs.values())
    assert len(ArqWorkerSettings.functions) == 3
