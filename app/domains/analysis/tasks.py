# app/domains/analysis/tasks.py

"""
ETL 스케줄러 스윕과 ETL 큐 접수를 수행하는 ARQ 백그라운드 작업 모듈입니다.

- Sweep A (dispatch_due_tasks): 예약 시각이 지난 PENDING 작업을 process_queued_result 로 처리합니다.
  1분마다 실행됩니다.
- Sweep B (recover_stale_results): 정체 기준 시간보다 오래 PROCESSING 인 ETL 결과를
  같은 행으로 다시 실행합니다. 2분마다 실행됩니다.

두 스윕 모두 항목별로 실패를 격리하고 로그만 남기며, 스윕 자체를 중단하지 않습니다.
작업은 상태 조건으로 선점하므로 중복 실행되어도 같은 작업을 두 번 처리하지 않습니다.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from app.core.config import settings
from app.core.database import get_async_session_context
from app.core.storage import S3BlobStore, get_blob_store
from app.utils.dates import utcnow

from . import crud as analysis_crud
from . import models as analysis_models
from . import schemas as analysis_schemas
from . import services as analysis_services
from .pipeline import EtlPipelineRunner, SessionFactory, get_pipeline_runner

logger = logging.getLogger(__name__)

ScheduledTaskStatus = analysis_models.ScheduledTaskStatus


# =============================================================================
# 1. Sweep A: 예약 작업 처리
# =============================================================================
async def _dispatch_one(
    task_id: int, *, session_factory: SessionFactory, blob_store: S3BlobStore
) -> Optional[bool]:
    """예약 작업 한 건을 처리하고 성공 여부를 반환합니다. 이미 처리된 작업이면 None."""
    async with session_factory() as db:
        task = await analysis_crud.scheduled_etl_task.get(db, id=task_id)
        if task is None or task.status != ScheduledTaskStatus.PENDING:
            return None

        try:
            outcome = await analysis_services.process_queued_result(
                db, payload=dict(task.etl_data), blob_store=blob_store
            )
        except Exception as e:
            logger.exception("Scheduled ETL task %d raised while processing", task_id)
            await db.rollback()
            task = await analysis_crud.scheduled_etl_task.get(db, id=task_id)
            outcome = analysis_schemas.QueuedResultOutcome(success=False, message=str(e) or e.__class__.__name__)

        task.status = ScheduledTaskStatus.COMPLETED if outcome.success else ScheduledTaskStatus.FAILED
        task.error_message = None if outcome.success else outcome.message
        task.processed_at = utcnow()
        await analysis_crud.scheduled_etl_task.save(db, task)

        if outcome.success:
            logger.info("Scheduled ETL task %d completed: %s", task_id, outcome.message)
        else:
            logger.warning("Scheduled ETL task %d failed: %s", task_id, outcome.message)
        return outcome.success


async def dispatch_due_tasks(
    *,
    session_factory: SessionFactory = get_async_session_context,
    blob_store: Optional[S3BlobStore] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """scheduled_at < now 인 PENDING 작업을 모두 처리하고 집계를 반환합니다."""
    now = now or utcnow()
    blob_store = blob_store or get_blob_store()

    async with session_factory() as db:
        due = await analysis_crud.scheduled_etl_task.get_due(db, now=now)
        task_ids = [task.id for task in due]

    summary = {"due": len(task_ids), "completed": 0, "failed": 0, "errors": 0}
    for task_id in task_ids:
        try:
            succeeded = await _dispatch_one(task_id, session_factory=session_factory, blob_store=blob_store)
        except Exception:
            logger.exception("Could not record the outcome of scheduled ETL task %d", task_id)
            summary["errors"] += 1
            continue
        if succeeded is True:
            summary["completed"] += 1
        elif succeeded is False:
            summary["failed"] += 1

    if task_ids:
        logger.info("Scheduled ETL sweep finished: %s", summary)
    return summary


# =============================================================================
# 2. Sweep B: 정체 결과 복구
# =============================================================================
async def recover_stale_results(
    *,
    runner: EtlPipelineRunner,
    session_factory: SessionFactory = get_async_session_context,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    start_time 이 기준 시각보다 이전인 PROCESSING 결과를 같은 행으로 다시 실행합니다.
    R1/R2 가 모두 있는 FastQ 쌍이 없으면 건너뜁니다.
    """
    now = now or utcnow()
    cutoff = now - timedelta(minutes=settings.ETL_STALE_THRESHOLD_MINUTES)

    async with session_factory() as db:
        stale = await analysis_crud.etl_result.get_stale_processing(db, cutoff=cutoff)

    summary = {"stale": len(stale), "retriggered": 0, "skipped": 0, "errors": 0}
    for etl in stale:
        pair = etl.fastq_pair
        if pair is None or not pair.has_both_mates:
            logger.warning("Stale ETL result %d has no complete FastQ pair (R1/R2), skipping", etl.id)
            summary["skipped"] += 1
            continue
        try:
            logger.info(
                "Re-triggering stale ETL result %d (labcode=%s, barcode=%s, started %s)",
                etl.id, etl.lab_session.labcode, etl.lab_session.barcode, etl.start_time,
            )
            await runner.run(etl.id, user_id=settings.SYSTEM_USER_ID)
            summary["retriggered"] += 1
        except Exception:
            logger.exception("Failed to re-trigger stale ETL result %d", etl.id)
            summary["errors"] += 1

    if stale:
        logger.info("Stale ETL sweep finished: %s", summary)
    return summary


# =============================================================================
# 3. ARQ 작업 함수
# =============================================================================
async def dispatch_due_etl_tasks(ctx) -> Dict[str, Any]:
    """Sweep A. ARQ cron 으로 1분마다 실행됩니다."""
    summary = await dispatch_due_tasks()
    return {"status": "success", **summary}


async def recover_stale_etl_results(ctx) -> Dict[str, Any]:
    """Sweep B. ARQ cron 으로 2분마다 실행됩니다."""
    summary = await recover_stale_results(runner=get_pipeline_runner())
    return {"status": "success", **summary}


async def receive_etl_result_task(ctx, payload: Dict[str, Any], session_factory: Callable = get_async_session_context) -> Dict[str, Any]:
    """
    Redis 로 들어온 ETL 완료 이벤트를 예약 작업으로 저장합니다.
    형식 오류는 실패 결과로 돌려주고, 저장 실패는 예외로 올려 ARQ 가 작업 실패로 기록하게 합니다.
    """
    try:
        async with session_factory() as db:
            accepted = await analysis_services.receive_etl_event(db, payload=payload)
    except ValidationError as e:
        logger.warning("Rejected malformed ETL event from the queue: %s", e)
        return {"status": "failed", "message": "Invalid ETL event payload", "details": e.errors(include_url=False, include_context=False, include_input=False)}

    return {
        "status": "success",
        "message": accepted.message,
        "task_id": accepted.task_id,
        "scheduled_for": accepted.scheduled_for.isoformat(),
    }
