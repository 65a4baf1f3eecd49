# app/domains/validation/services.py

"""
'validation' 도메인의 비즈니스 로직을 담당하는 모듈입니다.

검증 담당자는 자신에게 배정된 세션의 ETL 결과를 승인하거나 반려합니다.
승인 대기(WAIT_FOR_APPROVAL)가 아닌 결과에 대한 승인/반려는 ForbiddenError 로 거부합니다.
반려하면 세션의 최신 FastQ 쌍이 승인 대기로 돌아가 분석을 다시 승인받아야 합니다.
"""

import logging
from typing import List, Optional

from sqlalchemy import exists, select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.exceptions import ForbiddenError, NotFoundError
from app.core.security import AuthenticatedUser
from app.core.storage import S3BlobStore
from app.domains.analysis import crud as analysis_crud
from app.domains.analysis import models as analysis_models
from app.domains.analysis import schemas as analysis_schemas
from app.domains.analysis import services as analysis_services
from app.domains.analysis.crud import VALIDATION_VISIBLE_STATUSES
from app.domains.analysis.ordering import latest, sort_by_priority
from app.domains.analysis.transitions import ensure_etl_transition
from app.domains.notification import services as notification_services
from app.domains.notification.models import NotificationSubType, NotificationTaskType, NotificationType
from app.services import workflow_rules
from app.utils.dates import utcnow

from . import schemas as validation_schemas

logger = logging.getLogger(__name__)

EtlResultStatus = analysis_models.EtlResultStatus


def _assigned_to(current_user: AuthenticatedUser):
    return analysis_models.LabSession.validation_id == current_user.id


def _session_has_validation_result():
    etl = analysis_models.EtlResult
    return exists(
        select(etl.id).where(
            etl.lab_session_id == analysis_models.LabSession.id,
            etl.status.in_(list(VALIDATION_VISIBLE_STATUSES)),
        )
    )


async def _get_awaiting_result(db: AsyncSession, etl_result_id: int) -> analysis_models.EtlResult:
    etl = await analysis_crud.etl_result.get(db, id=etl_result_id)
    if etl is None:
        raise NotFoundError(f"ETL result {etl_result_id} not found", code="ETL_RESULT_NOT_FOUND")
    if etl.status != EtlResultStatus.WAIT_FOR_APPROVAL:
        raise ForbiddenError(
            f"ETL result {etl_result_id} is not awaiting validation",
            code="ETL_RESULT_NOT_AWAITING_VALIDATION",
        )
    return etl


# =============================================================================
# 1. 조회
# =============================================================================
async def list_sessions(
    db: AsyncSession, *, params: analysis_schemas.SessionListParams, current_user: AuthenticatedUser
) -> analysis_schemas.PaginatedResponse[validation_schemas.ValidationSessionListItem]:
    """나에게 배정되고 검증 단계 결과가 있는 세션 목록 (최신 결과 상태 우선순위 -> 최신순)."""
    etl_status = analysis_crud.CRUDLabSession.latest_etl_status_subquery(VALIDATION_VISIBLE_STATUSES)
    sessions, total = await analysis_crud.lab_session.list_paginated(
        db,
        params=params,
        priority_status=etl_status,
        etl_status=etl_status,
        conditions=[_assigned_to(current_user), _session_has_validation_result()],
    )

    results = await analysis_crud.etl_result.get_multi_by_sessions(
        db, session_ids=[s.id for s in sessions], statuses=VALIDATION_VISIBLE_STATUSES
    )
    items: List[validation_schemas.ValidationSessionListItem] = []
    for session in sessions:
        latest_etl = latest(results.get(session.id, []))
        item = validation_schemas.ValidationSessionListItem.model_validate(session, from_attributes=True)
        item.latest_etl_result = analysis_schemas.EtlResultResponse.model_validate(latest_etl) if latest_etl else None
        items.append(item)

    return analysis_schemas.PaginatedResponse[validation_schemas.ValidationSessionListItem].build(
        items, page=params.page, limit=params.limit, total=total
    )


async def get_session(
    db: AsyncSession, *, lab_session_id: int, current_user: AuthenticatedUser
) -> validation_schemas.ValidationSessionDetail:
    session = await analysis_crud.lab_session.get(db, id=lab_session_id)
    if session is None or session.validation_id != current_user.id:
        raise NotFoundError(f"Lab session {lab_session_id} not found", code="LAB_SESSION_NOT_FOUND")

    results = await analysis_crud.etl_result.get_multi_by_sessions(
        db, session_ids=[lab_session_id], statuses=VALIDATION_VISIBLE_STATUSES
    )
    detail = validation_schemas.ValidationSessionDetail.model_validate(session, from_attributes=True)
    detail.etl_results = [
        analysis_schemas.EtlResultResponse.model_validate(r) for r in sort_by_priority(results.get(lab_session_id, []))
    ]
    return detail


async def download_etl_result(
    db: AsyncSession, *, etl_result_id: int, blob_store: S3BlobStore
) -> analysis_schemas.DownloadUrlResponse:
    return await analysis_services.download_etl_result(
        db, etl_result_id=etl_result_id, blob_store=blob_store, statuses=VALIDATION_VISIBLE_STATUSES
    )


# =============================================================================
# 2. 승인 / 반려
# =============================================================================
async def accept_etl_result(
    db: AsyncSession, *, etl_result_id: int, reason_approve: Optional[str], current_user: AuthenticatedUser
) -> analysis_models.EtlResult:
    etl = await _get_awaiting_result(db, etl_result_id)
    ensure_etl_transition(etl.status, EtlResultStatus.APPROVED)

    session = await analysis_crud.lab_session.get(db, id=etl.lab_session_id)
    now = utcnow()
    etl.status = EtlResultStatus.APPROVED
    etl.approve_by = current_user.id
    etl.reason_approve = reason_approve
    session.finished_at = now
    db.add(etl)
    db.add(session)
    await db.commit()
    logger.info("ETL result %d approved by user %d", etl_result_id, current_user.id)

    await notification_services.notify(
        db,
        receiver_id=session.analysis_id,
        title="ETL result approved",
        message=f"ETL result for {session.labcode} passed validation.",
        task_type=NotificationTaskType.ANALYSIS_TASK,
        type=NotificationType.INFO,
        sub_type=NotificationSubType.ACCEPT,
        sender_id=current_user.id,
        labcode=session.labcode,
        barcode=session.barcode,
    )
    return etl


async def reject_etl_result(
    db: AsyncSession, *, etl_result_id: int, redo_reason: str, current_user: AuthenticatedUser
) -> analysis_models.EtlResult:
    """
    ETL 결과를 반려하고, 같은 트랜잭션에서 세션의 최신 FastQ 쌍을 승인 대기로 되돌립니다.
    """
    etl = await _get_awaiting_result(db, etl_result_id)
    ensure_etl_transition(etl.status, EtlResultStatus.REJECTED)

    etl.status = EtlResultStatus.REJECTED
    etl.redo_reason = redo_reason
    etl.reject_by = current_user.id
    db.add(etl)
    reopened = await workflow_rules.reopen_latest_fastq_for_rejected_result(db, etl=etl)
    await db.commit()
    logger.info(
        "ETL result %d rejected by user %d (reopened FastQ pair %s)",
        etl_result_id, current_user.id, reopened.id if reopened else None,
    )

    session = await analysis_crud.lab_session.get(db, id=etl.lab_session_id)
    await notification_services.notify(
        db,
        receiver_id=session.analysis_id,
        title="ETL result rejected",
        message=f"ETL result for {session.labcode} was rejected at validation: {redo_reason}",
        task_type=NotificationTaskType.ANALYSIS_TASK,
        type=NotificationType.ACTION,
        sub_type=NotificationSubType.REJECT,
        sender_id=current_user.id,
        labcode=session.labcode,
        barcode=session.barcode,
    )
    return etl
