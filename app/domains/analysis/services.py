# app/domains/analysis/services.py

"""
'analysis' 도메인의 비즈니스 로직(상태 머신)을 담당하는 모듈입니다.

- FastQ 파일 쌍: 제출(UPLOADED -> WAIT_FOR_APPROVAL), 승인, 반려
- ETL 결과: 분석 시작, 재시도, 검증 요청, 다운로드 URL 발급
- ETL 큐: 외부 파이프라인 완료 이벤트 접수(receive_etl_event)와 지연 처리(process_queued_result)
- 세션 목록/상세 조회

세션당 PROCESSING 상태의 ETL 결과는 최대 1건입니다. 애플리케이션에서 먼저 확인하고,
동시에 들어온 요청은 부분 유니크 인덱스 위반(IntegrityError)으로 걸러냅니다.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.config import settings
from app.core.exceptions import BadRequestError, ConflictError, NotFoundError
from app.core.security import AuthenticatedUser
from app.core.storage import S3BlobStore
from app.domains.notification import services as notification_services
from app.domains.notification.models import NotificationSubType, NotificationTaskType, NotificationType
from app.services import workflow_rules
from app.utils.dates import as_utc, utcnow

from . import crud as analysis_crud
from . import models as analysis_models
from . import schemas as analysis_schemas
from .ordering import WORKFLOW_VISIBLE_STATUSES, latest, sort_by_priority
from .pipeline import EtlPipelineRunner
from .transitions import ensure_etl_transition, ensure_fastq_transition

logger = logging.getLogger(__name__)

FastqFileStatus = analysis_models.FastqFileStatus
EtlResultStatus = analysis_models.EtlResultStatus


def _label(status: Any) -> Optional[str]:
    return getattr(status, "value", status)


# =============================================================================
# 1. 내부 헬퍼
# =============================================================================
async def _get_session_or_404(db: AsyncSession, lab_session_id: int) -> analysis_models.LabSession:
    session = await analysis_crud.lab_session.get(db, id=lab_session_id)
    if session is None:
        raise NotFoundError(f"Lab session {lab_session_id} not found", code="LAB_SESSION_NOT_FOUND")
    return session


async def _get_pair_or_404(db: AsyncSession, pair_id: int, statuses: Optional[Sequence[Any]] = None):
    if statuses is None:
        pair = await analysis_crud.fastq_file_pair.get_with_files(db, id=pair_id)
    else:
        pair = await analysis_crud.fastq_file_pair.get_with_status(db, id=pair_id, statuses=statuses)
    if pair is None:
        raise NotFoundError(f"FastQ file pair {pair_id} not found", code="FASTQ_PAIR_NOT_FOUND")
    return pair


async def _ensure_no_processing(db: AsyncSession, lab_session_id: int) -> None:
    processing = await analysis_crud.etl_result.get_processing_for_session(db, lab_session_id=lab_session_id)
    if processing:
        raise ConflictError(
            f"Analysis already in progress for lab session {lab_session_id} (ETL result {processing[0].id})",
            code="ANALYSIS_IN_PROGRESS",
        )


async def _claim_processing(
    db: AsyncSession, *, pair: analysis_models.FastqFilePair, current_user: AuthenticatedUser
) -> analysis_models.EtlResult:
    """
    새 ETL 결과 행을 PROCESSING 상태로 삽입합니다.
    같은 세션에 PROCESSING 결과가 있으면 ConflictError 를 발생시킵니다.
    """
    await _ensure_no_processing(db, pair.lab_session_id)
    ensure_etl_transition(None, EtlResultStatus.PROCESSING)

    now = utcnow()
    etl = analysis_models.EtlResult(
        lab_session_id=pair.lab_session_id,
        fastq_file_pair_id=pair.id,
        result_path="",
        status=EtlResultStatus.PROCESSING,
        start_time=now,
        comment_by=current_user.id,
        created_at=now,
    )
    try:
        return await analysis_crud.etl_result.save(db, etl)
    except IntegrityError:
        await db.rollback()
        raise ConflictError(
            f"Analysis already in progress for lab session {pair.lab_session_id}",
            code="ANALYSIS_IN_PROGRESS",
        )


# =============================================================================
# 2. FastQ 파일 쌍 워크플로우
# =============================================================================
async def submit_fastq_for_approval(
    db: AsyncSession, *, pair_id: int, analysis_id: int, current_user: AuthenticatedUser
) -> analysis_models.FastqFilePair:
    """업로드된 FastQ 쌍을 분석 담당자의 승인 대기로 넘깁니다."""
    pair = await _get_pair_or_404(db, pair_id)
    if pair.status != FastqFileStatus.UPLOADED:
        raise ConflictError(
            f"FastQ file pair {pair_id} is '{_label(pair.status)}', only uploaded pairs can be submitted",
            code="INVALID_STATUS_TRANSITION",
        )
    ensure_fastq_transition(pair.status, FastqFileStatus.WAIT_FOR_APPROVAL)

    session = await _get_session_or_404(db, pair.lab_session_id)
    pair.status = FastqFileStatus.WAIT_FOR_APPROVAL
    session.analysis_id = analysis_id
    session.request_date_analysis = utcnow()
    if session.lab_testing_id is None:
        session.lab_testing_id = current_user.id
    db.add(pair)
    db.add(session)
    await db.commit()
    logger.info("FastQ file pair %d submitted for approval to user %d", pair_id, analysis_id)

    await notification_services.notify(
        db,
        receiver_id=analysis_id,
        title="FastQ approval requested",
        message=f"FastQ files for {session.labcode} are waiting for your approval.",
        task_type=NotificationTaskType.ANALYSIS_TASK,
        type=NotificationType.ACTION,
        sub_type=NotificationSubType.ASSIGN,
        sender_id=current_user.id,
        labcode=session.labcode,
        barcode=session.barcode,
    )
    return await analysis_crud.fastq_file_pair.get_with_files(db, id=pair_id)


async def approve_fastq(
    db: AsyncSession, *, pair_id: int, current_user: AuthenticatedUser
) -> analysis_models.FastqFilePair:
    pair = await _get_pair_or_404(db, pair_id)
    ensure_fastq_transition(pair.status, FastqFileStatus.APPROVED)

    pair.status = FastqFileStatus.APPROVED
    pair.approve_by = current_user.id
    db.add(pair)
    await db.commit()
    logger.info("FastQ file pair %d approved by user %d", pair_id, current_user.id)

    session = await _get_session_or_404(db, pair.lab_session_id)
    await notification_services.notify(
        db,
        receiver_id=pair.created_by or session.lab_testing_id,
        title="FastQ approved",
        message=f"FastQ files for {session.labcode} have been approved.",
        task_type=NotificationTaskType.LAB_TASK,
        type=NotificationType.INFO,
        sub_type=NotificationSubType.ACCEPT,
        sender_id=current_user.id,
        labcode=session.labcode,
        barcode=session.barcode,
    )
    return await analysis_crud.fastq_file_pair.get_with_files(db, id=pair_id)


async def reject_fastq(
    db: AsyncSession, *, pair_id: int, redo_reason: str, current_user: AuthenticatedUser
) -> analysis_models.FastqFilePair:
    """
    승인 대기 중인 FastQ 쌍을 반려합니다.

    같은 세션에서 진행 중인 ETL 결과는 반려 사유와 함께 FAILED 로 바뀌며,
    두 변경은 한 트랜잭션으로 커밋됩니다.
    """
    pair = await _get_pair_or_404(db, pair_id, statuses=[FastqFileStatus.WAIT_FOR_APPROVAL])
    ensure_fastq_transition(pair.status, FastqFileStatus.REJECTED)

    pair.status = FastqFileStatus.REJECTED
    pair.redo_reason = redo_reason
    pair.reject_by = current_user.id
    db.add(pair)
    cancelled = await workflow_rules.cancel_processing_results_for_rejected_pair(
        db, pair=pair, redo_reason=redo_reason, rejected_by=current_user.id
    )
    await db.commit()
    logger.info(
        "FastQ file pair %d rejected by user %d (%d processing results cancelled)",
        pair_id, current_user.id, len(cancelled),
    )

    session = await _get_session_or_404(db, pair.lab_session_id)
    await notification_services.notify(
        db,
        receiver_id=pair.created_by or session.lab_testing_id,
        title="FastQ rejected",
        message=f"FastQ files for {session.labcode} were rejected: {redo_reason}",
        task_type=NotificationTaskType.LAB_TASK,
        type=NotificationType.ACTION,
        sub_type=NotificationSubType.REJECT,
        sender_id=current_user.id,
        labcode=session.labcode,
        barcode=session.barcode,
    )
    return await analysis_crud.fastq_file_pair.get_with_files(db, id=pair_id)


# =============================================================================
# 3. ETL 결과 워크플로우
# =============================================================================
async def process_analysis(
    db: AsyncSession, *, pair_id: int, current_user: AuthenticatedUser, runner: EtlPipelineRunner
) -> analysis_schemas.AnalysisAccepted:
    """
    승인된 FastQ 쌍으로 ETL 분석을 시작합니다.
    파이프라인은 백그라운드에서 실행되며 이 함수는 즉시 반환합니다.
    """
    pair = await _get_pair_or_404(db, pair_id, statuses=[FastqFileStatus.APPROVED])
    etl = await _claim_processing(db, pair=pair, current_user=current_user)
    logger.info("Analysis requested for pair %d by user %d -> ETL result %d", pair_id, current_user.id, etl.id)

    runner.spawn(etl.id, user_id=current_user.id)
    return analysis_schemas.AnalysisAccepted(message="Analysis started", etl_result_id=etl.id)


async def retry_etl_process(
    db: AsyncSession, *, etl_result_id: int, current_user: AuthenticatedUser, runner: EtlPipelineRunner
) -> analysis_schemas.AnalysisAccepted:
    """
    실패/반려된 ETL 결과를 새 시도로 다시 실행합니다.
    세션의 최신 FastQ 쌍이 승인 대기면 그 자리에서 승인하고, 승인 상태면 그대로 사용합니다.
    """
    etl = await analysis_crud.etl_result.get_with_status(
        db, id=etl_result_id, statuses=[EtlResultStatus.FAILED, EtlResultStatus.REJECTED]
    )
    if etl is None:
        raise NotFoundError(f"ETL result {etl_result_id} not found or not retryable", code="ETL_RESULT_NOT_FOUND")
    await _ensure_no_processing(db, etl.lab_session_id)

    pair = await analysis_crud.fastq_file_pair.get_latest_for_session(db, lab_session_id=etl.lab_session_id)
    if pair is None or pair.status == FastqFileStatus.REJECTED:
        raise BadRequestError(
            f"Lab session {etl.lab_session_id} has no FastQ file pair that can be analysed",
            code="NO_APPROVABLE_FASTQ_PAIR",
        )
    if pair.status == FastqFileStatus.WAIT_FOR_APPROVAL:
        pair.status = FastqFileStatus.APPROVED
        pair.approve_by = current_user.id
        db.add(pair)
        await db.commit()
        logger.info("FastQ file pair %d approved on retry of ETL result %d", pair.id, etl_result_id)

    new_etl = await _claim_processing(db, pair=pair, current_user=current_user)
    logger.info("ETL result %d retried as ETL result %d by user %d", etl_result_id, new_etl.id, current_user.id)

    session = await _get_session_or_404(db, etl.lab_session_id)
    await notification_services.notify(
        db,
        receiver_id=session.analysis_id,
        title="ETL analysis retried",
        message=f"ETL analysis for {session.labcode} was restarted.",
        task_type=NotificationTaskType.ANALYSIS_TASK,
        type=NotificationType.PROCESS,
        sub_type=NotificationSubType.RETRY,
        sender_id=current_user.id,
        labcode=session.labcode,
        barcode=session.barcode,
    )

    runner.spawn(new_etl.id, user_id=current_user.id)
    return analysis_schemas.AnalysisAccepted(message="Analysis restarted", etl_result_id=new_etl.id)


async def send_to_validation(
    db: AsyncSession, *, etl_result_id: int, validation_id: int, current_user: AuthenticatedUser
) -> analysis_models.EtlResult:
    etl = await analysis_crud.etl_result.get_with_status(db, id=etl_result_id, statuses=[EtlResultStatus.COMPLETED])
    if etl is None:
        raise NotFoundError(f"Completed ETL result {etl_result_id} not found", code="ETL_RESULT_NOT_FOUND")
    ensure_etl_transition(etl.status, EtlResultStatus.WAIT_FOR_APPROVAL)

    session = await _get_session_or_404(db, etl.lab_session_id)
    etl.status = EtlResultStatus.WAIT_FOR_APPROVAL
    session.validation_id = validation_id
    session.request_date_validation = utcnow()
    db.add(etl)
    db.add(session)
    await db.commit()
    logger.info("ETL result %d sent to validation (user %d)", etl_result_id, validation_id)

    await notification_services.notify(
        db,
        receiver_id=validation_id,
        title="Validation requested",
        message=f"ETL result for {session.labcode} is waiting for validation.",
        task_type=NotificationTaskType.VALIDATION_TASK,
        type=NotificationType.ACTION,
        sub_type=NotificationSubType.ASSIGN,
        sender_id=current_user.id,
        labcode=session.labcode,
        barcode=session.barcode,
    )
    return etl


async def download_etl_result(
    db: AsyncSession,
    *,
    etl_result_id: int,
    blob_store: S3BlobStore,
    statuses: Sequence[Any] = (EtlResultStatus.COMPLETED,),
) -> analysis_schemas.DownloadUrlResponse:
    """ETL 결과 파일의 제한 시간 다운로드 URL을 발급합니다. 상태는 바꾸지 않습니다."""
    etl = await analysis_crud.etl_result.get(db, id=etl_result_id)
    if etl is None:
        raise NotFoundError(f"ETL result {etl_result_id} not found", code="ETL_RESULT_NOT_FOUND")
    allowed = [getattr(s, "value", s) for s in statuses]
    if etl.status not in allowed:
        raise NotFoundError(
            f"ETL result {etl_result_id} is '{_label(etl.status)}' and cannot be downloaded",
            code="ETL_RESULT_NOT_DOWNLOADABLE",
        )
    if not etl.result_path:
        raise BadRequestError(f"ETL result {etl_result_id} has no result file", code="ETL_RESULT_PATH_EMPTY")

    expires_in = settings.PRESIGNED_URL_EXPIRES_SECONDS
    key = blob_store.extract_key(etl.result_path, settings.S3_RESULT_BUCKET)
    url = await blob_store.presigned_get(settings.S3_RESULT_BUCKET, key, expires_in)
    return analysis_schemas.DownloadUrlResponse(
        download_url=url,
        expires_in=expires_in,
        expires_at=utcnow() + timedelta(seconds=expires_in),
    )


# =============================================================================
# 4. ETL 큐 (외부 파이프라인 완료 이벤트)
# =============================================================================
async def receive_etl_event(db: AsyncSession, *, payload: Dict[str, Any]) -> analysis_schemas.IntakeAccepted:
    """
    완료 이벤트를 검증한 뒤 원본 그대로 PENDING 예약 작업으로 저장합니다.
    처리는 지연 시간이 지난 뒤 스케줄러가 수행하며, 여기서는 절대 처리하지 않습니다.

    Raises:
        pydantic.ValidationError: 이벤트 형식이 잘못된 경우.
    """
    event = analysis_schemas.ExternalEtlEvent.model_validate(payload)
    scheduled_at = utcnow() + timedelta(minutes=settings.ETL_QUEUE_DELAY_MINUTES)
    task = await analysis_crud.scheduled_etl_task.create_pending(db, etl_data=payload, scheduled_at=scheduled_at)
    logger.info(
        "Queued ETL completion event for result %d as task %d (scheduled for %s)",
        event.etl_result_id, task.id, scheduled_at.isoformat(),
    )
    return analysis_schemas.IntakeAccepted(
        message="ETL result queued for processing",
        task_id=task.id,
        scheduled_for=scheduled_at,
    )


async def process_queued_result(
    db: AsyncSession, *, payload: Dict[str, Any], blob_store: S3BlobStore
) -> analysis_schemas.QueuedResultOutcome:
    """
    외부 파이프라인이 보고한 결과를 ETL 결과에 반영합니다.
    PROCESSING 상태의 결과만 COMPLETED 또는 FAILED 로 바꾸며, 그 외는 실패로 보고합니다.
    """
    try:
        event = analysis_schemas.ExternalEtlEvent.model_validate(payload)
    except ValidationError as e:
        return analysis_schemas.QueuedResultOutcome(success=False, message=f"Invalid ETL event payload: {e.error_count()} errors")

    etl = await analysis_crud.etl_result.get(db, id=event.etl_result_id)
    if etl is None:
        return analysis_schemas.QueuedResultOutcome(success=False, message=f"ETL result {event.etl_result_id} not found")
    session = await analysis_crud.lab_session.get(db, id=etl.lab_session_id)
    if session is None:
        return analysis_schemas.QueuedResultOutcome(success=False, message=f"Lab session for ETL result {etl.id} not found")
    if event.labcode and event.labcode != session.labcode:
        return analysis_schemas.QueuedResultOutcome(
            success=False,
            message=f"Labcode mismatch for ETL result {etl.id}: expected {session.labcode}, got {event.labcode}",
        )
    if etl.status != EtlResultStatus.PROCESSING:
        return analysis_schemas.QueuedResultOutcome(
            success=False, message=f"ETL result {etl.id} is '{_label(etl.status)}', expected 'processing'"
        )

    now = utcnow()
    if event.status == "failed":
        ensure_etl_transition(etl.status, EtlResultStatus.FAILED)
        etl.status = EtlResultStatus.FAILED
        etl.comment = f"ETL pipeline failed: {event.error_message or 'failure reported by the ETL service'}"
        etl.etl_completed_queue_at = as_utc(event.complete_time) or now
        title, message = "ETL analysis failed", f"ETL analysis for {session.labcode} failed."
    else:
        result_url = event.result_s3_url or event.html_result or event.excel_result
        if not result_url:
            return analysis_schemas.QueuedResultOutcome(
                success=False, message=f"ETL event for result {etl.id} carries no result location"
            )
        ensure_etl_transition(etl.status, EtlResultStatus.COMPLETED)
        etl.status = EtlResultStatus.COMPLETED
        etl.result_path = blob_store.extract_key(result_url, settings.S3_RESULT_BUCKET)
        etl.etl_completed_at = now
        etl.etl_completed_queue_at = as_utc(event.complete_time) or now
        title, message = "ETL analysis completed", f"ETL analysis for {session.labcode} has completed."

    db.add(etl)
    await db.commit()
    logger.info("Queued ETL result applied: result %d -> %s", etl.id, _label(etl.status))

    await notification_services.notify(
        db,
        receiver_id=session.analysis_id,
        title=title,
        message=message,
        task_type=NotificationTaskType.ANALYSIS_TASK,
        type=NotificationType.PROCESS,
        sender_id=settings.SYSTEM_USER_ID,
        labcode=session.labcode,
        barcode=session.barcode,
    )
    return analysis_schemas.QueuedResultOutcome(success=True, message=f"ETL result {etl.id} marked {_label(etl.status)}")


# =============================================================================
# 5. 세션 조회
# =============================================================================
def _session_has_visible_pair():
    pair = analysis_models.FastqFilePair
    return exists(
        select(pair.id).where(
            pair.lab_session_id == analysis_models.LabSession.id,
            pair.status.in_(list(WORKFLOW_VISIBLE_STATUSES)),
        )
    )


async def list_sessions(
    db: AsyncSession, *, params: analysis_schemas.SessionListParams
) -> analysis_schemas.PaginatedResponse[analysis_schemas.AnalysisSessionListItem]:
    """FastQ 승인 워크플로우에 들어온 세션 목록 (최신 FastQ 쌍 상태 우선순위 -> 최신순)."""
    pair_status = analysis_crud.CRUDLabSession.latest_pair_status_subquery()
    etl_status = analysis_crud.CRUDLabSession.latest_etl_status_subquery()
    sessions, total = await analysis_crud.lab_session.list_paginated(
        db,
        params=params,
        priority_status=pair_status,
        fastq_status=pair_status,
        etl_status=etl_status,
        conditions=[_session_has_visible_pair()],
    )

    session_ids = [s.id for s in sessions]
    pairs = await analysis_crud.fastq_file_pair.get_multi_by_sessions(
        db, session_ids=session_ids, statuses=WORKFLOW_VISIBLE_STATUSES
    )
    results = await analysis_crud.etl_result.get_multi_by_sessions(db, session_ids=session_ids)

    items: List[analysis_schemas.AnalysisSessionListItem] = []
    for session in sessions:
        latest_pair = latest(pairs.get(session.id, []))
        latest_etl = latest(results.get(session.id, []))
        item = analysis_schemas.AnalysisSessionListItem.model_validate(session, from_attributes=True)
        item.latest_fastq_pair = analysis_schemas.FastqFilePairResponse.model_validate(latest_pair) if latest_pair else None
        item.latest_etl_result = analysis_schemas.EtlResultResponse.model_validate(latest_etl) if latest_etl else None
        items.append(item)

    return analysis_schemas.PaginatedResponse[analysis_schemas.AnalysisSessionListItem].build(
        items, page=params.page, limit=params.limit, total=total
    )


async def get_session_detail(db: AsyncSession, *, lab_session_id: int) -> analysis_schemas.AnalysisSessionDetail:
    """세션 상세: 워크플로우 노출 FastQ 쌍과 모든 ETL 결과를 우선순위 -> 최신순으로 포함합니다."""
    session = await _get_session_or_404(db, lab_session_id)
    pairs = await analysis_crud.fastq_file_pair.get_multi_by_sessions(
        db, session_ids=[lab_session_id], statuses=WORKFLOW_VISIBLE_STATUSES
    )
    results = await analysis_crud.etl_result.get_multi_by_sessions(db, session_ids=[lab_session_id])

    detail = analysis_schemas.AnalysisSessionDetail.model_validate(session, from_attributes=True)
    detail.fastq_pairs = [
        analysis_schemas.FastqFilePairResponse.model_validate(p) for p in sort_by_priority(pairs.get(lab_session_id, []))
    ]
    detail.etl_results = [
        analysis_schemas.EtlResultResponse.model_validate(r) for r in sort_by_priority(results.get(lab_session_id, []))
    ]
    return detail
