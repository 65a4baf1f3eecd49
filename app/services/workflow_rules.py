# app/services/workflow_rules.py

"""
FastQ 파일 쌍과 ETL 결과 사이에 걸친 상태 전이 규칙을 처리하는 모듈입니다.

각 규칙은 주된 전이를 처리하는 서비스 함수에서 명시적으로 호출됩니다.
규칙은 변경된 레코드를 세션에 추가만 하고 커밋하지 않으므로, 호출한 쪽이
주된 전이와 함께 한 트랜잭션으로 커밋합니다.
"""

import logging
from typing import List, Optional

from sqlmodel.ext.asyncio.session import AsyncSession

from app.domains.analysis import crud as analysis_crud
from app.domains.analysis import models as analysis_models
from app.domains.analysis.ordering import WORKFLOW_VISIBLE_STATUSES
from app.domains.analysis.transitions import ensure_fastq_transition

logger = logging.getLogger(__name__)


async def cancel_processing_results_for_rejected_pair(
    db: AsyncSession,
    *,
    pair: analysis_models.FastqFilePair,
    redo_reason: str,
    rejected_by: int,
) -> List[analysis_models.EtlResult]:
    """
    FastQ 반려 시, 같은 세션에서 PROCESSING 중인 ETL 결과를 FAILED 로 바꿉니다.

    Args:
        pair (FastqFilePair): 방금 반려된 FastQ 파일 쌍.
        redo_reason (str): 반려 사유. ETL 결과의 comment 에 그대로 포함됩니다.
        rejected_by (int): 반려한 사용자 ID.

    Returns:
        List[EtlResult]: FAILED 로 바뀐 ETL 결과 목록.
    """
    processing = await analysis_crud.etl_result.get_processing_for_session(db, lab_session_id=pair.lab_session_id)
    for etl in processing:
        etl.status = analysis_models.EtlResultStatus.FAILED
        etl.comment = f"Cancelled because FastQ file pair {pair.id} was rejected by user {rejected_by}: {redo_reason}"
        etl.comment_by = rejected_by
        db.add(etl)
        logger.info("ETL result %d cancelled by FastQ rejection of pair %d", etl.id, pair.id)
    return processing


async def reopen_latest_fastq_for_rejected_result(
    db: AsyncSession,
    *,
    etl: analysis_models.EtlResult,
) -> Optional[analysis_models.FastqFilePair]:
    """
    검증 단계에서 ETL 결과가 반려되면, 세션의 최신 FastQ 파일 쌍을 승인 대기로 되돌립니다.
    최신 쌍이 이미 승인 대기이거나 없으면 그대로 둡니다.
    """
    latest_pair = await analysis_crud.fastq_file_pair.get_latest_for_session(
        db, lab_session_id=etl.lab_session_id, statuses=WORKFLOW_VISIBLE_STATUSES
    )
    if latest_pair is None:
        logger.warning("No FastQ file pair to reopen for lab session %d", etl.lab_session_id)
        return None

    if latest_pair.status != analysis_models.FastqFileStatus.WAIT_FOR_APPROVAL:
        ensure_fastq_transition(latest_pair.status, analysis_models.FastqFileStatus.WAIT_FOR_APPROVAL)
        logger.info(
            "Reopening FastQ file pair %d (%s -> wait_for_approval) after ETL result %d was rejected",
            latest_pair.id, latest_pair.status, etl.id,
        )
        latest_pair.status = analysis_models.FastqFileStatus.WAIT_FOR_APPROVAL
        latest_pair.approve_by = None
        db.add(latest_pair)
    return latest_pair
