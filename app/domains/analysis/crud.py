# app/domains/analysis/crud.py

"""
'analysis' 도메인의 CRUD 로직을 담당하는 모듈입니다.

상태 전이 자체는 services.py 에서 수행하며, 이 모듈은 상태 조건이 붙은 조회와
세션 목록의 필터/정렬/페이지네이션 쿼리를 제공합니다.
"""

from collections import defaultdict
from datetime import datetime, time, timedelta, UTC
from typing import Dict, List, Optional, Sequence, Tuple, Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import selectinload
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.crud_base import CRUDBase

from . import models as analysis_models
from . import schemas as analysis_schemas
from .ordering import WORKFLOW_VISIBLE_STATUSES, status_priority_case

VALIDATION_VISIBLE_STATUSES = (
    analysis_models.EtlResultStatus.WAIT_FOR_APPROVAL.value,
    analysis_models.EtlResultStatus.APPROVED.value,
    analysis_models.EtlResultStatus.REJECTED.value,
)


def _values(statuses: Optional[Sequence[Any]]) -> Optional[List[str]]:
    if statuses is None:
        return None
    return [getattr(s, "value", s) for s in statuses]


def _etl_context_options():
    """ETL 결과와 함께 세션, FastQ 쌍, R1/R2 파일을 즉시 로딩합니다."""
    etl = analysis_models.EtlResult
    pair = analysis_models.FastqFilePair
    return (
        selectinload(etl.lab_session),
        selectinload(etl.fastq_pair).selectinload(pair.r1),
        selectinload(etl.fastq_pair).selectinload(pair.r2),
    )


# =============================================================================
# 1. 검사 세션 (LabSession) CRUD
# =============================================================================
class CRUDLabSession(CRUDBase[analysis_models.LabSession, analysis_schemas.LabSessionResponse, analysis_schemas.LabSessionResponse]):
    def __init__(self):
        super().__init__(model=analysis_models.LabSession)

    @staticmethod
    def latest_pair_status_subquery(statuses: Sequence[str] = WORKFLOW_VISIBLE_STATUSES):
        pair = analysis_models.FastqFilePair
        return (
            select(pair.status)
            .where(pair.lab_session_id == analysis_models.LabSession.id, pair.status.in_(list(statuses)))
            .order_by(pair.created_at.desc(), pair.id.desc())
            .limit(1)
            .correlate(analysis_models.LabSession)
            .scalar_subquery()
        )

    @staticmethod
    def latest_etl_status_subquery(statuses: Optional[Sequence[str]] = None):
        etl = analysis_models.EtlResult
        statement = select(etl.status).where(etl.lab_session_id == analysis_models.LabSession.id)
        if statuses is not None:
            statement = statement.where(etl.status.in_(list(statuses)))
        return (
            statement
            .order_by(etl.created_at.desc(), etl.id.desc())
            .limit(1)
            .correlate(analysis_models.LabSession)
            .scalar_subquery()
        )

    async def list_paginated(
        self,
        db: AsyncSession,
        *,
        params: analysis_schemas.SessionListParams,
        priority_status,
        fastq_status=None,
        etl_status=None,
        conditions: Sequence[Any] = (),
    ) -> Tuple[List[analysis_models.LabSession], int]:
        """
        세션 목록을 필터링/정렬/페이지네이션 하여 (목록, 전체 건수)를 반환합니다.

        - priority_status: 기본 정렬(우선순위)에 쓰는 상태 스칼라 서브쿼리
        - fastq_status / etl_status: filter_fastq / filter_etl 비교 대상 서브쿼리
        """
        model = self.model
        statement = select(model).where(*conditions)

        # 1. 검색 / 기간 필터
        if params.search:
            pattern = f"%{params.search.strip()}%"
            statement = statement.where(or_(
                model.labcode.ilike(pattern),
                model.barcode.ilike(pattern),
                model.patient_name.ilike(pattern),
            ))
        if params.date_from:
            statement = statement.where(model.created_at >= datetime.combine(params.date_from, time.min, tzinfo=UTC))
        if params.date_to:
            # date_to 당일까지 포함
            statement = statement.where(model.created_at < datetime.combine(params.date_to + timedelta(days=1), time.min, tzinfo=UTC))

        # 2. 상태 필터
        if params.filter_fastq and fastq_status is not None:
            statement = statement.where(fastq_status == params.filter_fastq)
        if params.filter_etl and etl_status is not None:
            statement = statement.where(etl_status == params.filter_etl)

        count_statement = select(func.count()).select_from(statement.subquery())
        total = (await db.execute(count_statement)).scalar_one()

        # 3. 정렬: 지정 필드 또는 워크플로우 우선순위 -> 최신순
        if params.sort_by:
            column = getattr(model, params.sort_by)
            ordering = column.asc() if params.sort_order.lower() == "asc" else column.desc()
            statement = statement.order_by(ordering, model.id.desc())
        else:
            statement = statement.order_by(
                status_priority_case(priority_status), model.created_at.desc(), model.id.desc()
            )

        statement = statement.offset((params.page - 1) * params.limit).limit(params.limit)
        result = await db.execute(statement)
        return list(result.scalars().all()), total


lab_session = CRUDLabSession()


# =============================================================================
# 2. FastQ 파일 쌍 (FastqFilePair) CRUD
# =============================================================================
class CRUDFastqFilePair(CRUDBase[analysis_models.FastqFilePair, analysis_schemas.FastqFilePairResponse, analysis_schemas.FastqFilePairResponse]):
    def __init__(self):
        super().__init__(model=analysis_models.FastqFilePair)

    def _select(self):
        """R1/R2 파일을 함께 읽는 기본 조회문."""
        return select(self.model).options(
            selectinload(self.model.r1), selectinload(self.model.r2)
        ).execution_options(populate_existing=True)

    async def get_with_files(self, db: AsyncSession, *, id: int) -> Optional[analysis_models.FastqFilePair]:
        result = await db.execute(self._select().where(self.model.id == id))
        return result.scalars().one_or_none()

    async def get_with_status(
        self, db: AsyncSession, *, id: int, statuses: Sequence[Any]
    ) -> Optional[analysis_models.FastqFilePair]:
        """ID 와 상태 조건을 모두 만족하는 FastQ 파일 쌍을 조회합니다."""
        statement = self._select().where(self.model.id == id, self.model.status.in_(_values(statuses)))
        result = await db.execute(statement)
        return result.scalars().one_or_none()

    async def get_multi_by_sessions(
        self, db: AsyncSession, *, session_ids: Sequence[int], statuses: Optional[Sequence[Any]] = None
    ) -> Dict[int, List[analysis_models.FastqFilePair]]:
        if not session_ids:
            return {}
        statement = self._select().where(self.model.lab_session_id.in_(list(session_ids)))
        if statuses is not None:
            statement = statement.where(self.model.status.in_(_values(statuses)))
        result = await db.execute(statement)
        grouped: Dict[int, List[analysis_models.FastqFilePair]] = defaultdict(list)
        for pair in result.scalars().all():
            grouped[pair.lab_session_id].append(pair)
        return grouped

    async def get_latest_for_session(
        self, db: AsyncSession, *, lab_session_id: int, statuses: Sequence[Any] = WORKFLOW_VISIBLE_STATUSES
    ) -> Optional[analysis_models.FastqFilePair]:
        """워크플로우 노출 상태 중 가장 최근에 생성된 FastQ 쌍 (동률이면 큰 ID)."""
        statement = (
            self._select()
            .where(self.model.lab_session_id == lab_session_id, self.model.status.in_(_values(statuses)))
            .order_by(self.model.created_at.desc(), self.model.id.desc())
            .limit(1)
        )
        result = await db.execute(statement)
        return result.scalars().first()


fastq_file_pair = CRUDFastqFilePair()


# =============================================================================
# 3. ETL 결과 (EtlResult) CRUD
# =============================================================================
class CRUDEtlResult(CRUDBase[analysis_models.EtlResult, analysis_schemas.EtlResultResponse, analysis_schemas.EtlResultResponse]):
    def __init__(self):
        super().__init__(model=analysis_models.EtlResult)

    async def get_with_status(
        self, db: AsyncSession, *, id: int, statuses: Sequence[Any]
    ) -> Optional[analysis_models.EtlResult]:
        statement = select(self.model).where(self.model.id == id, self.model.status.in_(_values(statuses)))
        result = await db.execute(statement)
        return result.scalars().one_or_none()

    async def get_with_context(self, db: AsyncSession, *, id: int) -> Optional[analysis_models.EtlResult]:
        """파이프라인 실행에 필요한 연관 레코드를 함께 읽어 최신 상태로 반환합니다."""
        statement = (
            select(self.model)
            .where(self.model.id == id)
            .options(*_etl_context_options())
            .execution_options(populate_existing=True)
        )
        result = await db.execute(statement)
        return result.scalars().one_or_none()

    async def get_processing_for_session(
        self, db: AsyncSession, *, lab_session_id: int, exclude_id: Optional[int] = None
    ) -> List[analysis_models.EtlResult]:
        statement = select(self.model).where(
            self.model.lab_session_id == lab_session_id,
            self.model.status == analysis_models.EtlResultStatus.PROCESSING.value,
        )
        if exclude_id is not None:
            statement = statement.where(self.model.id != exclude_id)
        result = await db.execute(statement)
        return list(result.scalars().all())

    async def get_multi_by_sessions(
        self, db: AsyncSession, *, session_ids: Sequence[int], statuses: Optional[Sequence[Any]] = None
    ) -> Dict[int, List[analysis_models.EtlResult]]:
        if not session_ids:
            return {}
        statement = select(self.model).where(self.model.lab_session_id.in_(list(session_ids)))
        if statuses is not None:
            statement = statement.where(self.model.status.in_(_values(statuses)))
        result = await db.execute(statement)
        grouped: Dict[int, List[analysis_models.EtlResult]] = defaultdict(list)
        for etl in result.scalars().all():
            grouped[etl.lab_session_id].append(etl)
        return grouped

    async def get_stale_processing(self, db: AsyncSession, *, cutoff: datetime) -> List[analysis_models.EtlResult]:
        """cutoff 이전에 시작되어 아직 PROCESSING 인 결과 (세션/FastQ 쌍은 즉시 로딩)."""
        statement = (
            select(self.model)
            .where(
                self.model.status == analysis_models.EtlResultStatus.PROCESSING.value,
                self.model.start_time < cutoff,
            )
            .options(*_etl_context_options())
            .execution_options(populate_existing=True)
            .order_by(self.model.start_time, self.model.id)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())


etl_result = CRUDEtlResult()


# =============================================================================
# 4. 예약 ETL 작업 (ScheduledEtlTask) CRUD
# =============================================================================
class CRUDScheduledEtlTask(CRUDBase[analysis_models.ScheduledEtlTask, analysis_schemas.ScheduledEtlTaskResponse, analysis_schemas.ScheduledEtlTaskResponse]):
    def __init__(self):
        super().__init__(model=analysis_models.ScheduledEtlTask)

    async def create_pending(
        self, db: AsyncSession, *, etl_data: Dict[str, Any], scheduled_at: datetime
    ) -> analysis_models.ScheduledEtlTask:
        task = self.model(
            etl_data=etl_data,
            scheduled_at=scheduled_at,
            status=analysis_models.ScheduledTaskStatus.PENDING,
        )
        return await self.save(db, task)

    async def get_due(self, db: AsyncSession, *, now: datetime) -> List[analysis_models.ScheduledEtlTask]:
        """scheduled_at < now 인 PENDING 작업 (같은 시각은 제외)."""
        statement = (
            select(self.model)
            .where(
                self.model.status == analysis_models.ScheduledTaskStatus.PENDING.value,
                self.model.scheduled_at < now,
            )
            .order_by(self.model.scheduled_at, self.model.id)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())


scheduled_etl_task = CRUDScheduledEtlTask()
