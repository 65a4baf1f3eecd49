# app/domains/analysis/models.py

"""
'analysis' 도메인의 데이터베이스 ORM 모델을 정의하는 모듈입니다.

검사 세션(LabSession)과 그에 속한 FastQ 파일/파일 쌍, ETL 결과, 그리고
외부 파이프라인의 완료 이벤트를 지연 처리하기 위한 예약 작업(ScheduledEtlTask)을 포함합니다.
레코드는 감사 이력으로 남기 때문에 삭제하지 않습니다.
"""

from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime, UTC

from sqlalchemy import Index, JSON, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from sqlalchemy.types import TIMESTAMP

from sqlmodel import Field, Relationship, SQLModel, Column


# =============================================================================
# 상태 열거형
# =============================================================================
class FastqFileStatus(str, Enum):
    UPLOADED = "uploaded"
    WAIT_FOR_APPROVAL = "wait_for_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


class EtlResultStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    WAIT_FOR_APPROVAL = "wait_for_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


class ScheduledTaskStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


def _created_at_column() -> Column:
    return Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)


# =============================================================================
# 1. lab_sessions 테이블 모델
# =============================================================================
class LabSession(SQLModel, table=True):
    __tablename__ = "lab_sessions"

    id: Optional[int] = Field(default=None, primary_key=True)
    labcode: str = Field(max_length=50, unique=True, index=True, description="검사 코드")
    barcode: str = Field(max_length=50, index=True, description="환자 검체 바코드")
    patient_name: Optional[str] = Field(default=None, max_length=255, description="환자명")
    type_lab_session: Optional[str] = Field(default=None, max_length=50, description="검사 유형")

    # 담당자 (외부 인증 서비스의 사용자 ID)
    lab_testing_id: Optional[int] = Field(default=None, description="검사 담당자 ID")
    analysis_id: Optional[int] = Field(default=None, index=True, description="분석 담당자 ID")
    validation_id: Optional[int] = Field(default=None, index=True, description="검증 담당자 ID")

    request_date_analysis: Optional[datetime] = Field(
        default=None, sa_column=Column(TIMESTAMP(timezone=True)), description="분석 요청 일시"
    )
    request_date_validation: Optional[datetime] = Field(
        default=None, sa_column=Column(TIMESTAMP(timezone=True)), description="검증 요청 일시"
    )
    finished_at: Optional[datetime] = Field(
        default=None, sa_column=Column(TIMESTAMP(timezone=True)), description="검증 승인(종료) 일시"
    )
    created_at: Optional[datetime] = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=_created_at_column(),
        description="레코드 생성 일시"
    )
    updated_at: Optional[datetime] = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now()),
        description="레코드 마지막 업데이트 일시"
    )


# =============================================================================
# 2. fastq_files 테이블 모델 (시퀀서 출력 파일 한 개)
# =============================================================================
class FastqFile(SQLModel, table=True):
    __tablename__ = "fastq_files"

    id: Optional[int] = Field(default=None, primary_key=True)
    lab_session_id: int = Field(foreign_key="lab_sessions.id", index=True)
    file_path: Optional[str] = Field(default=None, max_length=1024, description="FastQ 버킷 내 객체 키")
    created_by: Optional[int] = Field(default=None, description="업로드한 사용자 ID")
    created_at: Optional[datetime] = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=_created_at_column(),
    )


# =============================================================================
# 3. fastq_file_pairs 테이블 모델 (R1/R2 쌍, 승인 워크플로우 상태 보유)
# =============================================================================
class FastqFilePair(SQLModel, table=True):
    __tablename__ = "fastq_file_pairs"

    id: Optional[int] = Field(default=None, primary_key=True)
    lab_session_id: int = Field(foreign_key="lab_sessions.id", index=True)
    fastq_file_r1_id: Optional[int] = Field(default=None, foreign_key="fastq_files.id")
    fastq_file_r2_id: Optional[int] = Field(default=None, foreign_key="fastq_files.id")
    status: FastqFileStatus = Field(
        default=FastqFileStatus.UPLOADED,
        sa_column=Column(String(32), nullable=False, index=True),
    )
    redo_reason: Optional[str] = Field(default=None, max_length=500, description="반려 사유")
    reject_by: Optional[int] = Field(default=None, description="반려한 사용자 ID")
    approve_by: Optional[int] = Field(default=None, description="승인한 사용자 ID")
    created_by: Optional[int] = Field(default=None, description="업로드한 사용자 ID")
    created_at: Optional[datetime] = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=_created_at_column(),
    )

    # --- 관계 정의 (다대일, 조회 시 즉시 로딩) ---
    lab_session: Optional[LabSession] = Relationship(sa_relationship_kwargs={"lazy": "selectin"})
    r1: Optional[FastqFile] = Relationship(
        sa_relationship_kwargs={"lazy": "selectin", "foreign_keys": "[FastqFilePair.fastq_file_r1_id]"}
    )
    r2: Optional[FastqFile] = Relationship(
        sa_relationship_kwargs={"lazy": "selectin", "foreign_keys": "[FastqFilePair.fastq_file_r2_id]"}
    )

    @property
    def has_both_mates(self) -> bool:
        return bool(self.r1 and self.r1.file_path and self.r2 and self.r2.file_path)


# =============================================================================
# 4. etl_results 테이블 모델
# =============================================================================
class EtlResult(SQLModel, table=True):
    __tablename__ = "etl_results"
    # 세션당 PROCESSING 상태의 ETL 결과는 최대 1건
    __table_args__ = (
        Index(
            "uq_etl_results_session_processing",
            "lab_session_id",
            unique=True,
            postgresql_where=text("status = 'processing'"),
            sqlite_where=text("status = 'processing'"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    lab_session_id: int = Field(foreign_key="lab_sessions.id", index=True)
    fastq_file_pair_id: Optional[int] = Field(default=None, foreign_key="fastq_file_pairs.id")
    result_path: str = Field(default="", max_length=1024, description="결과 버킷 내 객체 키")
    status: Optional[EtlResultStatus] = Field(
        default=None,
        sa_column=Column(String(32), nullable=True, index=True),
    )
    start_time: Optional[datetime] = Field(
        default=None, sa_column=Column(TIMESTAMP(timezone=True), index=True), description="파이프라인 시작 일시"
    )
    etl_completed_at: Optional[datetime] = Field(
        default=None, sa_column=Column(TIMESTAMP(timezone=True)), description="ETL 완료 처리 일시"
    )
    etl_completed_queue_at: Optional[datetime] = Field(
        default=None, sa_column=Column(TIMESTAMP(timezone=True)), description="외부 파이프라인이 보고한 완료 일시"
    )
    redo_reason: Optional[str] = Field(default=None, max_length=500, description="검증 반려 사유")
    reject_by: Optional[int] = Field(default=None)
    approve_by: Optional[int] = Field(default=None)
    reason_approve: Optional[str] = Field(default=None, max_length=500, description="검증 승인 코멘트")
    comment: Optional[str] = Field(default=None, description="진단 메시지 또는 코멘트")
    comment_by: Optional[int] = Field(default=None)
    created_at: Optional[datetime] = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=_created_at_column(),
    )

    lab_session: Optional[LabSession] = Relationship(sa_relationship_kwargs={"lazy": "selectin"})
    fastq_pair: Optional[FastqFilePair] = Relationship(sa_relationship_kwargs={"lazy": "selectin"})


# =============================================================================
# 5. scheduled_etl_tasks 테이블 모델
# =============================================================================
class ScheduledEtlTask(SQLModel, table=True):
    __tablename__ = "scheduled_etl_tasks"

    id: Optional[int] = Field(default=None, primary_key=True)
    etl_data: Dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON().with_variant(JSONB, "postgresql"), nullable=False),
        description="수신한 ETL 완료 이벤트 원본"
    )
    scheduled_at: datetime = Field(sa_column=Column(TIMESTAMP(timezone=True), nullable=False, index=True))
    status: ScheduledTaskStatus = Field(
        default=ScheduledTaskStatus.PENDING,
        sa_column=Column(String(16), nullable=False, index=True),
    )
    created_at: Optional[datetime] = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=_created_at_column(),
    )
    processed_at: Optional[datetime] = Field(default=None, sa_column=Column(TIMESTAMP(timezone=True)))
    error_message: Optional[str] = Field(default=None)
