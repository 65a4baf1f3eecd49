# app/domains/analysis/schemas.py

"""
'analysis' 도메인의 Pydantic 스키마를 정의하는 모듈입니다.

API 요청/응답 스키마와 함께, 외부 ETL 파이프라인이 보내는 완료 이벤트(ExternalEtlEvent)의
형식을 정의합니다. 외부 이벤트는 camelCase 와 snake_case 키를 모두 받습니다.
"""

from typing import Generic, List, Literal, Optional, TypeVar
from datetime import date, datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field as PydanticField

from app.utils.dates import utcnow

from .models import EtlResultStatus, FastqFileStatus, ScheduledTaskStatus

T = TypeVar("T")


# =============================================================================
# 1. 공통 응답
# =============================================================================
class MessageResponse(BaseModel):
    message: str


class PaginationMeta(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class PaginatedResponse(BaseModel, Generic[T]):
    data: List[T]
    meta: PaginationMeta
    success: bool = True
    message: Optional[str] = None
    timestamp: datetime = PydanticField(default_factory=utcnow)

    @classmethod
    def build(cls, data: List[T], *, page: int, limit: int, total: int, message: Optional[str] = None):
        total_pages = (total + limit - 1) // limit if limit else 0
        return cls(
            data=data,
            meta=PaginationMeta(page=page, limit=limit, total=total, total_pages=total_pages),
            message=message,
        )


class SessionListParams(BaseModel):
    """세션 목록 조회용 쿼리 파라미터."""
    page: int = PydanticField(1, ge=1)
    limit: int = PydanticField(10, ge=1, le=100)
    search: Optional[str] = PydanticField(None, max_length=100, description="labcode / barcode / 환자명 부분 일치")
    date_from: Optional[date] = PydanticField(None, description="생성일 시작 (포함)")
    date_to: Optional[date] = PydanticField(None, description="생성일 종료 (포함)")
    filter_fastq: Optional[Literal["wait_for_approval", "approved", "rejected"]] = None
    filter_etl: Optional[Literal["processing", "completed", "failed", "wait_for_approval", "approved", "rejected"]] = None
    sort_by: Optional[Literal["created_at", "labcode", "barcode", "patient_name", "request_date_analysis", "request_date_validation"]] = None
    sort_order: Literal["asc", "desc", "ASC", "DESC"] = "desc"


# =============================================================================
# 2. 레코드 응답
# =============================================================================
class FastqFileResponse(BaseModel):
    id: int
    file_path: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class FastqFilePairResponse(BaseModel):
    id: int
    lab_session_id: int
    status: FastqFileStatus
    redo_reason: Optional[str] = None
    reject_by: Optional[int] = None
    approve_by: Optional[int] = None
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    r1: Optional[FastqFileResponse] = None
    r2: Optional[FastqFileResponse] = None

    class Config:
        from_attributes = True


class EtlResultResponse(BaseModel):
    id: int
    lab_session_id: int
    fastq_file_pair_id: Optional[int] = None
    result_path: str = ""
    status: Optional[EtlResultStatus] = None
    start_time: Optional[datetime] = None
    etl_completed_at: Optional[datetime] = None
    etl_completed_queue_at: Optional[datetime] = None
    redo_reason: Optional[str] = None
    reject_by: Optional[int] = None
    approve_by: Optional[int] = None
    reason_approve: Optional[str] = None
    comment: Optional[str] = None
    comment_by: Optional[int] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class LabSessionResponse(BaseModel):
    id: int
    labcode: str
    barcode: str
    patient_name: Optional[str] = None
    type_lab_session: Optional[str] = None
    lab_testing_id: Optional[int] = None
    analysis_id: Optional[int] = None
    validation_id: Optional[int] = None
    request_date_analysis: Optional[datetime] = None
    request_date_validation: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AnalysisSessionListItem(LabSessionResponse):
    latest_fastq_pair: Optional[FastqFilePairResponse] = None
    latest_etl_result: Optional[EtlResultResponse] = None


class AnalysisSessionDetail(LabSessionResponse):
    fastq_pairs: List[FastqFilePairResponse] = PydanticField(default_factory=list)
    etl_results: List[EtlResultResponse] = PydanticField(default_factory=list)


# =============================================================================
# 3. 요청 스키마
# =============================================================================
class RejectFastqRequest(BaseModel):
    redo_reason: str = PydanticField(
        min_length=1, max_length=500,
        validation_alias=AliasChoices("redo_reason", "redoReason"),
        description="반려 사유 (필수)",
    )


class SubmitFastqRequest(BaseModel):
    analysis_id: int = PydanticField(
        validation_alias=AliasChoices("analysis_id", "analysisId"),
        description="분석을 담당할 사용자 ID",
    )


class SendToValidationRequest(BaseModel):
    validation_id: int = PydanticField(
        validation_alias=AliasChoices("validation_id", "validationId"),
        description="검증을 담당할 사용자 ID",
    )


class AnalysisAccepted(BaseModel):
    """분석 시작 요청에 대한 즉시 응답. 파이프라인 결과는 이후 조회로 확인합니다."""
    message: str
    etl_result_id: int


class DownloadUrlResponse(BaseModel):
    download_url: str
    expires_in: int
    expires_at: datetime


# =============================================================================
# 4. ETL 큐 (외부 파이프라인 완료 이벤트)
# =============================================================================
class ExternalEtlEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    etl_result_id: int = PydanticField(validation_alias=AliasChoices("etlResultId", "etl_result_id"))
    labcode: Optional[str] = None
    barcode: Optional[str] = None
    lane: Optional[str] = None
    fastq_1_url: Optional[str] = PydanticField(None, validation_alias=AliasChoices("fastq_1_url", "fastq1Url"))
    fastq_2_url: Optional[str] = PydanticField(None, validation_alias=AliasChoices("fastq_2_url", "fastq2Url"))
    genome: Optional[str] = None
    html_result: Optional[str] = PydanticField(None, validation_alias=AliasChoices("htmlResult", "html_result"))
    excel_result: Optional[str] = PydanticField(None, validation_alias=AliasChoices("excelResult", "excel_result"))
    complete_time: Optional[datetime] = PydanticField(None, validation_alias=AliasChoices("complete_time", "completeTime"))
    result_s3_url: Optional[str] = PydanticField(None, validation_alias=AliasChoices("resultS3Url", "result_s3_url"))
    status: Literal["completed", "failed"] = "completed"
    error_message: Optional[str] = PydanticField(None, validation_alias=AliasChoices("errorMessage", "error_message"))


class IntakeAccepted(BaseModel):
    message: str
    success: bool = True
    task_id: int = PydanticField(serialization_alias="taskId")
    scheduled_for: datetime = PydanticField(serialization_alias="scheduledFor")


class QueuedResultOutcome(BaseModel):
    success: bool
    message: str


class ScheduledEtlTaskResponse(BaseModel):
    id: int
    etl_data: dict
    scheduled_at: datetime
    status: ScheduledTaskStatus
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    class Config:
        from_attributes = True
