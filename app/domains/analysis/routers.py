# app/domains/analysis/routers.py

"""
'analysis' 도메인 (FastQ 승인 및 ETL 분석)과 관련된 API 엔드포인트를 정의하는 모듈입니다.

- router: 분석 담당자용 세션 조회, FastQ 승인/반려, 분석 시작/재시도, 결과 다운로드, 검증 요청
- queue_router: 외부 ETL 파이프라인의 완료 이벤트 접수
"""

import logging
from datetime import date
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Body, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core import dependencies as deps
from app.core.security import AuthenticatedUser
from app.core.storage import S3BlobStore

from . import schemas as analysis_schemas
from . import services as analysis_services
from .pipeline import EtlPipelineRunner

logger = logging.getLogger(__name__)

# 라우터 인스턴스 생성 (prefix는 main.py에서 관리)
router = APIRouter(
    tags=["Analysis (FastQ 승인 및 ETL 분석)"],
    responses={404: {"description": "Not found"}},
)

queue_router = APIRouter(
    tags=["Analysis Queue (ETL 완료 이벤트 접수)"],
)


# =============================================================================
# 1. 세션 조회
# =============================================================================
@router.get(
    "/sessions",
    response_model=analysis_schemas.PaginatedResponse[analysis_schemas.AnalysisSessionListItem],
    summary="분석 세션 목록 조회",
)
async def read_sessions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100, description="labcode / barcode / 환자명"),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    filter_fastq: Optional[Literal["wait_for_approval", "approved", "rejected"]] = Query(None),
    filter_etl: Optional[Literal["processing", "completed", "failed", "wait_for_approval", "approved", "rejected"]] = Query(None),
    sort_by: Optional[Literal["created_at", "labcode", "barcode", "patient_name", "request_date_analysis", "request_date_validation"]] = Query(None),
    sort_order: Literal["asc", "desc", "ASC", "DESC"] = Query("desc"),
    db: AsyncSession = Depends(deps.get_db_session),
    current_user: AuthenticatedUser = Depends(deps.require_analysis_technician),
):
    """
    FastQ 승인 워크플로우에 들어온 세션 목록을 반환합니다.
    정렬 필드를 지정하지 않으면 최신 FastQ 쌍 상태의 우선순위(승인 대기 -> 반려 -> 승인) 다음 최신순입니다.
    """
    params = analysis_schemas.SessionListParams(
        page=page, limit=limit, search=search, date_from=date_from, date_to=date_to,
        filter_fastq=filter_fastq, filter_etl=filter_etl, sort_by=sort_by, sort_order=sort_order,
    )
    return await analysis_services.list_sessions(db, params=params)


@router.get("/sessions/{lab_session_id}", response_model=analysis_schemas.AnalysisSessionDetail, summary="분석 세션 상세 조회")
async def read_session(
    lab_session_id: int,
    db: AsyncSession = Depends(deps.get_db_session),
    current_user: AuthenticatedUser = Depends(deps.require_analysis_technician),
):
    return await analysis_services.get_session_detail(db, lab_session_id=lab_session_id)


# =============================================================================
# 2. FastQ 파일 쌍 승인 워크플로우
# =============================================================================
@router.post("/fastq/{pair_id}/submit", response_model=analysis_schemas.FastqFilePairResponse, summary="FastQ 승인 요청 (검사 담당자)")
async def submit_fastq(
    pair_id: int,
    request: analysis_schemas.SubmitFastqRequest,
    db: AsyncSession = Depends(deps.get_db_session),
    current_user: AuthenticatedUser = Depends(deps.require_lab_testing_technician),
):
    return await analysis_services.submit_fastq_for_approval(
        db, pair_id=pair_id, analysis_id=request.analysis_id, current_user=current_user
    )


@router.post("/fastq/{pair_id}/approve", response_model=analysis_schemas.FastqFilePairResponse, summary="FastQ 승인")
async def approve_fastq(
    pair_id: int,
    db: AsyncSession = Depends(deps.get_db_session),
    current_user: AuthenticatedUser = Depends(deps.require_analysis_technician),
):
    return await analysis_services.approve_fastq(db, pair_id=pair_id, current_user=current_user)


@router.post("/fastq/{pair_id}/reject", response_model=analysis_schemas.FastqFilePairResponse, summary="FastQ 반려")
async def reject_fastq(
    pair_id: int,
    request: analysis_schemas.RejectFastqRequest,
    db: AsyncSession = Depends(deps.get_db_session),
    current_user: AuthenticatedUser = Depends(deps.require_analysis_technician),
):
    """반려 사유는 필수입니다. 같은 세션에서 진행 중인 분석은 실패로 처리됩니다."""
    return await analysis_services.reject_fastq(
        db, pair_id=pair_id, redo_reason=request.redo_reason, current_user=current_user
    )


# =============================================================================
# 3. ETL 분석
# =============================================================================
@router.post(
    "/process/{pair_id}",
    response_model=analysis_schemas.AnalysisAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="ETL 분석 시작",
)
async def process_analysis(
    pair_id: int,
    db: AsyncSession = Depends(deps.get_db_session),
    runner: EtlPipelineRunner = Depends(deps.get_pipeline_runner),
    current_user: AuthenticatedUser = Depends(deps.require_analysis_technician),
):
    """
    승인된 FastQ 쌍으로 분석을 시작하고 즉시 응답합니다.
    파이프라인 결과는 세션 조회로 확인합니다.
    """
    return await analysis_services.process_analysis(db, pair_id=pair_id, current_user=current_user, runner=runner)


@router.post(
    "/etl-result/{etl_result_id}/retry",
    response_model=analysis_schemas.AnalysisAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="ETL 분석 재시도",
)
async def retry_etl_process(
    etl_result_id: int,
    db: AsyncSession = Depends(deps.get_db_session),
    runner: EtlPipelineRunner = Depends(deps.get_pipeline_runner),
    current_user: AuthenticatedUser = Depends(deps.require_analysis_technician),
):
    return await analysis_services.retry_etl_process(
        db, etl_result_id=etl_result_id, current_user=current_user, runner=runner
    )


@router.get("/etl-result/{etl_result_id}/download", response_model=analysis_schemas.DownloadUrlResponse, summary="ETL 결과 다운로드 URL 발급")
async def download_etl_result(
    etl_result_id: int,
    db: AsyncSession = Depends(deps.get_db_session),
    blob_store: S3BlobStore = Depends(deps.get_blob_store),
    current_user: AuthenticatedUser = Depends(deps.require_analysis_technician),
):
    return await analysis_services.download_etl_result(db, etl_result_id=etl_result_id, blob_store=blob_store)


@router.post(
    "/etl-result/{etl_result_id}/send-to-validation",
    response_model=analysis_schemas.EtlResultResponse,
    summary="ETL 결과 검증 요청",
)
async def send_to_validation(
    etl_result_id: int,
    request: analysis_schemas.SendToValidationRequest,
    db: AsyncSession = Depends(deps.get_db_session),
    current_user: AuthenticatedUser = Depends(deps.require_analysis_technician),
):
    return await analysis_services.send_to_validation(
        db, etl_result_id=etl_result_id, validation_id=request.validation_id, current_user=current_user
    )


# =============================================================================
# 4. ETL 큐 접수
# =============================================================================
@queue_router.post(
    "/result",
    response_model=analysis_schemas.IntakeAccepted,
    response_model_by_alias=True,
    status_code=status.HTTP_202_ACCEPTED,
    summary="외부 ETL 완료 이벤트 접수",
    dependencies=[Depends(deps.verify_queue_token)],
)
async def receive_etl_result(
    payload: Dict[str, Any] = Body(...),
    db: AsyncSession = Depends(deps.get_db_session),
):
    """
    이벤트를 예약 작업으로 저장하고 예약 시각을 돌려줍니다. 처리는 스케줄러가 지연 후 수행합니다.
    """
    try:
        return await analysis_services.receive_etl_event(db, payload=payload)
    except ValidationError as e:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": "Invalid ETL event payload",
                "details": e.errors(include_url=False, include_context=False, include_input=False),
                "success": False,
            },
        )
    except SQLAlchemyError as e:
        logger.exception("Failed to queue ETL completion event")
        await db.rollback()
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Failed to queue ETL result", "details": str(e), "success": False},
        )
