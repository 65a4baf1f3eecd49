# app/domains/validation/routers.py

"""
'validation' 도메인 (ETL 결과 검증)과 관련된 API 엔드포인트를 정의하는 모듈입니다.
모든 엔드포인트는 검증 담당자(VALIDATION_TECHNICIAN) 역할이 필요합니다.
"""

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core import dependencies as deps
from app.core.security import AuthenticatedUser
from app.core.storage import S3BlobStore
from app.domains.analysis import schemas as analysis_schemas

from . import schemas as validation_schemas
from . import services as validation_services


router = APIRouter(
    tags=["Validation (ETL 결과 검증)"],
    responses={404: {"description": "Not found"}},
)


@router.get(
    "/sessions",
    response_model=analysis_schemas.PaginatedResponse[validation_schemas.ValidationSessionListItem],
    summary="검증 세션 목록 조회",
)
async def read_sessions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100, description="labcode / barcode"),
    filter_etl: Optional[Literal["wait_for_approval", "approved", "rejected"]] = Query(None),
    db: AsyncSession = Depends(deps.get_db_session),
    current_user: AuthenticatedUser = Depends(deps.require_validation_technician),
):
    params = analysis_schemas.SessionListParams(page=page, limit=limit, search=search, filter_etl=filter_etl)
    return await validation_services.list_sessions(db, params=params, current_user=current_user)


@router.get("/sessions/{lab_session_id}", response_model=validation_schemas.ValidationSessionDetail, summary="검증 세션 상세 조회")
async def read_session(
    lab_session_id: int,
    db: AsyncSession = Depends(deps.get_db_session),
    current_user: AuthenticatedUser = Depends(deps.require_validation_technician),
):
    return await validation_services.get_session(db, lab_session_id=lab_session_id, current_user=current_user)


@router.get("/etl-result/{etl_result_id}/download", response_model=analysis_schemas.DownloadUrlResponse, summary="검증 대상 결과 다운로드 URL 발급")
async def download_etl_result(
    etl_result_id: int,
    db: AsyncSession = Depends(deps.get_db_session),
    blob_store: S3BlobStore = Depends(deps.get_blob_store),
    current_user: AuthenticatedUser = Depends(deps.require_validation_technician),
):
    return await validation_services.download_etl_result(db, etl_result_id=etl_result_id, blob_store=blob_store)


@router.post("/etl-result/{etl_result_id}/accept", response_model=analysis_schemas.EtlResultResponse, summary="ETL 결과 승인")
async def accept_etl_result(
    etl_result_id: int,
    request: validation_schemas.AcceptEtlResultRequest,
    db: AsyncSession = Depends(deps.get_db_session),
    current_user: AuthenticatedUser = Depends(deps.require_validation_technician),
):
    return await validation_services.accept_etl_result(
        db, etl_result_id=etl_result_id, reason_approve=request.reason_approve, current_user=current_user
    )


@router.post("/etl-result/{etl_result_id}/reject", response_model=analysis_schemas.EtlResultResponse, summary="ETL 결과 반려")
async def reject_etl_result(
    etl_result_id: int,
    request: validation_schemas.RejectEtlResultRequest,
    db: AsyncSession = Depends(deps.get_db_session),
    current_user: AuthenticatedUser = Depends(deps.require_validation_technician),
):
    """반려 사유는 필수입니다. 세션의 최신 FastQ 쌍은 다시 승인 대기가 됩니다."""
    return await validation_services.reject_etl_result(
        db, etl_result_id=etl_result_id, redo_reason=request.redo_reason, current_user=current_user
    )
