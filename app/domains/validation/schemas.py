# app/domains/validation/schemas.py

"""
'validation' 도메인의 Pydantic 스키마를 정의하는 모듈입니다.
"""

from typing import List, Optional

from pydantic import AliasChoices, BaseModel, Field as PydanticField

from app.domains.analysis.schemas import EtlResultResponse, LabSessionResponse


class ValidationSessionListItem(LabSessionResponse):
    latest_etl_result: Optional[EtlResultResponse] = None


class ValidationSessionDetail(LabSessionResponse):
    etl_results: List[EtlResultResponse] = PydanticField(default_factory=list)


class AcceptEtlResultRequest(BaseModel):
    reason_approve: Optional[str] = PydanticField(
        None,
        max_length=500,
        validation_alias=AliasChoices("reason_approve", "reasonApprove"),
        description="승인 코멘트 (선택)",
    )


class RejectEtlResultRequest(BaseModel):
    redo_reason: str = PydanticField(
        min_length=1,
        max_length=500,
        validation_alias=AliasChoices("redo_reason", "redoReason"),
        description="반려 사유 (필수)",
    )
