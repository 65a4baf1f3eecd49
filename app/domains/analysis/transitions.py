# app/domains/analysis/transitions.py

"""
FastQ 파일 쌍과 ETL 결과의 허용된 상태 전이 표입니다.

서비스 계층은 상태를 바꾸기 전에 ensure_*_transition()으로 전이 가능 여부를 확인합니다.
허용되지 않은 전이는 ConflictError(INVALID_STATUS_TRANSITION)로 거부됩니다.
"""

from typing import Dict, FrozenSet, Optional

from app.core.exceptions import ConflictError

from .models import EtlResultStatus, FastqFileStatus

FASTQ_TRANSITIONS: Dict[FastqFileStatus, FrozenSet[FastqFileStatus]] = {
    FastqFileStatus.UPLOADED: frozenset({FastqFileStatus.WAIT_FOR_APPROVAL}),
    FastqFileStatus.WAIT_FOR_APPROVAL: frozenset({FastqFileStatus.APPROVED, FastqFileStatus.REJECTED}),
    # 검증 단계 반려 시 최신 FastQ는 승인/반려 여부와 관계없이 다시 승인 대기로 돌아갑니다.
    FastqFileStatus.APPROVED: frozenset({FastqFileStatus.WAIT_FOR_APPROVAL}),
    FastqFileStatus.REJECTED: frozenset({FastqFileStatus.WAIT_FOR_APPROVAL}),
}

# None 은 아직 파이프라인이 시작되지 않은 결과 행
ETL_TRANSITIONS: Dict[Optional[EtlResultStatus], FrozenSet[EtlResultStatus]] = {
    None: frozenset({EtlResultStatus.PROCESSING}),
    EtlResultStatus.PROCESSING: frozenset({
        EtlResultStatus.PROCESSING,  # 정체 결과 재실행
        EtlResultStatus.COMPLETED,
        EtlResultStatus.FAILED,
    }),
    EtlResultStatus.COMPLETED: frozenset({EtlResultStatus.WAIT_FOR_APPROVAL}),
    EtlResultStatus.FAILED: frozenset(),
    EtlResultStatus.WAIT_FOR_APPROVAL: frozenset({EtlResultStatus.APPROVED, EtlResultStatus.REJECTED}),
    EtlResultStatus.APPROVED: frozenset(),
    EtlResultStatus.REJECTED: frozenset(),
}


def can_transition_fastq(current, target: FastqFileStatus) -> bool:
    return FastqFileStatus(target) in FASTQ_TRANSITIONS.get(FastqFileStatus(current), frozenset())


def can_transition_etl(current, target: EtlResultStatus) -> bool:
    key = EtlResultStatus(current) if current is not None else None
    return EtlResultStatus(target) in ETL_TRANSITIONS.get(key, frozenset())


def ensure_fastq_transition(current, target: FastqFileStatus) -> None:
    if not can_transition_fastq(current, target):
        raise ConflictError(
            f"FastQ file pair cannot move from '{FastqFileStatus(current).value}' to '{FastqFileStatus(target).value}'",
            code="INVALID_STATUS_TRANSITION",
        )


def ensure_etl_transition(current, target: EtlResultStatus) -> None:
    if not can_transition_etl(current, target):
        current_label = EtlResultStatus(current).value if current is not None else "none"
        raise ConflictError(
            f"ETL result cannot move from '{current_label}' to '{EtlResultStatus(target).value}'",
            code="INVALID_STATUS_TRANSITION",
        )
