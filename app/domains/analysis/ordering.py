# app/domains/analysis/ordering.py

"""
워크플로우 상태 우선순위 정렬과 '최신' 레코드 선택 규칙.

우선순위: WAIT_FOR_APPROVAL=1, REJECTED=2, APPROVED=3, 그 외(없음 포함)=4.
같은 순위 안에서는 최신 생성일, 그다음 큰 ID 가 앞섭니다.
SQL 정렬식(status_priority_case)과 파이썬 정렬 키(status_priority)는 같은 표에서 만들어집니다.
"""

from datetime import datetime, UTC
from typing import Any, Iterable, Mapping, Optional, Sequence, TypeVar

from sqlalchemy import case

from app.utils.dates import as_utc

STATUS_PRIORITY: Mapping[str, int] = {
    "wait_for_approval": 1,
    "rejected": 2,
    "approved": 3,
}
DEFAULT_PRIORITY = 4

# '최신' FastQ 쌍을 고를 때 고려하는 워크플로우 노출 상태
WORKFLOW_VISIBLE_STATUSES = tuple(STATUS_PRIORITY.keys())

T = TypeVar("T")

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def _status_value(status: Any) -> Optional[str]:
    if status is None:
        return None
    return getattr(status, "value", status)


def status_priority(status: Any, priorities: Mapping[str, int] = STATUS_PRIORITY) -> int:
    """상태 값(열거형 또는 문자열)의 정렬 순위를 반환합니다."""
    return priorities.get(_status_value(status), DEFAULT_PRIORITY)


def status_priority_case(column, priorities: Mapping[str, int] = STATUS_PRIORITY):
    """status_priority()와 같은 순위를 SQL CASE 식으로 만듭니다."""
    return case(dict(priorities), value=column, else_=DEFAULT_PRIORITY)


def recency_key(record: Any) -> tuple:
    """생성일 -> ID 순의 최신성 키 (클수록 최신)."""
    created_at = as_utc(getattr(record, "created_at", None)) or _EPOCH
    return (created_at, getattr(record, "id", None) or 0)


def latest(records: Iterable[T], statuses: Optional[Sequence[str]] = None) -> Optional[T]:
    """
    주어진 상태 집합에 속한 레코드 중 가장 최근에 생성된 것을 반환합니다.
    생성일이 같으면 ID 가 큰 쪽이 최신입니다.
    """
    candidates = [
        r for r in records
        if statuses is None or _status_value(getattr(r, "status", None)) in statuses
    ]
    if not candidates:
        return None
    return max(candidates, key=recency_key)


def sort_by_priority(records: Iterable[T], priorities: Mapping[str, int] = STATUS_PRIORITY) -> list:
    """우선순위 오름차순, 같은 순위는 최신순으로 정렬합니다."""
    newest_first = sorted(records, key=recency_key, reverse=True)
    return sorted(newest_first, key=lambda r: status_priority(getattr(r, "status", None), priorities))
