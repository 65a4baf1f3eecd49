# app/utils/dates.py

from datetime import datetime, UTC
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    DB 드라이버가 시간대 정보 없이 돌려준 값(SQLite 등)을 UTC로 간주해 aware datetime으로 맞춥니다.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def file_timestamp(value: datetime) -> str:
    """ISO 8601 문자열에서 파일명에 쓸 수 없는 ':' 와 '.' 를 '-' 로 바꿉니다."""
    return as_utc(value).isoformat().replace(":", "-").replace(".", "-")
