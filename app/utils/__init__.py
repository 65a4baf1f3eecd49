# app/utils/__init__.py

"""
FastAPI 애플리케이션의 'utils' 패키지입니다.

특정 비즈니스 도메인에 속하지 않는 범용 유틸리티 함수들을 포함합니다.

주요 서브모듈:
- `dates.py`: UTC 현재 시각, 시간대 없는 DB 값의 UTC 보정, 파일명용 타임스탬프.
"""

# flake8: noqa
from . import dates

# 패키지 메타데이터
__title__ = "Genomics LIMS Utilities"
__description__ = "Provides common, reusable utility functions for the application."
__version__ = "0.1.0"
__all__ = ["dates"]
