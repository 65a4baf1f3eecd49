# app/domains/validation/__init__.py

"""
FastAPI 애플리케이션의 'validation' 도메인 패키지입니다.

검증 담당자가 자신에게 배정된 세션의 ETL 결과를 조회하고 승인/반려하는 기능을 담당합니다.
별도의 테이블 없이 'analysis' 도메인의 모델과 CRUD를 사용합니다.

주요 서브모듈:
- `schemas.py`: 검증 세션 목록/상세 응답, 승인/반려 요청 모델.
- `services.py`: 승인/반려 상태 전이와 반려 시 최신 FastQ 쌍 재승인 대기 처리.
- `routers.py`: 검증 API 엔드포인트 정의.
"""

__title__ = "Genomics LIMS Validation Domain"
__description__ = "Validation sign-off of ETL results."
__version__ = "0.1.0"
__all__ = []
