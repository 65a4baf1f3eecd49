# app/domains/analysis/__init__.py

"""
FastAPI 애플리케이션의 'analysis' 도메인 패키지입니다.

검사 세션(LabSession)의 FastQ 파일 승인 워크플로우와 ETL 결과의 생명 주기를 담당합니다.
FastQ 파일 쌍: UPLOADED -> WAIT_FOR_APPROVAL -> APPROVED | REJECTED
ETL 결과: PROCESSING -> COMPLETED | FAILED, COMPLETED -> WAIT_FOR_APPROVAL -> APPROVED | REJECTED

주요 서브모듈:
- `models.py`: 세션, FastQ 파일/쌍, ETL 결과, 예약 ETL 작업 테이블 정의.
- `schemas.py`: 요청/응답 및 외부 ETL 완료 이벤트 모델.
- `crud.py`: 상태 조건 조회와 세션 목록 필터/정렬/페이지네이션.
- `transitions.py`: 허용된 상태 전이 표.
- `ordering.py`: 상태 우선순위 정렬과 '최신' 레코드 선택 규칙.
- `pipeline.py`: 백그라운드 ETL 파이프라인 실행기 (mock / remote).
- `services.py`: 상태 머신 비즈니스 로직과 ETL 큐 접수/처리.
- `tasks.py`: ARQ 스케줄러 스윕(예약 작업 처리, 정체 결과 복구)과 큐 접수 작업.
- `routers.py`: 분석 및 ETL 큐 API 엔드포인트 정의.
"""

__title__ = "Genomics LIMS Analysis Domain"
__description__ = "FastQ approval workflow and ETL result lifecycle."
__version__ = "0.1.0"
__all__ = []
