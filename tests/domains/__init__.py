# tests/domains/__init__.py

"""
도메인별 테스트 모듈 패키지입니다.

- `test_analysis_n.py`: FastQ 승인/반려, 분석 시작/재시도, 다운로드, 세션 목록.
- `test_intake_n.py`: 외부 파이프라인 완료 이벤트 접수 (HTTP / ARQ 큐).
- `test_scheduler_n.py`: 예약 작업 처리 스윕과 정체 결과 복구 스윕, 파이프라인 실행기.
- `test_validation_n.py`: ETL 결과 검증 승인/반려.
- `test_notification_n.py`: 알림 허브와 알림 API.
- `test_workflow_units_n.py`: 정렬/전이 표/스토리지 키/인증 클라이언트 단위 테스트.
"""

__title__ = "Genomics LIMS ETL Domain Tests"
__description__ = "Categorized tests for each domain of the Genomics LIMS ETL API."
__version__ = "0.1.0"
__all__ = []
