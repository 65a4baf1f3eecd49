# tests/__init__.py

"""
유전체 LIMS ETL API 의 테스트 스위트 패키지입니다.

- `conftest.py`: 인메모리 SQLite 엔진, 역할별 테스트 클라이언트, 가짜 객체 스토리지,
                 모의 파이프라인 실행기, 테스트 데이터 빌더 픽스처.
- `test_main.py`: 루트/헬스 체크 엔드포인트와 ARQ 워커 설정.
- `domains/`: 분석, ETL 큐, 스케줄러, 검증, 알림 도메인별 테스트.
"""

__title__ = "Genomics LIMS ETL Tests"
__description__ = "Test suite for the Genomics LIMS ETL FastAPI application."
__version__ = "0.1.0"
__all__ = []
