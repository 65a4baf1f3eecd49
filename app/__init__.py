# app/__init__.py

"""
유전체 검사 LIMS ETL 백엔드의 메인 패키지입니다.

FastAPI 애플리케이션의 진입점 (main.py)과
공통 설정, 데이터베이스 연결, 인증 위임, 객체 스토리지를 담는 core 서브패키지,
분석/검증/알림 도메인을 담는 domains 서브패키지,
그리고 여러 도메인에 걸친 상태 전이 규칙을 담는 services 서브패키지로 구성됩니다.
"""

APP_NAME = "Genomics LIMS ETL API"
APP_VERSION = "0.1.0"
API_PREFIX = "/api/v1"  # API 라우트의 공통 접두사 (main.py에서 적용)

__version__ = APP_VERSION
__title__ = APP_NAME
__description__ = "Clinical genomics LIMS backend: FastQ approval, ETL lifecycle, validation and notifications."
__license__ = "MIT"
__all__ = []
