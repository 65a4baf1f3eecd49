# app/core/__init__.py

"""
FastAPI 애플리케이션의 핵심 구성 요소 패키지입니다.

주요 서브모듈은 다음과 같습니다:

- `config.py`: 애플리케이션의 설정 및 환경 변수 관리 (Pydantic Settings).
- `database.py`: 데이터베이스 연결, 세션 관리 (SQLModel 및 AsyncSQLAlchemy).
- `crud_base.py`: 도메인 CRUD 클래스가 상속하는 공통 비동기 CRUD 기반 클래스.
- `exceptions.py`: 안정적인 오류 코드를 가지는 애플리케이션 예외와 예외 핸들러.
- `security.py`: 외부 인증 서비스 토큰 검증과 역할 기반 권한 검사.
- `storage.py`: S3 호환 객체 스토리지 클라이언트 (업로드, presigned URL).
- `dependencies.py`: FastAPI의 의존성 주입 시스템에서 사용될 공통 의존성 함수들.
"""

__title__ = "LIMS ETL Core"
__description__ = "Core components for the LIMS ETL FastAPI application."
__version__ = "0.1.0"
__all__ = []
