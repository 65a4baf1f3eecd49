# app/domains/notification/__init__.py

"""
FastAPI 애플리케이션의 'notification' 도메인 패키지입니다.

업무 알림을 저장하고, 접속 중인 사용자에게 SSE 스트림으로 실시간 전달합니다.
접속하지 않은 사용자의 알림은 사용자별 링 버퍼에 보관했다가 재접속 시 전달합니다.

주요 서브모듈:
- `models.py`: notifications 테이블 정의.
- `schemas.py`: 알림 요청/응답 및 스트림 진단 모델.
- `crud.py`: 수신자 기준 알림 조회.
- `hub.py`: 프로세스 단위 구독자 레지스트리 (구독, 발행, 버퍼링, 유휴 정리, 하트비트).
- `services.py`: 알림 저장 후 발행, 읽음 처리, 시스템 브로드캐스트.
- `routers.py`: 알림 API 및 SSE 스트림 엔드포인트 정의.
"""

__title__ = "Genomics LIMS Notification Domain"
__description__ = "Persisted notifications and server-sent event delivery."
__version__ = "0.1.0"
__all__ = []
