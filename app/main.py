import logging
from typing import AsyncGenerator
from contextlib import asynccontextmanager

from arq import cron
from arq.connections import RedisSettings

from sqlalchemy import text
from sqlmodel.ext.asyncio.session import AsyncSession
from fastapi import FastAPI, Depends, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

# 핵심 설정 및 데이터베이스 모듈 임포트
from app.core.config import settings
from app.core.database import create_db_and_tables, engine
from app.core.dependencies import get_db_session, get_notification_hub, get_pipeline_runner
from app.core.exceptions import install_exception_handlers

from app import API_PREFIX

# 태스크 모듈 임포트
from app.domains.analysis import tasks as analysis_tasks

# 도메인 라우터 임포트
from app.domains.analysis.routers import router as analysis_router, queue_router as analysis_queue_router
from app.domains.validation.routers import router as validation_router
from app.domains.notification.routers import router as notification_router
from app.domains.notification.hub import notification_hub
from app.domains.notification.relay import RedisNotificationRelay, create_relay_client

logger = logging.getLogger(__name__)

# ARQ 워커가 실행할 태스크 함수 목록
worker_functions = [
    analysis_tasks.dispatch_due_etl_tasks,
    analysis_tasks.recover_stale_etl_results,
    analysis_tasks.receive_etl_result_task,
]


async def on_worker_startup(ctx: dict) -> None:
    """워커에서 발생한 알림을 API 프로세스로 넘기도록 허브에 Redis 중계를 연결합니다."""
    if not settings.NOTIFICATION_RELAY_ENABLED:
        return
    relay = RedisNotificationRelay(ctx["redis"])
    relay.attach(notification_hub)
    ctx["notification_relay"] = relay


async def on_worker_shutdown(ctx: dict) -> None:
    relay = ctx.get("notification_relay")
    if relay is not None:
        await relay.detach(notification_hub)


# ARQ 워커 설정 클래스 (실행: arq app.main.ArqWorkerSettings)
class ArqWorkerSettings:
    redis_settings = RedisSettings(host=settings.REDIS_HOST, port=settings.REDIS_PORT)
    functions = worker_functions
    on_startup = on_worker_startup
    on_shutdown = on_worker_shutdown
    cron_jobs = [
        # Sweep A: 예약 시각이 지난 ETL 큐 작업 처리 (매분)
        cron(
            analysis_tasks.dispatch_due_etl_tasks,
            name="dispatch_due_etl_tasks",
            minute=None,
            run_at_startup=False,
            unique=True,
            timeout=300,
            keep_result=600,
        ),
        # Sweep B: 정체된 PROCESSING 결과 재실행 (짝수 분)
        cron(
            analysis_tasks.recover_stale_etl_results,
            name="recover_stale_etl_results",
            minute=set(range(0, 60, 2)),
            unique=True,
            timeout=1800,
            keep_result=600,
        ),
    ]


# -- 애플리케이션 수명 주기 이벤트 핸들러 --
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    시작 시 알림 유휴 정리 루프와 워커 알림 중계 수신을 띄우고,
    종료 시 실행 중인 파이프라인을 기다린 뒤 데이터베이스 연결 풀을 정리합니다.
    """
    logging.basicConfig(level=logging.DEBUG if settings.DEBUG_MODE else logging.INFO)
    logger.info("%s %s 시작 중 (%s, ETL %s 모드)", settings.APP_NAME, settings.APP_VERSION, settings.APP_ENV, settings.ETL_PIPELINE_MODE)

    if settings.APP_ENV == "development":
        await create_db_and_tables()

    hub = get_notification_hub()
    hub.start_reaper()

    relay = None
    if settings.NOTIFICATION_RELAY_ENABLED:
        relay = RedisNotificationRelay(create_relay_client())
        relay.start_listener(hub)

    yield  # 애플리케이션 실행

    logger.info("%s 종료 중...", settings.APP_NAME)
    try:
        await hub.stop_reaper()
        if relay is not None:
            await relay.stop_listener()
            await relay.client.aclose()
        await get_pipeline_runner().drain()
        await engine.dispose()
        logger.info("데이터베이스 연결 풀 종료 완료.")
    except Exception:
        logger.exception("애플리케이션 종료 중 오류 발생")


# -- FastAPI 애플리케이션 인스턴스 생성 --
app = FastAPI(
    title=settings.APP_NAME,
    description=settings.APP_DESCRIPTION,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

install_exception_handlers(app)

# -- CORS 미들웨어 설정 --
# 운영 환경에서는 'allow_origins'를 실제 프론트엔드 도메인으로 제한해야 합니다.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -- 도메인 라우터 포함 --
app.include_router(analysis_router, prefix=f"{API_PREFIX}/analysis", tags=["Analysis (FastQ 승인 및 ETL 분석)"])
app.include_router(analysis_queue_router, prefix=f"{API_PREFIX}/analysis-queue", tags=["Analysis Queue (ETL 완료 이벤트 접수)"])
app.include_router(validation_router, prefix=f"{API_PREFIX}/validation", tags=["Validation (ETL 결과 검증)"])
app.include_router(notification_router, prefix=f"{API_PREFIX}/notification", tags=["Notification (알림)"])


# -- 루트 엔드포인트 --
@app.get("/", summary="API Root", response_description="Welcome message and documentation link.")
async def read_root():
    """
    API의 루트 엔드포인트입니다.
    API의 시작점을 알리고 문서 링크를 제공합니다.
    """
    return {"message": f"Welcome to {settings.APP_NAME}. Visit /docs for interactive API documentation."}


# -- 헬스 체크 엔드포인트 --
@app.get("/health-check", summary="Health Check", response_description="Status of the application and database connection.")
async def health_check(session: AsyncSession = Depends(get_db_session)):
    """
    애플리케이션의 헬스 체크 엔드포인트입니다.
    데이터베이스 연결을 테스트하여 서비스의 정상 작동 여부를 확인합니다.
    """
    try:
        result = await session.execute(text("SELECT 1"))
        if result.scalar() == 1:
            return {"status": "ok", "database_connection": "successful"}
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Database connection error during health check: {e}"
        )
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Database health check failed: No result from test query"
    )


# -- Uvicorn 서버 직접 실행 (개발용) --
# if __name__ == "__main__":
#     import uvicorn
#     uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
