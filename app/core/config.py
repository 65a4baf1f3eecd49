# app/core/config.py

from typing import Any, Optional
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict
import os

# 프로젝트의 루트 디렉토리 경로를 계산합니다.
BASE_DIR = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


class Settings(BaseSettings):
    """
    애플리케이션의 모든 설정을 정의하는 Pydantic BaseSettings 모델입니다.
    환경 변수 및 .env 파일에서 값을 자동으로 로드합니다.
    """

    # --- Pydantic Settings 설정 ---
    model_config = SettingsConfigDict(
        env_file=os.path.join(BASE_DIR, '.env'),  # 프로젝트 루트의 .env 파일을 명시적으로 지정
        env_file_encoding='utf-8',
        extra='ignore',                      # .env 파일에 정의되었지만 모델에 없는 변수는 무시
        case_sensitive=True
    )

    # --- 애플리케이션 기본 설정 ---
    APP_NAME: str = "Genomics LIMS ETL API"
    APP_VERSION: str = "0.1.0"
    APP_DESCRIPTION: str = "Clinical genomics LIMS backend (FastQ approval, ETL lifecycle, validation)"
    APP_ENV: str = Field("development", description="Application environment (e.g., development, production, testing)")
    DEBUG_MODE: bool = Field(False, description="Enable debug mode for detailed logging and SQL echo")

    # --- 데이터베이스 설정 ---
    DATABASE_URL: SecretStr = Field(..., description="Async SQLAlchemy database URL (postgresql+asyncpg://...)")

    # --- ARQ (Redis) 설정 ---
    REDIS_HOST: str = Field("localhost", description="Redis host for the ARQ worker")
    REDIS_PORT: int = Field(6379, description="Redis port for the ARQ worker")

    # --- 외부 인증 서비스 ---
    AUTH_SERVICE_URL: str = Field("http://localhost:4000", description="Identity service base URL")
    AUTH_VERIFY_TIMEOUT_SECONDS: float = Field(10.0, description="Timeout for token verification calls")

    # --- 객체 스토리지 (S3 호환) ---
    S3_ENDPOINT: str = Field("http://localhost:9000", description="S3 compatible endpoint URL")
    S3_ACCESS_KEY: Optional[str] = Field(None, description="S3 access key id")
    S3_SECRET_KEY: Optional[SecretStr] = Field(None, description="S3 secret access key")
    S3_REGION: str = Field("us-east-1", description="S3 region name")
    S3_FASTQ_BUCKET: str = Field("fastq-file", description="Bucket holding uploaded FastQ files")
    S3_RESULT_BUCKET: str = Field("analysis-results", description="Bucket holding ETL result artifacts")
    PRESIGNED_URL_EXPIRES_SECONDS: int = Field(3600, description="Lifetime of presigned download URLs")

    # --- ETL 파이프라인 ---
    ETL_PIPELINE_MODE: str = Field("mock", description="'mock' runs a simulated pipeline, 'remote' calls the ETL service")
    ETL_SERVICE_URL: str = Field("http://localhost:8001", description="External ETL service base URL")
    ETL_SERVICE_TIMEOUT_SECONDS: float = Field(30.0, description="Timeout for the ETL service /analyze call")
    ETL_GENOME: str = Field("GATK.GRCh38", description="Reference genome requested from the ETL service")
    ETL_LANE: str = Field("L1", description="Sequencer lane sent to the ETL service")
    MOCK_PIPELINE_DELAY_SECONDS: float = Field(2.0, description="Simulated duration of a mock pipeline run")

    # --- ETL 큐 / 스케줄러 ---
    ETL_QUEUE_DELAY_MINUTES: int = Field(5, description="Deferral applied to inbound ETL completion events")
    ETL_STALE_THRESHOLD_MINUTES: int = Field(39 * 60 + 55, description="Age after which a processing ETL result is re-triggered")
    ETL_QUEUE_TOKEN: Optional[SecretStr] = Field(None, description="Shared secret required on the HTTP intake endpoint")
    SYSTEM_USER_ID: int = Field(1, description="User id recorded for scheduler initiated actions")

    # --- 알림 전달 ---
    NOTIFICATION_BUFFER_SIZE: int = Field(10, description="Undelivered messages kept per offline user")
    NOTIFICATION_IDLE_TIMEOUT_SECONDS: float = Field(60.0, description="Idle time after which a subscriber is reaped")
    NOTIFICATION_REAP_INTERVAL_SECONDS: float = Field(30.0, description="Period of the idle subscriber reaper")
    NOTIFICATION_HEARTBEAT_SECONDS: float = Field(25.0, description="Silence on a stream after which a keepalive ping is sent")
    NOTIFICATION_RELAY_ENABLED: bool = Field(True, description="Relay worker-side notifications to the API process over Redis pub/sub")
    NOTIFICATION_RELAY_CHANNEL: str = Field("lims:notifications", description="Redis pub/sub channel used for notification relay")
    NOTIFICATION_RELAY_RETRY_SECONDS: float = Field(5.0, description="Delay before the relay listener resubscribes after a Redis error")

    def model_post_init(self, __context: Any) -> None:  # noqa: ANN001
        self.ETL_PIPELINE_MODE = self.ETL_PIPELINE_MODE.lower()
        if self.ETL_PIPELINE_MODE not in ("mock", "remote"):
            raise ValueError(f"ETL_PIPELINE_MODE must be 'mock' or 'remote', got {self.ETL_PIPELINE_MODE!r}")


settings = Settings()
