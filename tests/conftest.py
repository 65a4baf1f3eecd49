# tests/conftest.py

import os
from datetime import datetime, timedelta
from typing import AsyncGenerator, Callable, Dict, Optional, Tuple
from contextlib import asynccontextmanager

# app 설정은 임포트 시점에 환경 변수를 읽으므로, 앱 모듈보다 먼저 테스트 기본값을 지정합니다.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ETL_PIPELINE_MODE", "mock")
os.environ.setdefault("MOCK_PIPELINE_DELAY_SECONDS", "0")
os.environ.setdefault("S3_ENDPOINT", "http://minio.test")
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("NOTIFICATION_RELAY_ENABLED", "false")

import pytest
import pytest_asyncio
from fastapi import Request
from httpx import AsyncClient, ASGITransport

from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

# app.main을 임포트하여 FastAPI 앱 인스턴스에 접근합니다.
from app.main import app as main_app
from app.core import dependencies as deps
from app.core.exceptions import UnauthorizedError
from app.core.security import AuthenticatedUser, RoleInfo, UserRole
from app.core.storage import S3BlobStore
from app.domains.analysis import models as analysis_models
from app.domains.analysis.pipeline import EtlPipelineRunner
from app.domains.notification.hub import notification_hub
from app.utils.dates import utcnow

# --- 모든 모델 임포트 ---
#  SQLModel.metadata.create_all()이 모든 테이블을 인식하려면 모든 모델 클래스가 한 번 이상 임포트되어야 합니다.
from app.domains.models import *    # noqa: F401, F403


# --- 테스트용 데이터베이스 설정 ---
# 테스트마다 새 인메모리 SQLite 를 만들고, 하나의 커넥션을 공유하도록 StaticPool 을 사용합니다.
TEST_DATABASE_URL = "sqlite+aiosqlite://"
TEST_USER_HEADER = "X-Test-User"


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """
    각 테스트 함수마다 새 데이터베이스에 연결된 비동기 세션을 제공합니다.
    API 요청, 파이프라인 실행기, 스케줄러 스윕이 모두 이 세션을 공유합니다.
    """
    TestingSessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture(scope="function")
def session_factory(db_session: AsyncSession) -> Callable:
    """
    백그라운드 작업용 세션 팩토리. 테스트 세션을 그대로 내어주고 닫지 않습니다.
    """
    @asynccontextmanager
    async def _factory() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    return _factory


@pytest.fixture(scope="function")
def isolated_session_factory(test_engine) -> Callable:
    """
    호출할 때마다 같은 테스트 DB 에 새 세션을 여는 팩토리.
    파이프라인 단계 사이에 다른 요청이 끼어드는 상황을 재현할 때 사용합니다.
    """
    IsolatedSessionLocal = sessionmaker(bind=test_engine, class_=AsyncSession, expire_on_commit=False)

    @asynccontextmanager
    async def _factory() -> AsyncGenerator[AsyncSession, None]:
        async with IsolatedSessionLocal() as session:
            yield session

    return _factory


# --- 알림 허브 초기화 ---
@pytest.fixture(autouse=True)
def reset_notification_hub():
    """프로세스 전역 알림 허브를 테스트 전후로 비웁니다."""
    notification_hub.reset()
    yield
    notification_hub.reset()


# --- 객체 스토리지 대역 ---
class FakeBlobStore(S3BlobStore):
    """네트워크 없이 업로드 내용을 기록하고, 결정적인 다운로드 URL을 돌려주는 스토리지."""

    def __init__(self, endpoint: str = "http://minio.test"):
        super().__init__(endpoint=endpoint)
        self.objects: Dict[Tuple[str, str], Tuple[bytes, str]] = {}
        self.presigned: list = []

    async def put_object(self, bucket, key, data, content_type="application/octet-stream"):
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.objects[(bucket, key)] = (data, content_type)
        return self.build_url(bucket, key)

    async def presigned_get(self, bucket, key, expires_in=3600):
        self.presigned.append((bucket, key))
        return f"{self.build_url(bucket, key)}?X-Amz-Expires={expires_in}&X-Amz-Signature=test"

    async def delete_object(self, bucket, key):
        self.objects.pop((bucket, key), None)


@pytest.fixture(scope="function")
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest_asyncio.fixture(scope="function")
async def pipeline_runner(session_factory: Callable, blob_store: FakeBlobStore) -> AsyncGenerator[EtlPipelineRunner, None]:
    """지연 없이 실행되는 mock 모드 파이프라인 실행기."""
    runner = EtlPipelineRunner(
        mode="mock",
        session_factory=session_factory,
        blob_store_factory=lambda: blob_store,
        mock_delay=0,
    )
    yield runner
    await runner.drain()


# --- 역할별 사용자 픽스처 ---
# 사용자 계정은 외부 인증 서비스가 관리하므로 DB 레코드 없이 AuthenticatedUser 만 만듭니다.
def _user(user_id: int, name: str, *roles: UserRole) -> AuthenticatedUser:
    return AuthenticatedUser(
        id=user_id,
        email=f"{name}@example.com",
        name=name,
        roles=[RoleInfo(id=100 + int(role), name=role.name, code=str(int(role))) for role in roles],
    )


@pytest.fixture
def staff_user() -> AuthenticatedUser:
    return _user(1, "staff", UserRole.STAFF)


@pytest.fixture
def lab_user() -> AuthenticatedUser:
    return _user(20, "labtech", UserRole.LAB_TESTING_TECHNICIAN)


@pytest.fixture
def analysis_user() -> AuthenticatedUser:
    return _user(30, "analyst", UserRole.ANALYSIS_TECHNICIAN)


@pytest.fixture
def validation_user() -> AuthenticatedUser:
    return _user(40, "validator", UserRole.VALIDATION_TECHNICIAN)


@pytest.fixture
def other_validation_user() -> AuthenticatedUser:
    return _user(41, "validator2", UserRole.VALIDATION_TECHNICIAN)


# --- 클라이언트 픽스처 ---
@pytest.fixture(scope="function")
def client_factory(
    db_session: AsyncSession,
    blob_store: FakeBlobStore,
    pipeline_runner: EtlPipelineRunner,
):
    """
    지정한 사용자로 인증된 AsyncClient를 만드는 팩토리를 반환합니다.

    한 테스트에서 여러 역할의 클라이언트를 함께 쓸 수 있도록, 각 클라이언트는
    X-Test-User 헤더로 자신을 밝히고 get_current_user 오버라이드가 이 헤더로 사용자를 찾습니다.
    user 가 None 이면 헤더 없이 요청하므로 인증이 필요한 엔드포인트는 401 을 반환합니다.
    """
    users: Dict[str, AuthenticatedUser] = {}

    async def override_get_session():
        yield db_session

    def override_get_current_user(request: Request) -> AuthenticatedUser:
        user = users.get(request.headers.get(TEST_USER_HEADER, ""))
        if user is None:
            raise UnauthorizedError("Authentication token is required", code="AUTH_REQUIRED")
        return user

    @asynccontextmanager
    async def _create_client_context(user: Optional[AuthenticatedUser] = None) -> AsyncGenerator[AsyncClient, None]:
        headers = {}
        if user is not None:
            users[str(user.id)] = user
            headers[TEST_USER_HEADER] = str(user.id)

        original_overrides = main_app.dependency_overrides.copy()
        try:
            main_app.dependency_overrides.update({
                deps.get_db_session: override_get_session,
                deps.get_current_user: override_get_current_user,
                deps.get_blob_store: lambda: blob_store,
                deps.get_pipeline_runner: lambda: pipeline_runner,
                deps.get_notification_hub: lambda: notification_hub,
            })

            transport = ASGITransport(app=main_app)
            async with AsyncClient(transport=transport, base_url="http://test", headers=headers) as client:
                yield client
        finally:
            main_app.dependency_overrides.clear()
            main_app.dependency_overrides.update(original_overrides)

    return _create_client_context


@pytest_asyncio.fixture(scope="function")
async def client(client_factory) -> AsyncGenerator[AsyncClient, None]:
    """인증 없는 클라이언트 (헬스 체크, ETL 큐 접수 등)."""
    async with client_factory() as c:
        yield c


@pytest_asyncio.fixture(scope="function")
async def lab_client(client_factory, lab_user) -> AsyncGenerator[AsyncClient, None]:
    async with client_factory(lab_user) as c:
        yield c


@pytest_asyncio.fixture(scope="function")
async def analysis_client(client_factory, analysis_user) -> AsyncGenerator[AsyncClient, None]:
    async with client_factory(analysis_user) as c:
        yield c


@pytest_asyncio.fixture(scope="function")
async def validation_client(client_factory, validation_user) -> AsyncGenerator[AsyncClient, None]:
    async with client_factory(validation_user) as c:
        yield c


@pytest_asyncio.fixture(scope="function")
async def staff_client(client_factory, staff_user) -> AsyncGenerator[AsyncClient, None]:
    async with client_factory(staff_user) as c:
        yield c


# --- 워크플로우 데이터 빌더 ---
class WorkflowBuilder:
    """세션, FastQ 파일/쌍, ETL 결과 레코드를 만들어 커밋하는 헬퍼."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self._seq = 0

    async def _save(self, obj):
        self.db.add(obj)
        await self.db.commit()
        await self.db.refresh(obj)
        return obj

    async def session(
        self,
        labcode: Optional[str] = None,
        *,
        barcode: Optional[str] = None,
        analysis_id: Optional[int] = 30,
        validation_id: Optional[int] = None,
        lab_testing_id: Optional[int] = 20,
        patient_name: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> analysis_models.LabSession:
        self._seq += 1
        labcode = labcode or f"LAB-{self._seq:04d}"
        session = analysis_models.LabSession(
            labcode=labcode,
            barcode=barcode or f"BC-{labcode}",
            patient_name=patient_name,
            analysis_id=analysis_id,
            validation_id=validation_id,
            lab_testing_id=lab_testing_id,
            created_at=created_at or utcnow(),
        )
        return await self._save(session)

    async def pair(
        self,
        session: analysis_models.LabSession,
        *,
        status: analysis_models.FastqFileStatus = analysis_models.FastqFileStatus.APPROVED,
        r1: Optional[str] = "default",
        r2: Optional[str] = "default",
        created_by: Optional[int] = 20,
        created_at: Optional[datetime] = None,
    ) -> analysis_models.FastqFilePair:
        """r1/r2 에 None 을 주면 해당 메이트 파일 없이 만듭니다."""
        files = []
        for mate, path in (("R1", r1), ("R2", r2)):
            if path is None:
                files.append(None)
                continue
            if path == "default":
                path = f"{session.labcode}/{session.labcode}_{mate}.fastq.gz"
            files.append(await self._save(analysis_models.FastqFile(
                lab_session_id=session.id, file_path=path, created_by=created_by,
            )))

        pair = analysis_models.FastqFilePair(
            lab_session_id=session.id,
            fastq_file_r1_id=files[0].id if files[0] else None,
            fastq_file_r2_id=files[1].id if files[1] else None,
            status=status,
            created_by=created_by,
            created_at=created_at or utcnow(),
        )
        return await self._save(pair)

    async def etl(
        self,
        session: analysis_models.LabSession,
        pair: Optional[analysis_models.FastqFilePair] = None,
        *,
        status: Optional[analysis_models.EtlResultStatus] = analysis_models.EtlResultStatus.COMPLETED,
        result_path: str = "",
        start_time: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
    ) -> analysis_models.EtlResult:
        now = utcnow()
        etl = analysis_models.EtlResult(
            lab_session_id=session.id,
            fastq_file_pair_id=pair.id if pair else None,
            status=status,
            result_path=result_path,
            start_time=start_time or now,
            created_at=created_at or now,
        )
        return await self._save(etl)

    async def scheduled_task(
        self, etl_data: dict, *, scheduled_at: datetime,
    ) -> analysis_models.ScheduledEtlTask:
        task = analysis_models.ScheduledEtlTask(
            etl_data=etl_data,
            scheduled_at=scheduled_at,
            status=analysis_models.ScheduledTaskStatus.PENDING,
            created_at=scheduled_at - timedelta(minutes=5),
        )
        return await self._save(task)


@pytest.fixture(scope="function")
def builder(db_session: AsyncSession) -> WorkflowBuilder:
    return WorkflowBuilder(db_session)
