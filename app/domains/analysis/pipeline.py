# app/domains/analysis/pipeline.py

"""
ETL 파이프라인 실행기 (EtlPipelineRunner).

요청 처리 흐름과 분리된 백그라운드 태스크로 파이프라인을 실행하고, 최종 상태를 DB에 기록합니다.

- mock 모드: 지연 후 텍스트 보고서를 결과 버킷에 올리고 결과를 COMPLETED 로 바꿉니다.
- remote 모드: R1/R2 다운로드 URL을 발급해 외부 ETL 서비스의 /analyze 로 전달합니다.
  결과는 PROCESSING 으로 남고, 완료 이벤트(ETL 큐)나 정체 복구 스윕이 이어받습니다.

실행 중 어떤 단계에서든 예외가 나면 결과를 FAILED 로 기록하고 comment 에 진단 메시지를 남깁니다.
완료/실패를 기록하는 시점에 결과가 이미 PROCESSING 이 아니면(FastQ 반려로 취소 등) 기록을 버립니다.
각 단계는 독립된 DB 세션을 사용하므로 긴 실행 동안 커넥션을 붙잡지 않습니다.
"""

import asyncio
import logging
from contextlib import AbstractAsyncContextManager
from typing import Callable, Optional, Set

import httpx
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.config import settings
from app.core.database import get_async_session_context
from app.core.exceptions import UpstreamError
from app.core.storage import S3BlobStore, get_blob_store
from app.domains.notification import services as notification_services
from app.domains.notification.models import NotificationTaskType, NotificationType
from app.utils.dates import file_timestamp, utcnow

from . import crud as analysis_crud
from .models import EtlResult, EtlResultStatus

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager]

PIPELINE_MODE_MOCK = "mock"
PIPELINE_MODE_REMOTE = "remote"


class EtlPipelineRunner:
    """ETL 결과 한 건에 대한 파이프라인 실행을 백그라운드로 띄우고 추적합니다."""

    def __init__(
        self,
        *,
        mode: str = PIPELINE_MODE_MOCK,
        session_factory: SessionFactory = get_async_session_context,
        blob_store_factory: Callable[[], S3BlobStore] = get_blob_store,
        mock_delay: float = 0.0,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.mode = mode
        self._session_factory = session_factory
        self._blob_store_factory = blob_store_factory
        self._mock_delay = mock_delay
        self._http_transport = http_transport
        self._tasks: Set[asyncio.Task] = set()

    # --- 태스크 관리 ---
    def spawn(self, etl_result_id: int, *, user_id: Optional[int] = None) -> asyncio.Task:
        """파이프라인 실행을 백그라운드 태스크로 띄우고 즉시 반환합니다."""
        task = asyncio.create_task(self.run(etl_result_id, user_id=user_id), name=f"etl-pipeline-{etl_result_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("ETL pipeline scheduled for result %d (%s mode)", etl_result_id, self.mode)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """실행 중인 모든 파이프라인 태스크가 끝날 때까지 기다립니다."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- 실행 ---
    async def run(self, etl_result_id: int, *, user_id: Optional[int] = None) -> Optional[EtlResultStatus]:
        """
        파이프라인을 끝까지 실행하고 기록된 상태를 반환합니다.
        결과가 PROCESSING 이 아니어서 실행하지 않았거나 기록을 버린 경우 None 을 반환합니다.
        """
        try:
            etl = await self._start(etl_result_id)
            if etl is None:
                return None

            if self.mode == PIPELINE_MODE_REMOTE:
                await self._submit_remote(etl)
                logger.info("ETL result %d submitted to the remote ETL service", etl_result_id)
                return EtlResultStatus.PROCESSING

            result_url = await self._run_mock(etl)
            return await self._complete(etl_result_id, result_url, user_id=user_id)
        except Exception as e:
            logger.exception("ETL pipeline failed for result %d", etl_result_id)
            return await self._fail(etl_result_id, e, user_id=user_id)

    async def _start(self, etl_result_id: int) -> Optional[EtlResult]:
        async with self._session_factory() as db:
            etl = await analysis_crud.etl_result.get_with_context(db, id=etl_result_id)
            if etl is None:
                logger.warning("ETL result %d disappeared before the pipeline started", etl_result_id)
                return None
            if etl.status != EtlResultStatus.PROCESSING:
                logger.info("ETL result %d is '%s', skipping pipeline run", etl_result_id, etl.status)
                return None

            etl.start_time = utcnow()
            db.add(etl)
            await db.commit()
            logger.info("ETL pipeline started for result %d (labcode=%s)", etl_result_id, etl.lab_session.labcode)
            return etl

    async def _run_mock(self, etl: EtlResult) -> str:
        if self._mock_delay > 0:
            await asyncio.sleep(self._mock_delay)

        session = etl.lab_session
        finished_at = utcnow()
        key = f"analysis-result-{session.labcode}-{file_timestamp(finished_at)}.txt"
        report = "\n".join([
            "ETL analysis report",
            f"labcode: {session.labcode}",
            f"barcode: {session.barcode}",
            f"etl_result_id: {etl.id}",
            f"fastq_file_pair_id: {etl.fastq_file_pair_id}",
            f"genome: {settings.ETL_GENOME}",
            f"completed_at: {finished_at.isoformat()}",
        ])
        blob_store = self._blob_store_factory()
        return await blob_store.put_object(settings.S3_RESULT_BUCKET, key, report, content_type="text/plain")

    async def _submit_remote(self, etl: EtlResult) -> None:
        pair = etl.fastq_pair
        if pair is None or not pair.has_both_mates:
            raise ValueError(f"FastQ file pair for ETL result {etl.id} is missing R1 or R2")

        blob_store = self._blob_store_factory()
        expires = settings.PRESIGNED_URL_EXPIRES_SECONDS
        payload = {
            "etlResultId": etl.id,
            "labcode": etl.lab_session.labcode,
            "barcode": etl.lab_session.barcode,
            "lane": settings.ETL_LANE,
            "fastq_1_url": await blob_store.presigned_get(settings.S3_FASTQ_BUCKET, pair.r1.file_path, expires),
            "fastq_2_url": await blob_store.presigned_get(settings.S3_FASTQ_BUCKET, pair.r2.file_path, expires),
            "genome": settings.ETL_GENOME,
        }

        url = f"{settings.ETL_SERVICE_URL.rstrip('/')}/analyze"
        try:
            async with httpx.AsyncClient(
                timeout=settings.ETL_SERVICE_TIMEOUT_SECONDS, transport=self._http_transport
            ) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise UpstreamError(f"ETL service request failed: {e}", code="ETL_SERVICE_ERROR")

    async def _complete(self, etl_result_id: int, result_url: str, *, user_id: Optional[int]) -> Optional[EtlResultStatus]:
        blob_store = self._blob_store_factory()
        async with self._session_factory() as db:
            etl = await analysis_crud.etl_result.get_with_context(db, id=etl_result_id)
            if etl is None or etl.status != EtlResultStatus.PROCESSING:
                logger.warning(
                    "Discarding pipeline completion for result %d: status is '%s'",
                    etl_result_id, etl.status if etl else None,
                )
                return None

            etl.status = EtlResultStatus.COMPLETED
            etl.result_path = blob_store.extract_key(result_url, settings.S3_RESULT_BUCKET)
            etl.etl_completed_at = utcnow()
            db.add(etl)
            await db.commit()
            logger.info("ETL pipeline completed for result %d -> %s", etl_result_id, etl.result_path)

            await self._notify(db, etl, "ETL analysis completed", f"ETL analysis for {etl.lab_session.labcode} has completed.", user_id)
            return EtlResultStatus.COMPLETED

    async def _fail(self, etl_result_id: int, error: Exception, *, user_id: Optional[int]) -> Optional[EtlResultStatus]:
        async with self._session_factory() as db:
            etl = await analysis_crud.etl_result.get_with_context(db, id=etl_result_id)
            if etl is None or etl.status != EtlResultStatus.PROCESSING:
                logger.warning("Not recording failure for result %d: no longer processing", etl_result_id)
                return None

            etl.status = EtlResultStatus.FAILED
            etl.comment = f"ETL pipeline failed: {error}"
            db.add(etl)
            await db.commit()

            await self._notify(db, etl, "ETL analysis failed", f"ETL analysis for {etl.lab_session.labcode} failed: {error}", user_id)
            return EtlResultStatus.FAILED

    async def _notify(self, db: AsyncSession, etl: EtlResult, title: str, message: str, sender_id: Optional[int]) -> None:
        session = etl.lab_session
        await notification_services.notify(
            db,
            receiver_id=session.analysis_id,
            title=title,
            message=message,
            task_type=NotificationTaskType.ANALYSIS_TASK,
            type=NotificationType.PROCESS,
            sender_id=sender_id or settings.SYSTEM_USER_ID,
            labcode=session.labcode,
            barcode=session.barcode,
        )


_runner: Optional[EtlPipelineRunner] = None


def get_pipeline_runner() -> EtlPipelineRunner:
    """프로세스 단위로 공유되는 파이프라인 실행기를 반환합니다."""
    global _runner
    if _runner is None:
        _runner = EtlPipelineRunner(
            mode=settings.ETL_PIPELINE_MODE,
            mock_delay=settings.MOCK_PIPELINE_DELAY_SECONDS,
        )
    return _runner
