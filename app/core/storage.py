# app/core/storage.py

"""
S3 호환 객체 스토리지(MinIO 등) 비동기 클라이언트 모듈입니다.

- aioboto3 세션으로 put / presigned get / delete 를 수행합니다.
- 업로드 결과로 `{endpoint}/{bucket}/{key}` 형식의 URL을 돌려주며,
  extract_key()는 같은 규칙으로 URL에서 스토리지 상대 키를 되찾습니다.
"""

import logging
from contextlib import asynccontextmanager
from io import BytesIO
from typing import Optional, Union

import aioboto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import settings
from app.core.exceptions import UpstreamError

logger = logging.getLogger(__name__)


class S3BlobStore:
    """ETL 산출물 업로드와 다운로드 URL 발급을 담당하는 객체 스토리지 클라이언트."""

    def __init__(
        self,
        endpoint: str,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = "us-east-1",
    ):
        self.endpoint = endpoint.rstrip("/")
        self._access_key = access_key
        self._secret_key = secret_key
        self._region = region
        self._session = aioboto3.Session()
        self._config = Config(
            signature_version='s3v4',
            s3={'addressing_style': 'path'},
            retries={'max_attempts': 3, 'mode': 'standard'},
        )

    @asynccontextmanager
    async def _get_client(self):
        async with self._session.client(
            's3',
            endpoint_url=self.endpoint,
            aws_access_key_id=self._access_key,
            aws_secret_access_key=self._secret_key,
            region_name=self._region,
            config=self._config,
        ) as client:
            yield client

    # --- URL <-> 키 변환 ---
    def build_url(self, bucket: str, key: str) -> str:
        return f"{self.endpoint}/{bucket}/{key}"

    def extract_key(self, url: str, bucket: str) -> str:
        """
        `{endpoint}/{bucket}/` 접두사 뒤의 문자열을 키로 반환합니다.
        접두사가 없으면 이미 키라고 보고 그대로 돌려줍니다.
        """
        prefix = f"{self.endpoint}/{bucket}/"
        if url.startswith(prefix):
            return url[len(prefix):]
        return url

    # --- 스토리지 작업 ---
    async def put_object(
        self,
        bucket: str,
        key: str,
        data: Union[bytes, str],
        content_type: str = "application/octet-stream",
    ) -> str:
        """데이터를 업로드하고 객체 URL을 반환합니다."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        try:
            async with self._get_client() as client:
                await client.upload_fileobj(
                    BytesIO(data),
                    bucket,
                    key,
                    ExtraArgs={'ContentType': content_type},
                )
        except (BotoCoreError, ClientError) as e:
            raise UpstreamError(f"Failed to upload {bucket}/{key}: {e}", code="BLOB_STORE_ERROR")

        logger.info("Uploaded object %s/%s (%d bytes)", bucket, key, len(data))
        return self.build_url(bucket, key)

    async def presigned_get(self, bucket: str, key: str, expires_in: int = 3600) -> str:
        """지정 시간 동안 유효한 다운로드 URL을 발급합니다."""
        try:
            async with self._get_client() as client:
                return await client.generate_presigned_url(
                    'get_object',
                    Params={'Bucket': bucket, 'Key': key},
                    ExpiresIn=expires_in,
                )
        except (BotoCoreError, ClientError) as e:
            raise UpstreamError(f"Failed to presign {bucket}/{key}: {e}", code="BLOB_STORE_ERROR")

    async def delete_object(self, bucket: str, key: str) -> None:
        try:
            async with self._get_client() as client:
                await client.delete_object(Bucket=bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise UpstreamError(f"Failed to delete {bucket}/{key}: {e}", code="BLOB_STORE_ERROR")
        logger.info("Deleted object %s/%s", bucket, key)


_blob_store: Optional[S3BlobStore] = None


def get_blob_store() -> S3BlobStore:
    """프로세스 단위로 공유되는 S3BlobStore 인스턴스를 반환합니다."""
    global _blob_store
    if _blob_store is None:
        _blob_store = S3BlobStore(
            endpoint=settings.S3_ENDPOINT,
            access_key=settings.S3_ACCESS_KEY,
            secret_key=settings.S3_SECRET_KEY.get_secret_value() if settings.S3_SECRET_KEY else None,
            region=settings.S3_REGION,
        )
    return _blob_store
