"""Object store for folio quotes and project attachments (S3)."""

import logging
import mimetypes
import threading
import time
from typing import Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from folioflow.core.settings import Settings, get_settings
from folioflow.services.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class ObjectStore(Protocol):
    def put(self, data: bytes, key: str, content_type: Optional[str] = None) -> str: ...


def extension_for(content_type: Optional[str]) -> str:
    if not content_type:
        return ".pdf"
    ext = mimetypes.guess_extension(content_type.split(";")[0].strip())
    return ext or ".bin"


def attachment_key(folder: str, record_code: str, content_type: Optional[str]) -> str:
    return f"{folder}/{record_code}/{int(time.time() * 1000)}{extension_for(content_type)}"


class S3ObjectStore:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._client = None
        self._lock = threading.Lock()

    @property
    def configured(self) -> bool:
        return self.settings.object_store_configured

    def _get_client(self):
        with self._lock:
            if self._client is None:
                self._client = boto3.client(
                    "s3",
                    region_name=self.settings.aws_region,
                    config=Config(retries={"max_attempts": 3, "mode": "standard"}),
                )
            return self._client

    def put(self, data: bytes, key: str, content_type: Optional[str] = None) -> str:
        """Store bytes under `key`; return the s3:// url."""
        if not self.configured:
            raise ExternalServiceError(
                "storage",
                "S3_BUCKET / AWS_REGION not set",
                message="File storage is not configured yet. I cannot save attachments.",
            )
        try:
            self._get_client().put_object(
                Bucket=self.settings.s3_bucket,
                Key=key,
                Body=data,
                ContentType=content_type or "application/pdf",
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("S3 upload failed for %s: %s", key, exc)
            raise ExternalServiceError("storage", f"upload failed: {exc}") from exc
        url = f"s3://{self.settings.s3_bucket}/{key}"
        logger.info("Stored attachment %s", url)
        return url


_STORE: Optional[S3ObjectStore] = None


def get_object_store() -> S3ObjectStore:
    global _STORE
    if _STORE is None:
        _STORE = S3ObjectStore()
    return _STORE
