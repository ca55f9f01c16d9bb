from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import boto3
from boto3.exceptions import Boto3Error
from botocore.exceptions import BotoCoreError, ClientError

from .config import StorageConfig
from .mongo import BackupError

LOG = logging.getLogger(__name__)


class UploadError(BackupError):
    """Raised when an archive cannot be pushed to object storage."""


@dataclass
class ArchiveUploader:
    """Pushes finished archives into an S3-compatible bucket."""

    config: StorageConfig
    _client: Optional[Any] = field(default=None, repr=False)

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client(
                "s3",
                aws_access_key_id=self.config.access_key_id,
                aws_secret_access_key=self.config.secret_access_key,
                region_name=self.config.region,
                endpoint_url=self.config.endpoint_url,
            )
        return self._client

    def object_key(self, archive_path: Path, backup_id: str) -> str:
        return f"{self.config.folder.strip('/')}/{backup_id}{archive_path.suffix}".lstrip("/")

    def upload(self, archive_path: Path, backup_id: str) -> str:
        key = self.object_key(archive_path, backup_id)
        LOG.info("Uploading %s to s3://%s/%s", archive_path, self.config.bucket, key)
        try:
            client = self.client
            client.upload_file(str(archive_path), self.config.bucket, key)
        except (Boto3Error, BotoCoreError, ClientError, OSError, ValueError) as exc:
            raise UploadError(f"Upload of {archive_path.name} failed: {exc}") from exc
        return key


def build_uploader(config: StorageConfig) -> Optional[ArchiveUploader]:
    if not config.enabled:
        return None
    return ArchiveUploader(config=config)
