from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from . import mongo
from .config import BackupConfig
from .mongo import DumpError, ReplicationError, mask_uri
from .notifications import (
    SUBJECT_FAILED,
    SUBJECT_FILE_SUCCESS,
    SUBJECT_SUCCESS,
    EmailNotifier,
    build_notifier,
)
from .retention import enforce_retention
from .storage import ArchiveUploader, UploadError, build_uploader

LOG = logging.getLogger(__name__)


class Trigger(str, enum.Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


@dataclass(frozen=True)
class RunContext:
    trigger: Trigger
    started_at: datetime
    backup_dir: Path
    archive_path: Path

    @property
    def timestamp(self) -> str:
        return self.started_at.strftime("%Y-%m-%d_%H-%M")

    @property
    def backup_id(self) -> str:
        return f"backup_{self.timestamp}"

    @classmethod
    def create(cls, root: Path, trigger: Trigger, started_at: datetime) -> "RunContext":
        backup_dir = root / started_at.strftime("%Y-%m-%d") / started_at.strftime("%H")
        archive_path = backup_dir / f"backup_{started_at.strftime('%Y-%m-%d_%H-%M')}.gz"
        return cls(trigger=trigger, started_at=started_at, backup_dir=backup_dir, archive_path=archive_path)


@dataclass
class RunOutcome:
    trigger: Trigger
    archive_path: Path
    dumped: bool = False
    uploaded: bool = False
    replicated: Optional[bool] = None
    cleaned: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.dumped and self.replicated is not False


class BackupRunner:
    """Runs one dump -> upload -> replicate -> cleanup -> notify cycle."""

    def __init__(
        self,
        config: BackupConfig,
        uploader: Optional[ArchiveUploader] = None,
        notifier: Optional[EmailNotifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config
        self._uploader = uploader
        self._notifier = notifier
        self._clock = clock or (lambda: datetime.now(config.scheduler.tzinfo))

    @classmethod
    def from_config(cls, config: BackupConfig) -> "BackupRunner":
        return cls(
            config=config,
            uploader=build_uploader(config.storage),
            notifier=build_notifier(config.mail),
        )

    def run(self, trigger: Trigger = Trigger.SCHEDULED) -> RunOutcome:
        cfg = self._config
        LOG.info("Source: %s", mask_uri(cfg.source_uri))
        LOG.info("Backup cluster: %s", mask_uri(cfg.secondary_uri))

        context = RunContext.create(cfg.backup_dir, trigger, self._clock())
        outcome = RunOutcome(trigger=trigger, archive_path=context.archive_path)
        context.backup_dir.mkdir(parents=True, exist_ok=True)

        LOG.info("[%s] Starting backup of %s", trigger.value.upper(), cfg.source_db_name)

        try:
            mongo.dump_archive(cfg.tools, cfg.source_uri, context.archive_path)
        except DumpError as exc:
            LOG.error("File backup failed: %s", exc)
            outcome.errors.append(str(exc))
            self._notify(SUBJECT_FAILED, f"File backup error:\n{exc}")
            return outcome

        outcome.dumped = True
        LOG.info("File backup created: %s", context.archive_path)

        outcome.uploaded = self._upload(context, outcome)

        if cfg.secondary_uri:
            outcome.replicated = self._replicate(context, outcome)
        else:
            self._notify(SUBJECT_FILE_SUCCESS, f"File backup only\nFile: {context.archive_path}")

        outcome.cleaned = enforce_retention(cfg.backup_dir, cfg.retention_days, now=context.started_at)
        return outcome

    def _upload(self, context: RunContext, outcome: RunOutcome) -> bool:
        if self._uploader is None:
            LOG.info("Object storage not configured; skipping upload")
            return False
        try:
            self._uploader.upload(context.archive_path, context.backup_id)
        except UploadError as exc:
            LOG.warning("Upload failed: %s", exc)
            outcome.errors.append(str(exc))
            return False
        LOG.info("Uploaded %s", context.backup_id)
        return True

    def _replicate(self, context: RunContext, outcome: RunOutcome) -> bool:
        cfg = self._config
        LOG.info("Replicating to backup cluster...")
        try:
            mongo.replicate(cfg.tools, cfg.source_uri, cfg.secondary_uri)
        except ReplicationError as exc:
            LOG.error("Replication failed: %s", exc)
            outcome.errors.append(str(exc))
            self._notify(
                SUBJECT_FAILED,
                f"Replication error:\n{exc}\n\nOutput:\n{exc.output or 'none'}",
            )
            return False

        LOG.info("Backup saved to backup cluster")
        self._notify(
            SUBJECT_SUCCESS,
            "Backup completed\n"
            f"File: {context.archive_path}\n"
            "DB Replication: Success\n"
            f"Trigger: {context.trigger.value}",
        )
        return True

    def _notify(self, subject: str, body: str) -> None:
        if self._notifier is None:
            LOG.info("Mail not configured; skipping notification '%s'", subject)
            return
        self._notifier.notify(subject, body)
