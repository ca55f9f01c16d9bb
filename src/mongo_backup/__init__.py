"""Scheduled MongoDB backup package."""

from __future__ import annotations

from .config import load_config, BackupConfig  # noqa: F401
from .runner import BackupRunner, Trigger  # noqa: F401
