from __future__ import annotations

import logging
import shutil
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

LOG = logging.getLogger(__name__)


def enforce_retention(base_path: Path, retention_days: int, now: Optional[datetime] = None) -> List[str]:
    """Delete children of ``base_path`` last modified before the retention window.

    Returns the names that were removed. Failures are logged and never raised.
    """
    if retention_days <= 0:
        return []

    if not base_path.exists():
        return []

    reference = now or datetime.now()
    cutoff = (reference - timedelta(days=retention_days)).timestamp()
    removed: List[str] = []

    try:
        children = sorted(base_path.iterdir())
    except OSError as exc:
        LOG.warning("Cannot list backup directory %s: %s", base_path, exc)
        return removed

    for child in children:
        try:
            if child.stat().st_mtime >= cutoff:
                continue
            LOG.info("Removing expired backup %s", child)
            _remove_path(child)
        except OSError as exc:
            LOG.warning("Failed to remove %s: %s", child, exc)
            continue
        removed.append(child.name)

    return removed


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)
