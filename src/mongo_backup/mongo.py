from __future__ import annotations

import logging
import re
import subprocess
import tempfile
from pathlib import Path
from typing import List, Optional

from .config import ToolsConfig

LOG = logging.getLogger(__name__)

_CREDENTIALS = re.compile(r"//(.*?):(.*?)@")


class BackupError(Exception):
    """Base class for failures inside a backup run."""


class DumpError(BackupError):
    """Raised when mongodump cannot produce the archive."""


class ReplicationError(BackupError):
    """Raised when the dump -> restore pipe into the secondary cluster fails."""

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


def mask_uri(uri: Optional[str]) -> str:
    if not uri:
        return "NOT SET"
    return _CREDENTIALS.sub("//****:****@", uri, count=1)


def dump_command(tools: ToolsConfig, source_uri: str, archive_path: Path) -> List[str]:
    return [tools.mongodump, f"--uri={source_uri}", f"--archive={archive_path}", "--gzip"]


def restore_command(tools: ToolsConfig, target_uri: str) -> List[str]:
    return [
        tools.mongorestore,
        f"--uri={target_uri}",
        "--archive",
        "--gzip",
        "--drop",
        f"--numParallelCollections={tools.parallel_collections}",
    ]


def dump_archive(tools: ToolsConfig, source_uri: str, archive_path: Path) -> Path:
    cmd = dump_command(tools, source_uri, archive_path)
    LOG.info("Dumping %s to %s", mask_uri(source_uri), archive_path)
    try:
        subprocess.run(cmd, check=True, capture_output=True)
    except FileNotFoundError as exc:
        raise DumpError(f"{tools.mongodump} not found: {exc}") from exc
    except subprocess.CalledProcessError as exc:
        stderr = _decode(exc.stderr)
        LOG.error("mongodump failed: %s", stderr)
        raise DumpError(_failure_text(exc.returncode, cmd[0], stderr)) from exc
    return archive_path


def replicate(tools: ToolsConfig, source_uri: str, target_uri: str) -> str:
    """Stream a fresh dump of ``source_uri`` straight into ``target_uri``.

    Target collections are dropped and replaced. Returns the restore's stdout.
    """
    dump_cmd = [tools.mongodump, f"--uri={source_uri}", "--archive", "--gzip"]
    restore_cmd = restore_command(tools, target_uri)
    LOG.info("Replicating %s into %s", mask_uri(source_uri), mask_uri(target_uri))

    # mongodump is chatty on stderr; a file keeps the pipe from stalling
    with tempfile.TemporaryFile() as dump_stderr:
        try:
            dump = subprocess.Popen(dump_cmd, stdout=subprocess.PIPE, stderr=dump_stderr)
        except FileNotFoundError as exc:
            raise ReplicationError(f"{tools.mongodump} not found: {exc}") from exc

        try:
            restore = subprocess.run(restore_cmd, stdin=dump.stdout, capture_output=True)
        except FileNotFoundError as exc:
            dump.kill()
            dump.wait()
            raise ReplicationError(f"{tools.mongorestore} not found: {exc}") from exc
        finally:
            if dump.stdout:
                dump.stdout.close()

        dump_code = dump.wait()
        dump_stderr.seek(0)
        dump_errors = _decode(dump_stderr.read())

    output = _decode(restore.stdout)
    dump_failure = _failure_text(dump_code, tools.mongodump, dump_errors) if dump_code != 0 else ""

    # a restore that exits early leaves mongodump to die of SIGPIPE, so its status comes first
    if restore.returncode != 0:
        message = _failure_text(restore.returncode, tools.mongorestore, _decode(restore.stderr))
        if dump_failure:
            message = f"{message}\n{dump_failure}"
        raise ReplicationError(message, output=output)
    if dump_failure:
        raise ReplicationError(dump_failure, output=output)
    return output


def _failure_text(returncode: int, tool: str, stderr: str) -> str:
    message = f"{tool} exited with status {returncode}"
    if stderr.strip():
        message = f"{message}: {stderr.strip()}"
    return message


def _decode(data: Optional[bytes]) -> str:
    if not data:
        return ""
    return data.decode("utf-8", "ignore")
