from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

from pydantic import BaseModel

from savesync.core.config import RcloneConfig, TransferConfig
from savesync.core.errors import RemoteListingError, TransferTimeoutError
from savesync.core.events import EventChannel
from savesync.sync.models import ProgressUpdate, UploadStats

from .executor import CommandResult, OutputCallback, TransferBackend

logger = logging.getLogger("transfer")

PERCENT_RE = re.compile(r"(\d+)%")
SPEED_RE = re.compile(r"([\d.]+\s*[a-zA-Z]+/s)")
FILE_PROGRESS_RE = re.compile(r"\*\s+(.*?):\s+(\d+)%")
# rclone exits with 3 when the directory does not exist.
EXIT_DIRECTORY_NOT_FOUND = 3


class TransferResult(BaseModel):
    success: bool
    source: str = ""
    destination: str = ""
    attempts: int = 0
    used_fallback: bool = False
    timed_out: bool = False
    error: str = ""


def parse_progress_line(line: str, default_file: str = "") -> Optional[ProgressUpdate]:
    m = FILE_PROGRESS_RE.search(line)
    if m:
        speed = SPEED_RE.search(line)
        return ProgressUpdate(
            percent=int(m.group(2)),
            current_file=m.group(1).strip(),
            speed=speed.group(1) if speed else "",
        )

    if "Transferred:" in line:
        percent = PERCENT_RE.search(line)
        if not percent:
            return None
        speed = SPEED_RE.search(line)
        return ProgressUpdate(
            percent=int(percent.group(1)),
            current_file=default_file,
            speed=speed.group(1) if speed else "",
        )
    return None


def parse_lsd_output(output: str) -> list[str]:
    """Directory names from `rclone lsd`; the name starts at the 5th field."""
    names = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 5:
            continue
        names.append(" ".join(parts[4:]))
    return names


def parse_lsf_output(output: str) -> list[str]:
    return [line.strip() for line in output.splitlines() if line.strip()]


class TransferService:
    def __init__(
        self,
        backend: TransferBackend,
        rclone: RcloneConfig,
        transfer: TransferConfig,
        events: Optional[EventChannel] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.backend = backend
        self.rclone = rclone
        self.transfer = transfer
        self.events = events
        self._sleep = sleep

    def _common_args(self) -> list[str]:
        args = []
        if self.rclone.config_path:
            args += ["--config", self.rclone.config_path]
        return args + list(self.rclone.performance_flags)

    def execute_command(
        self,
        args: Sequence[str],
        timeout: Optional[float] = None,
        allowed_exit_codes: Iterable[int] = (),
        on_output: Optional[OutputCallback] = None,
    ) -> CommandResult:
        return self.backend.execute_command(
            [*args, *self._common_args()],
            timeout=timeout or self.transfer.process_timeout_sec,
            allowed_exit_codes=allowed_exit_codes,
            on_output=on_output,
        )

    def _progress_callback(self, game_id: Optional[int], label: str) -> OutputCallback:
        def on_output(line: str):
            update = parse_progress_line(line, default_file=label)
            if update is not None and self.events is not None:
                self.events.publish("progress", game_id, **update.model_dump())

        return on_output

    def _copy_with_retry(
        self,
        source: str,
        destination: str,
        label: str,
        game_id: Optional[int] = None,
        attempts: Optional[int] = None,
    ) -> TransferResult:
        max_attempts = attempts or self.transfer.max_retries
        last: Optional[CommandResult] = None
        for attempt in range(1, max_attempts + 1):
            last = self.execute_command(
                ["copyto", source, destination, "--progress"],
                timeout=self.transfer.process_timeout_sec,
                on_output=self._progress_callback(game_id, label),
            )
            if last.success:
                logger.info("copy_ok src=%s dst=%s attempt=%s", source, destination, attempt)
                return TransferResult(success=True, source=source, destination=destination, attempts=attempt)

            logger.warning("copy_failed src=%s dst=%s attempt=%s reason=%s", source, destination, attempt, last.reason())
            if last.timed_out:
                break
            if attempt < max_attempts:
                self._sleep(self.transfer.retry_delay_sec)

        return TransferResult(
            success=False,
            source=source,
            destination=destination,
            attempts=attempt,
            timed_out=bool(last and last.timed_out),
            error=last.reason() if last else "not attempted",
        )

    def download_file_with_retry(
        self,
        remote_dir: str,
        local_path: Path,
        file_name: str,
        legacy_name: Optional[str] = None,
        game_id: Optional[int] = None,
    ) -> TransferResult:
        local_path.parent.mkdir(parents=True, exist_ok=True)
        primary = self._copy_with_retry(f"{remote_dir}/{file_name}", str(local_path), file_name, game_id)
        if primary.success or not legacy_name or legacy_name == file_name:
            return primary

        logger.info("download_legacy_fallback remote_dir=%s name=%s", remote_dir, legacy_name)
        fallback = self._copy_with_retry(
            f"{remote_dir}/{legacy_name}", str(local_path), legacy_name, game_id, attempts=1
        )
        if fallback.success:
            fallback.used_fallback = True
            return fallback
        return TransferResult(
            success=False,
            source=primary.source,
            destination=str(local_path),
            attempts=primary.attempts + fallback.attempts,
            timed_out=primary.timed_out or fallback.timed_out,
            error=f"{file_name}: {primary.error}; {legacy_name}: {fallback.error}",
        )

    def upload_file_with_retry(
        self,
        local_path: Path,
        remote_path: str,
        game_id: Optional[int] = None,
    ) -> TransferResult:
        return self._copy_with_retry(str(local_path), remote_path, local_path.name, game_id)

    def upload_batch(
        self,
        items: Sequence[tuple[Path, str]],
        remote_base: str,
        stats: UploadStats,
        force: bool = False,
        is_unchanged: Optional[Callable[[Path, str], bool]] = None,
        game_id: Optional[int] = None,
    ) -> UploadStats:
        """Upload (local path, remote key) pairs; one failing file does not stop the rest."""
        for local_path, key in items:
            if not local_path.is_file():
                stats.failed += 1
                stats.failed_files.append(key)
                logger.warning("upload_missing_local key=%s path=%s", key, local_path)
                continue

            if not force and is_unchanged is not None:
                try:
                    unchanged = is_unchanged(local_path, key)
                except OSError as e:
                    logger.warning("upload_checksum_failed key=%s error=%s", key, e)
                    unchanged = False
                if unchanged:
                    stats.skipped += 1
                    logger.debug("upload_skip_unchanged key=%s", key)
                    continue

            result = self.upload_file_with_retry(local_path, f"{remote_base}/{key}", game_id)
            if result.success:
                stats.uploaded += 1
            else:
                stats.failed += 1
                stats.failed_files.append(key)
            if self.events is not None:
                self.events.publish("file_uploaded", game_id, key=key, success=result.success, error=result.error)

        logger.info(
            "upload_batch_done remote=%s uploaded=%s skipped=%s failed=%s force=%s",
            remote_base, stats.uploaded, stats.skipped, stats.failed, force,
        )
        return stats

    def download_directory(self, remote: str, local_dir: Path, game_id: Optional[int] = None) -> CommandResult:
        local_dir.mkdir(parents=True, exist_ok=True)
        return self.execute_command(
            [
                "copy", remote, str(local_dir),
                f"--transfers={self.transfer.batch_transfers}",
                f"--checkers={self.transfer.batch_checkers}",
                "--progress",
            ],
            timeout=self.transfer.process_timeout_sec,
            on_output=self._progress_callback(game_id, remote.rsplit("/", 1)[-1]),
        )

    def remote_has_files(self, remote: str) -> bool:
        result = self.execute_command(
            ["lsf", remote, "--max-depth", "1"],
            timeout=self.transfer.list_timeout_sec,
            allowed_exit_codes=(EXIT_DIRECTORY_NOT_FOUND,),
        )
        if result.timed_out:
            raise TransferTimeoutError(f"listing {remote} timed out", remote=remote)
        if not result.success:
            # Only an empty listing or "directory not found" means absent.
            logger.warning("remote_check_failed remote=%s reason=%s", remote, result.reason())
            raise RemoteListingError(f"could not list {remote}: {result.reason()}", remote=remote)
        return bool(parse_lsf_output(result.output))

    def list_directories(self, remote: str) -> list[str]:
        result = self.execute_command(
            ["lsd", remote],
            timeout=self.transfer.list_timeout_sec,
            allowed_exit_codes=(EXIT_DIRECTORY_NOT_FOUND,),
        )
        if result.timed_out:
            # An unanswered listing must not read as "no such folder".
            raise TransferTimeoutError(f"listing {remote} timed out", remote=remote)
        if not result.success:
            logger.warning("list_directories_failed remote=%s reason=%s", remote, result.reason())
            return []
        return parse_lsd_output(result.output)

    def list_files(self, remote: str) -> list[str]:
        result = self.execute_command(
            ["lsf", remote, "--recursive", "--files-only"],
            timeout=self.transfer.list_timeout_sec,
            allowed_exit_codes=(EXIT_DIRECTORY_NOT_FOUND,),
        )
        if not result.success:
            logger.warning("list_files_failed remote=%s reason=%s", remote, result.reason())
            return []
        return parse_lsf_output(result.output)

    def rename_folder(self, old_remote: str, new_remote: str) -> bool:
        result = self.execute_command(["moveto", old_remote, new_remote])
        if result.success:
            logger.info("remote_folder_renamed from=%s to=%s", old_remote, new_remote)
        return result.success
