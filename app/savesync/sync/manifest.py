from __future__ import annotations

import hashlib
import logging
import os
import re
import shutil
import tempfile
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional

from pydantic import ValidationError

from savesync.core.errors import FileLockedError, ManifestWriteError, PathOutsideRootsError
from savesync.sync.models import DEFAULT_PROFILE_ID, FileRecord, Manifest
from savesync.sync.paths import contract, expand

logger = logging.getLogger("manifest")

LEGACY_MANIFEST_NAME = ".savesync_checksums.json"
PROFILE_MANIFEST_TEMPLATE = ".savesync_profile_{}.json"
READ_ATTEMPTS = 3
READ_RETRY_DELAY_SEC = 0.5


def sha256_file(path: Path):
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 64), b""):
            h.update(chunk)
    return h.hexdigest()


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def profile_file_token(profile_id: Optional[str]) -> str:
    if not profile_id or profile_id == DEFAULT_PROFILE_ID:
        return "default"
    token = re.sub(r"[^a-z0-9]", "", profile_id.lower())[:24]
    return token or "profile"


def manifest_file_name(profile_id: Optional[str]) -> str:
    return PROFILE_MANIFEST_TEMPLATE.format(profile_file_token(profile_id))


def manifest_path(install_dir: str, profile_id: Optional[str]) -> Path:
    return Path(install_dir) / manifest_file_name(profile_id)


def legacy_manifest_path(install_dir: str) -> Path:
    return Path(install_dir) / LEGACY_MANIFEST_NAME


def make_record(path: Path) -> FileRecord:
    st = path.stat()
    return FileRecord(
        checksum=sha256_file(path),
        size=st.st_size,
        modified_time=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        original_path=str(path),
    )


class ManifestStore:
    """Reads and writes per-profile manifests stored beside the game install."""

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        self._lock = threading.RLock()
        self._sleep = sleep

    def resolve_read_path(self, install_dir: str, profile_id: Optional[str] = DEFAULT_PROFILE_ID) -> Optional[Path]:
        qualified = manifest_path(install_dir, profile_id)
        if qualified.exists():
            return qualified
        legacy = legacy_manifest_path(install_dir)
        if legacy.exists():
            logger.info("manifest_legacy_fallback install_dir=%s profile=%s", install_dir, profile_id)
            return legacy
        return None

    def _read_with_retry(self, path: Path) -> Optional[str]:
        delay = READ_RETRY_DELAY_SEC
        for attempt in range(1, READ_ATTEMPTS + 1):
            try:
                return path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return None
            except OSError as e:
                if attempt == READ_ATTEMPTS:
                    logger.error("manifest_read_failed path=%s attempts=%s error=%s", path, attempt, e)
                    return None
                logger.warning("manifest_read_retry path=%s attempt=%s error=%s", path, attempt, e)
                self._sleep(delay)
                delay *= 2
        return None

    def load_manifest(self, install_dir: str, profile_id: Optional[str] = DEFAULT_PROFILE_ID) -> Manifest:
        path = self.resolve_read_path(install_dir, profile_id)
        if path is None:
            return Manifest()
        return self._load_path(path)

    def load_legacy_manifest(self, install_dir: str) -> Manifest:
        path = legacy_manifest_path(install_dir)
        if not path.exists():
            return Manifest()
        return self._load_path(path)

    def _load_path(self, path: Path) -> Manifest:
        text = self._read_with_retry(path)
        if not text or not text.strip():
            return Manifest()
        try:
            return Manifest.model_validate_json(text)
        except ValidationError as e:
            logger.error("manifest_parse_failed path=%s error=%s", path, e.errors(include_url=False)[:3])
            return Manifest()

    def save_manifest(self, install_dir: str, profile_id: Optional[str], manifest: Manifest) -> Path:
        target = manifest_path(install_dir, profile_id)
        with self._lock:
            manifest.last_updated = now_utc()
            payload = manifest.model_dump_json(indent=2)
            tmp_path: Optional[Path] = None
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                with tempfile.NamedTemporaryFile(
                    "w",
                    encoding="utf-8",
                    dir=str(target.parent),
                    prefix=".savesync_",
                    suffix=".tmp",
                    delete=False,
                ) as tmp:
                    tmp_path = Path(tmp.name)
                    tmp.write(payload)
                os.replace(tmp_path, target)
                tmp_path = None
            except PermissionError as e:
                raise FileLockedError(
                    f"{target} is locked or read-only; close the running game and retry",
                    path=target,
                    error=e,
                ) from e
            except OSError as e:
                raise ManifestWriteError(f"could not write {target}: {e}", path=target) from e
            finally:
                if tmp_path is not None and tmp_path.exists():
                    tmp_path.unlink(missing_ok=True)

        logger.info("manifest_saved path=%s files=%s play_time=%s", target, len(manifest.files), manifest.play_time)
        return target

    def delete_manifest(self, install_dir: str, profile_id: str) -> bool:
        target = manifest_path(install_dir, profile_id)
        with self._lock:
            if not target.exists():
                return False
            target.unlink()
        logger.info("manifest_deleted path=%s", target)
        return True

    def update_play_time(
        self,
        install_dir: str,
        play_time: timedelta,
        profile_id: Optional[str] = DEFAULT_PROFILE_ID,
    ) -> Manifest:
        with self._lock:
            manifest = self.load_manifest(install_dir, profile_id)
            manifest.play_time = play_time
            self.save_manifest(install_dir, profile_id, manifest)
        return manifest

    def add_play_time(self, install_dir: str, profile_id: Optional[str], delta: timedelta) -> Manifest:
        with self._lock:
            manifest = self.load_manifest(install_dir, profile_id)
            manifest.play_time = manifest.play_time + delta
            self.save_manifest(install_dir, profile_id, manifest)
        return manifest

    def track_files(
        self,
        install_dir: str,
        profile_id: Optional[str],
        paths: Iterable[Path],
        prefix: Optional[str] = None,
        uploaded: bool = False,
    ) -> list[str]:
        """Hash `paths` into the profile manifest and return their keys.

        Records are marked uploaded only when `uploaded` is set; freshly tracked
        files must still go through the next upload.
        """
        keys = []
        with self._lock:
            manifest = self.load_manifest(install_dir, profile_id)
            for path in paths:
                path = Path(path)
                key = contract(str(path), install_dir, prefix)
                record = make_record(path)
                previous = manifest.files.get(key)
                if uploaded:
                    record.last_upload = now_utc()
                elif previous is not None and previous.checksum == record.checksum:
                    record.last_upload = previous.last_upload
                manifest.files[key] = record
                keys.append(key)
            if prefix and not manifest.detected_prefix:
                manifest.detected_prefix = prefix
            self.save_manifest(install_dir, profile_id, manifest)
        logger.info("manifest_tracked install_dir=%s profile=%s files=%s", install_dir, profile_id, len(keys))
        return keys

    def cleanup_records(self, install_dir: str, profile_id: Optional[str], max_age: timedelta) -> int:
        cutoff = now_utc() - max_age
        with self._lock:
            manifest = self.load_manifest(install_dir, profile_id)
            stale = [
                key for key, record in manifest.files.items()
                if record.last_upload is not None and _as_aware(record.last_upload) < cutoff
            ]
            if not stale:
                return 0
            for key in stale:
                manifest.files.pop(key, None)
            self.save_manifest(install_dir, profile_id, manifest)
        logger.info("manifest_records_cleaned install_dir=%s profile=%s removed=%s", install_dir, profile_id, len(stale))
        return len(stale)

    def migrate_legacy_manifest(self, install_dir: str) -> bool:
        legacy = legacy_manifest_path(install_dir)
        target = manifest_path(install_dir, DEFAULT_PROFILE_ID)
        with self._lock:
            if not legacy.exists() or target.exists():
                return False
            shutil.copy2(legacy, target)
        logger.info("manifest_legacy_migrated from=%s to=%s", legacy, target)
        return True


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def count_existing_files(manifest: Manifest, install_dir: str, prefix: Optional[str] = None) -> int:
    count = 0
    for key in manifest.files:
        try:
            if Path(expand(key, install_dir, prefix)).is_file():
                count += 1
        except PathOutsideRootsError:
            continue
    return count
