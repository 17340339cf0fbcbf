from __future__ import annotations

import json
import logging
import shutil
import tempfile
import threading
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError

from savesync.core.config import RcloneConfig, SyncConfig
from savesync.core.errors import (
    CloudSaveNotFoundError,
    FileLockedError,
    IntegrityMismatchError,
    PathOutsideRootsError,
    SaveSyncError,
    SyncBusyError,
    TransferTimeoutError,
)
from savesync.core.events import EventChannel
from savesync.providers.rclone.remote import effective_provider, remote_game_path
from savesync.providers.rclone.transfer import TransferService
from savesync.sync.countdown import AutoActionCountdown
from savesync.sync.manifest import (
    LEGACY_MANIFEST_NAME,
    ManifestStore,
    count_existing_files,
    make_record,
    manifest_file_name,
    now_utc,
    sha256_file,
)
from savesync.sync.models import (
    DEFAULT_PROFILE_ID,
    DownloadStats,
    FileComparison,
    FileComparisonItem,
    FileStatus,
    Game,
    Manifest,
    ProgressComparison,
    ProgressStatus,
    ReconcileReport,
    SuggestedAction,
    SyncAction,
    SyncOutcome,
    UploadStats,
    format_duration,
)
from savesync.sync.paths import expand
from savesync.sync.quarantine import QuarantineManager

logger = logging.getLogger("smart_sync")


def classify(
    local_play_time: timedelta,
    cloud_play_time: Optional[timedelta],
    similar_threshold_sec: int = 0,
) -> ProgressComparison:
    """Classify local vs cloud progress. `cloud_play_time=None` means no cloud save."""
    if cloud_play_time is None:
        return ProgressComparison(
            local_play_time=local_play_time,
            cloud_play_time=timedelta(0),
            difference=local_play_time,
            status=ProgressStatus.CLOUD_NOT_FOUND,
        )

    diff = local_play_time - cloud_play_time
    zero = timedelta(0)
    if local_play_time <= zero < cloud_play_time:
        status = ProgressStatus.CLOUD_AHEAD
    elif similar_threshold_sec > 0 and abs(diff.total_seconds()) < similar_threshold_sec:
        status = ProgressStatus.IN_SYNC
    elif diff > zero:
        status = ProgressStatus.LOCAL_AHEAD
    elif diff < zero:
        status = ProgressStatus.CLOUD_AHEAD
    else:
        status = ProgressStatus.IN_SYNC

    return ProgressComparison(
        local_play_time=local_play_time,
        cloud_play_time=cloud_play_time,
        difference=diff,
        status=status,
    )


def diff_manifests(local: Manifest, cloud: Optional[Manifest]) -> FileComparison:
    cloud_files = cloud.files if cloud is not None else {}
    items = []
    for key in sorted(set(local.files) | set(cloud_files)):
        l = local.files.get(key)
        c = cloud_files.get(key)
        if l is not None and c is not None:
            status = FileStatus.SYNCED if l.checksum == c.checksum else FileStatus.MODIFIED
        elif l is not None:
            status = FileStatus.NEW_LOCAL
        else:
            status = FileStatus.NEW_CLOUD
        items.append(
            FileComparisonItem(
                key=key,
                status=status,
                local_checksum=l.checksum if l else None,
                cloud_checksum=c.checksum if c else None,
                local_size=l.size if l else None,
                cloud_size=c.size if c else None,
            )
        )
    return FileComparison(items=items)


def suggest(comparison: ProgressComparison, local_has_data: bool) -> SuggestedAction:
    status = comparison.status
    local_text = format_duration(comparison.local_play_time)
    cloud_text = format_duration(comparison.cloud_play_time)

    if status == ProgressStatus.CLOUD_NOT_FOUND:
        if not local_has_data:
            return SuggestedAction(action=SyncAction.SKIP, reason="no action needed")
        return SuggestedAction(action=SyncAction.UPLOAD, force=True, reason="no cloud save found")
    if status == ProgressStatus.CLOUD_AHEAD:
        return SuggestedAction(action=SyncAction.DOWNLOAD, reason=f"cloud is ahead ({cloud_text} vs {local_text} local)")
    if status == ProgressStatus.LOCAL_AHEAD:
        return SuggestedAction(action=SyncAction.UPLOAD, reason=f"local is ahead ({local_text} vs {cloud_text} cloud)")
    return SuggestedAction(action=SyncAction.SKIP, reason=f"local and cloud are in sync ({local_text})")


class SmartSyncEngine:
    """Reconciliation session for one game.

    Owns the cached cloud manifest and serialises every operation for the game;
    a second request while one is running is rejected with SyncBusyError.
    """

    def __init__(
        self,
        game: Game,
        manifests: ManifestStore,
        transfer: TransferService,
        rclone: RcloneConfig,
        settings: SyncConfig,
        events: Optional[EventChannel] = None,
    ):
        self.game = game
        self.manifests = manifests
        self.transfer = transfer
        self.rclone = rclone
        self.settings = settings
        self.events = events
        self.quarantine = QuarantineManager(game.install_dir, settings.quarantine_dir)

        self._op_lock = threading.Lock()
        self._cache_lock = threading.Lock()
        self._cloud_fetched = False
        self._cloud_manifest: Optional[Manifest] = None
        self.last_comparison: Optional[ProgressComparison] = None
        self._countdown: Optional[AutoActionCountdown] = None

    @property
    def profile_id(self) -> str:
        return self.game.active_profile_id or DEFAULT_PROFILE_ID

    @property
    def remote_path(self) -> str:
        provider = effective_provider(self.game.provider, self.rclone.provider)
        return remote_game_path(provider, self.rclone.remote_base_folder, self.game.name)

    def _publish(self, kind: str, **payload):
        if self.events is not None:
            self.events.publish(kind, self.game.id, **payload)

    @contextmanager
    def _exclusive(self, op: str):
        if not self._op_lock.acquire(blocking=False):
            logger.info("sync_busy game=%s op=%s", self.game.name, op)
            raise SyncBusyError(f"{self.game.name} is busy with another sync operation", game=self.game.name, op=op)
        try:
            yield
        finally:
            self._op_lock.release()

    @property
    def busy(self) -> bool:
        return self._op_lock.locked()

    # cloud manifest cache

    def invalidate_cache(self):
        with self._cache_lock:
            self._cloud_fetched = False
            self._cloud_manifest = None
        logger.debug("cloud_cache_invalidated game=%s", self.game.name)

    def fetch_cloud_manifest(self, force: bool = False) -> Optional[Manifest]:
        with self._cache_lock:
            if self._cloud_fetched and not force:
                return self._cloud_manifest

        manifest = self._download_cloud_manifest()
        with self._cache_lock:
            self._cloud_manifest = manifest
            self._cloud_fetched = True
        self._publish("cloud_fetched", found=manifest is not None, remote=self.remote_path)
        return manifest

    def _download_cloud_manifest(self) -> Optional[Manifest]:
        remote = self.remote_path
        if not self.transfer.remote_has_files(remote):
            logger.info("cloud_manifest_absent game=%s remote=%s", self.game.name, remote)
            return None

        file_name = manifest_file_name(self.profile_id)
        with tempfile.TemporaryDirectory(prefix="savesync_manifest_") as tmp:
            local = Path(tmp) / file_name
            result = self.transfer.download_file_with_retry(
                remote, local, file_name, legacy_name=LEGACY_MANIFEST_NAME, game_id=self.game.id
            )
            if result.timed_out:
                raise TransferTimeoutError(
                    f"fetching the cloud manifest for {self.game.name} timed out", remote=remote
                )
            if not result.success:
                logger.warning("cloud_manifest_unavailable game=%s reason=%s", self.game.name, result.error)
                return None
            try:
                manifest = Manifest.model_validate_json(local.read_text(encoding="utf-8"))
            except (OSError, ValidationError) as e:
                logger.error("cloud_manifest_invalid game=%s error=%s", self.game.name, e)
                return None

        logger.info(
            "cloud_manifest_fetched game=%s files=%s play_time=%s legacy=%s",
            self.game.name, len(manifest.files), manifest.play_time, result.used_fallback,
        )
        return manifest

    # compare / suggest

    def local_manifest(self) -> Manifest:
        return self.manifests.load_manifest(self.game.install_dir, self.profile_id)

    def _existing_local_files(self, manifest: Manifest) -> int:
        return count_existing_files(manifest, self.game.install_dir, self.game.prefix)

    def local_play_time(self, manifest: Optional[Manifest] = None) -> timedelta:
        manifest = manifest if manifest is not None else self.local_manifest()
        if manifest.files and self._existing_local_files(manifest) == 0:
            # Tracked saves are gone from disk (fresh install, other machine): no local progress.
            logger.info("local_saves_missing game=%s tracked=%s", self.game.name, len(manifest.files))
            return timedelta(0)
        return manifest.play_time

    def _reconcile_locked(self, force_refresh: bool = False) -> ReconcileReport:
        cloud = self.fetch_cloud_manifest(force=force_refresh)
        local = self.local_manifest()
        local_time = self.local_play_time(local)

        comparison = classify(
            local_time,
            cloud.play_time if cloud is not None else None,
            self.settings.similar_threshold_sec,
        )
        files = diff_manifests(local, cloud)
        local_has_data = local_time > timedelta(0) or self._existing_local_files(local) > 0
        suggestion = suggest(comparison, local_has_data)

        self.last_comparison = comparison
        logger.info(
            "compared game=%s status=%s local=%s cloud=%s files=%s action=%s",
            self.game.name,
            comparison.status.value,
            format_duration(comparison.local_play_time),
            format_duration(comparison.cloud_play_time),
            json.dumps(files.counts()),
            suggestion.action.value,
        )
        self._publish(
            "compared",
            status=comparison.status.value,
            action=suggestion.action.value,
            reason=suggestion.reason,
            files=files.counts(),
        )
        return ReconcileReport(comparison=comparison, files=files, suggestion=suggestion)

    def reconcile(self, force_refresh: bool = False) -> ReconcileReport:
        with self._exclusive("compare"):
            return self._reconcile_locked(force_refresh)

    def compare_progress(self, force_refresh: bool = False) -> ProgressComparison:
        return self.reconcile(force_refresh).comparison

    def compare_files(self) -> FileComparison:
        with self._exclusive("compare_files"):
            return diff_manifests(self.local_manifest(), self.fetch_cloud_manifest())

    # act

    def upload_local_save(self, force: Optional[bool] = None) -> SyncOutcome:
        with self._exclusive("upload"):
            return self._upload_locked(force)

    def _upload_locked(self, force: Optional[bool]) -> SyncOutcome:
        cloud = self.fetch_cloud_manifest()
        if force is None:
            force = cloud is None

        manifest = self.local_manifest()
        items: list[tuple[Path, str]] = []
        for key in manifest.files:
            try:
                path = Path(expand(key, self.game.install_dir, self.game.prefix))
            except PathOutsideRootsError as e:
                logger.warning("upload_key_unresolvable game=%s key=%s error=%s", self.game.name, key, e)
                continue
            if path.is_file():
                items.append((path, key))

        if not items:
            return SyncOutcome(success=False, action=SyncAction.UPLOAD, message="no tracked files exist on disk")

        def is_unchanged(path: Path, key: str) -> bool:
            record = manifest.files.get(key)
            if record is None or record.last_upload is None:
                return False
            current = sha256_file(path)
            if current != record.checksum:
                return False
            if cloud is not None:
                cloud_record = cloud.files.get(key)
                return cloud_record is not None and cloud_record.checksum == current
            return True

        self._publish("upload_started", files=len(items), force=force)
        stats = UploadStats()
        self.transfer.upload_batch(
            items,
            self.remote_path,
            stats,
            force=force,
            is_unchanged=is_unchanged,
            game_id=self.game.id,
        )

        failed = set(stats.failed_files)
        uploaded_at = now_utc()
        for path, key in items:
            if key in failed:
                continue
            record = make_record(path)
            record.last_upload = uploaded_at
            manifest.files[key] = record
        if self.game.prefix and not manifest.detected_prefix:
            manifest.detected_prefix = self.game.prefix

        try:
            local_manifest = self.manifests.save_manifest(self.game.install_dir, self.profile_id, manifest)
        except SaveSyncError as e:
            return SyncOutcome(success=False, action=SyncAction.UPLOAD, message=str(e), uploaded=stats)

        manifest_result = self.transfer.upload_file_with_retry(
            local_manifest, f"{self.remote_path}/{local_manifest.name}", game_id=self.game.id
        )
        success = stats.failed == 0 and manifest_result.success
        message = "upload complete"
        if not manifest_result.success:
            message = f"manifest upload failed: {manifest_result.error}"
        elif stats.failed:
            message = f"{stats.failed} file(s) failed to upload"

        comparison = None
        if success:
            self.invalidate_cache()
            comparison = self._reconcile_locked(force_refresh=True).comparison

        self._publish("upload_finished", success=success, **stats.model_dump())
        logger.info("upload_done game=%s success=%s %s", self.game.name, success, json.dumps(stats.model_dump()))
        return SyncOutcome(
            success=success,
            action=SyncAction.UPLOAD,
            message=message,
            uploaded=stats,
            comparison=comparison,
        )

    def download_cloud_save(self) -> SyncOutcome:
        with self._exclusive("download"):
            return self._download_locked()

    def _download_locked(self) -> SyncOutcome:
        cloud = self.fetch_cloud_manifest()
        if cloud is None:
            return SyncOutcome(success=False, action=SyncAction.DOWNLOAD, message="no cloud save found")

        local = self.local_manifest()
        stats = DownloadStats()
        self._publish("download_started", files=len(cloud.files))

        with tempfile.TemporaryDirectory(prefix="savesync_download_") as tmp:
            staging = Path(tmp)
            result = self.transfer.download_directory(self.remote_path, staging, game_id=self.game.id)
            if not result.success:
                return SyncOutcome(
                    success=False,
                    action=SyncAction.DOWNLOAD,
                    message=f"download failed: {result.reason()}",
                    downloaded=stats,
                )

            for key, record in cloud.files.items():
                try:
                    self._install_downloaded_file(staging, key, record.checksum, local, stats)
                except SaveSyncError as e:
                    stats.failed += 1
                    stats.failed_files.append(key)
                    logger.error("download_install_failed game=%s key=%s error=%s", self.game.name, key, e)

        for key in sorted(set(local.files) - set(cloud.files)):
            try:
                path = Path(expand(key, self.game.install_dir, self.game.prefix))
                if path.is_file():
                    self.quarantine.quarantine_file(path, "Tracked locally but absent from the downloaded cloud save")
                    stats.quarantined += 1
            except SaveSyncError as e:
                stats.failed += 1
                stats.failed_files.append(key)
                logger.error("download_quarantine_failed game=%s key=%s error=%s", self.game.name, key, e)

        new_manifest = cloud.model_copy(deep=True)
        for key in stats.failed_files:
            if key in local.files:
                new_manifest.files[key] = local.files[key]
            else:
                new_manifest.files.pop(key, None)
        new_manifest.detected_prefix = self.game.prefix or cloud.detected_prefix

        try:
            self.manifests.save_manifest(self.game.install_dir, self.profile_id, new_manifest)
        except SaveSyncError as e:
            return SyncOutcome(success=False, action=SyncAction.DOWNLOAD, message=str(e), downloaded=stats)

        success = stats.failed == 0
        comparison = None
        if success:
            self.invalidate_cache()
            comparison = self._reconcile_locked(force_refresh=True).comparison

        self._publish("download_finished", success=success, **stats.model_dump())
        logger.info("download_done game=%s success=%s %s", self.game.name, success, json.dumps(stats.model_dump()))
        return SyncOutcome(
            success=success,
            action=SyncAction.DOWNLOAD,
            message="download complete" if success else f"{stats.failed} file(s) failed to download",
            downloaded=stats,
            comparison=comparison,
        )

    def _install_downloaded_file(
        self,
        staging: Path,
        key: str,
        expected_checksum: str,
        local: Manifest,
        stats: DownloadStats,
    ):
        source = staging.joinpath(*key.split("/"))
        target = Path(expand(key, self.game.install_dir, self.game.prefix))
        if not source.is_file():
            raise CloudSaveNotFoundError(f"{key} listed in the cloud manifest but not downloaded", key=key)

        downloaded = sha256_file(source)
        if downloaded != expected_checksum:
            logger.warning("download_integrity_mismatch game=%s key=%s", self.game.name, key)
            raise IntegrityMismatchError(f"{key} does not match its cloud checksum", key=key)

        if target.is_file():
            current = sha256_file(target)
            if current == expected_checksum:
                stats.skipped += 1
                return
            recorded = local.files.get(key)
            # Local bytes are redundant only if this exact content was uploaded before.
            redundant = (
                recorded is not None and recorded.last_upload is not None and recorded.checksum == current
            )
            if not redundant:
                self.quarantine.quarantine_file(target, "Local changes overwritten by cloud download")
                stats.quarantined += 1

        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            shutil.copy2(source, target)
        except PermissionError as e:
            raise FileLockedError(f"{target} is in use; close the running game and retry", key=key) from e
        stats.downloaded += 1

    # unattended action

    def start_auto_action(
        self,
        report: ReconcileReport,
        on_tick: Optional[Callable[[int], None]] = None,
        on_done: Optional[Callable[[SyncOutcome], None]] = None,
        seconds: Optional[int] = None,
        interval: float = 1.0,
        execute: Optional[Callable[[SuggestedAction], SyncOutcome]] = None,
    ) -> Optional[AutoActionCountdown]:
        action = report.suggestion.action
        if action == SyncAction.SKIP:
            return None
        self.cancel_auto_action()

        def fire():
            if execute is not None:
                outcome = execute(report.suggestion)
            elif action == SyncAction.UPLOAD:
                outcome = self.upload_local_save(force=report.suggestion.force or None)
            else:
                outcome = self.download_cloud_save()
            if on_done:
                on_done(outcome)

        countdown = AutoActionCountdown(
            seconds or self.settings.auto_action_sec,
            on_fire=fire,
            on_tick=on_tick,
            interval=interval,
        )
        self._countdown = countdown
        self._publish("auto_action_scheduled", action=action.value, seconds=countdown.seconds)
        return countdown.start()

    def cancel_auto_action(self) -> bool:
        countdown, self._countdown = self._countdown, None
        if countdown is None:
            return False
        cancelled = countdown.cancel()
        if cancelled:
            self._publish("auto_action_cancelled")
        return cancelled

    def status_snapshot(self) -> dict:
        with self._cache_lock:
            fetched = self._cloud_fetched
            found = self._cloud_manifest is not None
        return {
            "game": self.game.name,
            "profile": self.profile_id,
            "remote": self.remote_path,
            "busy": self.busy,
            "cloud_fetched": fetched,
            "cloud_found": found if fetched else None,
            "last_status": self.last_comparison.status.value if self.last_comparison else None,
            "auto_action_pending": bool(self._countdown and self._countdown.running),
        }
