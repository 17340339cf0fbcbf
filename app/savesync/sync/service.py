from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Union

from savesync.core.config import AppConfig
from savesync.core.db import finish_sync_run, init_db, insert_sync_run, recent_sync_runs
from savesync.core.events import EventChannel, Subscriber
from savesync.providers.rclone import RcloneBackend, TransferBackend, TransferService
from savesync.providers.rclone.remote import remote_root
from savesync.sync.cloud_names import CloudNameChecker
from savesync.sync.countdown import AutoActionCountdown
from savesync.sync.manifest import ManifestStore
from savesync.sync.models import (
    FileComparison,
    Game,
    Profile,
    ProgressComparison,
    QuarantinedItem,
    ReconcileReport,
    SuggestedAction,
    SyncAction,
    SyncOutcome,
)
from savesync.sync.profiles import GameRegistry, ProfileManager
from savesync.sync.quarantine import QuarantineManager
from savesync.sync.smart_sync import SmartSyncEngine

logger = logging.getLogger("service")

QuarantineRef = Union[QuarantinedItem, str]


class SaveSyncService:
    """Entry point used by the CLI and the web API.

    Keeps one SmartSyncEngine per game id so the cached cloud manifest and the
    per-game operation lock survive between calls.
    """

    def __init__(
        self,
        cfg: AppConfig,
        backend: Optional[TransferBackend] = None,
        events: Optional[EventChannel] = None,
        manifests: Optional[ManifestStore] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.cfg = cfg
        init_db(cfg.database.path)
        self.events = events or EventChannel()
        self.manifests = manifests or ManifestStore()
        self.games = GameRegistry(cfg.database.path, self.manifests)
        self.profiles = ProfileManager(cfg.database.path, self.manifests)
        transfer_kwargs = {"sleep": sleep} if sleep is not None else {}
        self.transfer = TransferService(
            backend or RcloneBackend(cfg.rclone.binary),
            cfg.rclone,
            cfg.transfer,
            events=self.events,
            **transfer_kwargs,
        )
        self._engines: dict[int, SmartSyncEngine] = {}
        self._engines_lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        return self.events.subscribe(callback)

    def engine_for(self, game: Game) -> SmartSyncEngine:
        with self._engines_lock:
            engine = self._engines.get(game.id)
            if engine is None:
                engine = SmartSyncEngine(
                    game.model_copy(),
                    self.manifests,
                    self.transfer,
                    self.cfg.rclone,
                    self.cfg.sync,
                    events=self.events,
                )
                self._engines[game.id] = engine
            elif engine.game != game and not engine.busy:
                # Renamed, moved or switched profile: the cached cloud copy no longer applies.
                engine.game = game.model_copy()
                engine.quarantine = QuarantineManager(game.install_dir, self.cfg.sync.quarantine_dir)
                engine.invalidate_cache()
            return engine

    def _checked(self, game: Game) -> SmartSyncEngine:
        # Rejects a dangling active profile id before any transfer starts.
        self.profiles.active_profile(game)
        return self.engine_for(game)

    def _record_run(self, game: Game, run_type: str, fn: Callable[[], SyncOutcome]) -> SyncOutcome:
        run_id = insert_sync_run(self.cfg.database.path, game.id, run_type)
        try:
            outcome = fn()
        except Exception as e:
            finish_sync_run(self.cfg.database.path, run_id, "failed", {"error": str(e)})
            raise
        finish_sync_run(
            self.cfg.database.path,
            run_id,
            "success" if outcome.success else "failed",
            outcome.model_dump(mode="json"),
        )
        return outcome

    # caller-facing API

    def compare_progress(self, game: Game, force_refresh: bool = False) -> ProgressComparison:
        return self._checked(game).compare_progress(force_refresh)

    def reconcile(self, game: Game, force_refresh: bool = False) -> ReconcileReport:
        return self._checked(game).reconcile(force_refresh)

    def compare_files(self, game: Game) -> FileComparison:
        return self._checked(game).compare_files()

    def download_cloud_save(self, game: Game) -> SyncOutcome:
        engine = self._checked(game)
        return self._record_run(game, "download", engine.download_cloud_save)

    def upload_local_save(self, game: Game, force: Optional[bool] = None) -> SyncOutcome:
        engine = self._checked(game)
        return self._record_run(game, "upload", lambda: engine.upload_local_save(force=force))

    def _run_suggested(self, game: Game, suggestion: SuggestedAction) -> SyncOutcome:
        engine = self.engine_for(game)
        if suggestion.action == SyncAction.UPLOAD:
            force = suggestion.force or None
            return self._record_run(game, "auto_upload", lambda: engine.upload_local_save(force=force))
        return self._record_run(game, "auto_download", engine.download_cloud_save)

    def start_auto_action(
        self,
        game: Game,
        on_tick: Optional[Callable[[int], None]] = None,
        on_done: Optional[Callable[[SyncOutcome], None]] = None,
        seconds: Optional[int] = None,
    ) -> tuple[ReconcileReport, Optional[AutoActionCountdown]]:
        """Reconcile, then schedule the suggested action. No countdown for Skip."""
        engine = self._checked(game)
        report = engine.reconcile()
        countdown = engine.start_auto_action(
            report,
            on_tick=on_tick,
            on_done=on_done,
            seconds=seconds,
            execute=lambda suggestion: self._run_suggested(game, suggestion),
        )
        return report, countdown

    def cancel_auto_action(self, game: Game) -> bool:
        return self.engine_for(game).cancel_auto_action()

    def _quarantine_item(self, game: Game, ref: QuarantineRef) -> QuarantinedItem:
        if isinstance(ref, QuarantinedItem):
            return ref
        return self.engine_for(game).quarantine.find(ref)

    def list_quarantined(self, game: Game) -> list[QuarantinedItem]:
        return self.engine_for(game).quarantine.list_quarantined()

    def restore_quarantined(self, game: Game, ref: QuarantineRef) -> str:
        engine = self.engine_for(game)
        return str(engine.quarantine.restore(self._quarantine_item(game, ref)))

    def delete_quarantined(self, game: Game, ref: QuarantineRef) -> None:
        engine = self.engine_for(game)
        engine.quarantine.delete(self._quarantine_item(game, ref))

    def get_profiles(self, game: Game) -> list[Profile]:
        return self.profiles.get_profiles(game)

    def switch_profile(self, game: Game, profile_id: str) -> Game:
        game = self.profiles.switch_profile(game, profile_id)
        engine = self.engine_for(game)
        engine.invalidate_cache()
        return game

    # helpers for outer surfaces

    def list_cloud_games(self) -> list[str]:
        return self.transfer.list_directories(remote_root(self.cfg.rclone.provider, self.cfg.rclone.remote_base_folder))

    def cloud_name_checker(self) -> CloudNameChecker:
        return CloudNameChecker(
            self.transfer,
            remote_root(self.cfg.rclone.provider, self.cfg.rclone.remote_base_folder),
            quiet_period=self.cfg.sync.name_check_debounce_sec,
            cooldown=self.cfg.sync.name_check_cooldown_sec,
        )

    def recent_runs(self, limit: int = 20, game: Optional[Game] = None) -> list[dict]:
        return recent_sync_runs(self.cfg.database.path, limit=limit, game_id=game.id if game else None)

    def remove_game(self, game: Game) -> int:
        with self._engines_lock:
            self._engines.pop(game.id, None)
        return self.games.delete_game(game)
