from __future__ import annotations

import logging
import threading
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from savesync.core.config import load_config
from savesync.core.errors import (
    CannotDeleteDefaultProfileError,
    DuplicateGameNameError,
    DuplicateProfileNameError,
    NotFoundError,
    RemoteListingError,
    SaveSyncError,
    SyncBusyError,
    TransferTimeoutError,
)
from savesync.core.events import SyncEvent
from savesync.core.logging_setup import read_log_tail
from savesync.sync.models import Game, SyncOutcome
from savesync.sync.service import SaveSyncService

router = APIRouter(prefix="/api")

logger = logging.getLogger("web")

RECENT_EVENTS_MAX = 200

_service: Optional[SaveSyncService] = None
_service_lock = threading.Lock()
_recent_events: deque[dict] = deque(maxlen=RECENT_EVENTS_MAX)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _remember_event(event: SyncEvent) -> None:
    _recent_events.append(event.model_dump())


def get_service() -> SaveSyncService:
    global _service
    with _service_lock:
        if _service is None:
            _service = SaveSyncService(load_config())
            _service.subscribe(_remember_event)
            logger.info("service_ready db=%s", _service.cfg.database.path)
        return _service


def reset_service() -> None:
    global _service
    with _service_lock:
        _service = None
    _recent_events.clear()


class GameCreate(BaseModel):
    name: str
    install_dir: str
    executable: str = ""
    provider: Optional[str] = None
    prefix: Optional[str] = None


class ProfileCreate(BaseModel):
    name: str


class QuarantineRequest(BaseModel):
    file_name: str


class UploadRequest(BaseModel):
    force: Optional[bool] = None


def _status_for(e: SaveSyncError) -> int:
    if isinstance(e, NotFoundError):
        return 404
    if isinstance(e, TransferTimeoutError):
        return 504
    if isinstance(e, RemoteListingError):
        return 502
    if isinstance(e, (SyncBusyError, DuplicateGameNameError, DuplicateProfileNameError, CannotDeleteDefaultProfileError)):
        return 409
    return 400


@contextmanager
def _api_errors():
    try:
        yield
    except SaveSyncError as e:
        raise HTTPException(status_code=_status_for(e), detail=e.to_payload()) from e


def _game(service: SaveSyncService, game_id: int) -> Game:
    with _api_errors():
        return service.games.get_game(game_id)


def _outcome_response(outcome: SyncOutcome) -> JSONResponse:
    # Failed transfers are reported in the body; the request itself succeeded.
    return JSONResponse(status_code=200, content={"ok": outcome.success, **outcome.model_dump(mode="json")})


@router.get("/healthz")
def healthz():
    return {
        "ok": True,
        "status": "alive",
        "checked_at": _now_iso(),
    }


@router.get("/readyz")
def readyz():
    checks = {"config_load": False, "database_parent_ready": False, "log_parent_ready": False}
    errors: list[str] = []
    try:
        cfg = load_config()
        checks["config_load"] = True
    except Exception as e:
        cfg = None
        errors.append(f"config_load_failed: {e}")

    if cfg is not None:
        for key, target in (("database_parent_ready", cfg.database.path), ("log_parent_ready", cfg.logging.file)):
            try:
                Path(target).parent.mkdir(parents=True, exist_ok=True)
                checks[key] = True
            except OSError as e:
                errors.append(f"{key.replace('_ready', '')}_unavailable: {e}")

    ok = all(checks.values())
    payload = {"ok": ok, "checked_at": _now_iso(), "checks": checks, "errors": errors}
    return JSONResponse(status_code=200 if ok else 503, content=payload)


@router.get("/games")
def list_games():
    service = get_service()
    games = service.games.list_games()
    return {"count": len(games), "items": [g.model_dump() for g in games]}


@router.post("/games")
def add_game(payload: GameCreate):
    service = get_service()
    with _api_errors():
        game = service.games.add_game(
            payload.name,
            payload.install_dir,
            executable=payload.executable,
            provider=payload.provider,
            prefix=payload.prefix,
        )
        service.get_profiles(game)
    return {"ok": True, "game": game.model_dump()}


@router.delete("/games/{game_id}")
def remove_game(game_id: int):
    service = get_service()
    game = _game(service, game_id)
    with _api_errors():
        removed = service.remove_game(game)
    return {"ok": True, "manifests_removed": removed}


@router.get("/games/{game_id}/status")
def game_status(game_id: int):
    service = get_service()
    game = _game(service, game_id)
    return service.engine_for(game).status_snapshot()


@router.get("/games/{game_id}/compare")
def compare(game_id: int, refresh: bool = False):
    service = get_service()
    game = _game(service, game_id)
    with _api_errors():
        report = service.reconcile(game, force_refresh=refresh)
    return report.model_dump(mode="json")


@router.post("/games/{game_id}/upload")
def upload(game_id: int, payload: Optional[UploadRequest] = None):
    service = get_service()
    game = _game(service, game_id)
    with _api_errors():
        outcome = service.upload_local_save(game, force=payload.force if payload else None)
    return _outcome_response(outcome)


@router.post("/games/{game_id}/download")
def download(game_id: int):
    service = get_service()
    game = _game(service, game_id)
    with _api_errors():
        outcome = service.download_cloud_save(game)
    return _outcome_response(outcome)


@router.post("/games/{game_id}/auto")
def start_auto(game_id: int, seconds: Optional[int] = None):
    service = get_service()
    game = _game(service, game_id)
    with _api_errors():
        report, countdown = service.start_auto_action(game, seconds=seconds)
    return {
        "ok": True,
        "scheduled": countdown is not None,
        "seconds": countdown.seconds if countdown else 0,
        "suggestion": report.suggestion.model_dump(mode="json"),
    }


@router.post("/games/{game_id}/auto/cancel")
def cancel_auto(game_id: int):
    service = get_service()
    game = _game(service, game_id)
    return {"ok": True, "cancelled": service.cancel_auto_action(game)}


@router.get("/games/{game_id}/profiles")
def list_profiles(game_id: int):
    service = get_service()
    game = _game(service, game_id)
    with _api_errors():
        items = service.get_profiles(game)
    return {
        "active_profile_id": game.active_profile_id,
        "items": [p.model_dump(mode="json") for p in items],
    }


@router.post("/games/{game_id}/profiles")
def add_profile(game_id: int, payload: ProfileCreate):
    service = get_service()
    game = _game(service, game_id)
    with _api_errors():
        profile = service.profiles.add_profile(game, payload.name)
    return {"ok": True, "profile": profile.model_dump(mode="json")}


@router.delete("/games/{game_id}/profiles/{profile_id}")
def delete_profile(game_id: int, profile_id: str):
    service = get_service()
    game = _game(service, game_id)
    with _api_errors():
        was_active = service.profiles.delete_profile(game, profile_id)
    return {"ok": True, "deleted": profile_id, "was_active": was_active}


@router.post("/games/{game_id}/profiles/{profile_id}/activate")
def activate_profile(game_id: int, profile_id: str):
    service = get_service()
    game = _game(service, game_id)
    with _api_errors():
        game = service.switch_profile(game, profile_id)
    return {"ok": True, "active_profile_id": game.active_profile_id}


@router.get("/games/{game_id}/quarantine")
def list_quarantine(game_id: int):
    service = get_service()
    game = _game(service, game_id)
    items = service.list_quarantined(game)
    return {
        "count": len(items),
        "items": [{"file_name": i.file_name, **i.model_dump(mode="json")} for i in items],
    }


@router.post("/games/{game_id}/quarantine/restore")
def restore_quarantine(game_id: int, payload: QuarantineRequest):
    service = get_service()
    game = _game(service, game_id)
    with _api_errors():
        target = service.restore_quarantined(game, payload.file_name)
    return {"ok": True, "restored_to": target}


@router.post("/games/{game_id}/quarantine/delete")
def delete_quarantine(game_id: int, payload: QuarantineRequest):
    service = get_service()
    game = _game(service, game_id)
    with _api_errors():
        service.delete_quarantined(game, payload.file_name)
    return {"ok": True, "deleted": payload.file_name}


@router.get("/runs")
def runs(limit: int = 50, game_id: Optional[int] = None):
    limit_sanitized = min(max(int(limit), 1), 500)
    service = get_service()
    game = _game(service, game_id) if game_id is not None else None
    items = service.recent_runs(limit=limit_sanitized, game=game)
    return {"limit": limit_sanitized, "count": len(items), "items": items}


@router.get("/events")
def events(limit: int = 50):
    limit_sanitized = min(max(int(limit), 1), RECENT_EVENTS_MAX)
    items = list(_recent_events)[-limit_sanitized:]
    return {"count": len(items), "items": items}


@router.get("/logs")
def logs(lines: int = 200, level: Optional[str] = None, logger: Optional[str] = None):
    lines_sanitized = min(max(int(lines), 1), 2000)
    cfg = load_config()
    return read_log_tail(cfg.logging.file, lines=lines_sanitized, level=level, logger=logger)


@router.get("/cloud/games")
def cloud_games():
    service = get_service()
    with _api_errors():
        names = service.list_cloud_games()
    return {"items": names}


@router.get("/cloud/check")
def cloud_check(name: str):
    service = get_service()
    with _api_errors():
        exists = service.cloud_name_checker().check_now(name)
    return {"name": name, "exists": exists}
