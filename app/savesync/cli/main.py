from __future__ import annotations

import json
import shutil
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from savesync.core.config import DEFAULT_CONFIG_PATH, load_config
from savesync.core.errors import SaveSyncError
from savesync.core.logging_setup import read_log_tail, setup_logging
from savesync.sync.manifest import manifest_path
from savesync.sync.models import SyncAction, format_duration
from savesync.sync.service import SaveSyncService

app = typer.Typer(add_completion=False)
console = Console()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _print_json(payload: Any):
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


@contextmanager
def _cli_errors():
    try:
        yield
    except SaveSyncError as e:
        _print_json(e.to_payload())
        raise typer.Exit(2)


def _build_service() -> SaveSyncService:
    cfg = load_config()
    setup_logging(cfg.logging.level, cfg.logging.file, console=False)
    return SaveSyncService(cfg)


@app.command("config-show")
def config_show(path: Path = DEFAULT_CONFIG_PATH):
    """Show current config.yaml."""
    cfg = load_config(path)
    _print_json(cfg.model_dump())


@app.command("config-validate")
def config_validate(
    path: Path = DEFAULT_CONFIG_PATH,
    strict: bool = typer.Option(False, "--strict", help="Return non-zero when validation fails."),
):
    """Validate config and runtime prerequisites."""
    out: dict[str, Any] = {
        "ok": True,
        "checked_at": _now_iso(),
        "config_path": str(path),
        "checks": {
            "config_exists": path.exists(),
            "rclone_binary_found": False,
            "rclone_config_exists": False,
            "web_port_valid": False,
            "database_parent_ready": False,
            "log_parent_ready": False,
        },
        "warnings": [],
        "errors": [],
    }

    try:
        cfg = load_config(path)
    except Exception as e:
        out["ok"] = False
        out["errors"].append(f"load_config_failed: {e}")
        _print_json(out)
        if strict:
            raise typer.Exit(2)
        return

    out["checks"]["rclone_binary_found"] = bool(shutil.which(cfg.rclone.binary) or Path(cfg.rclone.binary).is_file())
    if not out["checks"]["rclone_binary_found"]:
        out["errors"].append(f"rclone_binary_missing: {cfg.rclone.binary}")

    out["checks"]["rclone_config_exists"] = Path(cfg.rclone.config_path).expanduser().exists()
    if not out["checks"]["rclone_config_exists"]:
        out["warnings"].append(f"rclone_config_missing: {cfg.rclone.config_path}")

    port = int(cfg.web_port)
    out["checks"]["web_port_valid"] = 1 <= port <= 65535
    if not out["checks"]["web_port_valid"]:
        out["errors"].append(f"web_port_out_of_range: {port}")

    try:
        Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)
        out["checks"]["database_parent_ready"] = True
    except OSError as e:
        out["errors"].append(f"database_parent_unavailable: {e}")

    try:
        Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
        out["checks"]["log_parent_ready"] = True
    except OSError as e:
        out["errors"].append(f"log_parent_unavailable: {e}")

    out["ok"] = len(out["errors"]) == 0
    _print_json(out)
    if strict and not out["ok"]:
        raise typer.Exit(2)


@app.command()
def status():
    """Show runtime summary."""
    service = _build_service()
    cfg = service.cfg
    table = Table(title="SaveSync status")
    table.add_column("Key")
    table.add_column("Value")
    table.add_row("config", str(DEFAULT_CONFIG_PATH))
    table.add_row("rclone", cfg.rclone.binary)
    table.add_row("rclone_config", cfg.rclone.config_path)
    table.add_row("provider", cfg.rclone.provider)
    table.add_row("remote_base_folder", cfg.rclone.remote_base_folder)
    table.add_row("games", str(len(service.games.list_games())))
    table.add_row("db", cfg.database.path)
    table.add_row("log", cfg.logging.file)
    table.add_row("web", f"http://{cfg.web_bind_host}:{cfg.web_port}")
    console.print(table)


@app.command("game-add")
def game_add(
    name: str,
    install_dir: Path,
    executable: str = typer.Option("", "--exe", help="Game executable path."),
    provider: Optional[str] = typer.Option(None, "--provider", help="Cloud provider override."),
    prefix: Optional[Path] = typer.Option(None, "--prefix", help="Compatibility prefix directory."),
):
    """Register a game."""
    service = _build_service()
    with _cli_errors():
        game = service.games.add_game(
            name,
            str(install_dir.expanduser().resolve()),
            executable=executable,
            provider=provider,
            prefix=str(prefix.expanduser().resolve()) if prefix else None,
        )
        service.get_profiles(game)
    _print_json({"ok": True, "game": game.model_dump()})


@app.command("game-list")
def game_list():
    """List registered games."""
    service = _build_service()
    table = Table(title="Games")
    for col in ("ID", "Name", "Install dir", "Profile", "Provider"):
        table.add_column(col)
    for game in service.games.list_games():
        table.add_row(
            str(game.id),
            game.name,
            game.install_dir,
            game.active_profile_id,
            game.provider or service.cfg.rclone.provider,
        )
    console.print(table)


@app.command("game-remove")
def game_remove(
    game_ref: str = typer.Argument(..., metavar="GAME"),
    yes: bool = typer.Option(False, "--yes", help="Skip confirmation."),
):
    """Remove a game and every profile manifest it owns."""
    service = _build_service()
    with _cli_errors():
        game = service.games.find_game(game_ref)
        if not yes:
            typer.confirm(f"Remove {game.name} and delete its profile manifests?", abort=True)
        removed = service.remove_game(game)
    _print_json({"ok": True, "game": game.name, "manifests_removed": removed})


@app.command()
def track(
    game_ref: str = typer.Argument(..., metavar="GAME"),
    paths: list[Path] = typer.Argument(..., help="Save files to track."),
):
    """Add save files to the active profile's manifest."""
    service = _build_service()
    with _cli_errors():
        game = service.games.find_game(game_ref)
        keys = service.manifests.track_files(
            game.install_dir,
            game.active_profile_id,
            [p.expanduser().resolve() for p in paths],
            prefix=game.prefix,
        )
    _print_json({"ok": True, "game": game.name, "profile": game.active_profile_id, "tracked": keys})


@app.command("playtime-add")
def playtime_add(
    game_ref: str = typer.Argument(..., metavar="GAME"),
    minutes: float = typer.Option(..., "--minutes", min=0),
):
    """Add a play session to the active profile's play time."""
    service = _build_service()
    with _cli_errors():
        game = service.games.find_game(game_ref)
        manifest = service.manifests.add_play_time(
            game.install_dir, game.active_profile_id, timedelta(minutes=minutes)
        )
    _print_json({"ok": True, "game": game.name, "play_time": format_duration(manifest.play_time)})


@app.command()
def compare(
    game_ref: str = typer.Argument(..., metavar="GAME"),
    refresh: bool = typer.Option(False, "--refresh", help="Ignore the cached cloud manifest."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
):
    """Compare local and cloud progress and suggest an action."""
    service = _build_service()
    with _cli_errors():
        game = service.games.find_game(game_ref)
        report = service.reconcile(game, force_refresh=refresh)

    if json_output:
        _print_json(report.model_dump(mode="json"))
        return

    c = report.comparison
    console.print(
        f"[bold]{game.name}[/bold]: {c.status.value}  "
        f"local={format_duration(c.local_play_time)} cloud={format_duration(c.cloud_play_time)}"
    )
    table = Table(title="Files")
    table.add_column("Path")
    table.add_column("Status")
    for item in report.files.items:
        table.add_row(item.key, item.status.value)
    console.print(table)
    console.print(f"Suggested: {report.suggestion.action.value} ({report.suggestion.reason})")


def _print_outcome(outcome):
    _print_json(outcome.model_dump(mode="json"))
    if not outcome.success:
        raise typer.Exit(2)


@app.command()
def upload(
    game_ref: str = typer.Argument(..., metavar="GAME"),
    force: Optional[bool] = typer.Option(None, "--force/--no-force", help="Re-upload unchanged files."),
):
    """Upload the local save to the cloud."""
    service = _build_service()
    with _cli_errors():
        game = service.games.find_game(game_ref)
        outcome = service.upload_local_save(game, force=force)
    _print_outcome(outcome)


@app.command()
def download(game_ref: str = typer.Argument(..., metavar="GAME")):
    """Replace the local save with the cloud save."""
    service = _build_service()
    with _cli_errors():
        game = service.games.find_game(game_ref)
        outcome = service.download_cloud_save(game)
    _print_outcome(outcome)


@app.command()
def auto(
    game_ref: str = typer.Argument(..., metavar="GAME"),
    seconds: Optional[int] = typer.Option(None, "--seconds", min=1, help="Countdown length."),
):
    """Run the suggested action after a countdown; Ctrl+C cancels."""
    service = _build_service()
    result: dict[str, Any] = {}

    def on_tick(remaining: int):
        console.print(f"{remaining}s left, Ctrl+C to cancel")

    with _cli_errors():
        game = service.games.find_game(game_ref)
        report, countdown = service.start_auto_action(
            game,
            on_tick=on_tick,
            on_done=lambda outcome: result.update(outcome=outcome),
            seconds=seconds,
        )

    if countdown is None:
        _print_json({"ok": True, "action": SyncAction.SKIP.value, "reason": report.suggestion.reason})
        return

    console.print(f"[bold]{report.suggestion.action.value}[/bold]: {report.suggestion.reason}")
    try:
        while countdown.running:
            time.sleep(0.2)
    except KeyboardInterrupt:
        service.cancel_auto_action(game)
        _print_json({"ok": True, "action": report.suggestion.action.value, "cancelled": True})
        return

    outcome = result.get("outcome")
    if outcome is None:
        _print_json({"ok": False, "error": "auto_action_failed"})
        raise typer.Exit(2)
    _print_outcome(outcome)


@app.command()
def profiles(game_ref: str = typer.Argument(..., metavar="GAME")):
    """List save profiles for a game."""
    service = _build_service()
    with _cli_errors():
        game = service.games.find_game(game_ref)
        items = service.get_profiles(game)
    table = Table(title=f"{game.name} profiles")
    for col in ("ID", "Name", "Default", "Active", "Manifest"):
        table.add_column(col)
    for p in items:
        table.add_row(
            p.id,
            p.name,
            "yes" if p.is_default else "",
            "*" if p.id == game.active_profile_id else "",
            "yes" if manifest_path(game.install_dir, p.id).exists() else "no",
        )
    console.print(table)


@app.command("profile-add")
def profile_add(game_ref: str = typer.Argument(..., metavar="GAME"), name: str = typer.Argument(...)):
    """Create a new save profile."""
    service = _build_service()
    with _cli_errors():
        game = service.games.find_game(game_ref)
        profile = service.profiles.add_profile(game, name)
    _print_json({"ok": True, "profile": profile.model_dump()})


@app.command("profile-delete")
def profile_delete(
    game_ref: str = typer.Argument(..., metavar="GAME"),
    profile_id: str = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", help="Skip confirmation."),
):
    """Delete a profile and its manifest."""
    service = _build_service()
    with _cli_errors():
        game = service.games.find_game(game_ref)
        if not yes:
            typer.confirm(f"Delete profile {profile_id} of {game.name}?", abort=True)
        was_active = service.profiles.delete_profile(game, profile_id)
    out = {"ok": True, "deleted": profile_id, "was_active": was_active}
    if was_active:
        out["warning"] = "active_profile_deleted: run profile-switch before syncing"
    _print_json(out)


@app.command("profile-switch")
def profile_switch(game_ref: str = typer.Argument(..., metavar="GAME"), profile_id: str = typer.Argument(...)):
    """Make a profile the active one."""
    service = _build_service()
    with _cli_errors():
        game = service.games.find_game(game_ref)
        game = service.switch_profile(game, profile_id)
    _print_json({"ok": True, "game": game.name, "active_profile_id": game.active_profile_id})


@app.command("profile-migrate")
def profile_migrate(game_ref: str = typer.Argument(..., metavar="GAME"), profile_id: str = typer.Argument(...)):
    """Copy pre-profile tracked files into a profile."""
    service = _build_service()
    with _cli_errors():
        game = service.games.find_game(game_ref)
        added = service.profiles.migrate_global_checksums_to_profile(game, profile_id)
    _print_json({"ok": True, "profile": profile_id, "records_added": added})


@app.command("quarantine-list")
def quarantine_list(game_ref: str = typer.Argument(..., metavar="GAME")):
    """List quarantined files for a game."""
    service = _build_service()
    with _cli_errors():
        game = service.games.find_game(game_ref)
        items = service.list_quarantined(game)
    table = Table(title=f"{game.name} quarantine")
    for col in ("File", "Original path", "Date", "Reason"):
        table.add_column(col)
    for item in items:
        table.add_row(
            item.file_name,
            item.original_path,
            item.quarantined_at.isoformat(timespec="seconds") if item.quarantined_at else "",
            item.reason,
        )
    console.print(table)


@app.command("quarantine-restore")
def quarantine_restore(
    game_ref: str = typer.Argument(..., metavar="GAME"),
    file_name: str = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", help="Skip confirmation."),
):
    """Move a quarantined file back to its original location."""
    service = _build_service()
    with _cli_errors():
        game = service.games.find_game(game_ref)
        if not yes:
            typer.confirm(f"Restore {file_name}? A file at the original path will be quarantined.", abort=True)
        target = service.restore_quarantined(game, file_name)
    _print_json({"ok": True, "restored_to": target})


@app.command("quarantine-delete")
def quarantine_delete(
    game_ref: str = typer.Argument(..., metavar="GAME"),
    file_name: str = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", help="Skip confirmation."),
):
    """Permanently delete a quarantined file."""
    service = _build_service()
    with _cli_errors():
        game = service.games.find_game(game_ref)
        if not yes:
            typer.confirm(f"Permanently delete {file_name}?", abort=True)
        service.delete_quarantined(game, file_name)
    _print_json({"ok": True, "deleted": file_name})


@app.command("cleanup")
def cleanup(
    game_ref: str = typer.Argument(..., metavar="GAME"),
    days: int = typer.Option(0, "--days", min=0, help="Drop records not uploaded for this many days."),
):
    """Drop stale tracked-file records from the active profile."""
    service = _build_service()
    max_days = days or service.cfg.sync.record_max_age_days
    if max_days <= 0:
        _print_json({"ok": False, "error": "max_age_not_set"})
        raise typer.Exit(2)
    with _cli_errors():
        game = service.games.find_game(game_ref)
        removed = service.manifests.cleanup_records(
            game.install_dir, game.active_profile_id, timedelta(days=max_days)
        )
    _print_json({"ok": True, "removed": removed})


@app.command("cloud-games")
def cloud_games():
    """List game folders present in the cloud."""
    service = _build_service()
    with _cli_errors():
        names = service.list_cloud_games()
    table = Table(title="Cloud game folders")
    table.add_column("Name")
    for name in names:
        table.add_row(name)
    console.print(table)


@app.command("cloud-check")
def cloud_check(name: str):
    """Check whether the cloud already has saves under a game name."""
    service = _build_service()
    with _cli_errors():
        exists = service.cloud_name_checker().check_now(name)
    _print_json({"ok": True, "name": name, "exists": exists})


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", min=1),
    game_ref: Optional[str] = typer.Option(None, "--game"),
):
    """Show recent upload/download runs."""
    service = _build_service()
    with _cli_errors():
        game = service.games.find_game(game_ref) if game_ref else None
        runs = service.recent_runs(limit=limit, game=game)
    table = Table(title="Sync runs")
    for col in ("ID", "Game", "Type", "Status", "Started", "Finished", "Message"):
        table.add_column(col)
    for run in runs:
        table.add_row(
            str(run["id"]),
            str(run["game_id"]),
            run["run_type"] or "",
            run["status"] or "",
            run["started_at"] or "",
            run["finished_at"] or "",
            str(run["summary"].get("message") or run["summary"].get("error") or ""),
        )
    console.print(table)


@app.command("logs")
def logs(
    lines: int = typer.Option(50, "--lines", "-n", min=1),
    level: Optional[str] = typer.Option(None, "--level"),
    logger: Optional[str] = typer.Option(None, "--logger"),
):
    cfg = load_config()
    payload = read_log_tail(cfg.logging.file, lines=lines, level=level, logger=logger)
    for item in payload["items"]:
        typer.echo(item["raw"])


def main():
    app()


if __name__ == "__main__":
    main()
