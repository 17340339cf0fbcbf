import hashlib
from datetime import timedelta
from pathlib import Path

import pytest

from savesync.core.config import AppConfig
from savesync.providers.rclone.executor import CommandOutcome, CommandResult
from savesync.sync.models import FileRecord, Manifest
from savesync.sync.service import SaveSyncService


def _is_remote(value: str) -> bool:
    return ":" in value and not Path(value).is_absolute()


class FakeRemote:
    """In-memory stand-in for rclone keyed by full remote path (`gdrive:Base/Game/key`)."""

    def __init__(self):
        self.files: dict[str, bytes] = {}
        self.calls: list[list[str]] = []
        self.failing: set[str] = set()
        self.timing_out: set[str] = set()
        # rclone answers an empty folder with exit 0 on some backends, exit 3 on others.
        self.empty_listing_ok = False

    def _result(self, code: int, allowed, output: str = "", error: str = "") -> CommandResult:
        outcome = CommandOutcome.SUCCESS if code in {0, *allowed} else CommandOutcome.EXIT_CODE
        return CommandResult(outcome=outcome, exit_code=code, output=output, error=error)

    def _children(self, remote: str) -> list[str]:
        lead = remote.rstrip("/") + "/"
        return [k[len(lead):] for k in self.files if k.startswith(lead)]

    def execute_command(self, args, timeout, allowed_exit_codes=(), on_output=None):
        args = [str(a) for a in args]
        self.calls.append(args)
        cmd = args[0]
        target = args[1] if len(args) > 1 else ""

        if target in self.timing_out:
            return CommandResult(outcome=CommandOutcome.TIMEOUT, exit_code=-1, error=f"process timed out after {timeout:g}s")
        if target in self.failing or (len(args) > 2 and args[2] in self.failing):
            return self._result(1, allowed_exit_codes, error="ERROR : simulated failure")

        if cmd == "copyto":
            src, dst = args[1], args[2]
            if _is_remote(src):
                if src not in self.files:
                    return self._result(3, allowed_exit_codes, error="ERROR : directory not found")
                Path(dst).parent.mkdir(parents=True, exist_ok=True)
                Path(dst).write_bytes(self.files[src])
            else:
                self.files[dst] = Path(src).read_bytes()
            if on_output:
                on_output(f" *   {Path(src).name}: 100% /1Ki, 2.5 MiB/s, 0s")
                on_output("Transferred:   1 KiB / 1 KiB, 100%, 2.5 MiB/s, ETA 0s")
            return self._result(0, allowed_exit_codes)

        if cmd == "copy":
            local_dir = Path(args[2])
            for rel in self._children(target):
                dest = local_dir.joinpath(*rel.split("/"))
                dest.parent.mkdir(parents=True, exist_ok=True)
                dest.write_bytes(self.files[f"{target.rstrip('/')}/{rel}"])
            return self._result(0, allowed_exit_codes)

        if cmd == "lsf":
            children = self._children(target)
            if not children:
                return self._result(0 if self.empty_listing_ok else 3, allowed_exit_codes)
            if "--recursive" in args:
                names = sorted(children)
            else:
                names = sorted({c.split("/")[0] + ("/" if "/" in c else "") for c in children})
            return self._result(0, allowed_exit_codes, output="\n".join(names))

        if cmd == "lsd":
            dirs = sorted({c.split("/")[0] for c in self._children(target) if "/" in c})
            if not dirs and not self._children(target):
                return self._result(3, allowed_exit_codes)
            lines = [f"          -1 2024-05-01 10:00:00        -1 {d}" for d in dirs]
            return self._result(0, allowed_exit_codes, output="\n".join(lines))

        if cmd == "moveto":
            src, dst = args[1].rstrip("/"), args[2].rstrip("/")
            for rel in self._children(src):
                self.files[f"{dst}/{rel}"] = self.files.pop(f"{src}/{rel}")
            return self._result(0, allowed_exit_codes)

        return self._result(1, allowed_exit_codes, error=f"unknown command {cmd}")

    def seed_save(
        self,
        remote: str,
        files: dict[str, bytes],
        play_time: timedelta,
        manifest_name: str = ".savesync_profile_default.json",
    ) -> Manifest:
        manifest = Manifest(play_time=play_time)
        for key, data in files.items():
            self.files[f"{remote}/{key}"] = data
            manifest.files[key] = FileRecord(checksum=hashlib.sha256(data).hexdigest(), size=len(data))
        self.files[f"{remote}/{manifest_name}"] = manifest.model_dump_json().encode("utf-8")
        return manifest

    def commands(self, name: str) -> list[list[str]]:
        return [c for c in self.calls if c[0] == name]


@pytest.fixture
def cfg(tmp_path: Path) -> AppConfig:
    cfg = AppConfig()
    cfg.database.path = str(tmp_path / "runtime" / "service.db")
    cfg.logging.file = str(tmp_path / "runtime" / "service.log")
    cfg.rclone.config_path = str(tmp_path / "rclone.conf")
    cfg.sync.auto_action_sec = 1
    return cfg


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def service(cfg: AppConfig, fake_remote: FakeRemote) -> SaveSyncService:
    return SaveSyncService(cfg, backend=fake_remote, sleep=lambda _sec: None)


@pytest.fixture
def install_dir(tmp_path: Path) -> Path:
    path = tmp_path / "games" / "Hollow Knight"
    path.mkdir(parents=True)
    return path
