import threading

import pytest

from savesync.core.config import RcloneConfig, TransferConfig
from savesync.core.errors import TransferTimeoutError
from savesync.providers.rclone.transfer import TransferService
from savesync.sync.cloud_names import CloudNameChecker

ROOT = "gdrive:SaveSyncCloudSave"


class _Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _checker(fake_remote, clock=None, quiet_period=0.5) -> CloudNameChecker:
    transfer = TransferService(fake_remote, RcloneConfig(config_path=""), TransferConfig(), sleep=lambda _s: None)
    return CloudNameChecker(transfer, ROOT, quiet_period=quiet_period, cooldown=5.0, clock=clock or _Clock())


def test_check_now_sanitizes_name(fake_remote):
    fake_remote.files[f"{ROOT}/Half-Life_ Alyx/save.dat"] = b"x"

    assert _checker(fake_remote).check_now("Half-Life: Alyx") is True


def test_repeat_within_cooldown_reuses_result(fake_remote):
    fake_remote.files[f"{ROOT}/Celeste/save.dat"] = b"x"
    clock = _Clock()
    checker = _checker(fake_remote, clock=clock)

    assert checker.check_now("Celeste") is True
    clock.now += 2
    assert checker.check_now("Celeste") is True
    assert checker.remote_calls == 1

    clock.now += 10
    checker.check_now("Celeste")
    assert checker.remote_calls == 2


def test_different_name_is_checked_immediately(fake_remote):
    checker = _checker(fake_remote)

    assert checker.check_now("Celeste") is False
    assert checker.check_now("Hades") is False
    assert checker.remote_calls == 2


def test_request_is_debounced(fake_remote):
    fake_remote.files[f"{ROOT}/Hades/save.dat"] = b"x"
    checker = _checker(fake_remote, quiet_period=0.05)
    results = []
    done = threading.Event()

    def callback(name, exists):
        results.append((name, exists))
        done.set()

    for partial in ("H", "Ha", "Had", "Hades"):
        checker.request(partial, callback)

    assert done.wait(5)
    checker.cancel()
    assert results == [("Hades", True)]
    assert checker.remote_calls == 1


def test_timeout_is_not_cached_as_absent(fake_remote):
    fake_remote.timing_out.add(ROOT)
    checker = _checker(fake_remote)

    with pytest.raises(TransferTimeoutError):
        checker.check_now("Celeste")
    assert checker.remote_calls == 0
