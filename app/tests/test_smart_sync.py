import hashlib
import threading
from datetime import timedelta
from pathlib import Path

import pytest

from savesync.core.errors import ProfileNotFoundError, RemoteListingError, SyncBusyError, TransferTimeoutError
from savesync.sync.models import FileRecord, FileStatus, Manifest, ProgressStatus, SyncAction
from savesync.sync.smart_sync import classify, diff_manifests, suggest

REMOTE = "gdrive:SaveSyncCloudSave/Hollow Knight"


def _sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _track(service, game, rel: str, data: bytes, play_time: timedelta = None, uploaded: bool = False) -> Path:
    path = Path(game.install_dir).joinpath(*rel.split("/"))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    service.manifests.track_files(game.install_dir, game.active_profile_id, [path], uploaded=uploaded)
    if play_time is not None:
        service.manifests.update_play_time(game.install_dir, play_time, game.active_profile_id)
    return path


@pytest.fixture
def game(service, install_dir):
    return service.games.add_game("Hollow Knight", str(install_dir))


# classification


@pytest.mark.parametrize(
    "local, cloud, expected",
    [
        (timedelta(hours=2), None, ProgressStatus.CLOUD_NOT_FOUND),
        (timedelta(0), None, ProgressStatus.CLOUD_NOT_FOUND),
        (timedelta(hours=2), timedelta(hours=1), ProgressStatus.LOCAL_AHEAD),
        (timedelta(hours=1), timedelta(hours=2), ProgressStatus.CLOUD_AHEAD),
        (timedelta(0), timedelta(seconds=1), ProgressStatus.CLOUD_AHEAD),
        (timedelta(hours=1), timedelta(hours=1), ProgressStatus.IN_SYNC),
        (timedelta(0), timedelta(0), ProgressStatus.IN_SYNC),
    ],
)
def test_classification_is_total(local, cloud, expected):
    result = classify(local, cloud)

    assert result.status == expected
    if cloud is not None:
        assert result.difference == local - cloud


def test_similar_threshold_treats_small_gap_as_in_sync():
    assert classify(timedelta(seconds=100), timedelta(seconds=70), similar_threshold_sec=60).status == ProgressStatus.IN_SYNC
    assert classify(timedelta(seconds=200), timedelta(seconds=70), similar_threshold_sec=60).status == ProgressStatus.LOCAL_AHEAD


@pytest.mark.parametrize(
    "status, local_has_data, action, force",
    [
        (ProgressStatus.CLOUD_AHEAD, True, SyncAction.DOWNLOAD, False),
        (ProgressStatus.LOCAL_AHEAD, True, SyncAction.UPLOAD, False),
        (ProgressStatus.CLOUD_NOT_FOUND, True, SyncAction.UPLOAD, True),
        (ProgressStatus.CLOUD_NOT_FOUND, False, SyncAction.SKIP, False),
        (ProgressStatus.IN_SYNC, True, SyncAction.SKIP, False),
    ],
)
def test_suggest_rules(status, local_has_data, action, force):
    comparison = classify(timedelta(0), None)
    comparison.status = status

    suggestion = suggest(comparison, local_has_data)

    assert suggestion.action == action
    assert suggestion.force is force


def test_diff_manifests_statuses():
    local = Manifest(files={"same": FileRecord(checksum="1"), "mod": FileRecord(checksum="2"), "lo": FileRecord(checksum="3")})
    cloud = Manifest(files={"same": FileRecord(checksum="1"), "mod": FileRecord(checksum="9"), "cl": FileRecord(checksum="4")})

    diff = diff_manifests(local, cloud)

    assert diff.status_of("same") == FileStatus.SYNCED
    assert diff.status_of("mod") == FileStatus.MODIFIED
    assert diff.status_of("lo") == FileStatus.NEW_LOCAL
    assert diff.status_of("cl") == FileStatus.NEW_CLOUD
    assert diff.counts() == {"Synced": 1, "Modified": 1, "NewLocal": 1, "NewCloud": 1}


# engine scenarios


def test_local_ahead_with_modified_file_suggests_upload(service, fake_remote, game):
    _track(service, game, "save.dat", b"local progress", play_time=timedelta(hours=2))
    fake_remote.seed_save(REMOTE, {"save.dat": b"cloud progress"}, timedelta(hours=1))

    report = service.reconcile(game)

    assert report.comparison.status == ProgressStatus.LOCAL_AHEAD
    assert report.comparison.difference == timedelta(hours=1)
    assert report.files.status_of("save.dat") == FileStatus.MODIFIED
    assert report.suggestion.action == SyncAction.UPLOAD


def test_cloud_missing_suggests_forced_upload(service, game):
    _track(service, game, "save.dat", b"progress", play_time=timedelta(minutes=30))

    report = service.reconcile(game)

    assert report.comparison.status == ProgressStatus.CLOUD_NOT_FOUND
    assert report.suggestion.action == SyncAction.UPLOAD
    assert report.suggestion.force is True
    assert report.suggestion.reason == "no cloud save found"


def test_nothing_anywhere_skips(service, game):
    report = service.reconcile(game)

    assert report.comparison.status == ProgressStatus.CLOUD_NOT_FOUND
    assert report.suggestion.action == SyncAction.SKIP
    assert report.suggestion.reason == "no action needed"


def test_missing_local_files_count_as_no_progress(service, fake_remote, game):
    path = _track(service, game, "save.dat", b"x", play_time=timedelta(hours=5))
    path.unlink()
    fake_remote.seed_save(REMOTE, {"save.dat": b"x"}, timedelta(hours=1))

    report = service.reconcile(game)

    assert report.comparison.local_play_time == timedelta(0)
    assert report.comparison.status == ProgressStatus.CLOUD_AHEAD
    assert report.suggestion.action == SyncAction.DOWNLOAD


def test_cloud_manifest_is_cached_until_invalidated(service, fake_remote, game):
    fake_remote.seed_save(REMOTE, {"save.dat": b"x"}, timedelta(hours=1))
    engine = service.engine_for(game)

    engine.reconcile()
    engine.reconcile()
    assert len(fake_remote.commands("lsf")) == 1

    engine.invalidate_cache()
    engine.reconcile()
    assert len(fake_remote.commands("lsf")) == 2


def test_not_found_is_cached_too(service, fake_remote, game):
    service.reconcile(game)
    service.reconcile(game)

    assert len(fake_remote.commands("lsf")) == 1
    assert fake_remote.commands("copyto") == []


def test_legacy_cloud_manifest_is_used(service, fake_remote, game):
    fake_remote.seed_save(REMOTE, {"save.dat": b"x"}, timedelta(hours=3), manifest_name=".savesync_checksums.json")

    report = service.reconcile(game)

    assert report.comparison.cloud_play_time == timedelta(hours=3)


def test_cloud_folder_without_manifest_reads_as_not_found(service, fake_remote, game):
    fake_remote.files[f"{REMOTE}/unrelated.bin"] = b"?"

    report = service.reconcile(game)

    assert report.comparison.status == ProgressStatus.CLOUD_NOT_FOUND


def test_timed_out_listing_aborts_without_touching_cloud(service, fake_remote, game):
    _track(service, game, "save.dat", b"local 1h", play_time=timedelta(hours=1))
    fake_remote.seed_save(REMOTE, {"save.dat": b"cloud 10h"}, timedelta(hours=10))
    fake_remote.timing_out.add(REMOTE)
    engine = service.engine_for(game)

    with pytest.raises(TransferTimeoutError):
        service.reconcile(game)
    assert engine.status_snapshot()["cloud_fetched"] is False

    with pytest.raises(TransferTimeoutError):
        service.upload_local_save(game)
    assert fake_remote.commands("copyto") == []
    assert service.recent_runs(game=game)[0]["status"] == "failed"

    fake_remote.timing_out.clear()
    report = service.reconcile(game)

    assert report.comparison.status == ProgressStatus.CLOUD_AHEAD
    assert report.suggestion.action == SyncAction.DOWNLOAD
    assert fake_remote.files[f"{REMOTE}/save.dat"] == b"cloud 10h"


def test_failed_listing_is_not_read_as_missing_cloud(service, fake_remote, game):
    _track(service, game, "save.dat", b"local", play_time=timedelta(hours=1))
    fake_remote.failing.add(REMOTE)

    with pytest.raises(RemoteListingError):
        service.reconcile(game)
    assert service.engine_for(game).status_snapshot()["cloud_fetched"] is False


def test_timed_out_manifest_fetch_aborts(service, fake_remote, game):
    fake_remote.seed_save(REMOTE, {"save.dat": b"x"}, timedelta(hours=3))
    fake_remote.timing_out.add(f"{REMOTE}/.savesync_profile_default.json")

    with pytest.raises(TransferTimeoutError):
        service.reconcile(game)


def test_empty_cloud_folder_forces_reupload_of_uploaded_records(service, fake_remote, game):
    fake_remote.empty_listing_ok = True
    _track(service, game, "save.dat", b"progress", play_time=timedelta(hours=1), uploaded=True)

    report = service.reconcile(game)
    assert report.comparison.status == ProgressStatus.CLOUD_NOT_FOUND
    assert report.suggestion.force is True

    outcome = service.upload_local_save(game)

    assert outcome.success
    assert outcome.uploaded.skipped == 0
    assert outcome.uploaded.uploaded == 1
    assert fake_remote.files[f"{REMOTE}/save.dat"] == b"progress"
    assert outcome.comparison.status == ProgressStatus.IN_SYNC


def test_upload_sends_files_and_manifest_then_reports_in_sync(service, fake_remote, game):
    _track(service, game, "saves/slot1.sav", b"slot", play_time=timedelta(hours=1))

    outcome = service.upload_local_save(game)

    assert outcome.success
    assert outcome.uploaded.uploaded == 1
    assert fake_remote.files[f"{REMOTE}/saves/slot1.sav"] == b"slot"
    assert f"{REMOTE}/.savesync_profile_default.json" in fake_remote.files
    assert outcome.comparison.status == ProgressStatus.IN_SYNC
    record = service.manifests.load_manifest(game.install_dir).files["saves/slot1.sav"]
    assert record.last_upload is not None


def test_second_upload_skips_unchanged_files(service, fake_remote, game):
    _track(service, game, "a.sav", b"a", play_time=timedelta(hours=1))
    _track(service, game, "b.sav", b"b")
    service.upload_local_save(game)

    (Path(game.install_dir) / "b.sav").write_bytes(b"b2")
    outcome = service.upload_local_save(game)

    assert (outcome.uploaded.uploaded, outcome.uploaded.skipped) == (1, 1)
    assert fake_remote.files[f"{REMOTE}/b.sav"] == b"b2"


def test_upload_without_files_on_disk_fails(service, game):
    path = _track(service, game, "a.sav", b"a")
    path.unlink()

    outcome = service.upload_local_save(game)

    assert not outcome.success
    assert outcome.message == "no tracked files exist on disk"


def test_download_installs_cloud_files_and_quarantines_local_only(service, fake_remote, game):
    _track(service, game, "a.sav", b"local a", play_time=timedelta(hours=1), uploaded=True)
    _track(service, game, "b.sav", b"only local")
    fake_remote.seed_save(REMOTE, {"a.sav": b"cloud a", "sub/c.sav": b"cloud c"}, timedelta(hours=4))

    outcome = service.download_cloud_save(game)

    install = Path(game.install_dir)
    assert outcome.success
    assert (install / "a.sav").read_bytes() == b"cloud a"
    assert (install / "sub" / "c.sav").read_bytes() == b"cloud c"
    assert not (install / "b.sav").exists()
    assert outcome.downloaded.downloaded == 2
    assert outcome.downloaded.quarantined == 1
    quarantined = service.list_quarantined(game)
    assert [Path(q.original_path).name for q in quarantined] == ["b.sav"]

    local = service.manifests.load_manifest(game.install_dir)
    assert set(local.files) == {"a.sav", "sub/c.sav"}
    assert local.play_time == timedelta(hours=4)
    assert outcome.comparison.status == ProgressStatus.IN_SYNC


def test_download_quarantines_unrecorded_local_changes(service, fake_remote, game):
    path = _track(service, game, "a.sav", b"recorded", play_time=timedelta(hours=1))
    path.write_bytes(b"played since last record")
    fake_remote.seed_save(REMOTE, {"a.sav": b"cloud"}, timedelta(hours=2))

    outcome = service.download_cloud_save(game)

    assert outcome.success
    assert outcome.downloaded.quarantined == 1
    item = service.list_quarantined(game)[0]
    assert Path(item.quarantine_path).read_bytes() == b"played since last record"
    assert path.read_bytes() == b"cloud"


def test_download_quarantines_tracked_content_never_uploaded(service, fake_remote, game):
    path = _track(service, game, "a.sav", b"never uploaded local a", play_time=timedelta(hours=1))
    fake_remote.seed_save(REMOTE, {"a.sav": b"cloud a"}, timedelta(hours=4))

    outcome = service.download_cloud_save(game)

    assert outcome.success
    assert outcome.downloaded.quarantined == 1
    assert path.read_bytes() == b"cloud a"
    item = service.list_quarantined(game)[0]
    assert Path(item.quarantine_path).read_bytes() == b"never uploaded local a"


def test_download_skips_identical_content(service, fake_remote, game):
    _track(service, game, "a.sav", b"same", play_time=timedelta(hours=1))
    fake_remote.seed_save(REMOTE, {"a.sav": b"same"}, timedelta(hours=2))

    outcome = service.download_cloud_save(game)

    assert outcome.downloaded.skipped == 1
    assert outcome.downloaded.downloaded == 0
    assert service.list_quarantined(game) == []


def test_download_rejects_corrupted_file(service, fake_remote, game):
    fake_remote.seed_save(REMOTE, {"a.sav": b"good"}, timedelta(hours=2))
    fake_remote.files[f"{REMOTE}/a.sav"] = b"tampered"

    outcome = service.download_cloud_save(game)

    assert not outcome.success
    assert outcome.downloaded.failed_files == ["a.sav"]
    assert not (Path(game.install_dir) / "a.sav").exists()


def test_download_without_cloud_save_fails(service, game):
    outcome = service.download_cloud_save(game)

    assert not outcome.success
    assert outcome.message == "no cloud save found"


def test_overlapping_operation_is_rejected(service, fake_remote, game):
    _track(service, game, "a.sav", b"a", play_time=timedelta(hours=1))
    engine = service.engine_for(game)
    entered = threading.Event()
    release = threading.Event()
    original = fake_remote.execute_command

    def slow(args, timeout, allowed_exit_codes=(), on_output=None):
        if args[0] == "lsf":
            entered.set()
            release.wait(5)
        return original(args, timeout, allowed_exit_codes, on_output)

    fake_remote.execute_command = slow
    worker = threading.Thread(target=engine.reconcile)
    worker.start()
    assert entered.wait(5)
    try:
        with pytest.raises(SyncBusyError):
            service.upload_local_save(game)
    finally:
        release.set()
        worker.join(5)
    assert not engine.busy


def test_switch_profile_invalidates_cache_and_uses_profile_manifest(service, fake_remote, game):
    fake_remote.seed_save(REMOTE, {"a.sav": b"a"}, timedelta(hours=1))
    service.reconcile(game)
    profile = service.profiles.add_profile(game, "Hard Mode")

    service.switch_profile(game, profile.id)
    report = service.reconcile(game)

    assert len(fake_remote.commands("lsf")) == 2
    # The cloud only has the default profile's manifest; the legacy name is absent too.
    assert report.comparison.status == ProgressStatus.CLOUD_NOT_FOUND


def test_dangling_active_profile_is_rejected(service, game):
    profile = service.profiles.add_profile(game, "Temp")
    service.switch_profile(game, profile.id)
    service.profiles.delete_profile(game, profile.id)

    with pytest.raises(ProfileNotFoundError):
        service.reconcile(game)


def test_runs_are_recorded(service, game):
    _track(service, game, "a.sav", b"a", play_time=timedelta(hours=1))
    service.upload_local_save(game)
    service.download_cloud_save(game)

    runs = service.recent_runs(game=game)

    assert [r["run_type"] for r in runs] == ["download", "upload"]
    assert all(r["status"] == "success" for r in runs)
    assert runs[1]["summary"]["uploaded"]["uploaded"] == 1


def test_auto_action_fires_after_countdown(service, game):
    _track(service, game, "a.sav", b"a", play_time=timedelta(hours=1))
    ticks: list[int] = []
    done = []

    report, countdown = service.start_auto_action(game, on_tick=ticks.append, on_done=done.append, seconds=1)
    countdown.join(5)

    assert report.suggestion.action == SyncAction.UPLOAD
    assert ticks == [1]
    assert done and done[0].success
    assert service.recent_runs(game=game)[0]["run_type"] == "auto_upload"


def test_auto_action_cancel_leaves_state_untouched(service, fake_remote, game):
    _track(service, game, "a.sav", b"a", play_time=timedelta(hours=1))

    report, countdown = service.start_auto_action(game, seconds=30)

    assert service.cancel_auto_action(game) is True
    countdown.join(5)
    assert not countdown.fired
    assert fake_remote.commands("copyto") == []
    assert service.recent_runs(game=game) == []


def test_auto_action_skip_schedules_nothing(service, game):
    report, countdown = service.start_auto_action(game)

    assert countdown is None
    assert report.suggestion.action == SyncAction.SKIP
