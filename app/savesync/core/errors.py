from __future__ import annotations


class SaveSyncError(RuntimeError):
    """Base class for errors surfaced to CLI/web callers.

    `code` is a stable snake_case identifier used in JSON payloads and logs.
    """

    code = "savesync_error"

    def __init__(self, message: str = "", **detail):
        super().__init__(message or self.code)
        self.detail = detail

    def to_payload(self) -> dict:
        out = {"ok": False, "error": self.code, "message": str(self)}
        if self.detail:
            out["detail"] = {k: str(v) for k, v in self.detail.items()}
        return out


class NotFoundError(SaveSyncError):
    code = "not_found"


class GameNotFoundError(NotFoundError):
    code = "game_not_found"


class ProfileNotFoundError(NotFoundError):
    code = "profile_not_found"


class CloudSaveNotFoundError(NotFoundError):
    code = "cloud_save_not_found"


class TransferTimeoutError(SaveSyncError):
    code = "transfer_timeout"


class FileLockedError(SaveSyncError):
    code = "file_locked"


class IntegrityMismatchError(SaveSyncError):
    code = "integrity_mismatch"


class DuplicateProfileNameError(SaveSyncError):
    code = "duplicate_profile_name"


class DuplicateGameNameError(SaveSyncError):
    code = "duplicate_game_name"


class CannotDeleteDefaultProfileError(SaveSyncError):
    code = "cannot_delete_default_profile"


class PathOutsideRootsError(SaveSyncError):
    code = "path_outside_roots"


class ManifestWriteError(SaveSyncError):
    code = "manifest_write_failed"


class SyncBusyError(SaveSyncError):
    code = "sync_busy"


class RemoteListingError(SaveSyncError):
    code = "remote_listing_failed"


class UnknownProviderError(SaveSyncError):
    code = "unknown_provider"
