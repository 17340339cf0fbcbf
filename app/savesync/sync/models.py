from __future__ import annotations

import re
from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Optional

from pydantic import BaseModel, BeforeValidator, Field, PlainSerializer

DEFAULT_PROFILE_ID = "default"
DEFAULT_PROFILE_NAME = "Default"

_DURATION_RE = re.compile(r"^(?P<sign>-)?(?:(?P<days>\d+)\.)?(?P<hours>\d+):(?P<minutes>\d{1,2}):(?P<seconds>\d{1,2}(?:\.\d+)?)$")


def parse_duration(value) -> timedelta:
    """Accept `HH:MM:SS`, `D.HH:MM:SS`, plain seconds or a timedelta."""
    if value is None or value == "":
        return timedelta(0)
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return timedelta(seconds=float(value))
    if isinstance(value, str):
        raw = value.strip()
        m = _DURATION_RE.match(raw)
        if m:
            parsed = timedelta(
                days=int(m.group("days") or 0),
                hours=int(m.group("hours")),
                minutes=int(m.group("minutes")),
                seconds=float(m.group("seconds")),
            )
            return -parsed if m.group("sign") else parsed
        try:
            return timedelta(seconds=float(raw))
        except ValueError:
            pass
    raise ValueError(f"invalid duration: {value!r}")


def format_duration(value: timedelta) -> str:
    total = int(value.total_seconds())
    sign = "-" if total < 0 else ""
    total = abs(total)
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{sign}{hours:02d}:{minutes:02d}:{seconds:02d}"


Duration = Annotated[
    timedelta,
    BeforeValidator(parse_duration),
    PlainSerializer(format_duration, return_type=str),
]


class FileRecord(BaseModel):
    checksum: str
    size: int = 0
    modified_time: Optional[datetime] = None
    last_upload: Optional[datetime] = None
    original_path: str = ""


class Manifest(BaseModel):
    files: dict[str, FileRecord] = Field(default_factory=dict)
    play_time: Duration = timedelta(0)
    last_updated: Optional[datetime] = None
    detected_prefix: Optional[str] = None

    def is_empty(self) -> bool:
        return not self.files and self.play_time <= timedelta(0)


class Game(BaseModel):
    id: Optional[int] = None
    name: str
    install_dir: str
    executable: str = ""
    active_profile_id: str = DEFAULT_PROFILE_ID
    provider: Optional[str] = None
    prefix: Optional[str] = None


class Profile(BaseModel):
    id: str
    game_id: int
    name: str
    is_default: bool = False
    created_at: Optional[str] = None


class ProgressStatus(str, Enum):
    LOCAL_AHEAD = "LocalAhead"
    CLOUD_AHEAD = "CloudAhead"
    IN_SYNC = "InSync"
    CLOUD_NOT_FOUND = "CloudNotFound"


class ProgressComparison(BaseModel):
    local_play_time: Duration = timedelta(0)
    cloud_play_time: Duration = timedelta(0)
    difference: Duration = timedelta(0)
    status: ProgressStatus


class FileStatus(str, Enum):
    SYNCED = "Synced"
    MODIFIED = "Modified"
    NEW_LOCAL = "NewLocal"
    NEW_CLOUD = "NewCloud"


class FileComparisonItem(BaseModel):
    key: str
    status: FileStatus
    local_checksum: Optional[str] = None
    cloud_checksum: Optional[str] = None
    local_size: Optional[int] = None
    cloud_size: Optional[int] = None


class FileComparison(BaseModel):
    items: list[FileComparisonItem] = Field(default_factory=list)

    def status_of(self, key: str) -> Optional[FileStatus]:
        for item in self.items:
            if item.key == key:
                return item.status
        return None

    def counts(self) -> dict[str, int]:
        out = {status.value: 0 for status in FileStatus}
        for item in self.items:
            out[item.status.value] += 1
        return out


class SyncAction(str, Enum):
    DOWNLOAD = "Download"
    UPLOAD = "Upload"
    SKIP = "Skip"


class SuggestedAction(BaseModel):
    action: SyncAction
    force: bool = False
    reason: str = ""


class ReconcileReport(BaseModel):
    comparison: ProgressComparison
    files: FileComparison
    suggestion: SuggestedAction


class UploadStats(BaseModel):
    uploaded: int = 0
    skipped: int = 0
    failed: int = 0
    failed_files: list[str] = Field(default_factory=list)


class DownloadStats(BaseModel):
    downloaded: int = 0
    skipped: int = 0
    failed: int = 0
    quarantined: int = 0
    failed_files: list[str] = Field(default_factory=list)


class SyncOutcome(BaseModel):
    success: bool
    action: SyncAction
    message: str = ""
    uploaded: Optional[UploadStats] = None
    downloaded: Optional[DownloadStats] = None
    comparison: Optional[ProgressComparison] = None


class QuarantinedItem(BaseModel):
    original_path: str
    quarantine_path: str
    meta_path: str
    quarantined_at: Optional[datetime] = None
    reason: str = ""

    @property
    def file_name(self) -> str:
        return self.quarantine_path.replace("\\", "/").rsplit("/", 1)[-1]


class ProgressUpdate(BaseModel):
    percent: Optional[int] = None
    current_file: str = ""
    speed: str = ""
