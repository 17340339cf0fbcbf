from __future__ import annotations

import logging
import shutil
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

from savesync.core.errors import FileLockedError, NotFoundError, SaveSyncError
from savesync.sync.models import QuarantinedItem

logger = logging.getLogger("quarantine")

DEFAULT_QUARANTINE_DIR = ".savesync_quarantine"
META_SUFFIX = ".meta.txt"


def _meta_path(path: Path) -> Path:
    return path.with_name(path.name + META_SUFFIX)


def _parse_meta(meta: Path) -> dict[str, str]:
    out: dict[str, str] = {}
    try:
        text = meta.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning("quarantine_meta_unreadable path=%s error=%s", meta, e)
        return out
    for line in text.splitlines():
        if ": " not in line:
            continue
        k, v = line.split(": ", 1)
        out[k.strip()] = v.strip()
    return out


class QuarantineManager:
    """Side-store for files that a sync would otherwise overwrite or orphan."""

    def __init__(self, install_dir: str, folder_name: str = DEFAULT_QUARANTINE_DIR):
        self.install_dir = Path(install_dir)
        self.folder = self.install_dir / folder_name

    def quarantine_file(self, path: Path, reason: str) -> QuarantinedItem:
        src = Path(path)
        if not src.is_file():
            raise NotFoundError(f"{src} does not exist", path=src)

        self.folder.mkdir(parents=True, exist_ok=True)
        now = datetime.now()
        dest = self.folder / f"{now.strftime('%Y%m%d_%H%M%S')}_{src.name}"
        if dest.exists() or _meta_path(dest).exists():
            dest = dest.with_name(f"{dest.name}_{uuid.uuid4().hex[:8]}")

        try:
            shutil.move(str(src), str(dest))
        except PermissionError as e:
            raise FileLockedError(f"{src} is in use; close the running game and retry", path=src) from e
        except OSError as e:
            raise SaveSyncError(f"could not quarantine {src}: {e}", path=src) from e

        meta = _meta_path(dest)
        meta.write_text(
            f"OriginalPath: {src}\nDate: {now.isoformat(timespec='seconds')}\nReason: {reason}\n",
            encoding="utf-8",
        )
        logger.warning("quarantined path=%s dest=%s reason=%s", src, dest, reason)
        return QuarantinedItem(
            original_path=str(src),
            quarantine_path=str(dest),
            meta_path=str(meta),
            quarantined_at=now,
            reason=reason,
        )

    def list_quarantined(self) -> list[QuarantinedItem]:
        if not self.folder.is_dir():
            return []

        items = []
        for entry in self.folder.iterdir():
            if not entry.is_file() or entry.name.endswith(META_SUFFIX):
                continue
            meta = _meta_path(entry)
            info = _parse_meta(meta) if meta.exists() else {}
            when: Optional[datetime] = None
            if info.get("Date"):
                try:
                    when = datetime.fromisoformat(info["Date"])
                except ValueError:
                    when = None
            if when is None:
                when = datetime.fromtimestamp(entry.stat().st_mtime)
            items.append(
                QuarantinedItem(
                    original_path=info.get("OriginalPath", ""),
                    quarantine_path=str(entry),
                    meta_path=str(meta),
                    quarantined_at=when,
                    reason=info.get("Reason", ""),
                )
            )

        items.sort(key=lambda i: (i.quarantined_at or datetime.min, i.quarantine_path), reverse=True)
        return items

    def find(self, file_name: str) -> QuarantinedItem:
        for item in self.list_quarantined():
            if item.file_name == file_name:
                return item
        raise NotFoundError(f"{file_name} is not in quarantine", file_name=file_name)

    def restore(self, item: QuarantinedItem) -> Path:
        src = Path(item.quarantine_path)
        if not src.is_file():
            raise NotFoundError(f"quarantined file {src} is missing", path=src)
        if not item.original_path:
            raise SaveSyncError(f"original location of {src.name} is unknown", path=src)

        target = Path(item.original_path)
        if target.exists():
            # Keep whatever currently sits at the target instead of overwriting it.
            self.quarantine_file(target, "Blocking restoration of quarantined file")

        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            shutil.move(str(src), str(target))
        except PermissionError as e:
            raise FileLockedError(f"{target} is in use; close the running game and retry", path=target) from e
        except OSError as e:
            raise SaveSyncError(f"could not restore {src.name} to {target}: {e}", path=target) from e

        Path(item.meta_path).unlink(missing_ok=True)
        logger.info("quarantine_restored file=%s target=%s", src.name, target)
        return target

    def delete(self, item: QuarantinedItem) -> None:
        src = Path(item.quarantine_path)
        if not src.exists() and not Path(item.meta_path).exists():
            raise NotFoundError(f"{src.name} is not in quarantine", path=src)
        src.unlink(missing_ok=True)
        Path(item.meta_path).unlink(missing_ok=True)
        logger.info("quarantine_deleted file=%s", src.name)
