from __future__ import annotations

import logging
import re
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"


def setup_logging(level: str, logfile: str | None = None, console: bool = True):
    log_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)

    # Clear existing handlers so repeated CLI/web startups do not duplicate output.
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(LOG_FORMAT)

    if logfile:
        Path(logfile).parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile, encoding="utf-8")
        fh.setLevel(log_level)
        fh.setFormatter(fmt)
        root.addHandler(fh)

    if console:
        ch = logging.StreamHandler()
        ch.setLevel(log_level)
        ch.setFormatter(fmt)
        root.addHandler(ch)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logger = logging.getLogger(logger_name)
        logger.handlers.clear()
        logger.setLevel(log_level)
        logger.propagate = True

    root.info("logging initialized level=%s file=%s", logging.getLevelName(log_level), logfile or "-")


_RECORD_RE = re.compile(
    r"^(?P<ts>\S+ \S+) \[(?P<level>[A-Z]+)\] \[(?P<logger>[^\]]+)\] ?(?P<message>.*)$"
)


def _split_record(line: str) -> dict[str, str]:
    match = _RECORD_RE.match(line)
    if match is None:
        # Traceback lines and anything written outside LOG_FORMAT.
        return {"ts": "", "level": "", "logger": "", "message": line, "raw": line}
    return {**match.groupdict(), "raw": line}


def read_log_tail(logfile: str, lines: int = 200, level: str | None = None, logger: str | None = None) -> dict:
    """Return the last ``lines`` lines of ``logfile`` split into records.

    ``level`` keeps records at or above that level; ``logger`` keeps records
    from that logger and its children (``savesync.sync`` matches
    ``savesync.sync.smart_sync``).
    """
    path = Path(logfile)
    raw: list[str] = []
    if path.exists():
        raw = path.read_text(encoding="utf-8", errors="replace").splitlines()[-lines:]

    min_level = logging.getLevelName(level.upper()) if level else None
    if not isinstance(min_level, int):
        min_level = None
    prefix = (logger or "").strip()

    records = []
    for line in raw:
        record = _split_record(line)
        if min_level is not None:
            record_level = logging.getLevelName(record["level"]) if record["level"] else None
            if not isinstance(record_level, int) or record_level < min_level:
                continue
        if prefix and not (record["logger"] == prefix or record["logger"].startswith(prefix + ".")):
            continue
        records.append(record)

    return {
        "path": str(path),
        "lines": lines,
        "level": level.upper() if level else None,
        "logger": prefix or None,
        "count": len(records),
        "items": records,
    }
