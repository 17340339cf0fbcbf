from __future__ import annotations

import os
import posixpath
import re
from typing import Optional

from savesync.core.errors import PathOutsideRootsError

PREFIX_MARKER = "%PREFIX%"
# Keys written by older releases carried an explicit install-dir marker.
LEGACY_GAMEPATH_MARKER = "%GAMEPATH%"

_INVALID_NAME_CHARS = re.compile(r'[/\\:*?"<>|\x00-\x1f]')


def _canonical(path: str) -> str:
    value = posixpath.normpath(str(path).replace("\\", "/"))
    if len(value) > 1:
        value = value.rstrip("/")
    return value


def _relative_to(path: str, root: str) -> Optional[str]:
    path_cmp = os.path.normcase(path)
    root_cmp = os.path.normcase(root).rstrip("/") or "/"
    if os.path.normcase("/") != "/":
        # normcase on Windows turns separators back into backslashes.
        path_cmp = path_cmp.replace("\\", "/")
        root_cmp = root_cmp.replace("\\", "/")
    lead = root_cmp if root_cmp.endswith("/") else root_cmp + "/"
    if not path_cmp.startswith(lead):
        return None
    rel = path[len(lead):]
    return rel or None


def contract(absolute_path: str, install_dir: str, prefix: Optional[str] = None) -> str:
    """Turn an absolute path into a portable key.

    Paths under `install_dir` become plain relative keys (`saves/slot1.sav`),
    paths under `prefix` become `%PREFIX%/...`. When one root contains the other
    the longer (more specific) root wins.
    """
    path = _canonical(absolute_path)
    roots = [(_canonical(install_dir), None)]
    if prefix:
        roots.append((_canonical(prefix), PREFIX_MARKER))
    roots.sort(key=lambda item: len(item[0]), reverse=True)

    for root, marker in roots:
        rel = _relative_to(path, root)
        if rel is None:
            continue
        return f"{marker}/{rel}" if marker else rel

    raise PathOutsideRootsError(
        f"{absolute_path} is outside the install directory and prefix",
        path=absolute_path,
        install_dir=install_dir,
        prefix=prefix or "",
    )


def is_prefix_key(key: str) -> bool:
    return key.startswith(PREFIX_MARKER + "/")


def expand(key: str, install_dir: str, prefix: Optional[str] = None) -> str:
    rel = key.replace("\\", "/")
    root = install_dir
    if rel.startswith(PREFIX_MARKER + "/"):
        if not prefix:
            raise PathOutsideRootsError(f"{key} needs a prefix directory but none is configured", key=key)
        root = prefix
        rel = rel[len(PREFIX_MARKER) + 1:]
    elif rel.startswith(LEGACY_GAMEPATH_MARKER + "/"):
        rel = rel[len(LEGACY_GAMEPATH_MARKER) + 1:]

    parts = [p for p in rel.split("/") if p]
    if not parts or ".." in parts:
        raise PathOutsideRootsError(f"invalid portable path: {key!r}", key=key)
    return os.path.normpath(os.path.join(root, *parts))


def sanitize_game_name(name: str) -> str:
    cleaned = _INVALID_NAME_CHARS.sub("_", name or "").strip()
    return cleaned or "UnknownGame"
