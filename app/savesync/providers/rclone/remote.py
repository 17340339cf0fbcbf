from __future__ import annotations

from typing import Optional

from savesync.core.errors import UnknownProviderError
from savesync.sync.paths import sanitize_game_name

# provider id -> rclone remote name created by the setup flow
PROVIDER_REMOTES = {
    "gdrive": "gdrive",
    "onedrive": "onedrive",
    "dropbox": "dropbox",
    "pcloud": "pcloud",
    "box": "box",
}


def remote_name_for(provider: str) -> str:
    try:
        return PROVIDER_REMOTES[provider.lower()]
    except KeyError:
        raise UnknownProviderError(
            f"unknown cloud provider: {provider!r} (expected one of: {', '.join(PROVIDER_REMOTES)})",
            provider=provider,
        ) from None


def remote_root(provider: str, base_folder: str) -> str:
    return f"{remote_name_for(provider)}:{base_folder.strip('/')}"


def remote_game_path(provider: str, base_folder: str, game_name: str) -> str:
    return f"{remote_root(provider, base_folder)}/{sanitize_game_name(game_name)}"


def effective_provider(game_provider: Optional[str], default_provider: str) -> str:
    return game_provider or default_provider
