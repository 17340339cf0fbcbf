from __future__ import annotations

import logging
import sqlite3
import uuid
from typing import Optional

from savesync.core.db import get_conn, now_iso
from savesync.core.errors import (
    CannotDeleteDefaultProfileError,
    DuplicateGameNameError,
    DuplicateProfileNameError,
    GameNotFoundError,
    ProfileNotFoundError,
)
from savesync.providers.rclone.remote import remote_name_for
from savesync.sync.manifest import ManifestStore, manifest_path
from savesync.sync.models import DEFAULT_PROFILE_ID, DEFAULT_PROFILE_NAME, Game, Manifest, Profile

logger = logging.getLogger("profiles")


def _check_provider(provider: Optional[str]) -> Optional[str]:
    # Raises UnknownProviderError before anything is stored.
    if not provider:
        return None
    remote_name_for(provider)
    return provider.lower()


def _game_from_row(row) -> Game:
    return Game(
        id=row["id"],
        name=row["name"],
        install_dir=row["install_dir"],
        executable=row["executable"] or "",
        active_profile_id=row["active_profile_id"] or DEFAULT_PROFILE_ID,
        provider=row["provider"],
        prefix=row["prefix"],
    )


def _profile_from_row(row) -> Profile:
    return Profile(
        id=row["id"],
        game_id=row["game_id"],
        name=row["name"],
        is_default=bool(row["is_default"]),
        created_at=row["created_at"],
    )


class GameRegistry:
    def __init__(self, db_path: str, manifests: ManifestStore):
        self.db_path = db_path
        self.manifests = manifests

    def add_game(
        self,
        name: str,
        install_dir: str,
        executable: str = "",
        provider: Optional[str] = None,
        prefix: Optional[str] = None,
    ) -> Game:
        provider = _check_provider(provider)
        conn = get_conn(self.db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO games(name,install_dir,executable,active_profile_id,provider,prefix)
                VALUES (?,?,?,?,?,?)
                """,
                (name.strip(), install_dir, executable, DEFAULT_PROFILE_ID, provider, prefix),
            )
            conn.commit()
            game_id = cur.lastrowid
        except sqlite3.IntegrityError as e:
            raise DuplicateGameNameError(f"a game named {name!r} already exists", name=name) from e
        finally:
            conn.close()
        logger.info("game_added id=%s name=%s install_dir=%s", game_id, name, install_dir)
        return self.get_game(game_id)

    def get_game(self, game_id: int) -> Game:
        conn = get_conn(self.db_path)
        row = conn.execute("SELECT * FROM games WHERE id=?", (game_id,)).fetchone()
        conn.close()
        if not row:
            raise GameNotFoundError(f"no game with id {game_id}", game_id=game_id)
        return _game_from_row(row)

    def find_game(self, ref: str) -> Game:
        """Look a game up by numeric id or case-insensitive name."""
        if ref.isdigit():
            return self.get_game(int(ref))
        conn = get_conn(self.db_path)
        row = conn.execute("SELECT * FROM games WHERE name=? COLLATE NOCASE", (ref.strip(),)).fetchone()
        conn.close()
        if not row:
            raise GameNotFoundError(f"no game named {ref!r}", name=ref)
        return _game_from_row(row)

    def list_games(self) -> list[Game]:
        conn = get_conn(self.db_path)
        rows = conn.execute("SELECT * FROM games ORDER BY name COLLATE NOCASE").fetchall()
        conn.close()
        return [_game_from_row(r) for r in rows]

    def update_game(self, game: Game) -> Game:
        game.provider = _check_provider(game.provider)
        conn = get_conn(self.db_path)
        try:
            cur = conn.execute(
                """
                UPDATE games
                   SET name=?, install_dir=?, executable=?, active_profile_id=?, provider=?, prefix=?,
                       updated_at=CURRENT_TIMESTAMP
                 WHERE id=?
                """,
                (game.name, game.install_dir, game.executable, game.active_profile_id, game.provider, game.prefix, game.id),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise DuplicateGameNameError(f"a game named {game.name!r} already exists", name=game.name) from e
        finally:
            conn.close()
        if cur.rowcount == 0:
            raise GameNotFoundError(f"no game with id {game.id}", game_id=game.id)
        return game

    def delete_game(self, game: Game, remove_manifests: bool = True) -> int:
        """Delete a game and its profiles. Returns the number of manifest files removed."""
        conn = get_conn(self.db_path)
        rows = conn.execute("SELECT id FROM profiles WHERE game_id=?", (game.id,)).fetchall()
        profile_ids = {r["id"] for r in rows} | {DEFAULT_PROFILE_ID}

        removed = 0
        if remove_manifests:
            for profile_id in sorted(profile_ids):
                if self.manifests.delete_manifest(game.install_dir, profile_id):
                    removed += 1

        conn.execute("DELETE FROM profiles WHERE game_id=?", (game.id,))
        conn.execute("DELETE FROM games WHERE id=?", (game.id,))
        conn.commit()
        conn.close()
        logger.info("game_deleted id=%s name=%s manifests_removed=%s", game.id, game.name, removed)
        return removed


class ProfileManager:
    def __init__(self, db_path: str, manifests: ManifestStore):
        self.db_path = db_path
        self.manifests = manifests

    def _ensure_default(self, conn, game: Game):
        row = conn.execute(
            "SELECT 1 FROM profiles WHERE game_id=? AND is_default=1",
            (game.id,),
        ).fetchone()
        if row:
            return
        conn.execute(
            "INSERT OR IGNORE INTO profiles(game_id,id,name,is_default,created_at) VALUES (?,?,?,?,?)",
            (game.id, DEFAULT_PROFILE_ID, DEFAULT_PROFILE_NAME, 1, now_iso()),
        )
        conn.commit()
        logger.info("profile_default_created game_id=%s", game.id)

    def get_profiles(self, game: Game) -> list[Profile]:
        conn = get_conn(self.db_path)
        self._ensure_default(conn, game)
        rows = conn.execute(
            "SELECT * FROM profiles WHERE game_id=? ORDER BY is_default DESC, created_at, rowid",
            (game.id,),
        ).fetchall()
        conn.close()
        return [_profile_from_row(r) for r in rows]

    def get_profile(self, game: Game, profile_id: str) -> Profile:
        for profile in self.get_profiles(game):
            if profile.id == profile_id:
                return profile
        raise ProfileNotFoundError(f"profile {profile_id!r} does not exist for {game.name}", profile_id=profile_id)

    def active_profile(self, game: Game) -> Profile:
        return self.get_profile(game, game.active_profile_id or DEFAULT_PROFILE_ID)

    def add_profile(self, game: Game, name: str) -> Profile:
        clean = (name or "").strip()
        if not clean:
            raise DuplicateProfileNameError("profile name must not be empty", name=name)
        existing = self.get_profiles(game)
        if any(p.name.casefold() == clean.casefold() for p in existing):
            raise DuplicateProfileNameError(f"a profile named {clean!r} already exists", name=clean)

        profile_id = uuid.uuid4().hex
        # A fresh manifest file keeps the new profile from falling back to legacy records.
        self.manifests.save_manifest(game.install_dir, profile_id, Manifest())

        conn = get_conn(self.db_path)
        conn.execute(
            "INSERT INTO profiles(game_id,id,name,is_default,created_at) VALUES (?,?,?,?,?)",
            (game.id, profile_id, clean, 0, now_iso()),
        )
        conn.commit()
        conn.close()
        logger.info("profile_added game_id=%s id=%s name=%s", game.id, profile_id, clean)
        return self.get_profile(game, profile_id)

    def delete_profile(self, game: Game, profile_id: str) -> bool:
        """Remove a profile and its manifest; returns True if it was the active one.

        The caller decides which profile becomes active afterwards.
        """
        profile = self.get_profile(game, profile_id)
        if profile.is_default or profile.id == DEFAULT_PROFILE_ID:
            raise CannotDeleteDefaultProfileError("the default profile cannot be deleted", profile_id=profile_id)

        self.manifests.delete_manifest(game.install_dir, profile.id)
        conn = get_conn(self.db_path)
        conn.execute("DELETE FROM profiles WHERE game_id=? AND id=?", (game.id, profile.id))
        conn.commit()
        conn.close()

        was_active = game.active_profile_id == profile.id
        logger.info("profile_deleted game_id=%s id=%s was_active=%s", game.id, profile.id, was_active)
        return was_active

    def switch_profile(self, game: Game, profile_id: str) -> Game:
        profile = self.get_profile(game, profile_id)
        conn = get_conn(self.db_path)
        conn.execute(
            "UPDATE games SET active_profile_id=?, updated_at=CURRENT_TIMESTAMP WHERE id=?",
            (profile.id, game.id),
        )
        conn.commit()
        conn.close()
        game.active_profile_id = profile.id
        logger.info("profile_switched game_id=%s active=%s", game.id, profile.id)
        return game

    def migrate_global_checksums_to_profile(self, game: Game, profile_id: str) -> int:
        """Merge pre-profile records into a profile manifest. Returns records added."""
        profile = self.get_profile(game, profile_id)
        global_manifest = self.manifests.load_legacy_manifest(game.install_dir)
        if global_manifest.is_empty():
            return 0

        target_exists = manifest_path(game.install_dir, profile.id).exists()
        target = self.manifests.load_manifest(game.install_dir, profile.id) if target_exists else Manifest()

        added = 0
        for key, record in global_manifest.files.items():
            if key in target.files:
                continue
            target.files[key] = record.model_copy()
            added += 1

        adopt_play_time = target.play_time.total_seconds() <= 0 < global_manifest.play_time.total_seconds()
        if adopt_play_time:
            target.play_time = global_manifest.play_time
        if target.detected_prefix is None:
            target.detected_prefix = global_manifest.detected_prefix

        if added or adopt_play_time or not target_exists:
            self.manifests.save_manifest(game.install_dir, profile.id, target)
        logger.info("profile_migrated game_id=%s profile=%s added=%s", game.id, profile.id, added)
        return added
