import json
import sqlite3
from datetime import datetime
from pathlib import Path


def now_iso():
    return datetime.now().isoformat(timespec="seconds")


def get_conn(db_path: str):
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(db_path: str):
    conn = get_conn(db_path)
    cur = conn.cursor()

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS games (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          name TEXT NOT NULL,
          install_dir TEXT NOT NULL,
          executable TEXT DEFAULT '',
          active_profile_id TEXT DEFAULT 'default',
          provider TEXT,
          prefix TEXT,
          created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
          updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS profiles (
          game_id INTEGER NOT NULL REFERENCES games(id) ON DELETE CASCADE,
          id TEXT NOT NULL,
          name TEXT NOT NULL,
          is_default INTEGER DEFAULT 0,
          created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
          PRIMARY KEY (game_id, id)
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_runs (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          game_id INTEGER,
          run_type TEXT,
          status TEXT,
          started_at DATETIME DEFAULT CURRENT_TIMESTAMP,
          finished_at DATETIME,
          summary_json TEXT
        )
        """
    )

    cur.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_games_name ON games(name COLLATE NOCASE)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_sync_runs_game ON sync_runs(game_id)")

    conn.commit()
    conn.close()


def insert_sync_run(db_path: str, game_id: int, run_type: str) -> int:
    conn = get_conn(db_path)
    cur = conn.cursor()
    cur.execute(
        "INSERT INTO sync_runs(game_id,run_type,status,started_at,summary_json) VALUES (?,?,?,?,?)",
        (game_id, run_type, "running", now_iso(), "{}"),
    )
    rid = cur.lastrowid
    conn.commit()
    conn.close()
    return rid


def finish_sync_run(db_path: str, run_id: int, status: str, summary: dict):
    conn = get_conn(db_path)
    conn.execute(
        "UPDATE sync_runs SET status=?, finished_at=?, summary_json=? WHERE id=?",
        (status, now_iso(), json.dumps(summary, ensure_ascii=False), run_id),
    )
    conn.commit()
    conn.close()


def recent_sync_runs(db_path: str, limit: int = 20, game_id: int | None = None) -> list[dict]:
    conn = get_conn(db_path)
    if game_id is None:
        rows = conn.execute("SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM sync_runs WHERE game_id=? ORDER BY id DESC LIMIT ?",
            (game_id, limit),
        ).fetchall()
    conn.close()

    out = []
    for r in rows:
        item = dict(r)
        try:
            item["summary"] = json.loads(item.pop("summary_json") or "{}")
        except ValueError:
            item["summary"] = {"parse_error": True}
        out.append(item)
    return out
