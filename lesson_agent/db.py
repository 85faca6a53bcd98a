from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any

from .types import CommandResult, Turn
from .utils import dumps_json, loads_json, utc_now_iso

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS turns (
  id TEXT PRIMARY KEY,
  document_id TEXT NOT NULL,
  role TEXT NOT NULL,
  content TEXT NOT NULL,
  command_results_json TEXT,
  attachments_json TEXT,
  sequence_no INTEGER NOT NULL,
  created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_turns_document_seq ON turns(document_id, sequence_no);
"""

DEFAULT_TURN_LIMIT = 50


def _default_db_path() -> Path:
    return Path.home() / ".lesson-agent" / "lesson-agent.db"


def init_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    conn.commit()


def connect(db_path: str | None) -> sqlite3.Connection:
    if db_path == ":memory:":
        target = db_path
    else:
        path = Path(db_path).expanduser() if db_path else _default_db_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        target = str(path)
    conn = sqlite3.connect(target, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    init_schema(conn)
    return conn


def _row_to_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    return {k: row[k] for k in row.keys()}


def _results_from_json(value: str | None, turn_id: str | None = None) -> list[CommandResult] | None:
    parsed = loads_json(value, None)
    if not isinstance(parsed, list):
        return None
    results: list[CommandResult] = []
    for item in parsed:
        if not isinstance(item, dict):
            continue
        results.append(
            CommandResult(
                name=str(item.get("name", "?")),
                success=bool(item.get("success")),
                detail=str(item.get("detail", "")),
                index=int(item.get("index") or 0),
                execution_mode=str(item.get("execution_mode") or "sequential"),
                turn_id=turn_id,
            )
        )
    return results


class TurnRepository:
    """Stores finished turns per document. Status and streaming turns never reach it."""

    def __init__(self, conn: sqlite3.Connection, *, lock: threading.RLock | None = None):
        self.conn = conn
        self.lock = lock or threading.RLock()

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        with self.lock:
            cur = self.conn.execute(sql, params)
            self.conn.commit()
            return cur

    def _fetchone(self, sql: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
        with self.lock:
            row = self.conn.execute(sql, params).fetchone()
        return _row_to_dict(row)

    def _fetchall(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        with self.lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [_row_to_dict(r) for r in rows if r is not None]

    def replace_turns(self, document_id: str, turns: list[Turn], *, limit: int = DEFAULT_TURN_LIMIT) -> int:
        kept = [turn for turn in turns if not turn.is_transient][-limit:] if limit > 0 else []
        now = utc_now_iso()
        with self.lock:
            self.conn.execute("DELETE FROM turns WHERE document_id=?", (document_id,))
            self.conn.executemany(
                """
                INSERT INTO turns(id, document_id, role, content, command_results_json, attachments_json, sequence_no, created_at)
                VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        turn.id,
                        document_id,
                        turn.role,
                        turn.content,
                        dumps_json([r.to_dict() for r in turn.command_results]) if turn.command_results is not None else None,
                        dumps_json(turn.attachments) if turn.attachments else None,
                        sequence_no,
                        turn.created_at or now,
                    )
                    for sequence_no, turn in enumerate(kept, start=1)
                ],
            )
            self.conn.commit()
        logger.debug("Turns saved document_id=%s count=%s", document_id, len(kept))
        return len(kept)

    def list_turns(self, document_id: str) -> list[Turn]:
        rows = self._fetchall(
            """
            SELECT id, role, content, command_results_json, attachments_json, created_at
            FROM turns
            WHERE document_id=?
            ORDER BY sequence_no ASC
            """,
            (document_id,),
        )
        turns: list[Turn] = []
        for row in rows:
            attachments = loads_json(row.get("attachments_json"), [])
            turns.append(
                Turn(
                    id=row["id"],
                    role=row["role"],
                    content=row["content"],
                    command_results=_results_from_json(row.get("command_results_json"), row["id"]),
                    attachments=[str(a) for a in attachments] if isinstance(attachments, list) else [],
                    created_at=row.get("created_at"),
                )
            )
        return turns

    def count_turns(self, document_id: str) -> int:
        row = self._fetchone("SELECT COUNT(*) AS n FROM turns WHERE document_id=?", (document_id,))
        return int(row["n"]) if row else 0

    def delete_turns(self, document_id: str) -> None:
        self._execute("DELETE FROM turns WHERE document_id=?", (document_id,))

    def close(self) -> None:
        with self.lock:
            self.conn.close()
