"""SQLite-backed stores for dialog contexts and user preferences.

Storage: <data_dir>/brainy.db (configurable via storage.path)
Both stores share one connection; all access is serialised on its lock.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pydantic import ValidationError

from .context import DEFAULT_MAX_TOKENS, add_message, new_context
from .errors import StorageError
from .models import DialogContext, Message, UserPreferences, utcnow
from .storage import ContextStorage, PreferencesStorage, merge_for_save, stamp_message

log = logging.getLogger("brainy.storage")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS dialog_contexts (
    user_id     INTEGER PRIMARY KEY,
    topic       TEXT    NOT NULL DEFAULT '',
    messages    TEXT    NOT NULL DEFAULT '[]',
    tokens      INTEGER NOT NULL DEFAULT 0,
    updated_at  TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS user_preferences (
    user_id             INTEGER PRIMARY KEY,
    preferred_language  TEXT    NOT NULL DEFAULT '',
    formality           TEXT,
    verbosity           TEXT,
    favorite_topics     TEXT    NOT NULL DEFAULT '[]',
    technical_level     TEXT,
    humor_preference    TEXT,
    response_length     TEXT,
    last_analysis_at    TEXT,
    last_message_at     TEXT,
    created_at          TEXT,
    updated_at          TEXT
);
"""

_PREF_COLUMNS = (
    "user_id", "preferred_language", "formality", "verbosity", "favorite_topics",
    "technical_level", "humor_preference", "response_length",
    "last_analysis_at", "last_message_at", "created_at", "updated_at",
)

# Fixed-width UTC format so timestamps compare correctly as strings in SQL.
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def _ts(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Database:
    """A shared SQLite connection plus the lock that serialises it."""

    def __init__(self, conn: sqlite3.Connection, path: Path):
        self.conn = conn
        self.path = path
        self.lock = threading.RLock()
        self._closed = False

    @contextmanager
    def transaction(self):
        """Run a block under the lock inside one committed transaction."""
        with self.lock:
            if self._closed:
                raise StorageError("database is closed", component="sqlite")
            try:
                with self.conn:
                    yield self.conn
            except sqlite3.Error as exc:
                raise StorageError(f"sqlite error: {exc}", component="sqlite") from exc

    def close(self):
        with self.lock:
            if self._closed:
                return
            self._closed = True
            try:
                self.conn.close()
            except sqlite3.Error as exc:
                log.debug("closing sqlite connection: %s", exc)


def connect(db_path: str | Path) -> Database:
    """Open (creating if needed) the database file and its schema."""
    path = Path(db_path).expanduser()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.executescript(_SCHEMA)
        conn.commit()
    except (sqlite3.Error, OSError) as exc:
        raise StorageError(f"cannot open {path}: {exc}", component="sqlite") from exc
    log.debug("sqlite storage initialized at %s", path)
    return Database(conn, path)


class SqliteContextStorage(ContextStorage):
    """Dialog contexts in the ``dialog_contexts`` table.

    Closing this store closes the shared connection.
    """

    def __init__(self, db: Database, max_tokens: int = DEFAULT_MAX_TOKENS):
        self.db = db
        self.max_tokens = max_tokens

    def get_context(self, user_id: int) -> DialogContext | None:
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT user_id, topic, messages, tokens, updated_at "
                "FROM dialog_contexts WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return self._row_to_context(row) if row is not None else None

    def append_message(self, user_id: int, message: Message) -> None:
        message = stamp_message(message)
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT user_id, topic, messages, tokens, updated_at "
                "FROM dialog_contexts WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            if row is None:
                ctx = new_context(user_id, message)
            else:
                ctx = self._row_to_context(row)
                evicted = add_message(ctx, message, self.max_tokens)
                if evicted:
                    log.debug("evicted %d message(s) from context of user %d", evicted, user_id)
            self._write(conn, ctx)

    def set_topic(self, user_id: int, topic: str) -> None:
        now = _ts(utcnow())
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO dialog_contexts (user_id, topic, messages, tokens, updated_at) "
                "VALUES (?, ?, '[]', 0, ?) "
                "ON CONFLICT(user_id) DO UPDATE SET topic = excluded.topic, "
                "updated_at = excluded.updated_at",
                (user_id, topic, now),
            )

    def clear_context(self, user_id: int) -> None:
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM dialog_contexts WHERE user_id = ?", (user_id,))

    def close(self) -> None:
        self.db.close()

    @staticmethod
    def _write(conn: sqlite3.Connection, ctx: DialogContext):
        messages = json.dumps(
            [
                {"is_user": m.is_user, "text": m.text, "tokens": m.tokens, "timestamp": _ts(m.timestamp)}
                for m in ctx.messages
            ],
            ensure_ascii=False,
        )
        conn.execute(
            "INSERT OR REPLACE INTO dialog_contexts (user_id, topic, messages, tokens, updated_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (ctx.user_id, ctx.topic, messages, ctx.tokens, _ts(ctx.updated_at)),
        )

    @staticmethod
    def _row_to_context(row) -> DialogContext:
        try:
            return DialogContext(
                user_id=row["user_id"],
                topic=row["topic"] or "",
                messages=[Message(**m) for m in json.loads(row["messages"])],
                tokens=row["tokens"],
                updated_at=_parse_ts(row["updated_at"]),
            )
        except (ValueError, ValidationError) as exc:
            raise StorageError(
                f"corrupt context row for user {row['user_id']}", component="sqlite", detail=str(exc),
            ) from exc


class SqlitePreferencesStorage(PreferencesStorage):
    """User preferences in the ``user_preferences`` table.

    The connection belongs to the context store; ``close`` is a no-op.
    """

    def __init__(self, db: Database):
        self.db = db

    def get_user_preferences(self, user_id: int) -> UserPreferences | None:
        with self.db.transaction() as conn:
            return self._get(conn, user_id)

    def save_user_preferences(self, prefs: UserPreferences) -> UserPreferences:
        with self.db.transaction() as conn:
            stored = merge_for_save(prefs, self._get(conn, prefs.user_id))
            values = self._to_row(stored)
            placeholders = ", ".join("?" for _ in _PREF_COLUMNS)
            conn.execute(
                f"INSERT OR REPLACE INTO user_preferences ({', '.join(_PREF_COLUMNS)}) "
                f"VALUES ({placeholders})",
                values,
            )
        return stored

    def update_last_message_time(self, user_id: int) -> None:
        now = _ts(utcnow())
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO user_preferences (user_id, last_message_at, created_at, updated_at) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(user_id) DO UPDATE SET "
                "last_message_at = MAX(COALESCE(last_message_at, ''), excluded.last_message_at), "
                "updated_at = excluded.updated_at",
                (user_id, now, now, now),
            )

    def get_users_needing_analysis(self, cutoff: timedelta) -> list[int]:
        cutoff_time = _ts(utcnow() - cutoff)
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT user_id FROM user_preferences "
                "WHERE last_message_at IS NOT NULL "
                "AND (last_analysis_at IS NULL "
                "     OR (last_message_at > last_analysis_at AND last_analysis_at < ?)) "
                "ORDER BY user_id",
                (cutoff_time,),
            ).fetchall()
        return [r["user_id"] for r in rows]

    def close(self) -> None:
        pass

    def _get(self, conn: sqlite3.Connection, user_id: int) -> UserPreferences | None:
        row = conn.execute(
            f"SELECT {', '.join(_PREF_COLUMNS)} FROM user_preferences WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        if row is None:
            return None
        try:
            data = {col: row[col] for col in _PREF_COLUMNS}
            data["favorite_topics"] = json.loads(data["favorite_topics"] or "[]")
            for col in ("last_analysis_at", "last_message_at", "created_at", "updated_at"):
                data[col] = _parse_ts(data[col])
            return UserPreferences(**data)
        except (ValueError, ValidationError) as exc:
            raise StorageError(
                f"corrupt preferences row for user {user_id}", component="sqlite", detail=str(exc),
            ) from exc

    @staticmethod
    def _to_row(prefs: UserPreferences) -> tuple:
        data = prefs.model_dump(mode="json")
        data["favorite_topics"] = json.dumps(prefs.favorite_topics, ensure_ascii=False)
        for col in ("last_analysis_at", "last_message_at", "created_at", "updated_at"):
            data[col] = _ts(getattr(prefs, col))
        return tuple(data[col] for col in _PREF_COLUMNS)
