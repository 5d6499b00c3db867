"""Storage interfaces for dialog contexts and user preferences.

Two backends implement them:
- memory: process-local dicts, lost on restart
- sqlite: a single SQLite file, one row per user in each table

``open_storage`` picks the backend once from config and falls back to
memory when the durable store cannot be opened.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import timedelta

from .errors import StorageError
from .models import DialogContext, Message, UserPreferences, count_tokens, utcnow

log = logging.getLogger("brainy.storage")


class RWLock:
    """Reader/writer lock: many concurrent readers or one writer.

    Writers take precedence: once a writer is waiting, new readers queue
    behind it.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def stamp_message(message: Message) -> Message:
    """Recompute the derived fields of an inbound message."""
    return message.model_copy(update={"tokens": count_tokens(message.text), "timestamp": utcnow()})


class ContextStorage(ABC):
    """Per-user dialog history."""

    @abstractmethod
    def get_context(self, user_id: int) -> DialogContext | None:
        """Return a snapshot of the user's context, or None."""

    @abstractmethod
    def append_message(self, user_id: int, message: Message) -> None:
        """Append a message and apply the eviction policy atomically."""

    @abstractmethod
    def set_topic(self, user_id: int, topic: str) -> None:
        """Set the topic, creating an empty context if needed."""

    @abstractmethod
    def clear_context(self, user_id: int) -> None:
        """Remove the user's context entirely. No-op when absent."""

    @abstractmethod
    def close(self) -> None:
        """Release resources. Idempotent."""


class PreferencesStorage(ABC):
    """Per-user derived preferences and analysis timestamps."""

    @abstractmethod
    def get_user_preferences(self, user_id: int) -> UserPreferences | None:
        """Return a snapshot of the user's preferences, or None."""

    @abstractmethod
    def save_user_preferences(self, prefs: UserPreferences) -> UserPreferences:
        """Upsert preferences; returns the stored record."""

    @abstractmethod
    def update_last_message_time(self, user_id: int) -> None:
        """Mark that the user just sent a message."""

    @abstractmethod
    def get_users_needing_analysis(self, cutoff: timedelta) -> list[int]:
        """IDs of users with new messages whose last analysis is older than cutoff."""

    @abstractmethod
    def close(self) -> None:
        """Release resources. Idempotent."""


def merge_for_save(prefs: UserPreferences, existing: UserPreferences | None) -> UserPreferences:
    """Apply upsert rules: keep created_at, keep last_message_at when unset."""
    now = utcnow()
    update = {"updated_at": now}
    if existing is not None:
        update["created_at"] = existing.created_at or prefs.created_at or now
        if prefs.last_message_at is None:
            update["last_message_at"] = existing.last_message_at
        elif existing.last_message_at and existing.last_message_at > prefs.last_message_at:
            update["last_message_at"] = existing.last_message_at
        if (
            existing.last_analysis_at
            and (prefs.last_analysis_at is None or existing.last_analysis_at > prefs.last_analysis_at)
        ):
            update["last_analysis_at"] = existing.last_analysis_at
    else:
        update["created_at"] = prefs.created_at or now
    return prefs.model_copy(update=update, deep=True)


def open_storage(cfg) -> tuple[ContextStorage, PreferencesStorage]:
    """Build the context and preferences stores selected by ``cfg``."""
    from .memory_storage import MemoryContextStorage, MemoryPreferencesStorage

    if cfg.storage_backend == "sqlite":
        from .sqlite_storage import SqliteContextStorage, SqlitePreferencesStorage, connect

        try:
            conn = connect(cfg.sqlite_path)
            contexts = SqliteContextStorage(conn, max_tokens=cfg.max_tokens)
            prefs = SqlitePreferencesStorage(conn)
            log.info("using sqlite storage at %s", cfg.sqlite_path)
            return contexts, prefs
        except StorageError as exc:
            log.warning("sqlite storage unavailable (%s); falling back to memory", exc)

    log.info("using in-memory storage")
    return MemoryContextStorage(max_tokens=cfg.max_tokens), MemoryPreferencesStorage()
