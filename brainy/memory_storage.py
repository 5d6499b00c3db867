"""Volatile in-process stores. Data is lost when the process exits."""

from __future__ import annotations

import logging
from datetime import timedelta

from .context import DEFAULT_MAX_TOKENS, add_message, new_context
from .models import DialogContext, Message, UserPreferences, utcnow
from .storage import (
    ContextStorage,
    PreferencesStorage,
    RWLock,
    merge_for_save,
    stamp_message,
)

log = logging.getLogger("brainy.storage")


class MemoryContextStorage(ContextStorage):
    """Dialog contexts kept in a dict guarded by a reader/writer lock."""

    def __init__(self, max_tokens: int = DEFAULT_MAX_TOKENS):
        self.max_tokens = max_tokens
        self._contexts: dict[int, DialogContext] = {}
        self._lock = RWLock()

    def get_context(self, user_id: int) -> DialogContext | None:
        with self._lock.read():
            ctx = self._contexts.get(user_id)
            return ctx.model_copy(deep=True) if ctx is not None else None

    def append_message(self, user_id: int, message: Message) -> None:
        message = stamp_message(message)
        with self._lock.write():
            ctx = self._contexts.get(user_id)
            if ctx is None:
                self._contexts[user_id] = new_context(user_id, message)
                return
            evicted = add_message(ctx, message, self.max_tokens)
            if evicted:
                log.debug("evicted %d message(s) from context of user %d", evicted, user_id)

    def set_topic(self, user_id: int, topic: str) -> None:
        with self._lock.write():
            ctx = self._contexts.get(user_id)
            if ctx is None:
                self._contexts[user_id] = new_context(user_id, topic=topic)
            else:
                ctx.topic = topic
                ctx.updated_at = utcnow()

    def clear_context(self, user_id: int) -> None:
        with self._lock.write():
            self._contexts.pop(user_id, None)

    def close(self) -> None:
        pass


class MemoryPreferencesStorage(PreferencesStorage):
    """User preferences kept in a dict guarded by a reader/writer lock."""

    def __init__(self):
        self._prefs: dict[int, UserPreferences] = {}
        self._lock = RWLock()

    def get_user_preferences(self, user_id: int) -> UserPreferences | None:
        with self._lock.read():
            prefs = self._prefs.get(user_id)
            return prefs.model_copy(deep=True) if prefs is not None else None

    def save_user_preferences(self, prefs: UserPreferences) -> UserPreferences:
        with self._lock.write():
            stored = merge_for_save(prefs, self._prefs.get(prefs.user_id))
            self._prefs[prefs.user_id] = stored
            return stored.model_copy(deep=True)

    def update_last_message_time(self, user_id: int) -> None:
        now = utcnow()
        with self._lock.write():
            prefs = self._prefs.get(user_id)
            if prefs is None:
                self._prefs[user_id] = UserPreferences(
                    user_id=user_id, last_message_at=now, created_at=now, updated_at=now,
                )
            else:
                prefs.last_message_at = max(now, prefs.last_message_at or now)
                prefs.updated_at = now

    def get_users_needing_analysis(self, cutoff: timedelta) -> list[int]:
        now = utcnow()
        with self._lock.read():
            return [uid for uid, p in self._prefs.items() if p.needs_analysis(cutoff, now)]

    def close(self) -> None:
        pass
