"""Context manager — the token-bounded dialog window kept for each user."""

from __future__ import annotations

import logging

from .errors import StorageError, log_error
from .models import DialogContext, Message, utcnow

log = logging.getLogger("brainy.context")

DEFAULT_MAX_TOKENS = 20000


def add_message(ctx: DialogContext, message: Message, max_tokens: int = DEFAULT_MAX_TOKENS) -> int:
    """Append ``message`` to ``ctx`` in place and evict the oldest messages.

    Eviction stops once the total is within ``max_tokens`` or a single
    message is left; a lone over-budget message is kept. Returns the
    number of evicted messages.
    """
    ctx.tokens += message.tokens
    ctx.messages.append(message)

    evicted = 0
    while ctx.tokens > max_tokens and len(ctx.messages) > 1:
        removed = ctx.messages.pop(0)
        ctx.tokens -= removed.tokens
        evicted += 1

    ctx.updated_at = utcnow()
    return evicted


def new_context(user_id: int, message: Message | None = None, topic: str = "") -> DialogContext:
    ctx = DialogContext(user_id=user_id, topic=topic)
    if message is not None:
        ctx.messages.append(message)
        ctx.tokens = message.tokens
    return ctx


class ContextManager:
    """Façade over a ContextStorage.

    Storage failures are logged and reported through the return value so
    a broken backend degrades the bot to history-less replies instead of
    failing the conversation.
    """

    def __init__(self, storage):
        self.storage = storage

    def get(self, user_id: int) -> DialogContext | None:
        try:
            return self.storage.get_context(user_id)
        except StorageError as exc:
            log_error(exc, log)
            return None

    def add(self, user_id: int, text: str, is_user: bool) -> bool:
        try:
            self.storage.append_message(user_id, Message.create(text, is_user))
            return True
        except StorageError as exc:
            log_error(exc, log)
            return False

    def set_topic(self, user_id: int, topic: str) -> bool:
        try:
            self.storage.set_topic(user_id, topic)
            return True
        except StorageError as exc:
            log_error(exc, log)
            return False

    def clear(self, user_id: int) -> bool:
        try:
            self.storage.clear_context(user_id)
            return True
        except StorageError as exc:
            log_error(exc, log)
            return False

    def render(self, user_id: int) -> str:
        """Render the stored history as a prompt preamble ("" when absent)."""
        ctx = self.get(user_id)
        if ctx is None:
            return ""
        log.info("user %d context: %d messages, %d tokens", user_id, len(ctx.messages), ctx.tokens)

        text = ""
        if ctx.topic:
            text = "Subject: " + ctx.topic
        text += "\nPrevious messages of you as Assistant and me as User: "
        for msg in ctx.messages:
            person = "User" if msg.is_user else "Assistant"
            text += f"\n{person}: {msg.text}"
        return text

    def close(self):
        self.storage.close()
