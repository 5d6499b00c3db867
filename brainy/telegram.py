"""Telegram Bot API client over urllib.

Only the calls the bot needs: long-polling for updates, sending replies and
the typing indicator.
"""

from __future__ import annotations

import json
import logging
from urllib.error import URLError
from urllib.request import Request, urlopen

log = logging.getLogger("brainy.telegram")

API_URL = "https://api.telegram.org/bot{token}/{method}"
MAX_MESSAGE_LENGTH = 4096


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Cut ``text`` into Telegram-sized chunks, preferring line breaks."""
    chunks = []
    while len(text) > limit:
        cut = text.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(text[:cut])
        text = text[cut:].lstrip("\n")
    if text or not chunks:
        chunks.append(text)
    return chunks


class TelegramClient:
    def __init__(self, bot_token: str):
        self.bot_token = bot_token

    def call(self, method: str, payload: dict | None = None, timeout: int = 40):
        """Invoke an API method and return its ``result``; None on any failure."""
        req = Request(
            API_URL.format(token=self.bot_token, method=method),
            data=json.dumps(payload or {}).encode(),
            headers={"Content-Type": "application/json"},
        )
        try:
            with urlopen(req, timeout=timeout) as resp:
                body = json.loads(resp.read())
        except (URLError, OSError, json.JSONDecodeError) as exc:
            log.error("telegram %s failed: %s", method, exc)
            return None
        if not body.get("ok"):
            log.error("telegram %s rejected: %s", method, body.get("description", "unknown error"))
            return None
        return body.get("result")

    def send(self, chat_id: int, text: str, reply_to: int | None = None) -> int | None:
        """Send ``text`` (split when too long). Returns the last message_id."""
        message_id = None
        for chunk in split_message(text):
            data: dict = {"chat_id": chat_id, "text": chunk}
            if reply_to:
                data["reply_parameters"] = {"message_id": reply_to}
                reply_to = None
            result = self.call("sendMessage", data)
            if not result:
                break
            message_id = result.get("message_id")
        return message_id

    def typing(self, chat_id: int):
        # The client shows the indicator for about five seconds.
        self.call("sendChatAction", {"chat_id": chat_id, "action": "typing"}, timeout=5)

    def get_me(self) -> dict:
        return self.call("getMe", timeout=10) or {}

    def poll(self, offset: int, poll_timeout: int = 30) -> list[dict]:
        """Long-poll for new message updates starting at ``offset``."""
        data: dict = {"timeout": poll_timeout, "allowed_updates": ["message"]}
        if offset:
            data["offset"] = offset
        return self.call("getUpdates", data, timeout=poll_timeout + 10) or []
