"""Telegram bot — polls updates, answers through the chat service and runs
the preference analyzer alongside."""

from __future__ import annotations

import asyncio
import logging
import signal

from .analyzer import PreferenceAnalyzer
from .chat import ChatService
from .completion import CompletionClient
from .config import Config
from .context import ContextManager
from .errors import BrainyError, log_error, mask_secret
from .storage import open_storage
from .telegram import TelegramClient

log = logging.getLogger("brainy")

ERROR_RESPONSE = "Sorry, I'm not feeling well today. Please try again later."
TYPING_INTERVAL = 4  # Telegram clears the indicator after ~5s


class Bot:
    """Main event loop: poll Telegram, answer messages, analyse preferences.

    One dialog context is kept per chat, keyed by chat ID.
    """

    def __init__(
        self,
        config: Config,
        context_store=None,
        preferences_store=None,
        completion: CompletionClient | None = None,
        tg: TelegramClient | None = None,
    ):
        self.cfg = config
        if context_store is None or preferences_store is None:
            context_store, preferences_store = open_storage(config)
        self.context_store = context_store
        self.preferences_store = preferences_store
        self.completion = completion or CompletionClient.from_config(config)
        self.tg = tg or TelegramClient(config.bot_token)
        self.contexts = ContextManager(context_store)
        self.chat = ChatService(self.contexts, preferences_store, self.completion)
        self.analyzer = PreferenceAnalyzer.from_config(
            config, context_store, preferences_store, self.completion,
        )
        self.username = config.bot_username
        self.offset = 0
        self.alive = True
        self._tasks: set[asyncio.Task] = set()

    # -- Lifecycle --

    async def run(self):
        log.info(
            "Brainy starting (model=%s, storage=%s, key=%s)",
            self.cfg.model, self.cfg.storage_backend, mask_secret(self.cfg.api_key),
        )

        if not self.username:
            me = await asyncio.to_thread(self.tg.get_me)
            self.username = me.get("username", "")
            log.info("Bot username: @%s", self.username or "?")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._shutdown)

        analyzer_task = None
        if self.cfg.analyzer_enabled:
            analyzer_task = asyncio.create_task(self.analyzer.run())

        while self.alive:
            try:
                updates = await asyncio.to_thread(
                    self.tg.poll, self.offset, self.cfg.poll_timeout
                )
                for u in updates:
                    self.offset = u["update_id"] + 1
                    msg = u.get("message")
                    if msg:
                        await self._on_message(msg)
            except Exception:
                log.exception("poll loop error")
                await asyncio.sleep(5)

        if self._tasks:
            log.info("Draining %d in-flight replies", len(self._tasks))
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self.analyzer.stop()
        if analyzer_task is not None:
            await analyzer_task
        self.close()
        log.info("Brainy stopped")

    def _shutdown(self):
        log.info("Shutdown signal")
        self.alive = False
        self.analyzer.stop()

    def close(self):
        self.preferences_store.close()
        self.context_store.close()

    # -- Message routing --

    def should_answer(self, msg: dict) -> bool:
        """Commands and private chats always; groups only when addressed."""
        text = msg.get("text") or ""
        if text.startswith("/"):
            return True
        if msg.get("chat", {}).get("type") == "private":
            return True
        if self.username:
            if f"@{self.username}" in text:
                return True
            reply = msg.get("reply_to_message") or {}
            if reply.get("from", {}).get("username") == self.username:
                return True
        return False

    async def _on_message(self, msg: dict):
        text = msg.get("text")
        if not text or not self.should_answer(msg):
            return
        chat_id = msg["chat"]["id"]
        sender = msg.get("from", {}).get("username") or msg.get("from", {}).get("id")
        log.info("[%s] %s", sender, text if len(text) <= 50 else text[:50] + "...")
        self._spawn(self._reply(chat_id, text))

    async def _reply(self, chat_id: int, text: str):
        typing = asyncio.create_task(self._keep_typing(chat_id))
        try:
            response = await asyncio.to_thread(self.chat.respond, chat_id, text)
        except BrainyError as exc:
            log_error(exc, log, component="chat")
            response = ERROR_RESPONSE
        finally:
            typing.cancel()
        await asyncio.to_thread(self.tg.send, chat_id, response)

    async def _keep_typing(self, chat_id: int):
        try:
            while True:
                await asyncio.to_thread(self.tg.typing, chat_id)
                await asyncio.sleep(TYPING_INTERVAL)
        except asyncio.CancelledError:
            pass

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        """Handle completed background tasks: cleanup and log exceptions."""
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            log.error("background task failed: %s", exc, exc_info=exc)
