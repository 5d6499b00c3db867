"""Tests for the Telegram bot loop: routing, replies and shutdown.

The Telegram and completion clients are mocked; stores are in-memory.
"""

import asyncio
from unittest.mock import MagicMock

import pytest
import yaml

from brainy.bot import ERROR_RESPONSE, Bot
from brainy.config import Config
from brainy.errors import CompletionError
from brainy.memory_storage import MemoryContextStorage, MemoryPreferencesStorage


# -- Fixtures --

def make_config(tmp_path, username="brainy_bot"):
    data = {
        "telegram": {"bot_token": "test-token", "username": username},
        "openai": {"api_key": "sk-test"},
        "behavior": {"poll_timeout": 1},
        "data_dir": str(tmp_path / "data"),
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(data))
    return Config(path)


def make_bot(tmp_path, reply="Hello there!", username="brainy_bot"):
    completion = MagicMock()
    completion.complete.return_value = reply
    tg = MagicMock()
    tg.send = MagicMock(return_value=1)
    tg.typing = MagicMock()
    return Bot(
        make_config(tmp_path, username),
        context_store=MemoryContextStorage(),
        preferences_store=MemoryPreferencesStorage(),
        completion=completion,
        tg=tg,
    )


def private(text, chat_id=100):
    return {"chat": {"id": chat_id, "type": "private"}, "from": {"id": chat_id}, "text": text}


def group(text, chat_id=-500, **extra):
    msg = {"chat": {"id": chat_id, "type": "group"}, "from": {"id": 7, "username": "alice"}, "text": text}
    msg.update(extra)
    return msg


# -- Routing --

class TestShouldAnswer:
    def test_private_chat(self, tmp_path):
        assert make_bot(tmp_path).should_answer(private("hi"))

    def test_command_in_group(self, tmp_path):
        assert make_bot(tmp_path).should_answer(group("/hello"))

    def test_group_without_mention(self, tmp_path):
        assert not make_bot(tmp_path).should_answer(group("just chatting"))

    def test_group_mention(self, tmp_path):
        assert make_bot(tmp_path).should_answer(group("hey @brainy_bot what's up"))

    def test_group_reply_to_bot(self, tmp_path):
        msg = group("and then?", reply_to_message={"from": {"username": "brainy_bot"}})
        assert make_bot(tmp_path).should_answer(msg)

    def test_group_without_username_configured(self, tmp_path):
        assert not make_bot(tmp_path, username="").should_answer(group("hey @brainy_bot"))


# -- Replies --

class TestReply:
    @pytest.mark.asyncio
    async def test_reply_sends_response_and_records(self, tmp_path):
        bot = make_bot(tmp_path, reply="Hi!")
        await bot._reply(100, "hello")

        bot.tg.send.assert_called_once_with(100, "Hi!")
        ctx = bot.contexts.get(100)
        assert [m.text for m in ctx.messages] == ["hello", "Hi!"]
        assert bot.preferences_store.get_user_preferences(100).last_message_at is not None

    @pytest.mark.asyncio
    async def test_reply_error_response(self, tmp_path):
        bot = make_bot(tmp_path)
        bot.completion.complete.side_effect = CompletionError("HTTP 500")
        await bot._reply(100, "hello")

        bot.tg.send.assert_called_once_with(100, ERROR_RESPONSE)
        ctx = bot.contexts.get(100)
        assert [m.text for m in ctx.messages] == ["hello"]

    @pytest.mark.asyncio
    async def test_on_message_ignores_unaddressed(self, tmp_path):
        bot = make_bot(tmp_path)
        await bot._on_message(group("not for you"))
        assert not bot._tasks
        bot.completion.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_on_message_ignores_non_text(self, tmp_path):
        bot = make_bot(tmp_path)
        await bot._on_message({"chat": {"id": 1, "type": "private"}, "photo": [{}]})
        assert not bot._tasks

    @pytest.mark.asyncio
    async def test_on_message_spawns_reply(self, tmp_path):
        bot = make_bot(tmp_path)
        await bot._on_message(private("hi"))
        assert len(bot._tasks) == 1
        await asyncio.gather(*bot._tasks)
        bot.tg.send.assert_called_once()
        assert not bot._tasks


# -- Lifecycle --

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_run_processes_updates_and_stops(self, tmp_path):
        bot = make_bot(tmp_path)
        updates = [[{"update_id": 10, "message": private("hi")}]]

        def poll(offset, timeout):
            if updates:
                return updates.pop(0)
            bot.alive = False
            return []

        bot.tg.poll = MagicMock(side_effect=poll)
        await asyncio.wait_for(bot.run(), timeout=5)

        assert bot.offset == 11
        bot.tg.send.assert_called_once_with(100, "Hello there!")
        assert not bot._tasks

    def test_close_closes_stores(self, tmp_path):
        bot = make_bot(tmp_path)
        bot.context_store = MagicMock()
        bot.preferences_store = MagicMock()
        bot.close()
        bot.context_store.close.assert_called_once()
        bot.preferences_store.close.assert_called_once()
