"""Background preference analysis.

Every ``interval`` the analyzer asks the preferences store which users have
written since their last analysis (and were last analysed more than
``cutoff`` ago), then analyses each of them in its own task:

    context history -> user messages -> prompt -> completion -> JSON -> upsert

A user is never analysed twice at the same time (``InFlightGuard``), and a
semaphore caps how many analyses call the completion service at once.
Failures leave ``last_analysis_at`` untouched, so the user is simply picked
up again on the next poll.
"""

from __future__ import annotations

import asyncio
import logging
import re
import threading
from datetime import timedelta
from enum import Enum

from pydantic import ValidationError

from .errors import AnalysisParseError, BrainyError, CompletionError, StorageError, log_error
from .models import PreferencesAnalysis, UserPreferences, utcnow

log = logging.getLogger("brainy.analyzer")

DEFAULT_INTERVAL = timedelta(hours=1)
DEFAULT_CUTOFF = timedelta(hours=24)
MIN_MESSAGES_FOR_ANALYSIS = 3

_ANALYSIS_PROMPT = """Analyze the following user messages and infer their communication preferences.

User Messages:
{messages}

Based on these messages, provide a JSON response with the following fields:
{{
  "preferred_language": "the language the user writes in most (e.g., English, Ukrainian, Spanish)",
  "formality": "formal, informal, or neutral based on how they communicate",
  "verbosity": "verbose, concise, or balanced based on their message length and detail",
  "favorite_topics": ["list", "of", "topics", "they", "discuss", "frequently"],
  "technical_level": "beginner, intermediate, or expert based on technical vocabulary usage",
  "humor_preference": "none, occasional, or frequent based on humor in their messages",
  "response_length": "short, medium, or long based on the detail they seem to expect"
}}

Respond ONLY with the JSON object, no other text."""

_FENCE = re.compile(r"^```[a-zA-Z]*\s*(.*?)\s*```$", re.DOTALL)


class AnalysisOutcome(str, Enum):
    """How a single analysis attempt ended."""

    SKIPPED = "skipped"  # not enough messages yet
    UPDATED = "updated"
    FAILED = "failed"


def build_analysis_prompt(user_messages: list[str]) -> str:
    return _ANALYSIS_PROMPT.format(messages="\n---\n".join(user_messages))


def strip_code_fence(text: str) -> str:
    """Remove a surrounding Markdown code fence, if any."""
    text = text.strip()
    m = _FENCE.match(text)
    return m.group(1) if m else text


def parse_analysis_response(response: str) -> PreferencesAnalysis:
    cleaned = strip_code_fence(response)
    try:
        return PreferencesAnalysis.model_validate_json(cleaned)
    except ValidationError as exc:
        raise AnalysisParseError(
            f"parsing analysis JSON: {exc.error_count()} error(s)",
            component="analyzer",
            detail=response,
        ) from exc


class InFlightGuard:
    """Thread-safe set of user IDs with an analysis in progress."""

    def __init__(self):
        self._lock = threading.Lock()
        self._users: set[int] = set()

    def acquire(self, user_id: int) -> bool:
        """Mark ``user_id`` in flight. False if it already was."""
        with self._lock:
            if user_id in self._users:
                return False
            self._users.add(user_id)
            return True

    def release(self, user_id: int):
        with self._lock:
            self._users.discard(user_id)

    def __contains__(self, user_id: int) -> bool:
        with self._lock:
            return user_id in self._users

    def __len__(self) -> int:
        with self._lock:
            return len(self._users)


class PreferenceAnalyzer:
    """Periodically derive user preferences from their dialog history."""

    def __init__(
        self,
        contexts,
        preferences,
        completion,
        interval: timedelta = DEFAULT_INTERVAL,
        cutoff: timedelta = DEFAULT_CUTOFF,
        min_messages: int = MIN_MESSAGES_FOR_ANALYSIS,
        max_concurrent: int = 4,
        request_timeout: int = 90,
    ):
        self.contexts = contexts
        self.preferences = preferences
        self.completion = completion
        self.interval = interval
        self.cutoff = cutoff
        self.min_messages = min_messages
        self.request_timeout = request_timeout
        self.guard = InFlightGuard()
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._tasks: set[asyncio.Task] = set()
        self._stop = asyncio.Event()

    @classmethod
    def from_config(cls, cfg, contexts, preferences, completion) -> "PreferenceAnalyzer":
        return cls(
            contexts,
            preferences,
            completion,
            interval=cfg.analysis_interval,
            cutoff=cfg.analysis_cutoff,
            min_messages=cfg.min_messages,
            max_concurrent=cfg.max_concurrent_analyses,
            request_timeout=cfg.analysis_timeout,
        )

    # -- Lifecycle --

    async def run(self):
        """Poll every ``interval`` until ``stop()``; then drain in-flight work."""
        log.info("background analysis started (interval %s, cutoff %s)", self.interval, self.cutoff)
        try:
            while not self._stop.is_set():
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.interval.total_seconds())
                    break
                except asyncio.TimeoutError:
                    pass
                try:
                    await self.poll_once()
                except Exception:
                    log.exception("analysis poll failed")
        finally:
            await self.drain()
            log.info("background analysis stopped")

    def stop(self):
        self._stop.set()

    async def shutdown(self):
        """Stop polling and wait for every spawned analysis to finish."""
        self.stop()
        await self.drain()

    async def drain(self):
        while self._tasks:
            log.info("waiting for %d in-flight analysis task(s)", len(self._tasks))
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self.guard)

    # -- Scheduling --

    async def poll_once(self) -> int:
        """Run one poll cycle. Returns the number of analyses started."""
        try:
            users = await asyncio.to_thread(self.preferences.get_users_needing_analysis, self.cutoff)
        except StorageError as exc:
            log_error(exc, log)
            return 0

        if users:
            log.info("users needing analysis: %d", len(users))
        return sum(1 for user_id in users if self.trigger(user_id))

    def trigger(self, user_id: int) -> bool:
        """Start analysing ``user_id`` in the background.

        Returns False without doing anything when an analysis for the user
        is already running. Must be called from the event loop.
        """
        if not self.guard.acquire(user_id):
            log.debug("analysis for user %d already in flight", user_id)
            return False
        task = asyncio.create_task(self._run_guarded(user_id))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return True

    async def _run_guarded(self, user_id: int) -> AnalysisOutcome:
        try:
            async with self._semaphore:
                return await self.analyze_user(user_id)
        except BrainyError as exc:
            log_error(exc, log, component="analyzer")
            log.warning("analysis for user %d failed; will retry on a later poll", user_id)
            return AnalysisOutcome.FAILED
        except Exception:
            log.exception("analysis for user %d crashed", user_id)
            return AnalysisOutcome.FAILED
        finally:
            self.guard.release(user_id)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)

    # -- Analysis --

    async def analyze_user(self, user_id: int) -> AnalysisOutcome:
        """Analyse one user's history and upsert the derived preferences.

        Raises StorageError, CompletionError or AnalysisParseError; nothing
        is written unless every step succeeds.
        """
        ctx = await asyncio.to_thread(self.contexts.get_context, user_id)
        if ctx is None or len(ctx.messages) < self.min_messages:
            log.debug("user %d: not enough messages to analyse", user_id)
            return AnalysisOutcome.SKIPPED

        user_messages = ctx.user_texts()
        if len(user_messages) < self.min_messages:
            log.debug("user %d: not enough user messages to analyse", user_id)
            return AnalysisOutcome.SKIPPED

        log.info("user %d: starting preferences analysis (%d messages)", user_id, len(user_messages))
        response = await self._complete(build_analysis_prompt(user_messages))
        analysis = parse_analysis_response(response)

        existing = await asyncio.to_thread(self.preferences.get_user_preferences, user_id)
        prefs = UserPreferences.from_analysis(user_id, analysis)
        prefs.last_analysis_at = utcnow()
        if existing is not None:
            prefs.created_at = existing.created_at
            prefs.last_message_at = existing.last_message_at
        else:
            prefs.created_at = prefs.last_analysis_at

        await asyncio.to_thread(self.preferences.save_user_preferences, prefs)
        log.info(
            "user %d: preferences updated (language=%s, formality=%s)",
            user_id, prefs.preferred_language, prefs.formality.value if prefs.formality else "-",
        )
        return AnalysisOutcome.UPDATED

    async def _complete(self, prompt: str) -> str:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.completion.complete, prompt, self.request_timeout),
                # Small margin so the HTTP timeout normally fires first.
                timeout=self.request_timeout + 5,
            )
        except asyncio.TimeoutError as exc:
            raise CompletionError(
                f"completion timed out after {self.request_timeout}s", component="analyzer",
            ) from exc
