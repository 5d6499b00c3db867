"""Chat service — turns an inbound user message into a completion prompt."""

from __future__ import annotations

import logging

from .context import ContextManager
from .errors import StorageError, log_error
from .models import UserPreferences

log = logging.getLogger("brainy.chat")


def translate_prompt(language: str) -> str:
    return (
        f"Act as a {language}-English dictionary. Give response like an Dictionary article. "
        "Add the following information: "
        "[ transcription ] "
        "- gender, empty if not applicable "
        "- grammar form, empty if not applicable "
        "- translation "
        "- examples of use "
        "- for verbs add: conjugation in present, past and future. "
        "Here is the word to translate: "
    )


def preferences_hint(prefs: UserPreferences | None) -> str:
    """Describe analysed preferences for the prompt; "" until analysed."""
    if prefs is None or not prefs.analysed:
        return ""
    parts = []
    if prefs.preferred_language:
        parts.append(f"answer in {prefs.preferred_language}")
    for label, value in (
        ("formality", prefs.formality),
        ("verbosity", prefs.verbosity),
        ("technical level", prefs.technical_level),
        ("humor", prefs.humor_preference),
        ("response length", prefs.response_length),
    ):
        if value is not None:
            parts.append(f"{label}: {value.value}")
    if prefs.favorite_topics:
        parts.append("interests: " + ", ".join(prefs.favorite_topics))
    if not parts:
        return ""
    return "About me (" + "; ".join(parts) + ")."


class ChatService:
    """Compose prompts from commands, history and preferences; record replies."""

    def __init__(self, contexts: ContextManager, preferences, completion):
        self.contexts = contexts
        self.preferences = preferences
        self.completion = completion

    def respond(self, user_id: int, text: str) -> str:
        """Return the assistant reply for ``text``.

        Raises CompletionError when the completion service fails.
        """
        prompt, record = self.compose_prompt(user_id, text)
        response = self.completion.complete(prompt)

        if record:
            self.contexts.add(user_id, response, is_user=False)

        log_text = response if len(response) <= 50 else response[:50] + "..."
        log.info("user %d outgoing: %s", user_id, log_text)
        return response

    def compose_prompt(self, user_id: int, question: str) -> tuple[str, bool]:
        """Build the prompt. The flag says whether the reply joins the history."""
        self._mark_message(user_id)

        if question.startswith("/ask "):
            return question[len("/ask "):], False

        if question.startswith("/cat "):
            return translate_prompt("Catalan") + question[len("/cat "):], False

        if question.startswith("/cas "):
            return translate_prompt("Spanish") + question[len("/cas "):], False

        if question.startswith("/hello"):
            return "Answer in Ukrainian: Say one random fact from science.", False

        if question.startswith("/clear"):
            self.contexts.clear(user_id)
            return "Let's talk.", False

        if question.startswith("/topic"):
            topic = question[len("/topic"):].strip()
            self.contexts.set_topic(user_id, topic)
            return f"Let's talk about {topic}.", False

        self.contexts.add(user_id, question, is_user=True)

        preamble = self.contexts.render(user_id)
        hint = preferences_hint(self._preferences(user_id))
        if hint:
            preamble = (preamble + "\n" + hint) if preamble else hint
        if preamble:
            question = preamble + "\nMy next question is:\n" + question
        return question, True

    def _mark_message(self, user_id: int):
        try:
            self.preferences.update_last_message_time(user_id)
        except StorageError as exc:
            log_error(exc, log)

    def _preferences(self, user_id: int) -> UserPreferences | None:
        try:
            return self.preferences.get_user_preferences(user_id)
        except StorageError as exc:
            log_error(exc, log)
            return None
