"""Pydantic models for dialog contexts and user preferences."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Naive datetimes are taken to be UTC; aware ones are converted."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def count_tokens(text: str) -> int:
    """Length-based token proxy: one token per character (code point)."""
    return len(text)


class Formality(str, Enum):
    FORMAL = "formal"
    INFORMAL = "informal"
    NEUTRAL = "neutral"


class Verbosity(str, Enum):
    VERBOSE = "verbose"
    CONCISE = "concise"
    BALANCED = "balanced"


class TechnicalLevel(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    EXPERT = "expert"


class HumorPreference(str, Enum):
    NONE = "none"
    OCCASIONAL = "occasional"
    FREQUENT = "frequent"


class ResponseLength(str, Enum):
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


class Message(BaseModel):
    """A single dialog message. Frozen once built."""

    model_config = ConfigDict(frozen=True)

    is_user: bool
    text: str
    tokens: int = Field(default=0, ge=0)
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value):
        return as_utc(value)

    @classmethod
    def create(cls, text: str, is_user: bool) -> "Message":
        """Build a message with tokens derived from the text."""
        return cls(is_user=is_user, text=text, tokens=count_tokens(text), timestamp=utcnow())


class DialogContext(BaseModel):
    """Ordered message history of one user, oldest first."""

    user_id: int
    topic: str = ""
    messages: list[Message] = Field(default_factory=list)
    tokens: int = 0
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("updated_at")
    @classmethod
    def _utc(cls, value):
        return as_utc(value)

    def user_texts(self) -> list[str]:
        return [m.text for m in self.messages if m.is_user]


_ANALYSED_ENUMS = (
    "formality", "verbosity", "technical_level", "humor_preference", "response_length",
)


class PreferencesAnalysis(BaseModel):
    """The seven fields the completion service is asked to return."""

    preferred_language: str
    formality: Formality
    verbosity: Verbosity
    favorite_topics: list[str] = Field(default_factory=list)
    technical_level: TechnicalLevel
    humor_preference: HumorPreference
    response_length: ResponseLength

    @field_validator(*_ANALYSED_ENUMS, mode="before")
    @classmethod
    def _lower(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value


class UserPreferences(BaseModel):
    """Derived communication preferences plus analysis bookkeeping."""

    user_id: int
    preferred_language: str = ""
    formality: Formality | None = None
    verbosity: Verbosity | None = None
    favorite_topics: list[str] = Field(default_factory=list)
    technical_level: TechnicalLevel | None = None
    humor_preference: HumorPreference | None = None
    response_length: ResponseLength | None = None
    last_analysis_at: datetime | None = None
    last_message_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("last_analysis_at", "last_message_at", "created_at", "updated_at")
    @classmethod
    def _utc(cls, value):
        return as_utc(value)

    @property
    def analysed(self) -> bool:
        return self.last_analysis_at is not None

    @classmethod
    def from_analysis(cls, user_id: int, analysis: PreferencesAnalysis) -> "UserPreferences":
        return cls(user_id=user_id, **analysis.model_dump())

    def needs_analysis(self, cutoff, now: datetime | None = None) -> bool:
        """Eligibility for re-analysis.

        New messages since the last analysis, and either no analysis yet
        or the last one is older than ``cutoff``.
        """
        if self.last_message_at is None:
            return False
        if self.last_analysis_at is None:
            return True
        now = now or utcnow()
        return (
            self.last_message_at > self.last_analysis_at
            and now - self.last_analysis_at > cutoff
        )
