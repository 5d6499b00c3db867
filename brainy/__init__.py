"""Brainy — a chat assistant with bounded per-user memory.

Keeps a token-bounded dialog context for every user and periodically
derives long-lived communication preferences from it with a completion
model.
"""

__version__ = "0.2.0"

from brainy.analyzer import AnalysisOutcome, PreferenceAnalyzer
from brainy.context import ContextManager
from brainy.models import DialogContext, Message, UserPreferences
from brainy.storage import ContextStorage, PreferencesStorage, open_storage

__all__ = [
    "AnalysisOutcome",
    "PreferenceAnalyzer",
    "ContextManager",
    "DialogContext",
    "Message",
    "UserPreferences",
    "ContextStorage",
    "PreferencesStorage",
    "open_storage",
]
