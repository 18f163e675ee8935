"""
Store Module - External collaborators of the answer pipeline.
=============================================================

- conversation: per-session turn log and last grounded snapshot
- settings_store: persisted runtime settings (models, store name)
- analytics: per-question analytics sink
"""

from course_ta.store.analytics import AnalyticsSink, InMemoryAnalyticsSink, JsonlAnalyticsSink
from course_ta.store.conversation import (
    ConversationStore,
    InMemoryConversationStore,
    JsonConversationStore,
)
from course_ta.store.settings_store import JsonSettingsStore

__all__ = [
    "AnalyticsSink",
    "InMemoryAnalyticsSink",
    "JsonlAnalyticsSink",
    "ConversationStore",
    "InMemoryConversationStore",
    "JsonConversationStore",
    "JsonSettingsStore",
]
