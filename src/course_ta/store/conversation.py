"""
Conversation Module - Per-session turn log and last grounded snapshot.
======================================================================

The answer pipeline only needs a narrow interface:
- recent turns (bounded suffix, oldest first)
- append a turn
- read/write the last grounded question with its references

Two implementations are provided: in-memory (tests, CLI sessions) and a
JSON file (persists across CLI runs). Writes are last-write-wins per session.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from course_ta.shared.logging import get_logger
from course_ta.shared.schemas import ConversationTurn, GroundedSnapshot, Reference, Role
from course_ta.shared.utils import load_json, save_json

logger = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Store Interface
# ─────────────────────────────────────────────────────────────────────────────


class ConversationStore(ABC):
    """Abstract conversation store."""

    @abstractmethod
    def get_recent_turns(self, session_id: str, limit: int = 12) -> list[ConversationTurn]:
        """Return up to ``limit`` most recent turns, oldest first."""
        pass

    @abstractmethod
    def append_turn(self, session_id: str, role: Role, text: str) -> ConversationTurn:
        """Append a turn to the session log."""
        pass

    @abstractmethod
    def get_last_grounded_references(self, session_id: str) -> Optional[GroundedSnapshot]:
        """Return the last grounded snapshot, or None."""
        pass

    @abstractmethod
    def set_last_grounded_references(
        self,
        session_id: str,
        question: str,
        answer: str,
        references: list[Reference],
    ) -> None:
        """Replace the last grounded snapshot."""
        pass


# ─────────────────────────────────────────────────────────────────────────────
# In-Memory Store
# ─────────────────────────────────────────────────────────────────────────────


class InMemoryConversationStore(ConversationStore):
    """
    Conversation store held in process memory.

    Example:
        >>> store = InMemoryConversationStore()
        >>> _ = store.append_turn("s1", Role.USER, "מה זה תועלתנות?")
        >>> [t.text for t in store.get_recent_turns("s1")]
        ['מה זה תועלתנות?']
    """

    def __init__(self):
        self._turns: dict[str, list[ConversationTurn]] = {}
        self._snapshots: dict[str, GroundedSnapshot] = {}

    def get_recent_turns(self, session_id: str, limit: int = 12) -> list[ConversationTurn]:
        if limit <= 0:
            return []
        return list(self._turns.get(session_id, [])[-limit:])

    def append_turn(self, session_id: str, role: Role, text: str) -> ConversationTurn:
        turn = ConversationTurn(role=role, text=text)
        self._turns.setdefault(session_id, []).append(turn)
        self._persist()
        return turn

    def get_last_grounded_references(self, session_id: str) -> Optional[GroundedSnapshot]:
        return self._snapshots.get(session_id)

    def set_last_grounded_references(
        self,
        session_id: str,
        question: str,
        answer: str,
        references: list[Reference],
    ) -> None:
        self._snapshots[session_id] = GroundedSnapshot(
            question=question, answer=answer, references=list(references)
        )
        self._persist()

    def session_ids(self) -> list[str]:
        return sorted(self._turns)

    def _persist(self) -> None:
        """Hook for subclasses that write through to disk."""


# ─────────────────────────────────────────────────────────────────────────────
# JSON File Store
# ─────────────────────────────────────────────────────────────────────────────


class JsonConversationStore(InMemoryConversationStore):
    """
    Conversation store persisted to a single JSON file.

    File layout::

        {"sessions": {"<id>": {"turns": [...], "last_grounded": {...} | null}}}
    """

    def __init__(self, file_path: Path):
        super().__init__()
        self.file_path = Path(file_path)
        self._load()

    def _load(self) -> None:
        data = load_json(self.file_path, default={}) or {}
        for session_id, session in (data.get("sessions") or {}).items():
            self._turns[session_id] = [
                ConversationTurn.model_validate(t) for t in session.get("turns", [])
            ]
            snapshot = session.get("last_grounded")
            if snapshot:
                self._snapshots[session_id] = GroundedSnapshot.model_validate(snapshot)

        logger.debug(f"Loaded {len(self._turns)} sessions from {self.file_path}")

    def _persist(self) -> None:
        sessions = {}
        for session_id in set(self._turns) | set(self._snapshots):
            snapshot = self._snapshots.get(session_id)
            sessions[session_id] = {
                "turns": [
                    t.model_dump(mode="json") for t in self._turns.get(session_id, [])
                ],
                "last_grounded": snapshot.model_dump(mode="json") if snapshot else None,
            }
        save_json(self.file_path, {"sessions": sessions})
