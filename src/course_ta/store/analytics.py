"""
Analytics Module - Per-question analytics sink.
===============================================

One record per completed question:
{sessionId, question, grounded, citationsCount, latencyMs, ts}

Session ids are anonymized with a salted SHA-256 prefix before they are
written. Writing is fire-and-forget: a failed write is logged and never
changes the answer already produced.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from course_ta.shared.logging import get_logger
from course_ta.shared.schemas import AnalyticsRecord
from course_ta.shared.utils import anonymize_id, append_jsonl, load_jsonl

logger = get_logger(__name__)


def to_row(record: AnalyticsRecord, salt: str) -> dict[str, Any]:
    """Serialize a record with an anonymized session id."""
    return {
        "sessionId": anonymize_id(record.session_id, salt),
        "question": record.question,
        "grounded": record.grounded,
        "citationsCount": record.citations_count,
        "latencyMs": record.latency_ms,
        "ts": record.ts.isoformat(),
    }


class AnalyticsSink(ABC):
    """Abstract analytics sink."""

    @abstractmethod
    def record(self, record: AnalyticsRecord) -> None:
        """Record one completed question."""
        pass


class InMemoryAnalyticsSink(AnalyticsSink):
    """Keeps anonymized rows in a list."""

    def __init__(self, salt: str = "analytics-v1"):
        self.salt = salt
        self.rows: list[dict[str, Any]] = []

    def record(self, record: AnalyticsRecord) -> None:
        self.rows.append(to_row(record, self.salt))


class JsonlAnalyticsSink(AnalyticsSink):
    """
    Appends anonymized rows to a JSON Lines file.

    Example:
        >>> sink = JsonlAnalyticsSink(Path("data/analytics.jsonl"), salt="s")
        >>> sink.record(AnalyticsRecord(session_id="abc", question="q", grounded=1))
    """

    def __init__(self, file_path: Path, salt: str = "analytics-v1"):
        self.file_path = Path(file_path)
        self.salt = salt

    def record(self, record: AnalyticsRecord) -> None:
        try:
            append_jsonl(self.file_path, to_row(record, self.salt))
        except OSError as e:
            logger.warning(f"Analytics write failed ({self.file_path}): {e}")

    def read_all(self) -> list[dict[str, Any]]:
        if not self.file_path.exists():
            return []
        return list(load_jsonl(self.file_path))
