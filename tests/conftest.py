"""
Pytest Configuration and Fixtures.
===================================

Shared fixtures for all test modules:
- Canned generateContent responses (camelCase and snake_case)
- A scripted generation client
- In-memory stores and assistant wiring
- Temporary directories
"""

import re
import tempfile
from pathlib import Path
from typing import Any, Generator, Optional

import pytest

from course_ta.rag.client import GenerationClient

# Environment variables that would leak into Settings
SETTINGS_ENV_VARS = (
    "GEMINI_API_KEY",
    "FILE_SEARCH_STORE_NAME",
    "GEMINI_MODEL",
    "GEMINI_RETRIEVAL_MODEL",
    "GEMINI_GREETING_MODEL",
    "LOG_LEVEL",
    "ANALYTICS_SALT",
)

STORE_NAME = "fileSearchStores/course-store"


# ─────────────────────────────────────────────────────────────────────────────
# Path Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def project_root() -> Path:
    """Get the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def config_path(project_root: Path) -> Path:
    """Get the config file path."""
    return project_root / "config" / "settings.yaml"


# ─────────────────────────────────────────────────────────────────────────────
# Response Fixtures
# ─────────────────────────────────────────────────────────────────────────────


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def to_snake_keys(value: Any) -> Any:
    """Recursively rename dict keys to snake_case."""
    if isinstance(value, dict):
        return {_snake(k): to_snake_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_snake_keys(v) for v in value]
    return value


def build_response(
    text: str,
    chunks: tuple = (),
    supports: tuple = (),
    finish_reason: str = "STOP",
    usage: Optional[dict[str, Any]] = None,
    snake: bool = False,
) -> dict[str, Any]:
    """
    Build a generateContent response body.

    Args:
        text: Model text
        chunks: (title, chunk text) pairs for groundingChunks
        supports: (start, end) offsets for groundingSupports
        finish_reason: Candidate finish reason
        usage: Usage metadata
        snake: Emit snake_case keys instead of camelCase
    """
    candidate: dict[str, Any] = {
        "content": {"role": "model", "parts": [{"text": text}]},
        "finishReason": finish_reason,
    }
    metadata: dict[str, Any] = {}
    if chunks:
        metadata["groundingChunks"] = [
            {
                "retrievedContext": {
                    "title": title,
                    "text": quote,
                    "fileSearchStore": STORE_NAME,
                }
            }
            for title, quote in chunks
        ]
    if supports:
        metadata["groundingSupports"] = [
            {
                "segment": {"startIndex": start, "endIndex": end, "text": text[start:end]},
                "groundingChunkIndices": [0],
            }
            for start, end in supports
        ]
    if metadata:
        candidate["groundingMetadata"] = metadata

    response = {
        "candidates": [candidate],
        "usageMetadata": usage or {"promptTokenCount": 120, "candidatesTokenCount": 40},
    }
    return to_snake_keys(response) if snake else response


STRONG_TEXT = "Utilitarianism judges actions by their consequences for overall wellbeing."
HEBREW_STRONG_TEXT = "תועלתנות היא גישה הבוחנת מעשים לפי התוצאות שלהם לרווחת כולם."


@pytest.fixture
def gemini_response():
    """Factory for canned generateContent responses."""
    return build_response


@pytest.fixture
def strong_response() -> dict[str, Any]:
    """Grounded response: one chunk and a support covering a third of the text."""
    return build_response(
        STRONG_TEXT,
        chunks=(("Week03_Utilitarianism.pdf", "--- PAGE 4 --- Utilitarianism and consequences"),),
        supports=((0, 30),),
    )


@pytest.fixture
def hebrew_strong_response() -> dict[str, Any]:
    """Grounded Hebrew response about utilitarianism."""
    return build_response(
        HEBREW_STRONG_TEXT,
        chunks=(("Week03_Utilitarianism.pdf", "תועלתנות ותוצאות המעשה"),),
        supports=((0, 25),),
    )


@pytest.fixture
def weak_response() -> dict[str, Any]:
    """Retrieved chunk but no supporting spans."""
    return build_response(
        "Kant grounds morality in duty rather than outcomes.",
        chunks=(("Week04_Kant.pdf", "Deontology and the categorical imperative"),),
    )


@pytest.fixture
def empty_response() -> dict[str, Any]:
    """NOT_FOUND with no grounding metadata at all."""
    return build_response("NOT_FOUND")


# ─────────────────────────────────────────────────────────────────────────────
# Mock Fixtures
# ─────────────────────────────────────────────────────────────────────────────


class FakeGenerationClient(GenerationClient):
    """
    Scripted generation client.

    Pops queued responses in order and records every attempt. When the
    queue is empty it answers NOT_FOUND without grounding metadata.
    """

    def __init__(self, responses=None, greeting=None, error: Optional[Exception] = None):
        self.responses = list(responses or [])
        self.greeting = greeting
        self.error = error
        self.attempts = []
        self.payloads = []
        self.greeting_payloads = []

    def generate_answer(self, payload, attempt):
        self.payloads.append(payload)
        self.attempts.append(attempt)
        if self.error is not None:
            raise self.error
        if self.responses:
            return self.responses.pop(0)
        return build_response("NOT_FOUND")

    def generate_greeting(self, payload):
        self.greeting_payloads.append(payload)
        if self.error is not None:
            raise self.error
        return self.greeting if self.greeting is not None else build_response("")


@pytest.fixture
def fake_client() -> FakeGenerationClient:
    """Scripted generation client with an empty queue."""
    return FakeGenerationClient()


@pytest.fixture
def conversation_store():
    """Empty in-memory conversation store."""
    from course_ta.store.conversation import InMemoryConversationStore

    return InMemoryConversationStore()


@pytest.fixture
def analytics_sink():
    """In-memory analytics sink."""
    from course_ta.store.analytics import InMemoryAnalyticsSink

    return InMemoryAnalyticsSink(salt="test-salt")


@pytest.fixture
def assistant(conversation_store, analytics_sink, fake_client):
    """Assistant wired to in-memory stores and the scripted client."""
    from course_ta.rag.assistant import CourseAssistant

    return CourseAssistant(
        conversations=conversation_store,
        analytics=analytics_sink,
        client_factory=lambda runtime: fake_client,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Pytest Configuration
# ─────────────────────────────────────────────────────────────────────────────


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "requires_api: marks tests that require API keys"
    )


@pytest.fixture(autouse=True)
def reset_singletons(monkeypatch):
    """Reset global singletons and settings environment between tests."""
    import course_ta.rag.assistant as assistant_module
    import course_ta.rag.classifier as classifier_module
    from course_ta.shared.config import get_settings

    for name in SETTINGS_ENV_VARS:
        monkeypatch.delenv(name, raising=False)

    get_settings.cache_clear()
    assistant_module._assistant = None
    classifier_module._classifier = None

    yield

    get_settings.cache_clear()
    assistant_module._assistant = None
    classifier_module._classifier = None
