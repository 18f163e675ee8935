"""
Schemas Module - Pydantic data models for the application.
==========================================================

Defines all data contracts used across the application:
- Conversation turns and grounded-reference snapshots
- Prompt payloads and retrieval attempts
- Parsed generation responses, references and grounding stats
- Grounding decisions and caller-facing answer results
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────


class Role(str, Enum):
    """Conversation turn author."""

    USER = "user"
    ASSISTANT = "assistant"


class Intent(str, Enum):
    """Question intent, in classification priority order."""

    GREETING = "greeting"
    OFF_TOPIC_WEATHER = "off_topic_weather"
    SOURCE_REQUEST = "source_request"
    GROUNDING_CHECK = "grounding_check"
    GENERIC = "generic"


class ToolDialect(str, Enum):
    """Field-naming convention of the File Search tool block."""

    CAMEL = "camel"
    SNAKE = "snake"

    @property
    def alternate(self) -> "ToolDialect":
        return ToolDialect.SNAKE if self is ToolDialect.CAMEL else ToolDialect.CAMEL


class AttemptStage(str, Enum):
    """Orchestration states."""

    UNFILTERED = "unfiltered"
    FILTERED = "filtered"
    RESCUE = "rescue"
    SELECTED = "selected"


class GroundingReason(str, Enum):
    """Why a grounding decision came out the way it did."""

    MODEL_NOT_FOUND = "model_not_found"
    SUPPORTED = "supported"
    RETRIEVED_WITHOUT_SUPPORTS = "retrieved_without_supports"
    NO_RETRIEVAL_EVIDENCE = "no_retrieval_evidence"
    TERM_MISMATCH = "term_mismatch"


class GroundingStatus(str, Enum):
    """Caller-facing grounding verdict carried by the meta event."""

    GROUNDED = "grounded"
    WEAK = "weak"
    NOT_FOUND = "not_found"
    NOT_APPLICABLE = "not_applicable"


# ─────────────────────────────────────────────────────────────────────────────
# Conversation Models
# ─────────────────────────────────────────────────────────────────────────────


class Reference(BaseModel):
    """A source passage a response relied on."""

    label: str = Field(default="", description="Display label (file name, week, page)")
    week: str = Field(default="", description="Week label, e.g. 'שבוע 02'")
    part: str = Field(default="", description="Source file and optional page")
    quote: str = Field(default="", description="Excerpt, truncated with an ellipsis")


class ConversationTurn(BaseModel):
    """One message in a session."""

    role: Role
    text: str
    timestamp: datetime = Field(default_factory=_utcnow)

    model_config = {"use_enum_values": False}


class GroundedSnapshot(BaseModel):
    """The last question of a session that received a grounded answer."""

    question: str
    answer: str = ""
    references: list[Reference] = Field(default_factory=list)


# ─────────────────────────────────────────────────────────────────────────────
# Request Models
# ─────────────────────────────────────────────────────────────────────────────


class PromptPayload(BaseModel):
    """System instruction and user text for one generation call."""

    system_instruction: str
    user_text: str

    model_config = {"frozen": True}


class RetrievalAttempt(BaseModel):
    """One File Search configuration. One attempt is one external call."""

    stage: AttemptStage = AttemptStage.UNFILTERED
    top_k: int = Field(default=8, ge=1)
    metadata_filter: Optional[str] = None
    dialect: ToolDialect = ToolDialect.CAMEL

    model_config = {"frozen": True}

    def with_dialect(self, dialect: ToolDialect) -> "RetrievalAttempt":
        """Same logical attempt expressed in another tool dialect."""
        return self.model_copy(update={"dialect": dialect})


class QuestionAnalysis(BaseModel):
    """Intent tag plus side metadata extracted from a question."""

    question: str
    intent: Intent
    week: str = Field(default="", description="Detected week number, zero-padded")
    syllabus: bool = False
    standalone_term: str = ""


# ─────────────────────────────────────────────────────────────────────────────
# Response Models
# ─────────────────────────────────────────────────────────────────────────────


class GroundingStats(BaseModel):
    """Evidence counts and span coverage of one response."""

    chunks_count: int = 0
    supports_count: int = 0
    supported_chars: int = 0
    coverage: float = Field(default=0.0, ge=0.0, le=1.0)


class ParsedResponse(BaseModel):
    """Normalized view of one generateContent response."""

    answer_text: str = ""
    references: list[Reference] = Field(default_factory=list)
    grounding: GroundingStats = Field(default_factory=GroundingStats)
    finish_reason: str = ""
    usage_metadata: dict[str, Any] = Field(default_factory=dict)
    raw_text: str = ""
    not_found: bool = False

    @property
    def has_grounding_evidence(self) -> bool:
        """True when the response carries any retrieved chunk or support span."""
        return self.grounding.chunks_count > 0 or self.grounding.supports_count > 0

    @property
    def output_tokens(self) -> int:
        return int(self.usage_metadata.get("candidatesTokenCount") or 0)

    @property
    def thoughts_tokens(self) -> int:
        return int(self.usage_metadata.get("thoughtsTokenCount") or 0)


class GroundingDecision(BaseModel):
    """Verdict on whether a response is grounded in the course material."""

    grounded: bool
    weak: bool = False
    reason: GroundingReason
    supports_count: int = 0
    coverage: float = 0.0

    @property
    def status(self) -> GroundingStatus:
        if not self.grounded:
            return GroundingStatus.NOT_FOUND
        return GroundingStatus.WEAK if self.weak else GroundingStatus.GROUNDED


class AttemptDiagnostics(BaseModel):
    """Per-attempt debug information. Contains no user content."""

    finish_reason: str = ""
    output_tokens: int = 0
    thoughts_tokens: int = 0
    refs_count: int = 0
    supports_count: int = 0
    coverage: float = 0.0
    raw_len: int = 0
    answer_len: int = 0
    inline_cite_count: int = 0
    duplicate_prefix_count: int = 0
    dialect: ToolDialect = ToolDialect.CAMEL


# ─────────────────────────────────────────────────────────────────────────────
# Caller-facing Models
# ─────────────────────────────────────────────────────────────────────────────


class AnswerResult(BaseModel):
    """Final answer for one question, ready to be streamed."""

    answer: str
    grounding_status: GroundingStatus
    citations: list[Reference] = Field(default_factory=list)
    session_id: str
    finish_reason: str = ""
    usage_metadata: Optional[dict[str, Any]] = None
    debug: Optional[dict[str, Any]] = None

    def meta(self) -> dict[str, Any]:
        """Payload of the terminal ``meta`` event."""
        payload: dict[str, Any] = {
            "groundingStatus": self.grounding_status.value,
            "citations": [c.model_dump() for c in self.citations],
            "sessionId": self.session_id,
        }
        if self.debug is not None:
            payload["debug"] = self.debug
        if self.finish_reason:
            payload["geminiFinishReason"] = self.finish_reason
        if self.usage_metadata is not None:
            payload["geminiOutputTokens"] = int(
                self.usage_metadata.get("candidatesTokenCount") or 0
            )
            payload["geminiThoughtsTokens"] = int(
                self.usage_metadata.get("thoughtsTokenCount") or 0
            )
        return payload


class AnalyticsRecord(BaseModel):
    """One completed question, as written to the analytics sink."""

    session_id: str
    question: str
    grounded: int = Field(default=0, ge=0, le=1)
    citations_count: int = 0
    latency_ms: int = 0
    ts: datetime = Field(default_factory=_utcnow)
