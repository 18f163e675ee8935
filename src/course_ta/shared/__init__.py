"""
Shared Module - Common utilities, configuration, schemas, and logging.
======================================================================

This module provides foundational components used across all other modules:

- config: Configuration loading and management
- runtime: Per-request resolution of models and File Search store
- errors: Failure taxonomy
- logging: Structured logging setup
- schemas: Pydantic data models
- utils: Utility functions (hashing, file I/O, etc.)
"""

from course_ta.shared.config import Settings, get_settings
from course_ta.shared.errors import (
    ConfigurationError,
    CourseTAError,
    FailureKind,
    TransportError,
    classify_failure,
)
from course_ta.shared.logging import get_logger, setup_logging
from course_ta.shared.runtime import ConfigProvider, RuntimeConfig
from course_ta.shared.schemas import (
    AnswerResult,
    ConversationTurn,
    GroundingDecision,
    GroundingStatus,
    ParsedResponse,
    PromptPayload,
    Reference,
    RetrievalAttempt,
)
from course_ta.shared.utils import (
    append_jsonl,
    compute_hash,
    load_json,
    load_jsonl,
    save_json,
)

__all__ = [
    # Config
    "get_settings",
    "Settings",
    "ConfigProvider",
    "RuntimeConfig",
    # Errors
    "CourseTAError",
    "ConfigurationError",
    "TransportError",
    "FailureKind",
    "classify_failure",
    # Logging
    "get_logger",
    "setup_logging",
    # Schemas
    "AnswerResult",
    "ConversationTurn",
    "GroundingDecision",
    "GroundingStatus",
    "ParsedResponse",
    "PromptPayload",
    "Reference",
    "RetrievalAttempt",
    # Utils
    "compute_hash",
    "load_json",
    "save_json",
    "load_jsonl",
    "append_jsonl",
]
