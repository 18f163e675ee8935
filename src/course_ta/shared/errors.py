"""
Errors Module - Failure taxonomy for the answer pipeline.
=========================================================

Only hard failures are exceptions. Dialect mismatches, missing grounding
metadata and ungrounded answers are ordinary data conditions handled by
the orchestrator and scorer.
"""

import re
from enum import Enum
from typing import Optional


class CourseTAError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(CourseTAError):
    """A required credential or File Search store identifier is missing."""


class TransportError(CourseTAError):
    """Network failure, non-success status or unreadable response body."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class FailureKind(str, Enum):
    """How a hard failure is reported to the user."""

    CONFIGURATION = "configuration"
    TRANSIENT = "transient"


CONFIGURATION_ERROR_PATTERN = re.compile(
    r"Missing GEMINI_API_KEY|Missing FILE_SEARCH_STORE_NAME|API key not valid|API_KEY_INVALID",
    re.IGNORECASE,
)


def classify_failure(error: BaseException) -> FailureKind:
    """
    Decide whether a failure is operator-actionable configuration or transient.

    Args:
        error: Exception raised by the generation layer

    Returns:
        FailureKind for the user-facing message
    """
    if isinstance(error, ConfigurationError):
        return FailureKind.CONFIGURATION
    if CONFIGURATION_ERROR_PATTERN.search(str(error)):
        return FailureKind.CONFIGURATION
    return FailureKind.TRANSIENT
