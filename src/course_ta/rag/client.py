"""
Client Module - REST client for Gemini generateContent with File Search.
=======================================================================

Provides:
- One HTTP call per retrieval attempt, File Search tool in either dialect
- Thinking-config fallback when the API rejects ``thinkingBudget: 0``
- Empty-thoughts fallback to a fallback model with a larger output budget
- Greeting calls without the retrieval tool

Transport failures are never retried here. They raise TransportError and
are handled once at the top of the answer pipeline.
"""

import re
from abc import ABC, abstractmethod
from typing import Any, Optional

import requests

from course_ta.shared.config import GenerationConfig, get_settings
from course_ta.shared.errors import ConfigurationError, TransportError
from course_ta.shared.logging import get_logger
from course_ta.shared.runtime import RuntimeConfig
from course_ta.shared.schemas import PromptPayload, RetrievalAttempt, ToolDialect

logger = get_logger(__name__)

THINKING_CONFIG_ERROR_PATTERN = re.compile(
    r"thinkingConfig|thinking_config|Unknown name|Invalid JSON payload|"
    r"Budget 0 is invalid|only works in thinking mode",
    re.IGNORECASE,
)


# ─────────────────────────────────────────────────────────────────────────────
# Request Helpers
# ─────────────────────────────────────────────────────────────────────────────


def build_file_search_tool(store_name: str, attempt: RetrievalAttempt) -> dict[str, Any]:
    """
    Build the File Search tool block in the attempt's dialect.

    Example:
        >>> build_file_search_tool("fileSearchStores/x", RetrievalAttempt(top_k=10))
        {'fileSearch': {'fileSearchStoreNames': ['fileSearchStores/x'], 'topK': 10}}
    """
    if attempt.dialect is ToolDialect.SNAKE:
        block: dict[str, Any] = {
            "file_search_store_names": [store_name],
            "top_k": attempt.top_k,
        }
        if attempt.metadata_filter:
            block["metadata_filter"] = attempt.metadata_filter
        return {"file_search": block}

    block = {
        "fileSearchStoreNames": [store_name],
        "topK": attempt.top_k,
    }
    if attempt.metadata_filter:
        block["metadataFilter"] = attempt.metadata_filter
    return {"fileSearch": block}


def is_thinking_config_error(error: BaseException) -> bool:
    return bool(THINKING_CONFIG_ERROR_PATTERN.search(str(error)))


def looks_like_empty_thoughts(response: dict[str, Any]) -> bool:
    """
    Detect a response whose whole output budget went to model thoughts.

    True when there is no text, the finish reason is MAX_TOKENS and the
    usage metadata reports thought tokens.
    """
    candidates = response.get("candidates") or []
    candidate = candidates[0] if candidates and isinstance(candidates[0], dict) else {}
    parts = (candidate.get("content") or {}).get("parts") or []
    has_text = any(
        isinstance(p, dict) and isinstance(p.get("text"), str) and p["text"].strip()
        for p in parts
    )
    finish_reason = str(candidate.get("finishReason") or candidate.get("finish_reason") or "")
    usage = response.get("usageMetadata") or response.get("usage_metadata") or {}
    thoughts = int(usage.get("thoughtsTokenCount") or usage.get("thoughts_token_count") or 0)
    return not has_text and finish_reason == "MAX_TOKENS" and thoughts > 0


# ─────────────────────────────────────────────────────────────────────────────
# Client Interface
# ─────────────────────────────────────────────────────────────────────────────


class GenerationClient(ABC):
    """
    Abstract generation capability.

    Implementations return the decoded JSON body of a generateContent
    response and raise CourseTAError subclasses on hard failures.
    """

    @abstractmethod
    def generate_answer(
        self,
        payload: PromptPayload,
        attempt: RetrievalAttempt,
    ) -> dict[str, Any]:
        """Run one retrieval-augmented generation call."""
        pass

    @abstractmethod
    def generate_greeting(self, payload: PromptPayload) -> dict[str, Any]:
        """Run one greeting call without retrieval."""
        pass


# ─────────────────────────────────────────────────────────────────────────────
# Gemini Client
# ─────────────────────────────────────────────────────────────────────────────


class GeminiClient(GenerationClient):
    """
    Gemini REST client.

    Example:
        >>> client = GeminiClient(runtime)
        >>> raw = client.generate_answer(payload, RetrievalAttempt(top_k=10))
    """

    def __init__(
        self,
        runtime: RuntimeConfig,
        config: Optional[GenerationConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the client.

        Args:
            runtime: Resolved API key, store name and models for this request
            config: Generation settings (default from config)
            session: Optional requests session (created lazily)
        """
        self.runtime = runtime
        self.config = config or get_settings().generation
        self._session = session

    @property
    def session(self) -> requests.Session:
        """Get or create the requests session."""
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update({"Content-Type": "application/json"})
        return self._session

    def build_url(self, model: str) -> str:
        return f"{self.config.api_base_url.rstrip('/')}/{model}:generateContent"

    def _post(self, model: str, body: dict[str, Any]) -> dict[str, Any]:
        """
        POST a generateContent body.

        Raises:
            TransportError: Network failure, non-2xx status or non-JSON body
        """
        try:
            response = self.session.post(
                self.build_url(model),
                params={"key": self.runtime.api_key},
                json=body,
                timeout=(self.config.connect_timeout, None),
            )
        except requests.RequestException as e:
            raise TransportError(f"Gemini request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.ok:
            message = ""
            if isinstance(data, dict):
                message = str((data.get("error") or {}).get("message") or "")
            raise TransportError(
                f"Gemini request failed: {message or response.text}",
                status_code=response.status_code,
            )

        if not isinstance(data, dict):
            raise TransportError(
                "Gemini request failed: response body is not a JSON object",
                status_code=response.status_code,
            )
        return data

    def _answer_body(
        self,
        payload: PromptPayload,
        attempt: RetrievalAttempt,
        max_output_tokens: int,
        disable_thinking: bool,
    ) -> dict[str, Any]:
        generation_config: dict[str, Any] = {
            "temperature": self.config.temperature,
            "maxOutputTokens": max_output_tokens,
        }
        if disable_thinking:
            generation_config["thinkingConfig"] = {"thinkingBudget": 0}

        return {
            "contents": [{"role": "user", "parts": [{"text": payload.user_text}]}],
            "systemInstruction": {"parts": [{"text": payload.system_instruction}]},
            "tools": [build_file_search_tool(self.runtime.store_name, attempt)],
            "generationConfig": generation_config,
        }

    def _request_with_thinking_fallback(
        self,
        payload: PromptPayload,
        attempt: RetrievalAttempt,
        model: str,
        max_output_tokens: int,
    ) -> dict[str, Any]:
        if not self.config.disable_thinking:
            return self._post(
                model, self._answer_body(payload, attempt, max_output_tokens, False)
            )

        try:
            return self._post(model, self._answer_body(payload, attempt, max_output_tokens, True))
        except TransportError as e:
            if not is_thinking_config_error(e):
                raise
            logger.info(f"Model rejected thinking config, retrying without it: {model}")
            return self._post(
                model, self._answer_body(payload, attempt, max_output_tokens, False)
            )

    def generate_answer(
        self,
        payload: PromptPayload,
        attempt: RetrievalAttempt,
    ) -> dict[str, Any]:
        """
        Run one retrieval-augmented generation call.

        Args:
            payload: System instruction and user text
            attempt: Retrieval breadth, filter and tool dialect

        Returns:
            Decoded generateContent response

        Raises:
            ConfigurationError: API key or store missing
            TransportError: Request failed
        """
        self.runtime.require_credentials()

        logger.debug(
            f"generateContent: model={self.runtime.retrieval_model}, stage={attempt.stage.value}, "
            f"topK={attempt.top_k}, filter={attempt.metadata_filter or '-'}, "
            f"dialect={attempt.dialect.value}"
        )
        primary = self._request_with_thinking_fallback(
            payload, attempt, self.runtime.retrieval_model, self.config.max_output_tokens
        )
        if not looks_like_empty_thoughts(primary):
            return primary

        logger.warning(
            f"Output budget consumed by thoughts, retrying with {self.config.fallback_model}"
        )
        try:
            return self._request_with_thinking_fallback(
                payload,
                attempt,
                self.config.fallback_model,
                max(self.config.max_output_tokens, self.config.fallback_min_output_tokens),
            )
        except TransportError as e:
            logger.warning(f"Fallback model call failed, keeping primary response: {e}")
            return primary

    def generate_greeting(self, payload: PromptPayload) -> dict[str, Any]:
        """
        Run a greeting call without the retrieval tool.

        Raises:
            ConfigurationError: API key missing
            TransportError: Request failed
        """
        if not self.runtime.api_key:
            raise ConfigurationError("Missing GEMINI_API_KEY")

        body = {
            "contents": [{"role": "user", "parts": [{"text": payload.user_text}]}],
            "systemInstruction": {"parts": [{"text": payload.system_instruction}]},
            "generationConfig": {
                "temperature": self.config.greeting_temperature,
                "maxOutputTokens": self.config.greeting_max_output_tokens,
            },
        }
        return self._post(self.runtime.greeting_model, body)
