"""
Normalizer Module - Parse generateContent responses into ParsedResponse.
=======================================================================

The generation API is inconsistent about field naming: the same response
may arrive with camelCase keys (``groundingMetadata``, ``startIndex``) or
snake_case keys (``grounding_metadata``, ``start_index``), and grounding
metadata is optional. Everything is funnelled through ``parse_response``
so no other module reads raw response dicts.

Provides:
- Answer extraction (inline JSON, labeled free text, meta-line filtering)
- Reference extraction from retrieved chunks (label, week, page, quote)
- Character coverage of supporting spans via interval merging
- Citation formatting for caller-facing reference lists
"""

import json
import re
from typing import Any, Optional

from course_ta.rag.postprocess import AnswerPostProcessor
from course_ta.rag.prompts import NOT_FOUND_SENTINEL
from course_ta.shared.config import get_settings
from course_ta.shared.logging import get_logger
from course_ta.shared.schemas import GroundingStats, ParsedResponse, Reference
from course_ta.shared.utils import truncate

logger = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Patterns
# ─────────────────────────────────────────────────────────────────────────────


NOT_FOUND_PATTERN = re.compile(rf"^{NOT_FOUND_SENTINEL}[\s.!?]*$", re.IGNORECASE)

INLINE_ANSWER_PATTERN = re.compile(r"[`\"]?answer[`\"]?\s*[:=]\s*[\"“]([\s\S]*?)[\"”]", re.IGNORECASE)
LABELED_ANSWER_PATTERN = re.compile(r"^[ \t]*(?:תשובה|מענה)\s*[:\-]\s*([^\n]+)", re.MULTILINE)

META_LINE_PATTERN = re.compile(
    r"\b(?:analyze|synthesize|format|final review|create the json|json structure|step)\b",
    re.IGNORECASE,
)

# Latin markers must not follow a letter; "_" and "-" separators are allowed
WEEK_LABEL_PATTERN = re.compile(
    r"(?:(?<![a-z])(?:week|wk|w|lecture)|שבוע)[\s_\-]*0*(\d{1,2})(?!\d)",
    re.IGNORECASE,
)

FILE_NAME_PATTERN = re.compile(r"[\w\-.]+\.(?:pdf|docx|pptx|xlsx|txt|doc|ppt)\b", re.IGNORECASE)

PAGE_MARKER_PATTERN = re.compile(r"---\s*PAGE\s*(\d{1,4})\s*---", re.IGNORECASE)

SOURCE_LABEL_FIELDS = ("title", "displayName", "fileName", "documentTitle", "name", "uri")

GENERIC_SOURCE_LABEL = "מקור מתוך File Search"
WEEK_LABEL_TEMPLATE = "שבוע {week}"


# ─────────────────────────────────────────────────────────────────────────────
# Field Access (camelCase / snake_case)
# ─────────────────────────────────────────────────────────────────────────────


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` from a dict under its camelCase or snake_case spelling."""
    if not isinstance(obj, dict):
        return default
    if name in obj:
        return obj[name]
    return obj.get(_snake(name), default)


def _list(obj: Any, name: str) -> list:
    value = _field(obj, name)
    return value if isinstance(value, list) else []


def _first_candidate(response: dict[str, Any]) -> dict[str, Any]:
    candidates = _list(response, "candidates")
    first = candidates[0] if candidates else {}
    return first if isinstance(first, dict) else {}


def grounding_metadata(response: dict[str, Any]) -> dict[str, Any]:
    """Grounding metadata of the first candidate, or an empty dict."""
    metadata = _field(_first_candidate(response), "groundingMetadata")
    return metadata if isinstance(metadata, dict) else {}


# ─────────────────────────────────────────────────────────────────────────────
# Answer Extraction
# ─────────────────────────────────────────────────────────────────────────────


def extract_text(response: dict[str, Any]) -> str:
    """Concatenate the text parts of the first candidate."""
    content = _field(_first_candidate(response), "content", {})
    parts = _list(content, "parts")
    return "".join(
        str(part.get("text") or "") for part in parts if isinstance(part, dict)
    ).strip()


def is_not_found_text(text: Optional[str]) -> bool:
    """
    Check for the not-found sentinel, tolerating trailing punctuation.

    Example:
        >>> is_not_found_text("not_found.")
        True
    """
    t = (text or "").strip()
    if not t:
        return False
    return bool(NOT_FOUND_PATTERN.match(t))


def extract_json_block(text: str) -> Optional[str]:
    """Return the span from the first ``{`` to the last ``}``, if any."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end < start:
        return None
    return text[start : end + 1]


def extract_answer_from_text(text: str) -> str:
    """
    Extract an answer from free text.

    Tries an inline ``answer: "..."`` pattern, then a labeled answer line,
    then falls back to the full text with reasoning/meta lines removed and
    blank lines collapsed.

    Args:
        text: Raw model text

    Returns:
        Extracted answer (may be empty)
    """
    if not text:
        return ""

    match = INLINE_ANSWER_PATTERN.search(text)
    if match:
        return match.group(1).strip()

    match = LABELED_ANSWER_PATTERN.search(text)
    if match:
        return match.group(1).strip()

    lines = [line.rstrip(" \t") for line in text.replace("\r\n", "\n").split("\n")]

    collapsed: list[str] = []
    last_blank = True
    for line in lines:
        if META_LINE_PATTERN.search(line.strip()):
            continue
        if not line.strip():
            if not last_blank:
                collapsed.append("")
            last_blank = True
            continue
        collapsed.append(line.strip())
        last_blank = False

    return "\n".join(collapsed).strip()


# ─────────────────────────────────────────────────────────────────────────────
# References
# ─────────────────────────────────────────────────────────────────────────────


def infer_week(text: Optional[str]) -> str:
    """
    Infer a week label from a file name or quote.

    Example:
        >>> infer_week("Week02_Lecture.pdf")
        'שבוע 02'
    """
    if not text:
        return ""
    match = WEEK_LABEL_PATTERN.search(str(text))
    if not match:
        return ""
    return WEEK_LABEL_TEMPLATE.format(week=f"{int(match.group(1)):02d}")


def extract_file_name(text: Optional[str]) -> str:
    if not text:
        return ""
    match = FILE_NAME_PATTERN.search(str(text))
    return match.group(0) if match else ""


def pick_source_label(context: dict[str, Any]) -> str:
    """Pick a source label from the first populated name field, preferring file names."""
    for name in SOURCE_LABEL_FIELDS:
        value = _field(context, name)
        if not value:
            continue
        file_name = extract_file_name(value)
        if file_name:
            return file_name
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def extract_page_marker(text: Optional[str]) -> str:
    if not text:
        return ""
    match = PAGE_MARKER_PATTERN.search(str(text))
    return match.group(1) if match else ""


def normalize_citation(item: Any) -> Optional[Reference]:
    """
    Normalize a string or dict citation into a Reference.

    The week is inferred from the label or part when missing, and the
    label falls back to "week — part" or a generic source label.

    Args:
        item: Citation as returned by the model or built from chunks

    Returns:
        Reference, or None for empty items
    """
    if item is None:
        return None
    if isinstance(item, Reference):
        item = item.model_dump()
    if not isinstance(item, dict):
        label = str(item).strip()
        return Reference(label=label) if label else None

    def text_of(key: str) -> str:
        value = item.get(key)
        return value.strip() if isinstance(value, str) else ""

    label = text_of("label")
    week = text_of("week")
    part = text_of("part")
    quote = text_of("quote")

    if not week:
        week = infer_week(f"{label} {part}")

    if not label:
        label = " — ".join(p for p in (week, part) if p) or GENERIC_SOURCE_LABEL

    return Reference(label=label, week=week, part=part, quote=quote)


def format_citations(items: list[Any]) -> list[Reference]:
    """
    Normalize citations and drop duplicates by label and quote, first seen wins.

    Args:
        items: Strings, dicts or Reference objects

    Returns:
        Ordered, de-duplicated references
    """
    out: list[Reference] = []
    seen: set[str] = set()
    for item in items or []:
        ref = normalize_citation(item)
        if ref is None:
            continue
        key = f"{ref.label}::{ref.quote}"
        if key in seen:
            continue
        seen.add(key)
        out.append(ref)
    return out


def extract_grounding_references(
    response: dict[str, Any],
    quote_max_chars: int = 180,
) -> list[Reference]:
    """
    Build references from the retrieved chunks of a response.

    Chunks without a source and without text are skipped. References are
    de-duplicated by (week, part), preserving first-seen order.

    Args:
        response: Raw generateContent response
        quote_max_chars: Quote truncation length

    Returns:
        List of references
    """
    refs: list[Reference] = []
    seen: set[tuple[str, str]] = set()

    for chunk in _list(grounding_metadata(response), "groundingChunks"):
        context = _field(chunk, "retrievedContext")
        if not isinstance(context, dict):
            context = {}

        store = _field(context, "fileSearchStore")
        store = store.strip() if isinstance(store, str) else ""
        source = pick_source_label(context) or store

        raw_quote = str(_field(context, "text") or "").strip()
        quote = truncate(raw_quote, quote_max_chars)

        page = extract_page_marker(raw_quote)
        if source:
            part = f"{source} p.{page}" if page else source
        else:
            part = ""

        if not part and not quote:
            continue

        week = infer_week(source) or infer_week(quote)
        key = (week, part)
        if key in seen:
            continue
        seen.add(key)

        ref = normalize_citation({"week": week, "part": part, "quote": quote})
        if ref is not None:
            refs.append(ref)

    return refs


# ─────────────────────────────────────────────────────────────────────────────
# Grounding Stats
# ─────────────────────────────────────────────────────────────────────────────


def _as_index(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def merge_ranges(ranges: list[tuple[int, int]]) -> list[tuple[int, int]]:
    """
    Merge overlapping or adjacent ranges.

    Example:
        >>> merge_ranges([(5, 9), (0, 4), (3, 6)])
        [(0, 9)]
    """
    merged: list[list[int]] = []
    for start, end in sorted(ranges):
        if merged and start <= merged[-1][1]:
            merged[-1][1] = max(merged[-1][1], end)
        else:
            merged.append([start, end])
    return [(a, b) for a, b in merged]


def compute_grounding_stats(response: dict[str, Any], raw_text: str) -> GroundingStats:
    """
    Count chunks and supports and compute supported-character coverage.

    Support segments are clipped to ``raw_text``, empty or inverted ones
    are dropped, and the rest are interval-merged so overlapping supports
    never count twice. A segment with an end index but no start index
    starts at 0.

    Args:
        response: Raw generateContent response
        raw_text: Text the segment offsets refer to

    Returns:
        GroundingStats with coverage in [0, 1]
    """
    metadata = grounding_metadata(response)
    chunks_count = len(_list(metadata, "groundingChunks"))
    supports = _list(metadata, "groundingSupports")

    text_len = len(raw_text or "")
    if not text_len or not supports:
        return GroundingStats(chunks_count=chunks_count, supports_count=len(supports))

    ranges: list[tuple[int, int]] = []
    for support in supports:
        segment = _field(support, "segment")
        if not isinstance(segment, dict):
            continue
        end = _as_index(_field(segment, "endIndex"))
        if end is None:
            continue
        start = _as_index(_field(segment, "startIndex", 0))
        if start is None:
            continue
        a = max(0, min(text_len, start))
        b = max(0, min(text_len, end))
        if b <= a:
            continue
        ranges.append((a, b))

    supported_chars = sum(b - a for a, b in merge_ranges(ranges))
    return GroundingStats(
        chunks_count=chunks_count,
        supports_count=len(supports),
        supported_chars=supported_chars,
        coverage=min(1.0, supported_chars / text_len),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Response Normalizer
# ─────────────────────────────────────────────────────────────────────────────


class ResponseNormalizer:
    """
    Convert raw generateContent responses into ParsedResponse objects.

    Example:
        >>> normalizer = ResponseNormalizer()
        >>> parsed = normalizer.parse(response)
        >>> parsed.grounding.coverage
        0.15
    """

    def __init__(
        self,
        quote_max_chars: Optional[int] = None,
        postprocessor: Optional[AnswerPostProcessor] = None,
    ):
        """
        Initialize the normalizer.

        Args:
            quote_max_chars: Citation quote truncation length
            postprocessor: Cleans the extracted answer text
        """
        self.quote_max_chars = quote_max_chars or get_settings().grounding.quote_max_chars
        self.postprocessor = postprocessor or AnswerPostProcessor()

    def parse(self, response: dict[str, Any]) -> ParsedResponse:
        """
        Parse one response.

        Args:
            response: Decoded JSON body of a generateContent call

        Returns:
            ParsedResponse
        """
        candidate = _first_candidate(response)
        finish_reason = _field(candidate, "finishReason")
        usage = _field(response, "usageMetadata")

        raw_text = extract_text(response)
        json_block = extract_json_block(raw_text)
        answer = raw_text
        raw_refs: list[Any] = []
        not_found = is_not_found_text(raw_text)

        if json_block:
            try:
                payload = json.loads(json_block)
            except json.JSONDecodeError:
                payload = None
            if isinstance(payload, dict):
                json_answer = payload.get("answer")
                if isinstance(json_answer, str) and json_answer:
                    answer = json_answer
                    not_found = not_found or is_not_found_text(json_answer)
                if isinstance(payload.get("references"), list):
                    raw_refs = payload["references"]

        if not json_block or not answer or answer == raw_text:
            extracted = extract_answer_from_text(raw_text)
            if extracted:
                answer = extracted

        references = format_citations(raw_refs)
        if not references:
            references = extract_grounding_references(response, self.quote_max_chars)

        parsed = ParsedResponse(
            answer_text=self.postprocessor.clean(answer),
            references=references,
            grounding=compute_grounding_stats(response, raw_text),
            finish_reason=finish_reason if isinstance(finish_reason, str) else "",
            usage_metadata=_normalize_usage(usage),
            raw_text=raw_text,
            not_found=not_found,
        )

        logger.debug(
            f"Parsed response: chunks={parsed.grounding.chunks_count}, "
            f"supports={parsed.grounding.supports_count}, "
            f"coverage={parsed.grounding.coverage:.3f}, refs={len(references)}, "
            f"not_found={not_found}, finish={parsed.finish_reason or '-'}"
        )
        return parsed


def _normalize_usage(usage: Any) -> dict[str, Any]:
    """Usage metadata with camelCase keys."""
    if not isinstance(usage, dict):
        return {}
    out: dict[str, Any] = {}
    for key, value in usage.items():
        camel = re.sub(r"_([a-z])", lambda m: m.group(1).upper(), key)
        out[camel] = value
    return out


def parse_response(response: dict[str, Any]) -> ParsedResponse:
    """
    Parse a generateContent response.

    Convenience function.

    Args:
        response: Decoded JSON body

    Returns:
        ParsedResponse
    """
    return ResponseNormalizer().parse(response)
