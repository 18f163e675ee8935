"""
Classifier Module - Intent detection for incoming questions.
============================================================

Pattern-matches a question into a single intent tag and extracts side
metadata used later in the pipeline:

- intent: greeting, off-topic weather, source request, grounding check, generic
- explicit week number (zero-padded)
- syllabus intent flag
- standalone definition term ("what is X?")

Patterns are bilingual (Hebrew / English). Intent tests run in priority
order and the first match wins.
"""

import re
from typing import Optional

from course_ta.shared.logging import get_logger
from course_ta.shared.schemas import Intent, QuestionAnalysis

logger = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Patterns for Detection
# ─────────────────────────────────────────────────────────────────────────────


GREETING_PATTERN = re.compile(
    r"^(?:hi|hello|hey|shalom|שלום|היי|הי|מה\s+שלומך|מה\s+נשמע|בוקר\s+טוב|ערב\s+טוב)\s*[.!?]*$",
    re.IGNORECASE,
)

WEATHER_PATTERN = re.compile(
    r"\b(?:weather|forecast|temperature|rain|humidity)\b|מזג\s*האוויר|תחזית|טמפרטור|גשם|לחות",
    re.IGNORECASE,
)

COURSE_VOCABULARY_PATTERN = re.compile(
    r"אתיקה|מוסר|קאנט|רולס|תועלתנות|דהונטולוג|משאבי\s*אנוש|קורס|\bhr\b|\bethic|\bcourse\b",
    re.IGNORECASE,
)

SOURCE_REQUEST_PATTERN = re.compile(
    r"מקורות|מקור|ציטוט|ציטוטים|\bsources?\b|\breferences?\b",
    re.IGNORECASE,
)

GROUNDING_TERM_PATTERN = re.compile(
    r"מבוסס|מבוססת|מקורות|\bgrounded\b|\bbased\s+on\b",
    re.IGNORECASE,
)

INTERROGATIVE_PATTERN = re.compile(r"האם|\bis\b|\bare\b", re.IGNORECASE)

SYLLABUS_PATTERN = re.compile(
    r"סילבוס|syllabus|מבנה\s+הקורס|נושאי\s+הקורס|דרישות\s+הקורס|מטלות|ציון|הערכה|grading|requirements",
    re.IGNORECASE,
)

# Hebrew markers may carry attached prefixes ("בשבוע"), Latin ones must not follow a letter
WEEK_PATTERN = re.compile(
    r"(?:(?<![a-z])(?:week|wk|w|lecture)|שבוע|הרצאה)\s*0*(\d{1,2})(?!\d)",
    re.IGNORECASE,
)

DEFINITION_PATTERNS = [
    re.compile(r"^(?:מה|מי|איזה|איזו)\s+(?:זה|זו|זאת|הוא|היא)(?:\s|$|[,.!?])"),
    re.compile(r"^(?:what|who)\s+(?:is|are)\b", re.IGNORECASE),
]

DEFINITION_TERM_PATTERNS = [
    re.compile(r"^(?:מה|מי|איזה|איזו)\s+(?:זה|זו|זאת|הוא|היא)\s+(.+?)\s*[?.!]*$"),
    re.compile(r"^(?:what|who)\s+(?:is|are)\s+(.+?)\s*[?.!]*$", re.IGNORECASE),
]

QUOTE_STRIP_PATTERN = re.compile(r"^[\"'`״“”]+|[\"'`״“”]+$")

FOLLOW_UP_OPENER_PATTERN = re.compile(
    r"^(?:ו?איך|ו?למה|תסביר|תרחיב|אפשר\s+להרחיב|and\s+what\s+about|what\s+about|can\s+you\s+elaborate|why)\b",
    re.IGNORECASE,
)

DEICTIC_PATTERN = re.compile(
    r"(?:^|[\s,])(?:זה|זאת|הזה|הזאת|this|that|those)(?=$|[\s,.!?])",
    re.IGNORECASE,
)


# ─────────────────────────────────────────────────────────────────────────────
# Detection Helpers
# ─────────────────────────────────────────────────────────────────────────────


def detect_week(text: str) -> Optional[str]:
    """
    Extract an explicit week/lecture number, zero-padded to two digits.

    Example:
        >>> detect_week("מה נלמד בשבוע 3?")
        '03'
        >>> detect_week("lecture 11 summary")
        '11'
    """
    match = WEEK_PATTERN.search(text or "")
    if not match:
        return None
    return f"{int(match.group(1)):02d}"


def is_syllabus_question(text: str) -> bool:
    """Check for syllabus / requirements / grading vocabulary."""
    return bool(SYLLABUS_PATTERN.search(text or ""))


def is_standalone_definition(text: str) -> bool:
    """Check whether the question is a self-contained definition template."""
    text = (text or "").strip()
    return any(p.search(text) for p in DEFINITION_PATTERNS)


def extract_standalone_term(text: str) -> str:
    """
    Extract the term asked about in a definition question.

    Example:
        >>> extract_standalone_term('what is "utilitarianism"?')
        'utilitarianism'
    """
    text = (text or "").strip()
    for pattern in DEFINITION_TERM_PATTERNS:
        match = pattern.search(text)
        if match:
            return QUOTE_STRIP_PATTERN.sub("", match.group(1).strip()).strip()
    return ""


def count_tokens(text: str) -> int:
    """Whitespace token count."""
    return len((text or "").split())


def has_follow_up_opener(text: str) -> bool:
    return bool(FOLLOW_UP_OPENER_PATTERN.search((text or "").strip()))


def has_deictic_reference(text: str) -> bool:
    return bool(DEICTIC_PATTERN.search((text or "").strip()))


# ─────────────────────────────────────────────────────────────────────────────
# Classifier Class
# ─────────────────────────────────────────────────────────────────────────────


class QuestionClassifier:
    """
    Classify questions into intents and extract side metadata.

    Example:
        >>> classifier = QuestionClassifier()
        >>> analysis = classifier.classify("what is utilitarianism?")
        >>> analysis.intent, analysis.standalone_term
        (<Intent.GENERIC: 'generic'>, 'utilitarianism')
    """

    def detect_intent(self, question: str) -> Intent:
        """
        Return the first matching intent in priority order.

        Args:
            question: Raw question text

        Returns:
            Intent tag
        """
        text = (question or "").strip()

        if GREETING_PATTERN.match(text):
            return Intent.GREETING
        if WEATHER_PATTERN.search(text) and not COURSE_VOCABULARY_PATTERN.search(text):
            return Intent.OFF_TOPIC_WEATHER
        if SOURCE_REQUEST_PATTERN.search(text):
            return Intent.SOURCE_REQUEST
        if GROUNDING_TERM_PATTERN.search(text) and INTERROGATIVE_PATTERN.search(text):
            return Intent.GROUNDING_CHECK
        return Intent.GENERIC

    def classify(self, question: str) -> QuestionAnalysis:
        """
        Classify a question and extract its metadata.

        Args:
            question: Raw question text

        Returns:
            QuestionAnalysis with intent, week, syllabus flag and standalone term
        """
        text = (question or "").strip()
        intent = self.detect_intent(text)

        analysis = QuestionAnalysis(
            question=text,
            intent=intent,
            week=detect_week(text) or "",
            syllabus=is_syllabus_question(text),
            standalone_term=extract_standalone_term(text),
        )

        logger.debug(
            f"Classified question: intent={intent.value}, week={analysis.week or '-'}, "
            f"syllabus={analysis.syllabus}, term={bool(analysis.standalone_term)}"
        )
        return analysis


# ─────────────────────────────────────────────────────────────────────────────
# Global Instance
# ─────────────────────────────────────────────────────────────────────────────


_classifier: Optional[QuestionClassifier] = None


def get_classifier() -> QuestionClassifier:
    """Get or create global classifier instance."""
    global _classifier
    if _classifier is None:
        _classifier = QuestionClassifier()
    return _classifier


def classify_question(question: str) -> QuestionAnalysis:
    """
    Classify a question.

    Convenience function.

    Args:
        question: Raw question text

    Returns:
        QuestionAnalysis
    """
    return get_classifier().classify(question)
