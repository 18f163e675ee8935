"""
Postprocess Module - Answer text cleanup.
=========================================

Cleans extracted answer text before it reaches the user:
- Removes inline citation markers ("[cite: 1, 2]", "cite: 4,5")
- Collapses consecutive verbatim repeated paragraphs
- Normalizes line endings, trailing whitespace and blank lines
- Forces a paragraph break before a known discourse marker

Also exposes the counters used by per-attempt diagnostics.
"""

import re

# ─────────────────────────────────────────────────────────────────────────────
# Patterns
# ─────────────────────────────────────────────────────────────────────────────


BRACKET_CITE_PATTERN = re.compile(r"[ \t]*\[\s*cite\s*:\s*[0-9\s,]+\s*\][ \t]*", re.IGNORECASE)
COMMA_CITE_PATTERN = re.compile(r"[ \t]*,[ \t]*cite[ \t]*:[ \t]*[0-9][0-9 \t,]*", re.IGNORECASE)
BARE_CITE_PATTERN = re.compile(r"[ \t]*\bcite[ \t]*:[ \t]*[0-9][0-9 \t,]*", re.IGNORECASE)

# Any remaining citation marker, bracketed or bare
CITE_MARKER_PATTERN = re.compile(r"\bcite\s*:\s*\d", re.IGNORECASE)

DISCOURSE_MARKER_PATTERN = re.compile(r"([.!?…:])\s+(כדי להמחיש זאת)")

DUPLICATE_PREFIX_CHARS = 80
DUPLICATE_PREFIX_MIN_CHARS = 24


# ─────────────────────────────────────────────────────────────────────────────
# Cleanup Functions
# ─────────────────────────────────────────────────────────────────────────────


def strip_citation_markers(text: str) -> str:
    """
    Remove inline citation markers and the whitespace around them.

    Example:
        >>> strip_citation_markers("Kant [cite: 1, 2] argued")
        'Kant argued'
    """
    text = BRACKET_CITE_PATTERN.sub(" ", text or "")
    text = COMMA_CITE_PATTERN.sub(" ", text)
    text = BARE_CITE_PATTERN.sub(" ", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = re.sub(r" \n", "\n", text)
    return text.strip()


def collapse_repeated_paragraphs(text: str) -> str:
    """Drop paragraphs that repeat the paragraph directly before them verbatim."""
    paragraphs = re.split(r"\n\s*\n", text or "")
    kept: list[str] = []
    for paragraph in paragraphs:
        if kept and paragraph.strip() and paragraph.strip() == kept[-1].strip():
            continue
        kept.append(paragraph)
    return "\n\n".join(kept)


def normalize_answer_text(text: str) -> str:
    """
    Normalize line endings and paragraph breaks.

    Example:
        >>> normalize_answer_text("a.  כדי להמחיש זאת, b\\r\\n\\n\\n\\nc")
        'a.\\n\\nכדי להמחיש זאת, b\\n\\nc'
    """
    if not text:
        return ""
    text = text.replace("\r\n", "\n")
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = DISCOURSE_MARKER_PATTERN.sub(r"\1\n\n\2", text)
    return text.strip()


def clean_answer(text: str) -> str:
    """Full cleanup applied to every extracted answer."""
    text = strip_citation_markers(text)
    text = collapse_repeated_paragraphs(text)
    return normalize_answer_text(text)


# ─────────────────────────────────────────────────────────────────────────────
# Diagnostics Counters
# ─────────────────────────────────────────────────────────────────────────────


def count_inline_citations(text: str) -> int:
    """Count bracketed ``[cite: N, ...]`` markers."""
    if not text:
        return 0
    return len(re.findall(r"\[\s*cite\s*:\s*[0-9\s,]+\s*\]", text, re.IGNORECASE))


def count_duplicate_prefix(text: str) -> int:
    """
    Count non-overlapping recurrences of the text's normalized opening.

    A model that repeats itself verbatim yields a count above one. Texts
    whose prefix is shorter than 24 characters return 0.

    Example:
        >>> para = "Utilitarianism judges actions by their consequences for the wellbeing of everyone they affect."
        >>> count_duplicate_prefix("\\n\\n".join([para] * 3))
        3
    """
    s = (text or "").strip()
    if not s:
        return 0

    norm = s.replace("\r\n", "\n")
    norm = re.sub(r"[ \t]+", " ", norm)
    norm = re.sub(r"\n{3,}", "\n\n", norm).strip()

    prefix = norm[:DUPLICATE_PREFIX_CHARS].strip()
    if len(prefix) < DUPLICATE_PREFIX_MIN_CHARS:
        return 0

    count = 0
    idx = norm.find(prefix)
    while idx != -1:
        count += 1
        idx = norm.find(prefix, idx + len(prefix))
    return count


class AnswerPostProcessor:
    """
    Cleanup steps as one object.

    ``clean`` runs on every extracted answer inside ResponseNormalizer;
    ``finalize`` runs on the text the assistant returns.
    """

    def clean(self, text: str) -> str:
        return clean_answer(text)

    def finalize(self, text: str) -> str:
        return normalize_answer_text(text)
