"""
Grounding Module - Groundedness verdicts for parsed responses.
==============================================================

Decides whether a response is grounded in the course material:

- NOT_FOUND sentinel from the model         -> not grounded
- Supporting spans with enough coverage     -> grounded (strong)
- Retrieval evidence without qualifying spans -> grounded, flagged weak
- No evidence at all                        -> not grounded

For definition questions, a term guard checks that the asked-about
term actually appears in the answer and downgrades the verdict otherwise.
"""

import re
from typing import Optional

from course_ta.shared.config import GroundingConfig, get_settings
from course_ta.shared.logging import get_logger
from course_ta.shared.schemas import GroundingDecision, GroundingReason, ParsedResponse

logger = get_logger(__name__)

# Punctuation and symbols, Unicode-aware (Hebrew letters are \w)
NON_WORD_PATTERN = re.compile(r"[^\w\s]|_")


# ─────────────────────────────────────────────────────────────────────────────
# Term Matching
# ─────────────────────────────────────────────────────────────────────────────


def tokenize_for_match(text: str, min_length: int = 2) -> list[str]:
    """
    Lowercase, strip punctuation and drop short tokens.

    Example:
        >>> tokenize_for_match("Kant's categorical-imperative, a rule!")
        ['kant', 'categorical', 'imperative', 'rule']
    """
    cleaned = NON_WORD_PATTERN.sub(" ", (text or "").lower())
    return [token for token in cleaned.split() if len(token) >= min_length]


def compute_term_coverage(term: str, text: str, min_length: int = 2) -> float:
    """
    Fraction of the term's distinct tokens that occur in the text.

    Args:
        term: Standalone term from the question
        text: Answer text
        min_length: Minimum token length

    Returns:
        Coverage in [0, 1]; 0 when the term has no usable tokens
    """
    term_tokens = set(tokenize_for_match(term, min_length))
    if not term_tokens:
        return 0.0
    text_tokens = set(tokenize_for_match(text, min_length))
    return len(term_tokens & text_tokens) / len(term_tokens)


# ─────────────────────────────────────────────────────────────────────────────
# Grounding Scorer
# ─────────────────────────────────────────────────────────────────────────────


class GroundingScorer:
    """
    Computes a GroundingDecision from a ParsedResponse.

    Example:
        >>> scorer = GroundingScorer()
        >>> decision = scorer.score(parsed, standalone_term="utilitarianism")
        >>> decision.status
        <GroundingStatus.GROUNDED: 'grounded'>
    """

    def __init__(self, config: Optional[GroundingConfig] = None):
        """
        Initialize the scorer.

        Args:
            config: Thresholds (default from settings)
        """
        self.config = config or get_settings().grounding

    def base_decision(self, parsed: ParsedResponse) -> GroundingDecision:
        """Verdict from evidence counts and coverage alone."""
        if parsed.not_found:
            return GroundingDecision(grounded=False, reason=GroundingReason.MODEL_NOT_FOUND)

        supports = parsed.grounding.supports_count
        coverage = parsed.grounding.coverage

        strong = supports >= 1 and (
            coverage >= self.config.strong_coverage or supports >= self.config.strong_supports
        )
        if strong:
            return GroundingDecision(
                grounded=True,
                reason=GroundingReason.SUPPORTED,
                supports_count=supports,
                coverage=coverage,
            )

        if parsed.references or parsed.grounding.chunks_count > 0:
            return GroundingDecision(
                grounded=True,
                weak=True,
                reason=GroundingReason.RETRIEVED_WITHOUT_SUPPORTS,
                supports_count=supports,
                coverage=coverage,
            )

        return GroundingDecision(
            grounded=False,
            reason=GroundingReason.NO_RETRIEVAL_EVIDENCE,
            supports_count=supports,
            coverage=coverage,
        )

    def apply_term_guard(
        self,
        decision: GroundingDecision,
        parsed: ParsedResponse,
        standalone_term: str,
    ) -> GroundingDecision:
        """Downgrade a grounded decision whose answer does not mention the term."""
        if not standalone_term or not decision.grounded:
            return decision

        term_coverage = compute_term_coverage(
            standalone_term, parsed.answer_text, self.config.min_term_token_length
        )
        if term_coverage >= self.config.term_coverage_threshold:
            return decision

        logger.info(f"Term guard downgraded answer (term coverage {term_coverage:.2f})")
        return GroundingDecision(
            grounded=False,
            reason=GroundingReason.TERM_MISMATCH,
            supports_count=decision.supports_count,
            coverage=decision.coverage,
        )

    def score(self, parsed: ParsedResponse, standalone_term: str = "") -> GroundingDecision:
        """
        Score one parsed response.

        Args:
            parsed: Parsed response
            standalone_term: Term from a definition question, if any

        Returns:
            GroundingDecision
        """
        decision = self.apply_term_guard(self.base_decision(parsed), parsed, standalone_term)
        logger.debug(
            f"Grounding decision: grounded={decision.grounded}, weak={decision.weak}, "
            f"reason={decision.reason.value}, supports={decision.supports_count}, "
            f"coverage={decision.coverage:.3f}"
        )
        return decision


def score_response(parsed: ParsedResponse, standalone_term: str = "") -> GroundingDecision:
    """
    Score a parsed response with default thresholds.

    Convenience function.
    """
    return GroundingScorer().score(parsed, standalone_term)
