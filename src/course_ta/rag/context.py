"""
Context Module - Conversational context carry-over.
===================================================

Decides whether prior turns should be folded into a question:

- Definition questions ("what is X?") are self-contained and never inherit context
- Explicit follow-up openers ("why", "and what about", Hebrew equivalents) always do
- Short questions with a deictic reference ("this", "that") do

When context is carried, the question is prefixed with the literal text of
the last user turn and a window of recent user turns goes into the prompt.
Otherwise the prompt history is empty.
"""

from dataclasses import dataclass, field
from typing import Optional

from course_ta.rag.classifier import (
    count_tokens,
    has_deictic_reference,
    has_follow_up_opener,
    is_standalone_definition,
)
from course_ta.shared.config import get_settings
from course_ta.shared.logging import get_logger
from course_ta.shared.schemas import ConversationTurn, Role

logger = get_logger(__name__)

FOLLOW_UP_TEMPLATE = 'בהקשר לשאלה הקודמת "{previous}": {question}'


def should_carry_context(
    question: str,
    last_user_text: str,
    short_question_max_tokens: int = 12,
) -> bool:
    """
    Decide whether the previous user turn should be folded into the question.

    Args:
        question: Current question text
        last_user_text: Literal text of the previous user turn
        short_question_max_tokens: Deictic questions longer than this are
            treated as self-contained

    Returns:
        True if context should be carried
    """
    q = (question or "").strip()
    if not q or not (last_user_text or "").strip():
        return False

    if is_standalone_definition(q):
        return False

    if has_follow_up_opener(q):
        return True

    return has_deictic_reference(q) and count_tokens(q) <= short_question_max_tokens


def user_turns_for_prompt(
    recent_turns: list[ConversationTurn],
    limit: int = 6,
) -> list[ConversationTurn]:
    """Return the last ``limit`` user turns, oldest first."""
    if limit <= 0:
        return []
    user_turns = [t for t in recent_turns if t.role == Role.USER]
    return user_turns[-limit:]


@dataclass
class RewriteResult:
    """Outcome of context rewriting for one question."""

    question: str
    carried: bool = False
    history: list[ConversationTurn] = field(default_factory=list)
    previous_question: str = ""


class ContextRewriter:
    """
    Fold conversational context into a question when it is needed.

    Example:
        >>> rewriter = ContextRewriter()
        >>> result = rewriter.rewrite("why?", "why?", recent_turns)
        >>> result.carried
        True
    """

    def __init__(
        self,
        prompt_user_turns: Optional[int] = None,
        short_question_max_tokens: Optional[int] = None,
    ):
        settings = get_settings()
        self.prompt_user_turns = (
            prompt_user_turns
            if prompt_user_turns is not None
            else settings.context.prompt_user_turns
        )
        self.short_question_max_tokens = (
            short_question_max_tokens
            if short_question_max_tokens is not None
            else settings.context.short_question_max_tokens
        )

    def rewrite(
        self,
        question: str,
        prepared_question: str,
        recent_turns: list[ConversationTurn],
    ) -> RewriteResult:
        """
        Rewrite a question using recent conversation turns.

        Args:
            question: The user's question as typed, used for cue detection
            prepared_question: Question with scoping prefixes applied
            recent_turns: Recent session turns, oldest first, excluding the
                current question

        Returns:
            RewriteResult with the text to send downstream and the prompt history
        """
        window = user_turns_for_prompt(recent_turns, self.prompt_user_turns)
        last_user_text = window[-1].text if window else ""

        carried = should_carry_context(
            question, last_user_text, self.short_question_max_tokens
        )
        if not carried:
            return RewriteResult(question=prepared_question)

        logger.debug(f"Carrying context from previous turn ({len(window)} user turns)")
        return RewriteResult(
            question=FOLLOW_UP_TEMPLATE.format(
                previous=last_user_text, question=prepared_question
            ),
            carried=True,
            history=window,
            previous_question=last_user_text,
        )
