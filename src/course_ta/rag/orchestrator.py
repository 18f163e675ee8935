"""
Orchestrator Module - Multi-attempt retrieval state machine.
============================================================

Drives one to three File Search generation calls for a question and
selects exactly one response as the answer source.

States:
    UNFILTERED -> [FILTERED] -> [RESCUE] -> SELECTED

- UNFILTERED always runs first, wider when the question is week/syllabus scoped
- FILTERED runs when a metadata filter applies and the question asked for
  that scope or the unfiltered answer is not grounded; it replaces the
  selection only on strict improvement
- RESCUE runs once, unfiltered and wider, when nothing is grounded yet; it
  replaces the selection only if it is grounded

Every attempt is first issued in the primary tool dialect. A response with
no grounding evidence at all is retried once in the alternate dialect
before it counts as the attempt's result.

State transitions are a pure function (``transition``) so they can be
tested with canned candidates.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from course_ta.rag.client import GenerationClient
from course_ta.rag.grounding import GroundingScorer
from course_ta.rag.normalizer import ResponseNormalizer
from course_ta.rag.postprocess import count_duplicate_prefix, count_inline_citations
from course_ta.shared.config import RetrievalConfig, get_settings
from course_ta.shared.logging import get_logger
from course_ta.shared.schemas import (
    AttemptDiagnostics,
    AttemptStage,
    GroundingDecision,
    ParsedResponse,
    PromptPayload,
    RetrievalAttempt,
    ToolDialect,
)

logger = get_logger(__name__)

SYLLABUS_FILTER = 'type="syllabus"'
WEEK_FILTER_TEMPLATE = 'week="{week}"'


# ─────────────────────────────────────────────────────────────────────────────
# Plan and Candidates
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RetrievalPlan:
    """Retrieval breadth and filter for one question."""

    metadata_filter: Optional[str] = None
    scoped: bool = False
    unfiltered_top_k: int = 10
    filtered_top_k: int = 8
    rescue_top_k: int = 20

    @classmethod
    def for_question(
        cls,
        syllabus: bool = False,
        week: str = "",
        config: Optional[RetrievalConfig] = None,
    ) -> "RetrievalPlan":
        """
        Build the plan from question signals.

        Args:
            syllabus: Syllabus intent detected
            week: Detected week number, zero-padded
            config: Retrieval settings (default from config)

        Returns:
            RetrievalPlan

        Example:
            >>> plan = RetrievalPlan.for_question(week="03")
            >>> plan.metadata_filter, plan.unfiltered_top_k, plan.rescue_top_k
            ('week="03"', 14, 20)
        """
        config = config or get_settings().retrieval
        scoped = syllabus or bool(week)

        if syllabus:
            metadata_filter: Optional[str] = SYLLABUS_FILTER
        elif week:
            metadata_filter = WEEK_FILTER_TEMPLATE.format(week=week)
        else:
            metadata_filter = None

        unfiltered = config.scoped_unfiltered_top_k if scoped else config.unfiltered_top_k
        filtered = config.scoped_filtered_top_k if scoped else config.filtered_top_k

        return cls(
            metadata_filter=metadata_filter,
            scoped=scoped,
            unfiltered_top_k=unfiltered,
            filtered_top_k=filtered,
            rescue_top_k=max(unfiltered, config.rescue_top_k_floor),
        )

    def attempt_for(self, stage: AttemptStage) -> RetrievalAttempt:
        """Retrieval attempt for a stage, in the primary dialect."""
        if stage is AttemptStage.FILTERED:
            return RetrievalAttempt(
                stage=stage, top_k=self.filtered_top_k, metadata_filter=self.metadata_filter
            )
        if stage is AttemptStage.RESCUE:
            return RetrievalAttempt(stage=stage, top_k=self.rescue_top_k)
        return RetrievalAttempt(stage=AttemptStage.UNFILTERED, top_k=self.unfiltered_top_k)


@dataclass
class Candidate:
    """One completed attempt: its parsed response and grounding decision."""

    stage: AttemptStage
    parsed: ParsedResponse
    decision: GroundingDecision
    dialect: ToolDialect = ToolDialect.CAMEL

    @property
    def refs_count(self) -> int:
        return len(self.parsed.references)

    def diagnostics(self) -> AttemptDiagnostics:
        """Debug view with no user content."""
        return AttemptDiagnostics(
            finish_reason=self.parsed.finish_reason,
            output_tokens=self.parsed.output_tokens,
            thoughts_tokens=self.parsed.thoughts_tokens,
            refs_count=self.refs_count,
            supports_count=self.decision.supports_count,
            coverage=self.decision.coverage,
            raw_len=len(self.parsed.raw_text),
            answer_len=len(self.parsed.answer_text),
            inline_cite_count=count_inline_citations(self.parsed.raw_text),
            duplicate_prefix_count=count_duplicate_prefix(self.parsed.raw_text),
            dialect=self.dialect,
        )


# ─────────────────────────────────────────────────────────────────────────────
# Transition Function
# ─────────────────────────────────────────────────────────────────────────────


def is_improvement(candidate: Candidate, current: Candidate, margin: float = 0.05) -> bool:
    """
    Strict improvement rule for replacing the current selection.

    Ties keep the current selection.
    """
    return (
        candidate.refs_count > current.refs_count
        or candidate.decision.supports_count > current.decision.supports_count
        or candidate.decision.coverage > current.decision.coverage + margin
    )


def transition(
    stage: AttemptStage,
    selected: Optional[Candidate],
    candidate: Candidate,
    plan: RetrievalPlan,
    margin: float = 0.05,
) -> tuple[AttemptStage, Candidate]:
    """
    Advance the state machine after the attempt for ``stage`` completes.

    Args:
        stage: Stage whose attempt produced ``candidate``
        selected: Current selection (None before the first attempt)
        candidate: Result of the attempt
        plan: Retrieval plan for the question
        margin: Coverage margin for the improvement rule

    Returns:
        Tuple of (next stage, selected candidate)
    """
    if stage is AttemptStage.UNFILTERED or selected is None:
        selected = candidate
        grounded = selected.decision.grounded
        if plan.metadata_filter and (plan.scoped or not grounded):
            return AttemptStage.FILTERED, selected
        if not grounded:
            return AttemptStage.RESCUE, selected
        return AttemptStage.SELECTED, selected

    if stage is AttemptStage.FILTERED:
        if is_improvement(candidate, selected, margin):
            selected = candidate
        if not selected.decision.grounded:
            return AttemptStage.RESCUE, selected
        return AttemptStage.SELECTED, selected

    if stage is AttemptStage.RESCUE:
        if candidate.decision.grounded:
            selected = candidate
        return AttemptStage.SELECTED, selected

    raise ValueError(f"No transition out of stage {stage.value}")


# ─────────────────────────────────────────────────────────────────────────────
# Orchestrator
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class OrchestrationResult:
    """Selected candidate plus everything needed for diagnostics."""

    selected: Candidate
    plan: RetrievalPlan
    calls: int = 0
    requests: int = 0
    candidates: dict[AttemptStage, Candidate] = field(default_factory=dict)

    def debug_info(self) -> dict[str, Any]:
        """Diagnostics payload for the meta event."""
        return {
            "calls": self.calls,
            "requests": self.requests,
            "unfilteredTopK": self.plan.unfiltered_top_k,
            "filteredTopK": self.plan.filtered_top_k,
            "rescueTopK": self.plan.rescue_top_k,
            "usedMetadataFilter": bool(self.plan.metadata_filter),
            "metadataFilter": self.plan.metadata_filter or "",
            "picked": self.selected.stage.value,
            "candidates": {
                stage.value: (
                    self.candidates[stage].diagnostics().model_dump(mode="json")
                    if stage in self.candidates
                    else None
                )
                for stage in (AttemptStage.UNFILTERED, AttemptStage.FILTERED, AttemptStage.RESCUE)
            },
        }


class RetrievalOrchestrator:
    """
    Runs the retrieval state machine against a generation client.

    Attempts are issued strictly sequentially; each outcome decides
    whether the next one is needed.

    Example:
        >>> orchestrator = RetrievalOrchestrator(client)
        >>> result = orchestrator.run(payload, plan, standalone_term="utilitarianism")
        >>> result.selected.decision.status
        <GroundingStatus.GROUNDED: 'grounded'>
    """

    def __init__(
        self,
        client: GenerationClient,
        scorer: Optional[GroundingScorer] = None,
        normalizer: Optional[ResponseNormalizer] = None,
        selection_margin: Optional[float] = None,
        primary_dialect: ToolDialect = ToolDialect.CAMEL,
    ):
        self.client = client
        self.scorer = scorer or GroundingScorer()
        self.normalizer = normalizer or ResponseNormalizer()
        self.selection_margin = (
            selection_margin
            if selection_margin is not None
            else get_settings().grounding.selection_margin
        )
        self.primary_dialect = primary_dialect
        self._requests = 0

    def execute(
        self,
        payload: PromptPayload,
        attempt: RetrievalAttempt,
        standalone_term: str = "",
    ) -> Candidate:
        """
        Run one logical attempt, retrying in the alternate dialect on zero evidence.

        Args:
            payload: Prompt payload
            attempt: Retrieval attempt
            standalone_term: Term for the grounding term guard

        Returns:
            Candidate for the attempt
        """
        attempt = attempt.with_dialect(self.primary_dialect)
        self._requests += 1
        parsed = self.normalizer.parse(self.client.generate_answer(payload, attempt))

        if not parsed.has_grounding_evidence:
            alternate = attempt.with_dialect(attempt.dialect.alternate)
            logger.info(
                f"No grounding evidence in {attempt.dialect.value} dialect, "
                f"retrying {attempt.stage.value} attempt as {alternate.dialect.value}"
            )
            attempt = alternate
            self._requests += 1
            parsed = self.normalizer.parse(self.client.generate_answer(payload, attempt))

        decision = self.scorer.score(parsed, standalone_term)
        logger.info(
            f"Attempt {attempt.stage.value}: topK={attempt.top_k}, "
            f"filter={attempt.metadata_filter or '-'}, dialect={attempt.dialect.value}, "
            f"chunks={parsed.grounding.chunks_count}, supports={parsed.grounding.supports_count}, "
            f"coverage={parsed.grounding.coverage:.3f}, decision={decision.status.value}"
        )
        return Candidate(
            stage=attempt.stage, parsed=parsed, decision=decision, dialect=attempt.dialect
        )

    def run(
        self,
        payload: PromptPayload,
        plan: RetrievalPlan,
        standalone_term: str = "",
    ) -> OrchestrationResult:
        """
        Run the state machine to completion.

        Args:
            payload: Prompt payload shared by all attempts
            plan: Retrieval plan
            standalone_term: Term for the grounding term guard

        Returns:
            OrchestrationResult with the selected candidate

        Raises:
            CourseTAError: Any hard failure from the client aborts the run
        """
        self._requests = 0
        stage = AttemptStage.UNFILTERED
        selected: Optional[Candidate] = None
        candidates: dict[AttemptStage, Candidate] = {}

        while stage is not AttemptStage.SELECTED:
            candidate = self.execute(payload, plan.attempt_for(stage), standalone_term)
            candidates[stage] = candidate
            stage, selected = transition(
                stage, selected, candidate, plan, self.selection_margin
            )

        if selected is None:
            raise RuntimeError("Retrieval finished without a selected candidate")
        logger.info(
            f"Selected {selected.stage.value} after {len(candidates)} attempts "
            f"({self._requests} requests): {selected.decision.status.value}"
        )
        return OrchestrationResult(
            selected=selected,
            plan=plan,
            calls=len(candidates),
            requests=self._requests,
            candidates=candidates,
        )
