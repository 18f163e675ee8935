"""
Assistant Module - End-to-end answer pipeline for one question.
===============================================================

Pipeline:
    Classifier -> (intent branch) -> ContextRewriter -> PromptBuilder
    -> RetrievalOrchestrator -> GroundingScorer -> answer + citations

Intent branches that never reach retrieval:
- greeting: short generated welcome (static fallback on failure)
- off-topic weather: fixed redirect
- source request: references of the last grounded answer
- grounding check: yes/no from the last grounded snapshot

Hard failures from the generation layer are caught once here and turned
into a configuration message or a generic try-again message. The user's
question is logged to the conversation before anything else runs.
"""

import time
import uuid
from typing import Callable, Optional

from course_ta.rag.classifier import (
    QuestionClassifier,
    detect_week,
    is_syllabus_question,
)
from course_ta.rag.client import GeminiClient, GenerationClient
from course_ta.rag.context import ContextRewriter
from course_ta.rag.grounding import GroundingScorer
from course_ta.rag.normalizer import ResponseNormalizer, format_citations
from course_ta.rag.orchestrator import RetrievalOrchestrator, RetrievalPlan
from course_ta.rag.postprocess import AnswerPostProcessor
from course_ta.rag.prompts import PromptBuilder
from course_ta.shared.config import Settings, get_settings
from course_ta.shared.errors import CourseTAError, FailureKind, classify_failure
from course_ta.shared.logging import get_logger
from course_ta.shared.runtime import ConfigProvider, RuntimeConfig
from course_ta.shared.schemas import (
    AnalyticsRecord,
    AnswerResult,
    ConversationTurn,
    GroundedSnapshot,
    GroundingStatus,
    Intent,
    QuestionAnalysis,
    Reference,
    Role,
)
from course_ta.store.analytics import AnalyticsSink, JsonlAnalyticsSink
from course_ta.store.conversation import ConversationStore, JsonConversationStore
from course_ta.store.settings_store import JsonSettingsStore

logger = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# User-facing Messages
# ─────────────────────────────────────────────────────────────────────────────


REFUSAL_MESSAGE = (
    "לא מצאתי התאמה ברורה בחומרי הקורס לשאלה הזו. "
    "אפשר לחדד שבוע/הרצאה, מונח מדויק, או לצטט משפט מהמצגת כדי שאוכל לאתר את זה?"
)

CONFIGURATION_ERROR_MESSAGE = (
    "המערכת לא מוגדרת כרגע (מפתח Gemini או File Search). "
    "יש להגדיר GEMINI_API_KEY ו-FILE_SEARCH_STORE_NAME ואז לנסות שוב."
)

TRANSIENT_ERROR_MESSAGE = "משהו השתבש בשליפת תשובה מתוך חומרי הקורס. נסו שוב בעוד רגע."

GREETING_FALLBACK_MESSAGE = (
    "שלום! אני כאן לעזור בשאלות על חומרי הקורס באתיקה.\n"
    "אפשר לשאול למשל:\n"
    "- מה ההבדל בין תועלתנות לגישה של קאנט?\n"
    "- תן/י דוגמה לדילמה אתית בניהול משאבי אנוש\n"
    "- מה העקרונות המרכזיים של אחריות מקצועית?"
)

WEATHER_REPLY = (
    "אני כאן לעזור רק בנושאי הקורס באתיקה ובחומרי ההרצאות/סילבוס, "
    "ולכן אני לא יכול/ה לענות על מזג האוויר. "
    "אם תרצה/י, שאל/י שאלה על נושא מהקורס (למשל קאנט, תועלתנות, רולס, או דילמות אתיות ב-HR)."
)

SOURCES_AVAILABLE_REPLY = "אלה המקורות מחומרי הקורס שעליהם נשענה התשובה האחרונה."
SOURCES_MISSING_REPLY = (
    "עדיין אין תשובה קודמת שמבוססת על חומרי הקורס, ולכן אין מקורות להציג. "
    "שאל/י שאלה על נושא מהקורס ואציין על מה התשובה נשענת."
)

GROUNDING_CHECK_YES = "כן. התשובה האחרונה נשענה על חומרי הקורס המצורפים."
GROUNDING_CHECK_NO = "לא מצאתי התאמה ישירה במקורות האחרונים."

FAILURE_MESSAGES = {
    FailureKind.CONFIGURATION: CONFIGURATION_ERROR_MESSAGE,
    FailureKind.TRANSIENT: TRANSIENT_ERROR_MESSAGE,
}

# Question prefixes for caller hints and syllabus questions
DOC_TYPE_PREFIX = "בהקשר של {doc_type}, "
WEEK_PREFIX = "בהקשר לשבוע {week}, "
SYLLABUS_PREFIX = "סילבוס הקורס: "


def prepare_question(question: str, week: str = "", doc_type: str = "") -> str:
    """
    Apply caller scoping hints and the syllabus marker to a question.

    Example:
        >>> prepare_question("מה נלמד?", week="3")
        'בהקשר לשבוע 3, מה נלמד?'
    """
    prepared = question
    if doc_type:
        prepared = DOC_TYPE_PREFIX.format(doc_type=doc_type) + prepared
    if week:
        prepared = WEEK_PREFIX.format(week=week) + prepared
    if is_syllabus_question(prepared):
        prepared = SYLLABUS_PREFIX + prepared
    return prepared


ClientFactory = Callable[[RuntimeConfig], GenerationClient]


# ─────────────────────────────────────────────────────────────────────────────
# Course Assistant
# ─────────────────────────────────────────────────────────────────────────────


class CourseAssistant:
    """
    Answers course questions end to end.

    Example:
        >>> assistant = CourseAssistant(conversations=InMemoryConversationStore())
        >>> result = assistant.answer("what is utilitarianism?", session_id="s1")
        >>> result.grounding_status
        <GroundingStatus.GROUNDED: 'grounded'>
    """

    def __init__(
        self,
        conversations: ConversationStore,
        analytics: Optional[AnalyticsSink] = None,
        config_provider: Optional[ConfigProvider] = None,
        client_factory: Optional[ClientFactory] = None,
        classifier: Optional[QuestionClassifier] = None,
        rewriter: Optional[ContextRewriter] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        scorer: Optional[GroundingScorer] = None,
        normalizer: Optional[ResponseNormalizer] = None,
        postprocessor: Optional[AnswerPostProcessor] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the assistant.

        Args:
            conversations: Conversation store
            analytics: Analytics sink (None disables analytics)
            config_provider: Runtime config resolution (default: environment only)
            client_factory: Builds a generation client per request (default GeminiClient)
            classifier: Question classifier
            rewriter: Context rewriter
            prompt_builder: Prompt builder
            scorer: Grounding scorer
            normalizer: Response normalizer
            postprocessor: Answer post-processor
            settings: Settings (default from config)
        """
        self.settings = settings or get_settings()
        self.conversations = conversations
        self.analytics = analytics
        self.config_provider = config_provider or ConfigProvider(settings=self.settings)
        self.client_factory: ClientFactory = client_factory or (
            lambda runtime: GeminiClient(runtime, self.settings.generation)
        )
        self.classifier = classifier or QuestionClassifier()
        self.rewriter = rewriter or ContextRewriter(
            prompt_user_turns=self.settings.context.prompt_user_turns,
            short_question_max_tokens=self.settings.context.short_question_max_tokens,
        )
        self.prompt_builder = prompt_builder or PromptBuilder(self.settings.course)
        self.scorer = scorer or GroundingScorer(self.settings.grounding)
        self.postprocessor = postprocessor or AnswerPostProcessor()
        self.normalizer = normalizer or ResponseNormalizer(
            self.settings.grounding.quote_max_chars, postprocessor=self.postprocessor
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────────

    def answer(
        self,
        question: str,
        session_id: Optional[str] = None,
        week: str = "",
        doc_type: str = "",
        debug: bool = False,
    ) -> AnswerResult:
        """
        Answer one question.

        Args:
            question: Raw question text
            session_id: Session identifier (a new one is generated if omitted)
            week: Optional caller-supplied week hint
            doc_type: Optional caller-supplied document-type hint
            debug: Include per-attempt diagnostics in the result

        Returns:
            AnswerResult

        Raises:
            ValueError: If the question is empty
        """
        question = (question or "").strip()
        if not question:
            raise ValueError("Question is required")

        session_id = session_id or uuid.uuid4().hex
        started = time.perf_counter()

        recent_turns = self.conversations.get_recent_turns(
            session_id, self.settings.context.recent_turns_limit
        )
        snapshot = self.conversations.get_last_grounded_references(session_id)
        self.conversations.append_turn(session_id, Role.USER, question)

        analysis = self.classifier.classify(question)
        logger.info(f"Question received: session={session_id[:8]}, intent={analysis.intent.value}")

        try:
            result = self._dispatch(
                analysis,
                session_id,
                recent_turns,
                snapshot,
                week=(week or "").strip(),
                doc_type=(doc_type or "").strip(),
                debug=debug,
            )
        except CourseTAError as e:
            kind = classify_failure(e)
            logger.error(f"Answer pipeline failed ({kind.value}): {e}")
            result = AnswerResult(
                answer=FAILURE_MESSAGES[kind],
                grounding_status=GroundingStatus.NOT_FOUND,
                session_id=session_id,
            )

        result.answer = self.postprocessor.finalize(result.answer)
        self.conversations.append_turn(session_id, Role.ASSISTANT, result.answer)

        latency_ms = int((time.perf_counter() - started) * 1000)
        self._record_analytics(session_id, question, result, latency_ms)

        logger.info(
            f"Answered: status={result.grounding_status.value}, "
            f"citations={len(result.citations)}, latency={latency_ms}ms"
        )
        return result

    # ─────────────────────────────────────────────────────────────────────────
    # Intent Branches
    # ─────────────────────────────────────────────────────────────────────────

    def _dispatch(
        self,
        analysis: QuestionAnalysis,
        session_id: str,
        recent_turns: list[ConversationTurn],
        snapshot: Optional[GroundedSnapshot],
        week: str,
        doc_type: str,
        debug: bool,
    ) -> AnswerResult:
        if analysis.intent is Intent.GREETING:
            return self._answer_greeting(analysis.question, session_id)

        if analysis.intent is Intent.OFF_TOPIC_WEATHER:
            return AnswerResult(
                answer=WEATHER_REPLY,
                grounding_status=GroundingStatus.NOT_APPLICABLE,
                session_id=session_id,
            )

        has_refs = bool(snapshot and snapshot.references)

        if analysis.intent is Intent.SOURCE_REQUEST:
            return AnswerResult(
                answer=SOURCES_AVAILABLE_REPLY if has_refs else SOURCES_MISSING_REPLY,
                grounding_status=GroundingStatus.GROUNDED if has_refs else GroundingStatus.NOT_FOUND,
                citations=format_citations(snapshot.references) if has_refs else [],
                session_id=session_id,
            )

        if analysis.intent is Intent.GROUNDING_CHECK:
            return AnswerResult(
                answer=GROUNDING_CHECK_YES if has_refs else GROUNDING_CHECK_NO,
                grounding_status=GroundingStatus.GROUNDED if has_refs else GroundingStatus.NOT_FOUND,
                session_id=session_id,
            )

        return self._answer_question(
            analysis, session_id, recent_turns, snapshot, week, doc_type, debug
        )

    def _answer_greeting(self, question: str, session_id: str) -> AnswerResult:
        """Generated welcome; the static welcome is used if generation fails."""
        answer = ""
        try:
            client = self.client_factory(self.config_provider.resolve())
            payload = self.prompt_builder.build_greeting_prompt(question)
            answer = self.normalizer.parse(client.generate_greeting(payload)).answer_text
        except CourseTAError as e:
            logger.warning(f"Greeting generation failed, using static welcome: {e}")

        return AnswerResult(
            answer=answer or GREETING_FALLBACK_MESSAGE,
            grounding_status=GroundingStatus.NOT_APPLICABLE,
            session_id=session_id,
        )

    def _answer_question(
        self,
        analysis: QuestionAnalysis,
        session_id: str,
        recent_turns: list[ConversationTurn],
        snapshot: Optional[GroundedSnapshot],
        week: str,
        doc_type: str,
        debug: bool,
    ) -> AnswerResult:
        """Full retrieval pipeline for a substantive question."""
        prepared = prepare_question(analysis.question, week=week, doc_type=doc_type)
        detected_week = detect_week(prepared) or ""
        syllabus = is_syllabus_question(prepared)

        rewrite = self.rewriter.rewrite(analysis.question, prepared, recent_turns)
        payload = self.prompt_builder.build_prompt(
            rewrite.question,
            recent_turns=rewrite.history,
            last_grounded_question=snapshot.question if (rewrite.carried and snapshot) else "",
            is_first_turn=not recent_turns,
        )
        plan = RetrievalPlan.for_question(syllabus, detected_week, self.settings.retrieval)

        client = self.client_factory(self.config_provider.resolve())
        orchestrator = RetrievalOrchestrator(
            client,
            scorer=self.scorer,
            normalizer=self.normalizer,
            selection_margin=self.settings.grounding.selection_margin,
        )
        outcome = orchestrator.run(payload, plan, analysis.standalone_term)

        parsed = outcome.selected.parsed
        decision = outcome.selected.decision
        status = decision.status
        citations: list[Reference] = []

        if decision.grounded and parsed.answer_text:
            answer = parsed.answer_text
            citations = format_citations(parsed.references)
            self.conversations.set_last_grounded_references(
                session_id, rewrite.question, parsed.answer_text, parsed.references
            )
        else:
            if decision.grounded:
                logger.warning("Grounded response had no answer text, refusing")
                status = GroundingStatus.NOT_FOUND
            answer = REFUSAL_MESSAGE

        return AnswerResult(
            answer=answer,
            grounding_status=status,
            citations=citations,
            session_id=session_id,
            finish_reason=parsed.finish_reason,
            usage_metadata=parsed.usage_metadata,
            debug={"diag": outcome.debug_info()} if debug else None,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Analytics
    # ─────────────────────────────────────────────────────────────────────────

    def _record_analytics(
        self,
        session_id: str,
        question: str,
        result: AnswerResult,
        latency_ms: int,
    ) -> None:
        if self.analytics is None:
            return
        self.analytics.record(
            AnalyticsRecord(
                session_id=session_id,
                question=question,
                grounded=1 if result.grounding_status is GroundingStatus.GROUNDED else 0,
                citations_count=len(result.citations),
                latency_ms=latency_ms,
            )
        )


# ─────────────────────────────────────────────────────────────────────────────
# Global Instance
# ─────────────────────────────────────────────────────────────────────────────


_assistant: Optional[CourseAssistant] = None


def build_assistant(settings: Optional[Settings] = None) -> CourseAssistant:
    """Create an assistant backed by the file stores under the data directory."""
    settings = settings or get_settings()
    paths = settings.resolved_paths
    return CourseAssistant(
        conversations=JsonConversationStore(paths.conversations_file),
        analytics=JsonlAnalyticsSink(paths.analytics_file, salt=settings.analytics_salt),
        config_provider=ConfigProvider(JsonSettingsStore(paths.settings_file), settings),
        settings=settings,
    )


def get_assistant() -> CourseAssistant:
    """Get or create global assistant instance."""
    global _assistant
    if _assistant is None:
        _assistant = build_assistant()
    return _assistant


def ask(
    question: str,
    session_id: Optional[str] = None,
    week: str = "",
    doc_type: str = "",
    debug: bool = False,
) -> AnswerResult:
    """
    Answer a question with the global assistant.

    Convenience function.
    """
    return get_assistant().answer(
        question, session_id=session_id, week=week, doc_type=doc_type, debug=debug
    )
