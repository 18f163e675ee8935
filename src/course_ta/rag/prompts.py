"""
Prompts Module - Prompt templates for grounded course answers.
==============================================================

Provides prompt templates that enforce:
- Grounding (answer only from File Search evidence)
- An exact NOT_FOUND sentinel when nothing relevant is retrieved
- No fabricated citation markers
- Bounded, concise replies in Hebrew

Two variants are produced: substantive questions and greetings. The
greeting variant drops the retrieval rules and asks for a short welcome
with example questions.
"""

from typing import Optional

from course_ta.shared.config import CourseConfig, get_settings
from course_ta.shared.logging import get_logger
from course_ta.shared.schemas import ConversationTurn, PromptPayload, Role

logger = get_logger(__name__)

NOT_FOUND_SENTINEL = "NOT_FOUND"


# ─────────────────────────────────────────────────────────────────────────────
# System Prompt Parts
# ─────────────────────────────────────────────────────────────────────────────


PERSONA_TEMPLATE = "את/ה עוזר/ת הוראה וכמרצה בקורס '{name}' ב{institution}, עבור {audience}."

GOALS_PROMPT = (
    "סייע/י לסטודנטים להבין גישות שונות לאתיקה ומוסר, את החומר הנלמד, "
    "ואת הקשר בין הנושאים השונים בקורס. המטרה היא למידה עמוקה והבנה, "
    "עם ניסוח חם ומעודד."
)

GROUNDING_PROMPT = (
    "הסתמך/י באופן בלעדי על חומרי הידע שסופקו בכלי File Search, "
    "בדגש על מצגות הקורס והסילבוס. אל תוסיף/י ידע חיצוני."
)

NOT_FOUND_PROMPT = (
    f"החזר/י בדיוק {NOT_FOUND_SENTINEL} רק אם כלי File Search לא מחזיר מידע רלוונטי לשאלה. "
    "אם יש התאמה חלקית (גם אם קצרה), תן/י תשובה קצרה שמבוססת רק על מה שנמצא, "
    "וציין/י שהמידע בחומר המצורף חלקי והצע/י כיצד לחדד את השאלה."
)

MATERIALS_PROMPT = (
    "השתמש/י בסילבוס כמפת דרכים לקישור בין נושאי הלימוד לחומרי הקריאה, "
    "ותן/י עדיפות עליונה לתוכן במצגות. ציין/י כיצד ההסבר מתקשר לחומר הכיתתי."
)

SYLLABUS_PROMPT = (
    "אם השאלה מתייחסת לסילבוס, דרישות קורס, ציונים או מבנה הקורס, "
    "חפש/י תחילה בסילבוס וסכם/י ממנו באופן ברור ומובנה."
)

PRACTICE_PROMPT = (
    "Offer a practice question only if the student explicitly asks for a quiz, "
    "practice, or an exercise."
)

INTERACTION_PROMPT = (
    "הסבר/י מושגים מורכבים בצורה פשוטה ונגישה לסטודנטים. "
    "השתמש/י בדוגמאות עסקיות רלוונטיות רק אם הן מופיעות בחומרי הקורס. "
    "בסוף כל תשובה, שאל/י אם ההסבר ברור ואם יש שאלות נוספות."
)

LANGUAGE_PROMPT = (
    "ברירת המחדל היא עברית תקנית וברורה. אם הסטודנט מבקש שפה אחרת, "
    "ענה/י בה אך שלב/י מונחים מקצועיים בעברית."
)

REDIRECT_PROMPT = (
    "אם נשאלת שאלה שאינה קשורה לקורס, הפנה/י בעדינות לנושאי הקורס והצע/י דוגמה לשאלה מתאימה."
)

CLARIFY_PROMPT = (
    "אם המונח המבוקש לא נמצא בדיוק בחומר, בקש/י הבהרה לאיזה מושג והקשר הוא מתכוון."
)

WELCOME_PROMPT = (
    "If this is the first message, keep the opening to one short sentence "
    "before answering the question."
)

OUTPUT_PROMPT = (
    "Answer in clear, natural Hebrew. Keep responses concise: about 4-8 short sentences "
    "or 3-5 bullets. Avoid long introductions, repeated points, and extra sections. "
    "Do not add a practice question unless explicitly requested. "
    "End with one short follow-up question. "
    "Do not include citation markers like [cite: 1, 2]."
)

GREETING_STYLE_PROMPT = (
    "ענה/י בברכה ידידותית ונלהבת, בניסוח טבעי ולא רובוטי, עם משפט פתיחה אישי."
)

GREETING_SUGGESTIONS_PROMPT = "הצע/י 3-4 שאלות מובנות על חומרי הקורס כדי להתחיל את הלמידה."


# ─────────────────────────────────────────────────────────────────────────────
# User Prompt Template
# ─────────────────────────────────────────────────────────────────────────────


USER_PROMPT_TEMPLATE = "{context}\n\nשיחות אחרונות:\n{history}\n\nשאלה: {question}"

GROUNDED_CONTEXT_TEMPLATE = "שאלה אחרונה עם מקור: {question}"

ROLE_LABELS = {
    Role.USER: "סטודנט",
    Role.ASSISTANT: "עוזר",
}

DEFAULT_GREETING_TEXT = "שלום"


def format_history(turns: list[ConversationTurn]) -> str:
    """
    Format conversation turns as a transcript.

    Example:
        >>> format_history([ConversationTurn(role=Role.USER, text="מה זה מוסר?")])
        'סטודנט: מה זה מוסר?'
    """
    return "\n".join(f"{ROLE_LABELS[turn.role]}: {turn.text}" for turn in turns)


# ─────────────────────────────────────────────────────────────────────────────
# Prompt Builder
# ─────────────────────────────────────────────────────────────────────────────


class PromptBuilder:
    """
    Builds prompt payloads for the generation client.

    Handles:
    - Substantive questions (persona, grounding and output rules)
    - Greeting replies (no retrieval rules, example questions)

    Example:
        >>> builder = PromptBuilder()
        >>> payload = builder.build_prompt("מה זה תועלתנות?")
        >>> payload.user_text.endswith("שאלה: מה זה תועלתנות?")
        True
    """

    def __init__(self, course: Optional[CourseConfig] = None):
        """
        Initialize the prompt builder.

        Args:
            course: Course identity for the persona (default from config)
        """
        self.course = course or get_settings().course

    @property
    def persona(self) -> str:
        return PERSONA_TEMPLATE.format(
            name=self.course.name,
            institution=self.course.institution,
            audience=self.course.audience,
        )

    def system_instruction(self, is_first_turn: bool = False) -> str:
        """Assemble the system instruction in its fixed order."""
        parts = [
            self.persona,
            GOALS_PROMPT,
            GROUNDING_PROMPT,
            NOT_FOUND_PROMPT,
            MATERIALS_PROMPT,
            SYLLABUS_PROMPT,
            PRACTICE_PROMPT,
            INTERACTION_PROMPT,
            LANGUAGE_PROMPT,
            REDIRECT_PROMPT,
            CLARIFY_PROMPT,
        ]
        if is_first_turn:
            parts.append(WELCOME_PROMPT)
        parts.append(OUTPUT_PROMPT)
        return "\n".join(parts)

    def build_prompt(
        self,
        question: str,
        recent_turns: Optional[list[ConversationTurn]] = None,
        last_grounded_question: str = "",
        is_first_turn: bool = False,
    ) -> PromptPayload:
        """
        Build the payload for a substantive question.

        Args:
            question: Question text, possibly rewritten with context
            recent_turns: History window (empty unless context is carried)
            last_grounded_question: Previous grounded question, if context is carried
            is_first_turn: Whether this is the first message of the session

        Returns:
            PromptPayload
        """
        context = (
            GROUNDED_CONTEXT_TEMPLATE.format(question=last_grounded_question)
            if last_grounded_question
            else ""
        )
        user_text = USER_PROMPT_TEMPLATE.format(
            context=context,
            history=format_history(recent_turns or []),
            question=question,
        )

        return PromptPayload(
            system_instruction=self.system_instruction(is_first_turn),
            user_text=user_text,
        )

    def build_greeting_prompt(self, question: str) -> PromptPayload:
        """
        Build the payload for a greeting reply.

        Args:
            question: The greeting as typed

        Returns:
            PromptPayload without retrieval or sentinel rules
        """
        system_instruction = "\n".join(
            [
                self.persona,
                GOALS_PROMPT,
                GREETING_STYLE_PROMPT,
                GREETING_SUGGESTIONS_PROMPT,
                LANGUAGE_PROMPT,
                OUTPUT_PROMPT,
            ]
        )
        return PromptPayload(
            system_instruction=system_instruction,
            user_text=(question or "").strip() or DEFAULT_GREETING_TEXT,
        )
