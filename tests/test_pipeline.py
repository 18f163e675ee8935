"""
Tests for the Answer Pipeline.
==============================

Tests for:
- CourseAssistant: Intent branches, retrieval, failures and analytics
- Streaming: Chunk events, the meta event and the SSE encoding
"""

import json

import pytest


# ─────────────────────────────────────────────────────────────────────────────
# Assistant Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestAssistantBranches:
    """Tests for intents that never reach retrieval."""

    def test_greeting_is_generated(self, assistant, fake_client, gemini_response):
        """Test a greeting gets a generated reply and no retrieval call."""
        from course_ta.shared.schemas import GroundingStatus

        fake_client.greeting = gemini_response("שלום! במה אפשר לעזור בקורס?")

        result = assistant.answer("שלום", session_id="s1")

        assert result.answer == "שלום! במה אפשר לעזור בקורס?"
        assert result.grounding_status == GroundingStatus.NOT_APPLICABLE
        assert result.citations == []
        assert fake_client.attempts == []
        assert fake_client.greeting_payloads[0].user_text == "שלום"

    def test_greeting_fallback_on_failure(self, assistant, fake_client):
        """Test the static welcome is used when generation fails."""
        from course_ta.rag.assistant import GREETING_FALLBACK_MESSAGE
        from course_ta.shared.errors import TransportError
        from course_ta.shared.schemas import GroundingStatus

        fake_client.error = TransportError("Gemini request failed: 503")

        result = assistant.answer("hello", session_id="s1")

        assert result.answer == GREETING_FALLBACK_MESSAGE
        assert result.grounding_status == GroundingStatus.NOT_APPLICABLE

    def test_greeting_fallback_on_empty_text(self, assistant):
        """Test an empty generated greeting falls back to the static welcome."""
        from course_ta.rag.assistant import GREETING_FALLBACK_MESSAGE

        assert assistant.answer("היי", session_id="s1").answer == GREETING_FALLBACK_MESSAGE

    def test_weather_redirect(self, assistant, fake_client):
        """Test weather questions get the fixed redirect."""
        from course_ta.rag.assistant import WEATHER_REPLY
        from course_ta.shared.schemas import GroundingStatus

        result = assistant.answer("מה מזג האוויר מחר?", session_id="s1")

        assert result.answer == WEATHER_REPLY
        assert result.grounding_status == GroundingStatus.NOT_APPLICABLE
        assert fake_client.attempts == []

    def test_source_request_without_history(self, assistant, fake_client):
        """Test a source request before any grounded answer."""
        from course_ta.rag.assistant import SOURCES_MISSING_REPLY
        from course_ta.shared.schemas import GroundingStatus

        result = assistant.answer("מה המקורות?", session_id="s1")

        assert result.answer == SOURCES_MISSING_REPLY
        assert result.grounding_status == GroundingStatus.NOT_FOUND
        assert result.citations == []
        assert fake_client.attempts == []

    def test_source_request_after_grounded_answer(self, assistant, fake_client, hebrew_strong_response):
        """Test a source request returns the last grounded references."""
        from course_ta.rag.assistant import SOURCES_AVAILABLE_REPLY
        from course_ta.shared.schemas import GroundingStatus

        fake_client.responses = [hebrew_strong_response]
        first = assistant.answer("מה זה תועלתנות?", session_id="s1")

        result = assistant.answer("מה המקורות?", session_id="s1")

        assert result.answer == SOURCES_AVAILABLE_REPLY
        assert result.grounding_status == GroundingStatus.GROUNDED
        assert result.citations == first.citations
        assert len(fake_client.attempts) == 1

    def test_grounding_check(self, assistant, fake_client, hebrew_strong_response):
        """Test the grounding check answers from the last snapshot."""
        from course_ta.rag.assistant import GROUNDING_CHECK_NO, GROUNDING_CHECK_YES

        assert assistant.answer("האם התשובה מבוססת?", session_id="s1").answer == GROUNDING_CHECK_NO

        fake_client.responses = [hebrew_strong_response]
        assistant.answer("מה זה תועלתנות?", session_id="s1")

        assert assistant.answer("האם התשובה מבוססת?", session_id="s1").answer == GROUNDING_CHECK_YES

    def test_empty_question_rejected(self, assistant):
        """Test an empty question raises."""
        with pytest.raises(ValueError):
            assistant.answer("   ", session_id="s1")


class TestAssistantRetrieval:
    """Tests for substantive questions."""

    def test_grounded_answer(self, assistant, fake_client, hebrew_strong_response, conversation_store):
        """Test a grounded answer with citations and a stored snapshot."""
        from course_ta.shared.schemas import GroundingStatus, Role

        fake_client.responses = [hebrew_strong_response]

        result = assistant.answer("מה זה תועלתנות?", session_id="s1")

        assert result.grounding_status == GroundingStatus.GROUNDED
        assert result.answer.startswith("תועלתנות היא גישה")
        assert len(result.citations) == 1
        assert result.citations[0].week == "שבוע 03"
        assert result.finish_reason == "STOP"
        assert result.debug is None

        turns = conversation_store.get_recent_turns("s1")
        assert [t.role for t in turns] == [Role.USER, Role.ASSISTANT]
        assert conversation_store.get_last_grounded_references("s1").question == "מה זה תועלתנות?"

    def test_first_turn_prompt(self, assistant, fake_client, hebrew_strong_response):
        """Test the first turn of a session gets the welcome rule."""
        from course_ta.rag.prompts import WELCOME_PROMPT

        fake_client.responses = [hebrew_strong_response, hebrew_strong_response]
        assistant.answer("מה זה תועלתנות?", session_id="s1")
        assistant.answer("מה זה תועלתנות?", session_id="s1")

        assert WELCOME_PROMPT in fake_client.payloads[0].system_instruction
        assert WELCOME_PROMPT not in fake_client.payloads[1].system_instruction

    def test_not_found_answer(self, assistant, fake_client):
        """Test the refusal when no attempt is grounded."""
        from course_ta.rag.assistant import REFUSAL_MESSAGE
        from course_ta.shared.schemas import GroundingStatus

        result = assistant.answer("Summarize the lecture on quantum chromodynamics", session_id="s1")

        assert result.answer == REFUSAL_MESSAGE
        assert result.grounding_status == GroundingStatus.NOT_FOUND
        assert result.citations == []
        # unfiltered and rescue, each retried once in the alternate dialect
        assert len(fake_client.attempts) == 4

    def test_weak_answer(self, assistant, fake_client, weak_response, conversation_store):
        """Test weakly grounded answers are returned with their citations."""
        from course_ta.shared.schemas import GroundingStatus

        fake_client.responses = [weak_response]

        result = assistant.answer("Explain Kant's view of duty", session_id="s1")

        assert result.grounding_status == GroundingStatus.WEAK
        assert result.answer.startswith("Kant grounds morality")
        assert len(result.citations) == 1
        assert conversation_store.get_last_grounded_references("s1") is not None

    def test_grounded_without_text_is_refused(self, assistant, fake_client, gemini_response):
        """Test a grounded response with no answer text becomes a refusal."""
        from course_ta.rag.assistant import REFUSAL_MESSAGE
        from course_ta.shared.schemas import GroundingStatus

        fake_client.responses = [gemini_response("", chunks=(("Week01_Intro.pdf", "intro"),))]

        result = assistant.answer("Explain the course introduction", session_id="s1")

        assert result.answer == REFUSAL_MESSAGE
        assert result.grounding_status == GroundingStatus.NOT_FOUND

    def test_week_hint_scopes_retrieval(self, assistant, fake_client, weak_response, strong_response):
        """Test a caller week hint adds the week filter."""
        fake_client.responses = [weak_response, strong_response]

        assistant.answer("מה נלמד?", session_id="s1", week="3")

        assert fake_client.attempts[0].top_k == 14
        assert fake_client.attempts[1].metadata_filter == 'week="03"'
        assert "בהקשר לשבוע 3, מה נלמד?" in fake_client.payloads[0].user_text

    def test_syllabus_question_filter(self, assistant, fake_client, strong_response):
        """Test syllabus questions are prefixed and filtered by type."""
        fake_client.responses = [strong_response, strong_response]

        assistant.answer("מה דרישות הקורס?", session_id="s1")

        assert fake_client.attempts[1].metadata_filter == 'type="syllabus"'
        assert "סילבוס הקורס: מה דרישות הקורס?" in fake_client.payloads[0].user_text

    def test_follow_up_carries_context(self, assistant, fake_client, hebrew_strong_response):
        """Test a follow-up is rewritten with the previous question."""
        fake_client.responses = [hebrew_strong_response, hebrew_strong_response]
        assistant.answer("מה זה תועלתנות?", session_id="s1")

        assistant.answer("ולמה זה חשוב?", session_id="s1")

        user_text = fake_client.payloads[-1].user_text
        assert 'בהקשר לשאלה הקודמת "מה זה תועלתנות?": ולמה זה חשוב?' in user_text
        assert "שאלה אחרונה עם מקור: מה זה תועלתנות?" in user_text
        assert "סטודנט: מה זה תועלתנות?" in user_text

    def test_self_contained_question_has_no_history(self, assistant, fake_client, hebrew_strong_response):
        """Test a definition question does not inherit earlier turns."""
        fake_client.responses = [hebrew_strong_response, hebrew_strong_response]
        assistant.answer("מה זה תועלתנות?", session_id="s1")

        assistant.answer("what is deontology?", session_id="s1")

        user_text = fake_client.payloads[-1].user_text
        assert "בהקשר לשאלה הקודמת" not in user_text
        assert "סטודנט:" not in user_text

    def test_debug_diagnostics(self, assistant, fake_client, strong_response):
        """Test debug output carries per-attempt diagnostics."""
        fake_client.responses = [strong_response]

        result = assistant.answer("Explain utilitarianism", session_id="s1", debug=True)

        diag = result.debug["diag"]
        assert diag["picked"] == "unfiltered"
        assert diag["calls"] == 1
        assert diag["candidates"]["unfiltered"]["supports_count"] == 1

    def test_injected_postprocessor_cleans_answers(
        self, conversation_store, fake_client, hebrew_strong_response
    ):
        """Test an injected post-processor cleans and finalizes the answer."""
        from course_ta.rag.assistant import CourseAssistant
        from course_ta.rag.postprocess import AnswerPostProcessor

        class PrefixingPostProcessor(AnswerPostProcessor):
            def __init__(self):
                self.cleaned = []

            def clean(self, text):
                self.cleaned.append(text)
                return "CLEANED: " + super().clean(text)

        postprocessor = PrefixingPostProcessor()
        assistant = CourseAssistant(
            conversations=conversation_store,
            postprocessor=postprocessor,
            client_factory=lambda runtime: fake_client,
        )
        fake_client.responses = [hebrew_strong_response]

        result = assistant.answer("מה זה תועלתנות?", session_id="s1")

        assert postprocessor.cleaned
        assert result.answer.startswith("CLEANED: תועלתנות היא גישה")

    def test_session_id_generated(self, assistant):
        """Test a session id is created when none is given."""
        result = assistant.answer("מה מזג האוויר?")

        assert len(result.session_id) == 32


class TestEndToEndScenarios:
    """Full pipeline scenarios with scripted retrieval outcomes."""

    def test_definition_question_grounded(self, assistant, fake_client, gemini_response):
        """Test a definition question with two supports over 15% of the text."""
        from course_ta.shared.schemas import GroundingStatus

        text = "Utilitarianism is the view that the right action maximizes overall happiness for all."
        cut = int(len(text) * 0.15)
        fake_client.responses = [
            gemini_response(
                text,
                chunks=(
                    ("Week03_Utilitarianism.pdf", "Bentham and Mill"),
                    ("Week03_Consequences.pdf", "greatest happiness"),
                    ("Syllabus.pdf", "week 3: utilitarianism"),
                ),
                supports=((0, cut // 2), (cut // 2, cut)),
            )
        ]

        result = assistant.answer("what is utilitarianism?", session_id="s1")

        assert result.grounding_status == GroundingStatus.GROUNDED
        assert result.answer == text
        assert len(result.citations) == 3
        assert len(fake_client.attempts) == 1

    def test_greeting_skips_retrieval(self, assistant, fake_client):
        """Test a pure greeting issues no retrieval call."""
        from course_ta.shared.schemas import GroundingStatus

        result = assistant.answer("hello", session_id="s1")

        assert result.grounding_status == GroundingStatus.NOT_APPLICABLE
        assert fake_client.attempts == []

    def test_week_filter_rescues_empty_unfiltered(
        self, assistant, fake_client, empty_response, gemini_response
    ):
        """Test the filtered attempt is selected when the unfiltered one is empty."""
        from course_ta.shared.schemas import AttemptStage, GroundingStatus

        text = "בשבוע 3 נלמדה התועלתנות של בנתהם ומיל."
        fake_client.responses = [
            empty_response,
            empty_response,
            gemini_response(
                text,
                chunks=(("Week03_Utilitarianism.pdf", "Bentham and Mill"),),
                supports=((0, 5), (6, 12)),
            ),
        ]

        result = assistant.answer("מה נלמד בשבוע 3?", session_id="s1", debug=True)

        assert result.grounding_status == GroundingStatus.GROUNDED
        assert result.debug["diag"]["picked"] == AttemptStage.FILTERED.value
        assert fake_client.attempts[-1].metadata_filter == 'week="03"'

    def test_nothing_found_anywhere(self, assistant, fake_client):
        """Test the refusal text when all three attempts find nothing."""
        from course_ta.rag.assistant import REFUSAL_MESSAGE
        from course_ta.shared.schemas import GroundingStatus

        result = assistant.answer("מה נלמד בשבוע 9?", session_id="s1", debug=True)

        assert result.grounding_status == GroundingStatus.NOT_FOUND
        assert result.answer == REFUSAL_MESSAGE
        assert result.debug["diag"]["calls"] == 3
        assert result.citations == []


class TestAssistantFailures:
    """Tests for hard failures from the generation layer."""

    def test_configuration_error_message(self, assistant, fake_client, conversation_store):
        """Test missing configuration gives the configuration message."""
        from course_ta.rag.assistant import CONFIGURATION_ERROR_MESSAGE
        from course_ta.shared.errors import ConfigurationError
        from course_ta.shared.schemas import GroundingStatus

        fake_client.error = ConfigurationError("Missing FILE_SEARCH_STORE_NAME")

        result = assistant.answer("Explain utilitarianism", session_id="s1")

        assert result.answer == CONFIGURATION_ERROR_MESSAGE
        assert result.grounding_status == GroundingStatus.NOT_FOUND
        assert len(conversation_store.get_recent_turns("s1")) == 2

    def test_invalid_api_key_is_configuration(self, assistant, fake_client):
        """Test an invalid key reported by the API maps to the configuration message."""
        from course_ta.rag.assistant import CONFIGURATION_ERROR_MESSAGE
        from course_ta.shared.errors import TransportError

        fake_client.error = TransportError(
            "Gemini request failed: API key not valid. Please pass a valid API key.", 400
        )

        assert assistant.answer("Explain utilitarianism", session_id="s1").answer == CONFIGURATION_ERROR_MESSAGE

    def test_transport_error_message(self, assistant, fake_client):
        """Test other failures give the try-again message."""
        from course_ta.rag.assistant import TRANSIENT_ERROR_MESSAGE
        from course_ta.shared.errors import TransportError

        fake_client.error = TransportError("Gemini request failed: Backend unavailable", 503)

        assert assistant.answer("Explain utilitarianism", session_id="s1").answer == TRANSIENT_ERROR_MESSAGE

    def test_missing_credentials_with_real_client(self, conversation_store):
        """Test the default client reports missing credentials without a request."""
        from course_ta.rag.assistant import CONFIGURATION_ERROR_MESSAGE, CourseAssistant

        assistant = CourseAssistant(conversations=conversation_store)

        assert assistant.answer("Explain utilitarianism", session_id="s1").answer == CONFIGURATION_ERROR_MESSAGE


class TestAssistantAnalytics:
    """Tests for analytics records."""

    def test_grounded_record(self, assistant, fake_client, analytics_sink, hebrew_strong_response):
        """Test one anonymized record per answered question."""
        fake_client.responses = [hebrew_strong_response]

        assistant.answer("מה זה תועלתנות?", session_id="s1")

        assert len(analytics_sink.rows) == 1
        row = analytics_sink.rows[0]
        assert row["question"] == "מה זה תועלתנות?"
        assert row["grounded"] == 1
        assert row["citationsCount"] == 1
        assert row["sessionId"] != "s1"
        assert len(row["sessionId"]) == 16
        assert row["latencyMs"] >= 0

    def test_weak_is_not_counted_grounded(self, assistant, fake_client, analytics_sink, weak_response):
        """Test only strong grounding counts as grounded."""
        fake_client.responses = [weak_response]

        assistant.answer("Explain Kant's view of duty", session_id="s1")

        assert analytics_sink.rows[0]["grounded"] == 0

    def test_failure_is_recorded(self, assistant, fake_client, analytics_sink):
        """Test failures are recorded as ungrounded."""
        from course_ta.shared.errors import TransportError

        fake_client.error = TransportError("Gemini request failed: timeout")

        assistant.answer("Explain utilitarianism", session_id="s1")

        assert analytics_sink.rows[0]["grounded"] == 0
        assert analytics_sink.rows[0]["citationsCount"] == 0

    def test_analytics_write_failure_does_not_break_answer(
        self, conversation_store, fake_client, temp_dir
    ):
        """Test an unwritable analytics file is logged and ignored."""
        from course_ta.rag.assistant import WEATHER_REPLY, CourseAssistant
        from course_ta.store.analytics import JsonlAnalyticsSink

        assistant = CourseAssistant(
            conversations=conversation_store,
            analytics=JsonlAnalyticsSink(temp_dir),
            client_factory=lambda runtime: fake_client,
        )

        assert assistant.answer("מה מזג האוויר?", session_id="s1").answer == WEATHER_REPLY


# ─────────────────────────────────────────────────────────────────────────────
# Streaming Tests
# ─────────────────────────────────────────────────────────────────────────────


def _result(answer="x" * 130, **kwargs):
    from course_ta.shared.schemas import AnswerResult, GroundingStatus, Reference

    kwargs.setdefault("grounding_status", GroundingStatus.GROUNDED)
    kwargs.setdefault("citations", [Reference(label="Week03.pdf", week="שבוע 03")])
    return AnswerResult(answer=answer, session_id="s1", **kwargs)


class TestStreaming:
    """Tests for the event stream."""

    def test_chunks_then_meta(self):
        """Test fixed-size chunks followed by exactly one meta event."""
        from course_ta.rag.streaming import iter_events

        sleeps = []
        events = list(iter_events(_result(), chunk_size=60, delay=0.01, sleep=sleeps.append))

        assert [e["type"] for e in events] == ["chunk", "chunk", "chunk", "meta"]
        assert "".join(e["value"] for e in events[:-1]) == "x" * 130
        assert sleeps == [0.01, 0.01, 0.01]

        meta = events[-1]
        assert meta["groundingStatus"] == "grounded"
        assert meta["sessionId"] == "s1"
        assert meta["citations"][0]["label"] == "Week03.pdf"
        assert "debug" not in meta

    def test_empty_answer_still_has_meta(self):
        """Test an empty answer yields one empty chunk and the meta event."""
        from course_ta.rag.streaming import iter_events

        events = list(iter_events(_result(answer=""), delay=0))

        assert events[0] == {"type": "chunk", "value": ""}
        assert events[-1]["type"] == "meta"

    def test_meta_optional_fields(self):
        """Test debug and usage fields appear only when present."""
        from course_ta.rag.streaming import iter_events

        result = _result(
            debug={"diag": {"picked": "rescue"}},
            finish_reason="STOP",
            usage_metadata={"candidatesTokenCount": 42, "thoughtsTokenCount": 7},
        )

        meta = list(iter_events(result, delay=0))[-1]

        assert meta["debug"] == {"diag": {"picked": "rescue"}}
        assert meta["geminiFinishReason"] == "STOP"
        assert meta["geminiOutputTokens"] == 42
        assert meta["geminiThoughtsTokens"] == 7

    def test_consumer_close_stops_stream(self):
        """Test closing the stream stops further chunks."""
        from course_ta.rag.streaming import iter_events

        sleeps = []
        events = iter_events(_result(), chunk_size=10, delay=0.01, sleep=sleeps.append)

        assert next(events)["type"] == "chunk"
        events.close()

        assert sleeps == []
        with pytest.raises(StopIteration):
            next(events)

    def test_sse_encoding(self):
        """Test the SSE stream ends with the done marker."""
        from course_ta.rag.streaming import SSE_DONE, iter_sse

        lines = list(iter_sse(_result(answer="שלום עולם"), chunk_size=60, delay=0))

        assert lines[-1] == SSE_DONE
        assert all(line.startswith("data: ") and line.endswith("\n\n") for line in lines)
        chunk = json.loads(lines[0][len("data: "):])
        assert chunk == {"type": "chunk", "value": "שלום עולם"}
        meta = json.loads(lines[1][len("data: "):])
        assert meta["type"] == "meta"

    def test_split_chunks(self):
        """Test chunk splitting."""
        from course_ta.rag.streaming import split_chunks

        assert split_chunks("abcdef", 4) == ["abcd", "ef"]
        assert split_chunks("", 4) == [""]
