"""
RAG Module - Retrieval-grounding-answer pipeline.
=================================================

This module implements the complete answer workflow:

- classifier: Intent detection and question metadata
- context: Conversational context carry-over
- prompts: System and user prompt templates
- client: Gemini generateContent client with File Search
- normalizer: Response parsing, references and coverage
- postprocess: Answer text cleanup
- grounding: Groundedness verdicts
- orchestrator: Multi-attempt retrieval state machine
- assistant: End-to-end pipeline with intent branches
- streaming: Chunked event stream for a finished answer

Flow:
    Question → Classifier → ContextRewriter → PromptBuilder
    → RetrievalOrchestrator (1-3 calls) → GroundingScorer → Answer + Citations
"""

from course_ta.rag.assistant import CourseAssistant, ask, get_assistant
from course_ta.rag.classifier import QuestionClassifier, classify_question
from course_ta.rag.client import GeminiClient, GenerationClient
from course_ta.rag.context import ContextRewriter, should_carry_context
from course_ta.rag.grounding import GroundingScorer, score_response
from course_ta.rag.normalizer import ResponseNormalizer, parse_response
from course_ta.rag.orchestrator import RetrievalOrchestrator, RetrievalPlan, transition
from course_ta.rag.postprocess import AnswerPostProcessor, clean_answer
from course_ta.rag.prompts import PromptBuilder
from course_ta.rag.streaming import iter_events, iter_sse

__all__ = [
    # Assistant
    "CourseAssistant",
    "ask",
    "get_assistant",
    # Classifier
    "QuestionClassifier",
    "classify_question",
    # Client
    "GeminiClient",
    "GenerationClient",
    # Context
    "ContextRewriter",
    "should_carry_context",
    # Grounding
    "GroundingScorer",
    "score_response",
    # Normalizer
    "ResponseNormalizer",
    "parse_response",
    # Orchestrator
    "RetrievalOrchestrator",
    "RetrievalPlan",
    "transition",
    # Postprocess
    "AnswerPostProcessor",
    "clean_answer",
    # Prompts
    "PromptBuilder",
    # Streaming
    "iter_events",
    "iter_sse",
]
