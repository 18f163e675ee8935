"""
CourseTA - Course-scoped question answering over Gemini File Search
===================================================================

Answers student questions strictly from indexed course materials:
classify the question, fold in conversational context when needed,
run up to three retrieval-augmented generation attempts, score the
evidence for groundedness and return the answer with its citations.
"""

__version__ = "0.1.0"
__author__ = "CourseTA Team"
__license__ = "MIT"

# Public API - lazy imports to avoid circular dependencies and speed up startup
__all__ = [
    # Version info
    "__version__",
    "__author__",
    "__license__",
    # Main modules (imported on demand)
    "shared",
    "rag",
    "store",
    "cli",
]
