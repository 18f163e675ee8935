"""
Tests Package - Unit and integration tests for CourseTA.
========================================================

Test modules:
- test_rag: Classifier, context, prompts, normalizer, post-processing, grounding tests
- test_retrieval: Retrieval plan, state transitions, orchestrator and client tests
- test_pipeline: Assistant branches, end-to-end scenarios, analytics and streaming tests
- test_shared: Settings, runtime config, errors, utils, stores and CLI tests

Run tests with:
    pytest tests/
    pytest tests/ -v -m "not requires_api"
"""
