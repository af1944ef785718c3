"""LLM access package.

Architectural role:
    Provides the generation provider contract and the transport adapter used by
    the registry and the coordinator to invoke text-generation backends.

Module split:
    - `service`: result types, provider protocol, auxiliary calls and parsers.
    - `client`: OpenAI-compatible HTTP transport (single-shot and streaming).
"""
