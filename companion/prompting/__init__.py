"""Prompting package.

This package contains deterministic prompt-construction helpers used by the
registry and the coordinator. It does not perform retrieval, memory access or
model invocation.
"""
