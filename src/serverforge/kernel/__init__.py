"""Kernel layer - validation, sandboxed execution, verification and LLM access."""
