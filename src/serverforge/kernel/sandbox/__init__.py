"""Kernel Sandbox - process-isolated execution of generated handler code.

One OS process per call, hard wall-clock timeout, structured result
extraction through a stdout marker, scratch directory removed on every path.
"""

from serverforge.kernel.sandbox.sandbox_runner import (
    SANDBOX_RESULT_MARKER,
    JailedBackend,
    ProcessResult,
    SandboxBackend,
    SandboxEngine,
    SandboxOutcome,
    SandboxRequest,
    UnconfinedBackend,
    create_sandbox_backend,
    create_sandbox_engine,
    decode_outcome,
    get_sandbox_engine,
    parse_result_marker,
    reset_sandbox_engine,
)

__all__ = [
    "SandboxEngine",
    "SandboxBackend",
    "UnconfinedBackend",
    "JailedBackend",
    "SandboxRequest",
    "SandboxOutcome",
    "ProcessResult",
    "SANDBOX_RESULT_MARKER",
    "parse_result_marker",
    "decode_outcome",
    "create_sandbox_backend",
    "create_sandbox_engine",
    "get_sandbox_engine",
    "reset_sandbox_engine",
]
