# Copyright (c) 2026 PocketLLM. Licensed under the MIT License. See LICENSE.
"""PocketLLM: greedy local generation with streaming stop-sequence filtering"""

from pocketllm.generation import (
    FinishReason,
    GenerationConfig,
    GenerationResult,
    complete,
    generate,
)
from pocketllm.stop_filter import StopSequenceFilter

__all__ = [
    "Server",
    "LLM",
    "FinishReason",
    "GenerationConfig",
    "GenerationResult",
    "StopSequenceFilter",
    "complete",
    "generate",
]


def __getattr__(name: str):
    if name == "LLM":
        from .server._llm import LLM

        return LLM
    if name == "Server":
        from .server._server import Server

        return Server
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
