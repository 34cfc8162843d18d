# Copyright (c) 2026 PocketLLM. Licensed under the MIT License. See LICENSE.
from ._llm import LLM
from ._server import Server

__all__ = ["Server", "LLM"]
