# Copyright (c) 2026 PocketLLM. Licensed under the MIT License. See LICENSE.
"""Pydantic request/response models for the PocketLLM API."""

import enum

from pydantic import BaseModel, field_validator

MAX_STOP_SEQUENCES = 4


# ---------------------------------------------------------------------------
# Chat / Completion models
# ---------------------------------------------------------------------------


class ChatMessage(BaseModel):
    role: str
    content: str


class _GenerationValidators:
    @field_validator("max_tokens")
    @classmethod
    def _check_max_tokens(cls, v: int | None) -> int | None:
        if v is not None and v < 1:
            raise ValueError("max_tokens must be >= 1")
        return v

    @field_validator("stop")
    @classmethod
    def _normalize_stop(cls, v: str | list[str] | None) -> list[str]:
        """A bare string is one stop sequence; empty strings match nothing."""
        if v is None:
            return []
        stops = [v] if isinstance(v, str) else v
        if len(stops) > MAX_STOP_SEQUENCES:
            raise ValueError(f"at most {MAX_STOP_SEQUENCES} stop sequences are supported")
        return [s for s in stops if s]


class ChatCompletionRequest(_GenerationValidators, BaseModel):
    model: str = ""
    messages: list[ChatMessage]
    max_tokens: int | None = None
    stop: str | list[str] | None = None
    stream: bool = False


class CompletionRequest(_GenerationValidators, BaseModel):
    model: str = ""
    prompt: str
    max_tokens: int | None = None
    stop: str | list[str] | None = None
    stream: bool = False


class ChatChoice(BaseModel):
    index: int = 0
    message: ChatMessage
    finish_reason: str | None = None


class CompletionChoice(BaseModel):
    index: int = 0
    text: str = ""
    finish_reason: str | None = None


class UsageInfo(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatCompletionResponse(BaseModel):
    id: str
    object: str = "chat.completion"
    created: int
    model: str
    choices: list[ChatChoice]
    usage: UsageInfo | None = None


class CompletionResponse(BaseModel):
    id: str
    object: str = "text_completion"
    created: int
    model: str
    choices: list[CompletionChoice]
    usage: UsageInfo | None = None


# ---------------------------------------------------------------------------
# Streaming chunks (one per SSE ``data:`` line)
# ---------------------------------------------------------------------------


class ChatChunkChoice(BaseModel):
    index: int = 0
    # {"role": ...} first, then {"content": ...} per fragment, {} at the end
    delta: dict[str, str]
    finish_reason: str | None = None


class ChatCompletionChunk(BaseModel):
    id: str
    object: str = "chat.completion.chunk"
    created: int
    model: str
    choices: list[ChatChunkChoice]


class CompletionChunk(BaseModel):
    id: str
    object: str = "text_completion"
    created: int
    model: str
    choices: list[CompletionChoice]


# ---------------------------------------------------------------------------
# Model management
# ---------------------------------------------------------------------------


class ModelInfo(BaseModel):
    id: str
    object: str = "model"
    created: int = 0
    owned_by: str = "local"


class ModelListResponse(BaseModel):
    object: str = "list"
    data: list[ModelInfo]


class ServerState(enum.Enum):
    RUNNING = "running"
    SWAPPING = "swapping"
    NO_MODEL = "no_model"


class LoadModelRequest(BaseModel):
    model_dir: str
    threads: int | None = None  # None = keep server default, 0 = auto


class LoadModelResponse(BaseModel):
    status: str
    model: str
    message: str = ""
