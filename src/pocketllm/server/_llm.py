# Copyright (c) 2026 PocketLLM. Licensed under the MIT License. See LICENSE.
"""LLM component: wraps a model context and exposes inference routes."""

import asyncio
import functools
import logging
import os
import threading
from collections.abc import AsyncIterator

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse

from pocketllm.generation import FinishReason, GenerationConfig, GenerationResult, generate
from pocketllm.utils import has_chat_template, load_generation_config, render_chat_prompt

from ._component import Component
from ._helpers import make_id, now
from ._models import (
    ChatChoice,
    ChatChunkChoice,
    ChatCompletionChunk,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatMessage,
    CompletionChoice,
    CompletionChunk,
    CompletionRequest,
    CompletionResponse,
    LoadModelRequest,
    LoadModelResponse,
    ModelInfo,
    ModelListResponse,
    ServerState,
    UsageInfo,
)

logger = logging.getLogger(__name__)

_DONE = object()


def _default_loader(model_dir: str, **kwargs):
    from pocketllm.context import TransformersContext

    return TransformersContext.load(model_dir, **kwargs)


# ---------------------------------------------------------------------------
# InferenceEngine
# ---------------------------------------------------------------------------


class GenerationStream:
    """One generation call: iterate for fragments, then read ``result``.

    The synchronous loop runs in the default executor while fragments are
    handed back to the event loop through a queue. ``result`` belongs to
    this call alone and is set once iteration finishes.
    """

    def __init__(
        self,
        engine: "InferenceEngine",
        prompt: str,
        stop: str | list[str] | None,
        max_tokens: int | None,
        add_special_tokens: bool,
    ):
        self._engine = engine
        self._prompt = prompt
        self._stop = stop
        self._max_tokens = max_tokens
        self._add_special_tokens = add_special_tokens
        self.result: GenerationResult | None = None

    def __aiter__(self) -> AsyncIterator[str]:
        return self._fragments()

    async def _fragments(self) -> AsyncIterator[str]:
        engine = self._engine
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        cancel = threading.Event()

        def emit(fragment: str) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, fragment)

        def run() -> GenerationResult:
            try:
                return generate(
                    engine.context,
                    self._prompt,
                    self._stop,
                    emit,
                    config=engine.config,
                    max_new_tokens=self._max_tokens,
                    cancel=cancel,
                    add_special_tokens=self._add_special_tokens,
                )
            finally:
                loop.call_soon_threadsafe(queue.put_nowait, _DONE)

        async with engine.lock:
            future = loop.run_in_executor(None, run)
            try:
                while True:
                    item = await queue.get()
                    if item is _DONE:
                        break
                    yield item
                self.result = await future
            finally:
                # Client went away mid-stream: stop between iterations and
                # keep the context locked until the worker lets go of it.
                cancel.set()
                if not future.done():
                    await asyncio.wait([future])


class InferenceEngine:
    """Serializes generation calls against one model context."""

    def __init__(self, context, config: GenerationConfig):
        self.context = context
        self.config = config
        self.lock = asyncio.Lock()

    async def stop(self):
        """Release the model context."""
        async with self.lock:
            if self.context is not None:
                self.context.close()

    def generate(
        self,
        prompt: str,
        stop: str | list[str] | None = None,
        max_tokens: int | None = None,
        add_special_tokens: bool = True,
    ) -> GenerationStream:
        return GenerationStream(self, prompt, stop, max_tokens, add_special_tokens)


# ---------------------------------------------------------------------------
# LLM component
# ---------------------------------------------------------------------------


class LLM(Component):
    """CPU inference component. Owns the model context and exposes
    /v1/models, /v1/models/load, /v1/chat/completions, /v1/completions."""

    def __init__(
        self,
        model_dir: str,
        num_threads: int = 0,
        config: GenerationConfig | None = None,
        trust_remote_code: bool = False,
        loader=None,
    ):
        self._model_dir = model_dir
        self._num_threads = num_threads
        self._config = config
        self._trust_remote_code = trust_remote_code
        self._loader = loader or _default_loader
        self.engine: InferenceEngine | None = None
        self.model_name: str = "unknown"
        self.state: ServerState = ServerState.NO_MODEL
        self._swap_lock: asyncio.Lock | None = None

    # -- lifecycle -----------------------------------------------------------

    async def _load_engine(self, model_dir: str, num_threads: int) -> InferenceEngine:
        if self._config is not None:
            config = self._config
            if num_threads:
                config = config.replace(n_threads=num_threads)
        else:
            config = load_generation_config(model_dir, n_threads=num_threads or None)

        loop = asyncio.get_running_loop()
        context = await loop.run_in_executor(
            None,
            functools.partial(
                self._loader,
                model_dir,
                n_ctx=config.n_ctx,
                n_threads=config.n_threads,
                trust_remote_code=self._trust_remote_code,
            ),
        )
        return InferenceEngine(context, config)

    async def start(self) -> None:
        self._swap_lock = asyncio.Lock()
        self.engine = await self._load_engine(self._model_dir, self._num_threads)
        self.model_name = os.path.basename(os.path.normpath(self._model_dir))
        self.state = ServerState.RUNNING

    async def stop(self) -> None:
        self.state = ServerState.NO_MODEL
        if self.engine is not None:
            await self.engine.stop()

    # -- hot-swap ------------------------------------------------------------

    async def _swap_engine(
        self, model_dir: str, num_threads: int | None = None
    ) -> LoadModelResponse:
        config_path = os.path.join(model_dir, "config.json")
        if not os.path.exists(config_path):
            return LoadModelResponse(
                status="error",
                model=self.model_name,
                message=f"config.json not found in {model_dir}",
            )

        # The old context must be gone before the new one claims memory
        if self.engine is not None:
            await self.engine.stop()
            self.engine = None

        threads = num_threads if num_threads is not None else self._num_threads
        new_name = os.path.basename(os.path.normpath(model_dir))
        try:
            new_engine = await self._load_engine(model_dir, threads)
        except (RuntimeError, ValueError, OSError) as exc:
            logger.warning("Failed to load %s: %s", model_dir, exc)
            self.state = ServerState.NO_MODEL
            return LoadModelResponse(
                status="error",
                model=new_name,
                message=f"Failed to load model: {exc}",
            )

        self.engine = new_engine
        self._model_dir = model_dir
        self._num_threads = threads
        self.model_name = new_name
        self.state = ServerState.RUNNING

        return LoadModelResponse(status="success", model=self.model_name)

    # -- router --------------------------------------------------------------

    def _require_engine(self) -> InferenceEngine:
        if self.state == ServerState.SWAPPING:
            raise HTTPException(status_code=503, detail="Model swap in progress")
        if self.engine is None or self.state != ServerState.RUNNING:
            raise HTTPException(status_code=503, detail="No model loaded")
        return self.engine

    def router(self) -> APIRouter:
        r = APIRouter()
        llm = self  # closure reference

        @r.get("/v1/models")
        async def list_models():
            if llm.state != ServerState.RUNNING:
                return ModelListResponse(data=[])
            return ModelListResponse(data=[ModelInfo(id=llm.model_name)])

        @r.post("/v1/models/load")
        async def load_model(req: LoadModelRequest):
            from pocketllm.model_store import MODELS_DIR, resolve_model_dir

            try:
                model_dir = resolve_model_dir(req.model_dir, MODELS_DIR)
            except RuntimeError:
                raise HTTPException(status_code=404, detail=f"Model '{req.model_dir}' not found")
            resolved = os.path.realpath(model_dir)
            allowed = os.path.realpath(str(MODELS_DIR))
            if not resolved.startswith(allowed + os.sep):
                raise HTTPException(
                    status_code=403,
                    detail="Only models in ~/.pocketllm/models/ can be loaded.",
                )

            if llm._swap_lock is not None and llm._swap_lock.locked():
                raise HTTPException(status_code=409, detail="Model swap already in progress")

            async with llm._swap_lock:
                llm.state = ServerState.SWAPPING
                result = await llm._swap_engine(model_dir, num_threads=req.threads)

            if result.status == "error":
                if llm.engine is not None:
                    llm.state = ServerState.RUNNING
                raise HTTPException(status_code=500, detail=result.message)
            return result

        @r.post("/v1/chat/completions")
        async def chat_completions(req: ChatCompletionRequest):
            engine = llm._require_engine()
            messages = [{"role": m.role, "content": m.content} for m in req.messages]
            tokenizer = getattr(engine.context, "tokenizer", None)
            stream = engine.generate(
                render_chat_prompt(tokenizer, messages),
                stop=req.stop,
                max_tokens=req.max_tokens,
                add_special_tokens=not has_chat_template(tokenizer),
            )
            model = req.model or llm.model_name

            if req.stream:
                return StreamingResponse(
                    _stream_chat(stream, model),
                    media_type="text/event-stream",
                )

            result = await _run_to_completion(stream)
            return ChatCompletionResponse(
                id=make_id(),
                created=now(),
                model=model,
                choices=[
                    ChatChoice(
                        message=ChatMessage(role="assistant", content=result.text),
                        finish_reason=result.finish_reason_label,
                    )
                ],
                usage=_usage(result),
            )

        @r.post("/v1/completions")
        async def completions(req: CompletionRequest):
            engine = llm._require_engine()
            stream = engine.generate(req.prompt, stop=req.stop, max_tokens=req.max_tokens)
            model = req.model or llm.model_name

            if req.stream:
                return StreamingResponse(
                    _stream_completion(stream, model),
                    media_type="text/event-stream",
                )

            result = await _run_to_completion(stream)
            return CompletionResponse(
                id=make_id("cmpl"),
                created=now(),
                model=model,
                choices=[
                    CompletionChoice(text=result.text, finish_reason=result.finish_reason_label)
                ],
                usage=_usage(result),
            )

        return r


async def _run_to_completion(stream: GenerationStream) -> GenerationResult:
    async for _ in stream:
        pass
    result = stream.result
    if result.finish_reason is FinishReason.ERROR:
        raise HTTPException(status_code=500, detail=result.error)
    return result


def _usage(result: GenerationResult) -> UsageInfo:
    return UsageInfo(
        prompt_tokens=result.prompt_tokens,
        completion_tokens=result.completion_tokens,
        total_tokens=result.prompt_tokens + result.completion_tokens,
    )


# ---------------------------------------------------------------------------
# Streaming helpers (module-level async generators)
# ---------------------------------------------------------------------------


def _sse(chunk) -> str:
    return f"data: {chunk.model_dump_json()}\n\n"


async def _stream_chat(stream: GenerationStream, model: str):
    req_id = make_id()
    created = now()

    def chunk(delta: dict, finish_reason: str | None = None) -> str:
        return _sse(
            ChatCompletionChunk(
                id=req_id,
                created=created,
                model=model,
                choices=[ChatChunkChoice(delta=delta, finish_reason=finish_reason)],
            )
        )

    yield chunk({"role": "assistant"})
    async for text in stream:
        yield chunk({"content": text})
    yield chunk({}, stream.result.finish_reason_label)
    yield "data: [DONE]\n\n"


async def _stream_completion(stream: GenerationStream, model: str):
    req_id = make_id("cmpl")
    created = now()

    def chunk(text: str, finish_reason: str | None = None) -> str:
        return _sse(
            CompletionChunk(
                id=req_id,
                created=created,
                model=model,
                choices=[CompletionChoice(text=text, finish_reason=finish_reason)],
            )
        )

    async for text in stream:
        yield chunk(text)
    yield chunk("", stream.result.finish_reason_label)
    yield "data: [DONE]\n\n"
