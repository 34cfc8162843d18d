# Copyright (c) 2026 PocketLLM. Licensed under the MIT License. See LICENSE.
"""
Generation loop.

Ties the pieces together for one request: tokenize and submit the prompt,
then repeatedly pick the greedy next token, run its text through the stop
filter, and feed it back into the model until something ends generation.
"""

import dataclasses
import enum
import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from pocketllm.decoder import DEFAULT_BATCH_CAPACITY, DecoderDriver
from pocketllm.sampling import greedy_select
from pocketllm.stop_filter import (
    DEFAULT_FLUSH_THRESHOLD,
    DEFAULT_RETAINED_TAIL,
    StopSequenceFilter,
    build_stop_set,
)

logger = logging.getLogger(__name__)

ERROR_MODEL_NOT_LOADED = "Error: Model not loaded"
ERROR_DECODE_FAILED = "Error: Decode failed"


@dataclass(frozen=True)
class GenerationConfig:
    """Tunables for a generation call. Defaults match the shipped behaviour."""

    n_ctx: int = 2048
    n_threads: int = 4
    max_context_length: int = DEFAULT_BATCH_CAPACITY
    max_new_tokens: int = 400
    flush_threshold: int = DEFAULT_FLUSH_THRESHOLD
    retained_tail: int = DEFAULT_RETAINED_TAIL
    # Added to the built-in markers, never in place of them
    stop_strings: tuple[str, ...] = ()

    def __post_init__(self):
        if self.n_ctx < 1:
            raise ValueError("n_ctx must be >= 1")
        if self.n_threads < 0:
            raise ValueError("n_threads must be >= 0")
        if self.max_context_length < 1:
            raise ValueError("max_context_length must be >= 1")
        if self.max_new_tokens < 0:
            raise ValueError("max_new_tokens must be >= 0")
        if self.retained_tail < 0 or self.flush_threshold < self.retained_tail:
            raise ValueError("flush_threshold must be >= retained_tail >= 0")
        # Accept any iterable (e.g. a list from generation_config.json)
        object.__setattr__(self, "stop_strings", tuple(self.stop_strings))

    def replace(self, **overrides) -> "GenerationConfig":
        return dataclasses.replace(self, **overrides)


class GenerationState(enum.Enum):
    IDLE = "idle"
    PROMPT_SUBMITTED = "prompt_submitted"
    GENERATING = "generating"
    STOPPED = "stopped"


class FinishReason(enum.Enum):
    END_OF_GENERATION = "end_of_generation"
    STOP_SEQUENCE = "stop_sequence"
    LENGTH = "length"
    DECODE_FAILED = "decode_failed"
    NO_SCORES = "no_scores"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class GenerationResult:
    text: str
    finish_reason: FinishReason
    prompt_tokens: int = 0
    completion_tokens: int = 0
    error: str | None = None

    @property
    def finish_reason_label(self) -> str:
        """OpenAI-style finish_reason string."""
        if self.finish_reason is FinishReason.LENGTH:
            return "length"
        if self.finish_reason is FinishReason.ERROR:
            return "error"
        return "stop"


class Generation:
    """A single generation call against an exclusively held context.

    Walks IDLE -> PROMPT_SUBMITTED -> GENERATING -> STOPPED. Every exit
    that is not a fatal pre-loop error finalizes the stop filter before
    returning.
    """

    def __init__(
        self,
        context,
        emit: Callable[[str], None],
        stop: str | Iterable[str] | None = None,
        config: GenerationConfig | None = None,
        max_new_tokens: int | None = None,
        cancel: threading.Event | None = None,
        add_special_tokens: bool = True,
    ):
        self.context = context
        self.config = config or GenerationConfig()
        self.max_new_tokens = (
            max_new_tokens if max_new_tokens is not None else self.config.max_new_tokens
        )
        self.cancel = cancel
        self.add_special_tokens = add_special_tokens
        self.state = GenerationState.IDLE
        self._fragments: list[str] = []

        def sink(fragment: str) -> None:
            self._fragments.append(fragment)
            emit(fragment)

        self._emit = sink
        self.stops = build_stop_set(stop, self.config.stop_strings)

    def _fail(self, message: str) -> GenerationResult:
        logger.warning(message)
        self.state = GenerationState.STOPPED
        self._emit(message)
        return GenerationResult(
            text="", finish_reason=FinishReason.ERROR, error=message
        )

    def run(self, prompt: str) -> GenerationResult:
        context = self.context
        if context is None or context.closed:
            return self._fail(ERROR_MODEL_NOT_LOADED)

        with context.lock:
            context.clear_cache()
            token_ids = context.tokenize(prompt, add_special_tokens=self.add_special_tokens)
            driver = DecoderDriver(context, self.config.max_context_length)
            if not driver.submit_prompt(token_ids):
                return self._fail(ERROR_DECODE_FAILED)
            self.state = GenerationState.PROMPT_SUBMITTED

            stop_filter = StopSequenceFilter(
                self.stops,
                self._emit,
                flush_threshold=self.config.flush_threshold,
                retained_tail=self.config.retained_tail,
            )
            finish_reason, completion_tokens = self._loop(
                driver, stop_filter, len(token_ids)
            )
            stop_filter.finalize()

        self.state = GenerationState.STOPPED
        logger.debug(
            "Generation finished: %s after %d tokens",
            finish_reason.value,
            completion_tokens,
        )
        return GenerationResult(
            text="".join(self._fragments),
            finish_reason=finish_reason,
            prompt_tokens=len(token_ids),
            completion_tokens=completion_tokens,
        )

    def _loop(self, driver: DecoderDriver, stop_filter: StopSequenceFilter, n_prompt: int):
        """Returns (finish_reason, number of tokens selected)."""
        context = self.context
        vocab_size = context.vocabulary_size()
        self.state = GenerationState.GENERATING

        for i in range(self.max_new_tokens):
            if self.cancel is not None and self.cancel.is_set():
                return FinishReason.CANCELLED, i

            token_id = greedy_select(driver.scores(), vocab_size)
            if token_id is None:
                logger.info("No scores at step %d; ending generation", i)
                return FinishReason.NO_SCORES, i

            if context.is_end_of_generation(token_id):
                return FinishReason.END_OF_GENERATION, i

            piece = context.detokenize(token_id)
            if piece and stop_filter.ingest(piece):
                return FinishReason.STOP_SEQUENCE, i + 1

            # Fails near the context limit; that just ends generation.
            if not driver.feed_token(token_id, n_prompt + i):
                logger.info("Decode failed at position %d; ending generation", n_prompt + i)
                return FinishReason.DECODE_FAILED, i + 1

        return FinishReason.LENGTH, self.max_new_tokens


def generate(
    context,
    prompt: str,
    stop: str | Iterable[str] | None,
    emit: Callable[[str], None],
    config: GenerationConfig | None = None,
    max_new_tokens: int | None = None,
    cancel: threading.Event | None = None,
    add_special_tokens: bool = True,
) -> GenerationResult:
    """Stream a greedy completion of *prompt* to *emit*.

    Fatal failures before the loop (no model, prompt decode failure) are
    reported as an error fragment through *emit*; everything else ends
    quietly with whatever text was already emitted.

    Pass ``add_special_tokens=False`` for prompts rendered by a chat template.
    """
    return Generation(
        context,
        emit,
        stop=stop,
        config=config,
        max_new_tokens=max_new_tokens,
        cancel=cancel,
        add_special_tokens=add_special_tokens,
    ).run(prompt)


def complete(
    context,
    prompt: str,
    stop: str | Iterable[str] | None = None,
    config: GenerationConfig | None = None,
    max_new_tokens: int | None = None,
) -> GenerationResult:
    """Non-streaming variant of :func:`generate`; the text is in the result."""
    return generate(
        context,
        prompt,
        stop,
        lambda fragment: None,
        config=config,
        max_new_tokens=max_new_tokens,
    )
