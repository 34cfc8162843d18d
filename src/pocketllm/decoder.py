# Copyright (c) 2026 PocketLLM. Licensed under the MIT License. See LICENSE.
"""Batch bookkeeping and the step-by-step feed into the model."""

import logging

logger = logging.getLogger(__name__)

DEFAULT_BATCH_CAPACITY = 4096


class BatchOverflowError(ValueError):
    """Raised when more slots are added than the batch can hold."""


class Batch:
    """Token slots submitted to the model in one decode call.

    Each slot carries a token id, its absolute position, and whether the
    model should produce scores for it. The buffers are allocated once and
    reused across steps.
    """

    def __init__(self, capacity: int = DEFAULT_BATCH_CAPACITY):
        if capacity < 1:
            raise ValueError("batch capacity must be >= 1")
        self.capacity = capacity
        self.tokens = [0] * capacity
        self.positions = [0] * capacity
        self.logits = [False] * capacity
        self.n_tokens = 0

    def clear(self) -> None:
        self.n_tokens = 0

    def add(self, token_id: int, position: int, logits: bool) -> None:
        if self.n_tokens >= self.capacity:
            raise BatchOverflowError(f"batch is full ({self.capacity} slots)")
        i = self.n_tokens
        self.tokens[i] = token_id
        self.positions[i] = position
        self.logits[i] = logits
        self.n_tokens += 1

    def slots(self):
        """Yield (token_id, position, logits) for the filled slots."""
        for i in range(self.n_tokens):
            yield self.tokens[i], self.positions[i], self.logits[i]


class DecoderDriver:
    """Feeds the prompt, then one token per step, into a model context."""

    def __init__(self, context, capacity: int = DEFAULT_BATCH_CAPACITY):
        self.context = context
        self.batch = Batch(capacity)

    def submit_prompt(self, token_ids: list[int]) -> bool:
        """Decode the whole prompt; only the last slot requests scores."""
        if not token_ids:
            logger.warning("Refusing to decode an empty prompt")
            return False
        if len(token_ids) > self.batch.capacity:
            logger.warning(
                "Prompt length (%d tokens) exceeds batch capacity (%d)",
                len(token_ids),
                self.batch.capacity,
            )
            return False

        self.batch.clear()
        last = len(token_ids) - 1
        for i, token_id in enumerate(token_ids):
            self.batch.add(token_id, i, i == last)
        return self.context.decode(self.batch)

    def feed_token(self, token_id: int, position: int) -> bool:
        """Decode a single generated token at its absolute position."""
        self.batch.clear()
        self.batch.add(token_id, position, True)
        return self.context.decode(self.batch)

    def scores(self):
        """Scores for the last slot of the most recent decode, or None."""
        if self.batch.n_tokens == 0:
            return None
        return self.context.get_scores(self.batch.n_tokens - 1)
