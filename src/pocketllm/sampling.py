# Copyright (c) 2026 PocketLLM. Licensed under the MIT License. See LICENSE.
"""Greedy next-token selection."""


def greedy_select(scores, vocab_size: int | None = None) -> int | None:
    """Return the id with the highest score, or None if there are no scores.

    Ties go to the lowest id. Array-likes with an ``argmax`` method (torch
    tensors, numpy arrays) already resolve ties that way.
    """
    if scores is None:
        return None
    if vocab_size is not None:
        scores = scores[:vocab_size]
    if len(scores) == 0:
        return None
    if hasattr(scores, "argmax"):
        return int(scores.argmax())

    best_id = 0
    best = scores[0]
    for i in range(1, len(scores)):
        if scores[i] > best:
            best = scores[i]
            best_id = i
    return best_id
