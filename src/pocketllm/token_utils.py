# Copyright (c) 2026 PocketLLM. Licensed under the MIT License. See LICENSE.
"""
Token-by-token detokenization.

Used by the transformers backend to turn each generated token into the piece
the stop filter consumes, handling the pair-decode trick needed for correct
spacing with sentencepiece tokenizers.
"""


class IncrementalDecoder:
    """Decodes token IDs one at a time, preserving inter-token spacing."""

    def __init__(self, tokenizer, skip_special_tokens: bool = True):
        self.tokenizer = tokenizer
        self.skip_special_tokens = skip_special_tokens
        self.prev_token = None

    def decode(self, token_id: int) -> str:
        """Decode a single token ID to its text fragment.

        Uses pair-decoding with the previous token to preserve whitespace
        that sentencepiece tokenizers encode as part of the next token.
        """
        skip = self.skip_special_tokens
        if self.prev_token is None:
            text = self.tokenizer.decode([token_id], skip_special_tokens=skip)
        else:
            pair = self.tokenizer.decode(
                [self.prev_token, token_id], skip_special_tokens=skip
            )
            prev_alone = self.tokenizer.decode(
                [self.prev_token], skip_special_tokens=skip
            )
            text = pair[len(prev_alone) :]
        self.prev_token = token_id
        return text

    def reset(self):
        """Reset state for a new generation sequence."""
        self.prev_token = None
