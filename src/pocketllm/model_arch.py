# Copyright (c) 2026 PocketLLM. Licensed under the MIT License. See LICENSE.
"""
Model configuration.

Extracts what the generation loop needs from a Hugging Face model directory:
vocabulary size, context length, and every token id that ends generation.
"""

import json
import os
from dataclasses import dataclass
from typing import Optional

# Added-token contents that end a turn in the chat formats we know about.
STOP_TOKEN_NAMES = (
    "<|eot_id|>",
    "<|im_end|>",
    "<|end_of_text|>",
    "<|endoftext|>",
    "</s>",
)


def _stop_token_ids(tokenizer_json_path: str) -> list[int]:
    """Collect ids of known end-of-turn tokens from tokenizer.json."""
    if not os.path.exists(tokenizer_json_path):
        return []
    try:
        with open(tokenizer_json_path, encoding="utf-8") as f:
            tokenizer_data = json.load(f)
        return [
            entry["id"]
            for entry in tokenizer_data.get("added_tokens", [])
            if entry.get("content", "") in STOP_TOKEN_NAMES
        ]
    except (json.JSONDecodeError, IOError, KeyError):
        return []


@dataclass
class ModelConfig:
    """Extracted model configuration."""

    architecture: str
    vocab_size: int
    max_position_embeddings: int
    eos_tokens: list[int]

    @classmethod
    def from_config_json(
        cls, config_path: str, model_dir: Optional[str] = None
    ) -> "ModelConfig":
        """Parse config.json and extract model configuration."""
        with open(config_path, encoding="utf-8") as f:
            config = json.load(f)

        architectures = config.get("architectures", [])
        architecture = architectures[0] if architectures else "Unknown"

        vocab_size = config.get("vocab_size", 32000)
        max_position_embeddings = config.get("max_position_embeddings", 2048)

        # config.json eos_token_id is authoritative and may be a list
        eos_tokens = []
        eot_raw = config.get("eos_token_id")
        if isinstance(eot_raw, list):
            eos_tokens.extend(eot_raw)
        elif eot_raw is not None:
            eos_tokens.append(eot_raw)

        if model_dir:
            eos_tokens.extend(_stop_token_ids(os.path.join(model_dir, "tokenizer.json")))

        # Deduplicate while preserving order
        seen = set()
        eos_tokens = [t for t in eos_tokens if not (t in seen or seen.add(t))]

        return cls(
            architecture=architecture,
            vocab_size=vocab_size,
            max_position_embeddings=max_position_embeddings,
            eos_tokens=eos_tokens,
        )
