# Copyright (c) 2026 PocketLLM. Licensed under the MIT License. See LICENSE.
"""Shared utility functions used across the chat CLI, the backend and the API server."""

import importlib.util
import json
import logging
import os

from pocketllm.generation import GenerationConfig

logger = logging.getLogger(__name__)

# generation_config.json keys that map onto GenerationConfig fields
_GENERATION_CONFIG_KEYS = (
    "n_ctx",
    "n_threads",
    "max_context_length",
    "max_new_tokens",
    "flush_threshold",
    "retained_tail",
    "stop_strings",
)


def load_tokenizer(model_dir: str, trust_remote_code: bool = False):
    """
    Load tokenizer from a model directory, handling custom tokenizer classes.
    If tokenizer_config.json specifies a custom tokenizer_class, import it
    from the model directory, but only when trust_remote_code=True.
    """
    from transformers import AutoTokenizer

    tokenizer_config_path = os.path.join(model_dir, "tokenizer_config.json")

    if os.path.exists(tokenizer_config_path):
        with open(tokenizer_config_path, encoding="utf-8") as f:
            tokenizer_config = json.load(f)

        tokenizer_class = tokenizer_config.get("tokenizer_class", "")

        if tokenizer_class and tokenizer_class not in (
            "PreTrainedTokenizer",
            "PreTrainedTokenizerFast",
        ):
            tokenization_file = os.path.join(
                model_dir,
                f"tokenization_{tokenizer_class.lower().replace('tokenizer', '')}.py",
            )

            if os.path.exists(tokenization_file):
                if not trust_remote_code:
                    logger.warning(
                        "This model requires custom tokenizer code (%s). "
                        "Re-run with --trust-remote-code to allow loading it. "
                        "Falling back to AutoTokenizer.",
                        os.path.basename(tokenization_file),
                    )
                else:
                    logger.warning(
                        "Loading custom tokenizer code (%s) from model directory. "
                        "Only use --trust-remote-code with models you trust.",
                        os.path.basename(tokenization_file),
                    )
                    spec = importlib.util.spec_from_file_location(
                        "custom_tokenizer", tokenization_file
                    )
                    module = importlib.util.module_from_spec(spec)
                    spec.loader.exec_module(module)

                    if hasattr(module, tokenizer_class):
                        custom_tokenizer_cls = getattr(module, tokenizer_class)
                        return custom_tokenizer_cls.from_pretrained(model_dir)

    return AutoTokenizer.from_pretrained(model_dir)


def load_generation_config(model_dir: str | None = None, **overrides) -> GenerationConfig:
    """Build a GenerationConfig from defaults, generation_config.json, then
    explicit overrides. Overrides that are None are ignored."""
    values: dict = {}
    if model_dir:
        gen_config_path = os.path.join(model_dir, "generation_config.json")
        if os.path.exists(gen_config_path):
            with open(gen_config_path, encoding="utf-8") as f:
                gen_config = json.load(f)
            for key in _GENERATION_CONFIG_KEYS:
                if key in gen_config:
                    values[key] = gen_config[key]

    for key, value in overrides.items():
        if key not in _GENERATION_CONFIG_KEYS:
            raise ValueError(f"Unknown generation option '{key}'")
        if value is not None:
            values[key] = value
    return GenerationConfig(**values)


def has_chat_template(tokenizer) -> bool:
    return bool(getattr(tokenizer, "chat_template", None))


def render_chat_prompt(tokenizer, messages: list[dict]) -> str:
    """Render chat messages into a prompt ending with the assistant turn.

    A template-rendered prompt already holds the BOS token; encode it with
    ``add_special_tokens=False`` (see :func:`has_chat_template`).
    """
    if has_chat_template(tokenizer):
        return tokenizer.apply_chat_template(
            messages, tokenize=False, add_generation_prompt=True
        )
    # ChatML fallback; its markers are in the default stop set
    prompt = ""
    for m in messages:
        prompt += f"<|im_start|>{m['role']}\n{m['content']}<|im_end|>\n"
    prompt += "<|im_start|>assistant\n"
    return prompt
