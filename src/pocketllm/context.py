# Copyright (c) 2026 PocketLLM. Licensed under the MIT License. See LICENSE.
"""
Model/context handles.

A ModelContext owns a loaded model and its running key-value cache. It is an
explicit, exclusively used resource: generation holds ``lock`` for the whole
call, clears the cache first, and nobody else touches the context meanwhile.
"""

import abc
import logging
import os
import threading

logger = logging.getLogger(__name__)


class ModelLoadError(RuntimeError):
    """Raised when a model or its context cannot be created."""


class ModelContext(abc.ABC):
    """Interface the generation loop drives."""

    def __init__(self):
        self.lock = threading.Lock()
        self.closed = False

    @abc.abstractmethod
    def tokenize(self, text: str, add_special_tokens: bool = True) -> list[int]:
        """Token ids for *text*. Prompts rendered by a chat template already
        carry their own BOS, so callers pass ``add_special_tokens=False``."""

    @abc.abstractmethod
    def vocabulary_size(self) -> int: ...

    @abc.abstractmethod
    def is_end_of_generation(self, token_id: int) -> bool: ...

    @abc.abstractmethod
    def detokenize(self, token_id: int) -> str: ...

    @abc.abstractmethod
    def decode(self, batch) -> bool:
        """Run the model over *batch*. False means the state is unusable."""

    @abc.abstractmethod
    def get_scores(self, slot: int):
        """Scores from the last decode for batch *slot*, or None."""

    @abc.abstractmethod
    def clear_cache(self) -> None: ...

    def close(self) -> None:
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class TransformersContext(ModelContext):
    """Runs a Hugging Face causal LM on CPU with an incremental KV cache."""

    def __init__(self, model, tokenizer, model_config, n_ctx: int = 2048):
        super().__init__()
        from pocketllm.token_utils import IncrementalDecoder

        self.model = model
        self.tokenizer = tokenizer
        self.model_config = model_config
        self.n_ctx = n_ctx
        self._eos = set(model_config.eos_tokens)
        if tokenizer.eos_token_id is not None:
            self._eos.add(tokenizer.eos_token_id)
        # Render special tokens so chat markers reach the stop filter
        self._decoder = IncrementalDecoder(tokenizer, skip_special_tokens=False)
        self._cache = None
        self._scores: dict[int, object] = {}

    @classmethod
    def load(
        cls,
        model_dir: str,
        n_ctx: int = 2048,
        n_threads: int = 4,
        trust_remote_code: bool = False,
    ) -> "TransformersContext":
        config_path = os.path.join(model_dir, "config.json")
        if not os.path.exists(config_path):
            raise ModelLoadError(f"config.json not found in {model_dir}")

        import torch
        from transformers import AutoModelForCausalLM

        from pocketllm.model_arch import ModelConfig
        from pocketllm.utils import load_tokenizer

        if n_threads > 0:
            torch.set_num_threads(n_threads)

        try:
            model_config = ModelConfig.from_config_json(config_path, model_dir)
            tokenizer = load_tokenizer(model_dir, trust_remote_code=trust_remote_code)
            model = AutoModelForCausalLM.from_pretrained(
                model_dir, torch_dtype="auto", trust_remote_code=trust_remote_code
            )
        except (OSError, ValueError) as exc:
            raise ModelLoadError(f"Failed to load model from {model_dir}: {exc}") from exc
        model.eval()

        n_ctx = min(n_ctx, model_config.max_position_embeddings)
        logger.info(
            "Loaded %s (%s, vocab=%d, n_ctx=%d)",
            os.path.basename(os.path.normpath(model_dir)),
            model_config.architecture,
            model_config.vocab_size,
            n_ctx,
        )
        return cls(model, tokenizer, model_config, n_ctx=n_ctx)

    def tokenize(self, text: str, add_special_tokens: bool = True) -> list[int]:
        return self.tokenizer.encode(text, add_special_tokens=add_special_tokens)

    def vocabulary_size(self) -> int:
        return len(self.tokenizer)

    def is_end_of_generation(self, token_id: int) -> bool:
        return token_id in self._eos

    def detokenize(self, token_id: int) -> str:
        return self._decoder.decode(token_id)

    def decode(self, batch) -> bool:
        import torch
        from transformers import DynamicCache

        if batch.n_tokens == 0:
            return False
        tokens, positions, wants_logits = zip(*batch.slots())
        if positions[-1] >= self.n_ctx:
            logger.info("Context full (%d positions)", self.n_ctx)
            return False

        if self._cache is None:
            self._cache = DynamicCache()
        input_ids = torch.tensor([tokens], dtype=torch.long)
        position_ids = torch.tensor([positions], dtype=torch.long)
        try:
            with torch.no_grad():
                out = self.model(
                    input_ids=input_ids,
                    position_ids=position_ids,
                    past_key_values=self._cache,
                    use_cache=True,
                )
        except (RuntimeError, ValueError, IndexError) as exc:
            logger.warning("Decode failed: %s", exc)
            return False

        self._cache = out.past_key_values
        logits = out.logits[0]
        self._scores = {
            slot: logits[slot] for slot, wanted in enumerate(wants_logits) if wanted
        }
        return True

    def get_scores(self, slot: int):
        return self._scores.get(slot)

    def clear_cache(self) -> None:
        self._cache = None
        self._scores = {}
        self._decoder.reset()

    def close(self) -> None:
        self.clear_cache()
        self.model = None
        super().close()
