# Copyright (c) 2026 PocketLLM. Licensed under the MIT License. See LICENSE.
"""Model store: resolve model arguments to local directories."""

import os
import re
from pathlib import Path

MODELS_DIR = Path.home() / ".pocketllm" / "models"

_HF_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


def _looks_like_hf_id(arg: str) -> bool:
    """Return True if arg looks like a HuggingFace model ID (org/name)."""
    if arg.startswith(("/", ".", "~")):
        return False
    return bool(_HF_ID_RE.match(arg))


def resolve_model_dir(arg: str, models_dir: Path = MODELS_DIR) -> str:
    """Resolve a model argument to a local directory path.

    If *arg* is an existing directory, return it unchanged.  If it looks like
    a HuggingFace model ID, look it up in ``~/.pocketllm/models/``.
    """
    if os.path.isdir(arg):
        return arg

    expanded = os.path.expanduser(arg)
    if os.path.isdir(expanded):
        return expanded

    if _looks_like_hf_id(arg):
        local = models_dir / arg
        if local.is_dir():
            return str(local)
        raise RuntimeError(
            f"Model '{arg}' not found locally. Download it into {models_dir / arg}"
        )

    # Neither a directory nor an ID; let the loader report the missing path
    return arg
