# Copyright (c) 2026 PocketLLM. Licensed under the MIT License. See LICENSE.
"""Response id and timestamp helpers."""

import time
import uuid


def make_id(prefix: str = "chatcmpl") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def now() -> int:
    return int(time.time())
