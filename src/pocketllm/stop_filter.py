# Copyright (c) 2026 PocketLLM. Licensed under the MIT License. See LICENSE.
"""
Streaming stop-sequence detection.

Generated pieces are appended to a pending buffer and only the text that can
no longer be part of a stop string is handed to the consumer. A stop string
may arrive split across several pieces, so a buffer whose tail looks like the
start of a stop string is held back until more text arrives (or until it has
grown past the flush threshold).
"""

from collections.abc import Callable, Iterable

# Role/turn markers for the chat formats we ship with, plus the generic
# end-of-text marker.
DEFAULT_STOP_STRINGS = ("<|im_end|>", "<|user|>", "<|im_start|>", "</s>")

DEFAULT_FLUSH_THRESHOLD = 20
DEFAULT_RETAINED_TAIL = 10


def build_stop_set(
    dynamic: str | Iterable[str] | None,
    extra: Iterable[str] = (),
) -> tuple[str, ...]:
    """Caller stop string(s), then configured extras, then the built-in markers.

    The built-ins are always present; *extra* can only add to them. Empty
    strings are dropped (an empty stop string would match at offset 0 and
    end every generation immediately).
    """
    if dynamic is None:
        dynamic = ()
    elif isinstance(dynamic, str):
        dynamic = (dynamic,)
    return tuple(s for s in (*dynamic, *extra, *DEFAULT_STOP_STRINGS) if s)


def is_partial_match(buffer: str, stop: str) -> bool:
    """Return True if the end of *buffer* could be the start of *stop*.

    e.g. buffer="abc <|im", stop="<|im_end|>" -> True
    """
    if not buffer or not stop:
        return False
    # A full-length overlap is a full match, handled elsewhere.
    check_len = min(len(buffer), len(stop) - 1)
    for n in range(check_len, 0, -1):
        if buffer.endswith(stop[:n]):
            return True
    return False


def find_stop(buffer: str, stops: Iterable[str]) -> int:
    """Earliest index at which any stop string starts in *buffer*, or -1."""
    pos = -1
    for s in stops:
        idx = buffer.find(s)
        if idx != -1 and (pos == -1 or idx < pos):
            pos = idx
    return pos


class StopSequenceFilter:
    """Holds back generated text until it is proven free of stop strings.

    *emit* is called synchronously, in order, with every fragment that is
    safe to show. Concatenated, the fragments never contain a stop string
    or anything generated after one.
    """

    def __init__(
        self,
        stops: Iterable[str],
        emit: Callable[[str], None],
        flush_threshold: int = DEFAULT_FLUSH_THRESHOLD,
        retained_tail: int = DEFAULT_RETAINED_TAIL,
    ):
        self.stops = tuple(stops)
        if any(not s for s in self.stops):
            raise ValueError("stop strings must be non-empty")
        if retained_tail < 0 or flush_threshold < retained_tail:
            raise ValueError(
                f"flush_threshold ({flush_threshold}) must be >= retained_tail "
                f"({retained_tail}) >= 0"
            )
        self._emit = emit
        self.flush_threshold = flush_threshold
        self.retained_tail = retained_tail
        self._buffer = ""
        self.stopped = False

    @property
    def pending(self) -> str:
        """Text received but not yet emitted."""
        return self._buffer

    def _suspicious(self) -> bool:
        return any(is_partial_match(self._buffer, s) for s in self.stops)

    def ingest(self, piece: str) -> bool:
        """Consume the next generated piece. Returns True when a stop string
        was found; the caller must not ingest anything after that."""
        self._buffer += piece

        pos = find_stop(self._buffer, self.stops)
        if pos != -1:
            safe = self._buffer[:pos]
            self._buffer = ""
            self.stopped = True
            if safe:
                self._emit(safe)
            return True

        if not self._suspicious():
            chunk, self._buffer = self._buffer, ""
            if chunk:
                self._emit(chunk)
        elif len(self._buffer) > self.flush_threshold:
            # Probably a false alarm; keep the UI moving but hold the tail.
            flush_len = len(self._buffer) - self.retained_tail
            chunk = self._buffer[:flush_len]
            self._buffer = self._buffer[flush_len:]
            self._emit(chunk)
        return False

    def finalize(self) -> None:
        """Flush whatever is left once generation has ended."""
        if not self._buffer:
            return
        remaining, self._buffer = self._buffer, ""
        if find_stop(remaining, self.stops) != -1:
            return
        self._emit(remaining)
