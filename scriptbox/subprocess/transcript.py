"""Bounded, append-only transcript of one run."""

from __future__ import annotations

from typing import Optional

import structlog

from ..protocol.messages import OutputRecord, RecordKind
from .constants import (
    DEFAULT_TRANSCRIPT_BYTES,
    DEFAULT_TRANSCRIPT_CAPACITY,
    MAX_RECORD_CHARS,
    TRUNCATION_MARKER,
)

logger = structlog.get_logger()


def clip_content(content: str, limit: int = MAX_RECORD_CHARS) -> str:
    """Cut ``content`` to ``limit`` characters, noting how much was removed."""
    if len(content) <= limit:
        return content
    return content[:limit] + TRUNCATION_MARKER.format(count=len(content) - limit)


def _encoded_size(content: str) -> int:
    return len(content.encode("utf-8", errors="replace"))


class TranscriptBuffer:
    """Ordered log of output records with a capacity bound.

    Once ``capacity`` ordinary records are stored, or their content would
    pass ``max_bytes`` once encoded, the next ordinary append adds a single
    ``warn`` sentinel and every later ordinary append is dropped.
    ``force=True`` appends bypass both bounds; the engine uses them for the
    record explaining why a run ended. Every record's content is clipped to
    ``MAX_RECORD_CHARS`` so the finished transcript always fits one frame.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_TRANSCRIPT_CAPACITY,
        max_bytes: int = DEFAULT_TRANSCRIPT_BYTES,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        self._capacity = capacity
        self._max_bytes = max_bytes
        self._records: list[OutputRecord] = []
        self._accepted = 0
        self._accepted_bytes = 0
        self._dropped = 0
        self._limit_reached = False
        self._frozen = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def limit_reached(self) -> bool:
        return self._limit_reached

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __len__(self) -> int:
        return len(self._records)

    def append(
        self,
        kind: RecordKind,
        content: str,
        line: Optional[int] = None,
        *,
        force: bool = False,
    ) -> bool:
        """Append a record; returns False when it was dropped."""
        # late output from cancelled work after hand-off is discarded
        if self._frozen:
            self._dropped += 1
            return False

        content = clip_content(content)

        if not force:
            if self._limit_reached:
                self._dropped += 1
                return False
            size = _encoded_size(content)
            if self._accepted >= self._capacity:
                self._suppress(f"{self._capacity} entries")
                return False
            if self._accepted_bytes + size > self._max_bytes:
                self._suppress(f"{self._max_bytes} bytes")
                return False
            self._accepted += 1
            self._accepted_bytes += size

        self._records.append(OutputRecord(type=kind, content=content, line=line))
        return True

    def _suppress(self, bound: str) -> None:
        self._limit_reached = True
        self._dropped += 1
        self._records.append(
            OutputRecord(
                type=RecordKind.WARN,
                content=f"Log limit reached: further output suppressed ({bound})",
            )
        )
        logger.debug("transcript_limit_reached", bound=bound)

    def snapshot(self) -> list[OutputRecord]:
        return list(self._records)

    def freeze(self) -> tuple[OutputRecord, ...]:
        """Stop accepting records and return the final contents."""
        self._frozen = True
        return tuple(self._records)
