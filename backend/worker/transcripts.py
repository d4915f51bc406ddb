"""
Rolling in-memory transcript store.

The worker is the only writer; readers go through entries() and see plain
dicts. Oldest entries fall off once the store is full.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, asdict
from typing import Any, Optional

from constants import TRANSCRIPT_HISTORY_MAX


@dataclass(frozen=True)
class TranscriptEntry:
    user_id: str
    speaker: str
    text: str
    timestamp: int
    duration: float
    sequence: int
    is_final: bool = True
    confidence: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class TranscriptStore:
    def __init__(self, max_entries: int = TRANSCRIPT_HISTORY_MAX) -> None:
        self._entries: deque[TranscriptEntry] = deque(maxlen=max_entries)

    def add(self, entry: TranscriptEntry) -> None:
        self._entries.append(entry)

    def entries(self, *, user_id: Optional[str] = None, limit: Optional[int] = None) -> list[dict[str, Any]]:
        entries = [e for e in self._entries if user_id is None or e.user_id == user_id]
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return [e.to_dict() for e in entries]

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def __len__(self) -> int:
        return len(self._entries)
