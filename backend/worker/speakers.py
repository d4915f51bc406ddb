"""Speaker display names keyed by user_id."""

from __future__ import annotations

from typing import Optional


def default_speaker_name(user_id: str) -> str:
    return f"Speaker-{user_id[:6].upper()}"


class SpeakerDirectory:
    def __init__(self, names: Optional[dict[str, str]] = None) -> None:
        self._names: dict[str, str] = dict(names or {})

    def name_for(self, user_id: str) -> str:
        return self._names.get(user_id) or default_speaker_name(user_id)

    def set_name(self, user_id: str, name: str) -> None:
        """An empty name reverts to the default."""
        name = name.strip()
        if name:
            self._names[user_id] = name
        else:
            self._names.pop(user_id, None)

    def snapshot(self) -> dict[str, str]:
        return dict(self._names)
