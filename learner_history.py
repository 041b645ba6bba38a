"""Read-only answer history collaborator used by mastery and planning."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional, Protocol, Tuple

_LOGGER = logging.getLogger(__name__)


class HistoryProvider(Protocol):
    """Answer history lookups.

    Implementations may raise or return empty data; callers wrap them in
    :class:`SafeHistory` so that missing history reads as "never practiced".
    """

    def latest_answer_time(self, skill_id: str) -> Optional[datetime]:
        raise NotImplementedError

    def skill_accuracy(self, skill_id: str) -> float:
        raise NotImplementedError

    def recent_review_accuracy(self, skill_id: str, last_n: int) -> Tuple[float, int]:
        raise NotImplementedError


class SafeHistory:
    """Wrap a provider so that failures degrade to documented defaults."""

    def __init__(self, provider: Optional[HistoryProvider] = None) -> None:
        self._provider = provider

    @property
    def provider(self) -> Optional[HistoryProvider]:
        return self._provider

    def latest_answer_time(self, skill_id: str) -> Optional[datetime]:
        if self._provider is None:
            return None
        try:
            return self._provider.latest_answer_time(skill_id)
        except Exception as exc:
            _LOGGER.warning("History lookup latest_answer_time(%s) failed: %s", skill_id, exc)
            return None

    def skill_accuracy(self, skill_id: str) -> float:
        if self._provider is None:
            return 0.0
        try:
            value = self._provider.skill_accuracy(skill_id)
        except Exception as exc:
            _LOGGER.warning("History lookup skill_accuracy(%s) failed: %s", skill_id, exc)
            return 0.0
        if value is None:
            return 0.0
        return max(0.0, min(1.0, float(value)))

    def recent_review_accuracy(self, skill_id: str, last_n: int) -> Tuple[float, int]:
        if self._provider is None:
            return 0.0, 0
        try:
            result = self._provider.recent_review_accuracy(skill_id, last_n)
        except Exception as exc:
            _LOGGER.warning("History lookup recent_review_accuracy(%s) failed: %s", skill_id, exc)
            return 0.0, 0
        if not result:
            return 0.0, 0
        ratio, count = result
        return float(ratio), int(count)


@dataclass
class AnswerEvent:
    skill_id: str
    correct: bool
    category: str = "frontier"
    response_time_ms: int = 0
    answered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class InMemoryAnswerLog:
    """Thread-safe answer log implementing :class:`HistoryProvider`."""

    def __init__(self) -> None:
        self._events: Dict[str, List[AnswerEvent]] = {}
        self._lock = Lock()

    def record(self, event: AnswerEvent) -> None:
        with self._lock:
            self._events.setdefault(event.skill_id, []).append(event)

    def events(self, skill_id: str) -> List[AnswerEvent]:
        with self._lock:
            return list(self._events.get(skill_id, []))

    def latest_answer_time(self, skill_id: str) -> Optional[datetime]:
        events = self.events(skill_id)
        if not events:
            return None
        return max(event.answered_at for event in events)

    def skill_accuracy(self, skill_id: str) -> float:
        events = self.events(skill_id)
        if not events:
            return 0.0
        return sum(1 for event in events if event.correct) / len(events)

    def recent_review_accuracy(self, skill_id: str, last_n: int) -> Tuple[float, int]:
        reviews = [event for event in self.events(skill_id) if event.category == "review"]
        recent = reviews[-last_n:] if last_n > 0 else []
        if not recent:
            return 0.0, 0
        return sum(1 for event in recent if event.correct) / len(recent), len(recent)


__all__ = ["AnswerEvent", "HistoryProvider", "InMemoryAnswerLog", "SafeHistory"]
