"""Session planning across frontier, review and booster slots.

A plan is built once per session from a read-only view of the skill graph,
the learner's mastery records, the review schedule and answer history. The
planner never mutates learner state.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import AbstractSet, Iterable, List, Optional, Sequence

from engines.mastery import MasteryService
from engines.spaced_repetition import SpacedRepetitionScheduler
from learner_history import HistoryProvider, SafeHistory
from skill_graph import SkillGraph, SkillNode, SkillNotFoundError, Tier

_LOGGER = logging.getLogger(__name__)

DEFAULT_TOTAL_SLOTS = 5
DEFAULT_SESSION_MINUTES = 15
QUESTIONS_PER_SLOT = 3
REVIEW_SHARE = 0.2
BOOSTER_SHARE = 0.1

_NEVER = datetime.min.replace(tzinfo=timezone.utc)


class NothingToPracticeError(RuntimeError):
    """Raised when no frontier, review or booster skill can be scheduled."""


class SlotCategory(Enum):
    FRONTIER = "frontier"
    REVIEW = "review"
    BOOSTER = "booster"


@dataclass(frozen=True)
class PlanSlot:
    skill: SkillNode
    tier: Tier
    category: SlotCategory


@dataclass(frozen=True)
class Plan:
    slots: Sequence[PlanSlot] = ()
    duration: timedelta = timedelta(minutes=DEFAULT_SESSION_MINUTES)
    questions_per_slot: int = QUESTIONS_PER_SLOT

    @property
    def is_empty(self) -> bool:
        return not self.slots

    def categories(self) -> List[SlotCategory]:
        return [slot.category for slot in self.slots]


@dataclass(frozen=True)
class PlannerConfig:
    total_slots: int = DEFAULT_TOTAL_SLOTS
    session_minutes: int = DEFAULT_SESSION_MINUTES
    questions_per_slot: int = QUESTIONS_PER_SLOT


@dataclass
class _SlotMix:
    frontier: int
    review: int
    booster: int = field(default=0)


def slot_mix(total_slots: int) -> _SlotMix:
    """Split ``total_slots`` into frontier, review and booster counts; five slots give 3/1/1."""

    if total_slots <= 0:
        return _SlotMix(0, 0, 0)
    review = min(math.ceil(total_slots * REVIEW_SHARE), total_slots - 1)
    booster = min(math.ceil(total_slots * BOOSTER_SHARE), max(total_slots - 1 - review, 0))
    return _SlotMix(total_slots - review - booster, review, booster)


def require_plan(plan: Plan) -> Plan:
    if plan.is_empty:
        raise NothingToPracticeError("nothing to practice: no available, due or mastered skills")
    return plan


def advance_slot(current_index: int, completed: AbstractSet[int], slot_count: int) -> Optional[int]:
    """Return the next incomplete slot index in round-robin order, or ``None``."""

    if slot_count <= 0:
        return None
    index = current_index
    for _ in range(slot_count):
        index = (index + 1) % slot_count
        if index not in completed:
            return index
    return None


class SessionPlanner:
    def __init__(
        self,
        graph: SkillGraph,
        mastery: MasteryService,
        scheduler: Optional[SpacedRepetitionScheduler] = None,
        history: Optional[HistoryProvider] = None,
        config: Optional[PlannerConfig] = None,
    ) -> None:
        self._graph = graph
        self._mastery = mastery
        self._scheduler = scheduler
        self._history = history if isinstance(history, SafeHistory) else SafeHistory(history)
        self._config = config or PlannerConfig()

    # ------------------------------------------------------------------
    def build_plan(self, now: Optional[datetime] = None) -> Plan:
        """Build the slot sequence for one session.

        The result may be empty; use :func:`require_plan` where an empty plan
        must stop the session.
        """

        now = now or datetime.now(timezone.utc)
        mastered_ids = sorted(
            skill_id for skill_id in self._mastery.mastered_skills() if skill_id in self._graph
        )
        mix = slot_mix(self._config.total_slots)
        frontier_count, review_count, booster_count = mix.frontier, mix.review, mix.booster

        if not mastered_ids:
            frontier_count, review_count, booster_count = self._config.total_slots, 0, 0

        frontier = self._select_frontier(mastered_ids, frontier_count)
        if not frontier and mastered_ids:
            review_count += frontier_count
            frontier_count = 0
            if review_count > len(mastered_ids):
                booster_count += review_count - len(mastered_ids)
                review_count = len(mastered_ids)

        slots: List[PlanSlot] = []
        slots.extend(self._frontier_slots(frontier, frontier_count))

        if review_count > 0 and mastered_ids:
            reviews = self._select_review(mastered_ids, review_count, now)
            slots.extend(
                PlanSlot(skill, self._current_tier(skill.id), SlotCategory.REVIEW) for skill in reviews
            )
            slots.extend(self._frontier_slots(frontier, review_count - len(reviews)))

        if booster_count > 0 and mastered_ids:
            boosters = self._select_booster(mastered_ids, booster_count)
            slots.extend(PlanSlot(skill, Tier.LEARN, SlotCategory.BOOSTER) for skill in boosters)
            slots.extend(self._frontier_slots(frontier, booster_count - len(boosters)))

        plan = Plan(
            slots=tuple(slots),
            duration=timedelta(minutes=self._config.session_minutes),
            questions_per_slot=self._config.questions_per_slot,
        )
        _LOGGER.info(
            "Built session plan: %d slots (%s)",
            len(plan.slots),
            ", ".join(f"{slot.category.value}:{slot.skill.id}" for slot in plan.slots) or "empty",
        )
        return plan

    # ------------------------------------------------------------------
    def _current_tier(self, skill_id: str) -> Tier:
        record = self._mastery.find_record(skill_id)
        return record.current_tier if record else Tier.LEARN

    def _frontier_slots(self, frontier: Sequence[SkillNode], count: int) -> List[PlanSlot]:
        if not frontier or count <= 0:
            return []
        slots = []
        for i in range(count):
            skill = frontier[i % len(frontier)]
            slots.append(PlanSlot(skill, self._current_tier(skill.id), SlotCategory.FRONTIER))
        return slots

    # ------------------------------------------------------------------
    def _select_frontier(self, mastered_ids: Iterable[str], count: int) -> List[SkillNode]:
        available = self._graph.available_skills(mastered_ids)
        ranked = sorted(
            available,
            key=lambda skill: (skill.grade_level, -self._graph.dependent_count(skill.id), skill.id),
        )
        return ranked[:count]

    def _select_review(self, mastered_ids: Sequence[str], count: int, now: datetime) -> List[SkillNode]:
        if self._scheduler is not None:
            due = [skill_id for skill_id in self._scheduler.due_skills(now) if skill_id in self._graph]
            return [self._graph.get_skill(skill_id) for skill_id in due[:count]]

        candidates = []
        for skill_id in mastered_ids:
            try:
                skill = self._graph.get_skill(skill_id)
            except SkillNotFoundError:
                continue
            last_seen = self._history.latest_answer_time(skill_id) or _NEVER
            if last_seen.tzinfo is None:
                last_seen = last_seen.replace(tzinfo=timezone.utc)
            candidates.append((last_seen, skill.id, skill))
        candidates.sort(key=lambda item: (item[0], item[1]))
        return [skill for _, _, skill in candidates[:count]]

    def _select_booster(self, mastered_ids: Sequence[str], count: int) -> List[SkillNode]:
        candidates = []
        for skill_id in mastered_ids:
            try:
                skill = self._graph.get_skill(skill_id)
            except SkillNotFoundError:
                continue
            candidates.append((self._history.skill_accuracy(skill_id), skill))
        candidates.sort(key=lambda item: (-item[0], item[1].id))
        return [skill for _, skill in candidates[:count]]


__all__ = [
    "DEFAULT_SESSION_MINUTES",
    "DEFAULT_TOTAL_SLOTS",
    "NothingToPracticeError",
    "Plan",
    "PlanSlot",
    "PlannerConfig",
    "QUESTIONS_PER_SLOT",
    "SessionPlanner",
    "SlotCategory",
    "advance_slot",
    "require_plan",
    "slot_mix",
]
