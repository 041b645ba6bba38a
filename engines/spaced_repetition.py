"""Spaced repetition system for keeping mastered skills fresh."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Union, Any, Mapping
import logging
import math

from engines.mastery import MasteryService, MasteryState, StateTransition, Trigger
from schemas import LearnerSnapshot, MasteryRecordSnapshot, ReviewStateSnapshot

_LOGGER = logging.getLogger(__name__)

BASE_INTERVALS = (1, 3, 7, 14, 30, 60)  # Days between reviews per stage
MAX_STAGE = len(BASE_INTERVALS) - 1
GRADUATED_INTERVAL_DAYS = 90
DECAY_GRACE_RATIO = 0.5


class ReviewStatus:
    NOT_DUE = "not_due"
    DUE = "due"
    OVERDUE = "overdue"
    GRADUATED = "graduated"


@dataclass
class ReviewState:
    skill_id: str
    next_due: datetime
    stage: int = 0
    consecutive_hits: int = 0
    graduated: bool = False
    last_review: Optional[datetime] = None

    def interval_days(self) -> int:
        if self.graduated:
            return GRADUATED_INTERVAL_DAYS
        return BASE_INTERVALS[min(max(self.stage, 0), MAX_STAGE)]

    def is_due(self, now: datetime) -> bool:
        return now >= self.next_due

    def overdue_days(self, now: datetime) -> float:
        if now < self.next_due:
            return 0.0
        return (now - self.next_due).total_seconds() / 86400.0

    def is_decayed(self, now: datetime) -> bool:
        """True once the review is overdue by more than half its interval."""
        if not self.is_due(now):
            return False
        grace = timedelta(days=self.interval_days() * DECAY_GRACE_RATIO)
        return now > self.next_due + grace

    def status(self, now: datetime) -> str:
        if self.graduated and not self.is_due(now):
            return ReviewStatus.GRADUATED
        if self.is_decayed(now):
            return ReviewStatus.OVERDUE
        if self.is_due(now):
            return ReviewStatus.DUE
        return ReviewStatus.NOT_DUE

    def days_until_review(self, now: datetime) -> int:
        if self.is_due(now):
            return 0
        return math.floor((self.next_due - now).total_seconds() / 86400.0) + 1


def bootstrap_from_mastery(
    mastery: Mapping[str, MasteryRecordSnapshot], now: datetime
) -> Dict[str, ReviewState]:
    """Create stage-0 review states for mastered records of an older snapshot.

    Records without ``mastered_at`` (typically migrated ones) are scheduled
    from ``now``.
    """

    reviews: Dict[str, ReviewState] = {}
    for skill_id, record in mastery.items():
        if record.state != "mastered":
            continue
        anchor = record.mastered_at or now
        reviews[skill_id] = ReviewState(
            skill_id=skill_id,
            next_due=anchor + timedelta(days=BASE_INTERVALS[0]),
            last_review=anchor,
        )
    return reviews


class SpacedRepetitionScheduler:
    """Expanding-interval review scheduler for mastered skills.

    Review states are mutated only through this class; mastery changes are
    delegated to the wrapped :class:`MasteryService`.
    """

    def __init__(
        self,
        mastery: MasteryService,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.intervals = BASE_INTERVALS
        self.graduated_interval = GRADUATED_INTERVAL_DAYS
        self._mastery = mastery
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._reviews: Dict[str, ReviewState] = {}

    # ------------------------------------------------------------------
    @classmethod
    def from_snapshot(
        cls,
        snapshot: Union[LearnerSnapshot, Mapping[str, Any], None],
        mastery: MasteryService,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "SpacedRepetitionScheduler":
        scheduler = cls(mastery, clock=clock)
        if snapshot is None:
            return scheduler
        if not isinstance(snapshot, LearnerSnapshot):
            snapshot = LearnerSnapshot.model_validate(snapshot)

        if snapshot.spaced_repetition is not None:
            for skill_id, data in snapshot.spaced_repetition.items():
                scheduler._reviews[skill_id] = ReviewState(
                    skill_id=skill_id,
                    next_due=data.next_due,
                    stage=data.stage,
                    consecutive_hits=data.consecutive_hits,
                    graduated=data.graduated,
                    last_review=data.last_review,
                )
            return scheduler

        scheduler._reviews = bootstrap_from_mastery(mastery.snapshot_data(), scheduler._clock())
        if scheduler._reviews:
            _LOGGER.info("Bootstrapped %d review states from mastery data", len(scheduler._reviews))
        return scheduler

    def snapshot_data(self) -> Dict[str, ReviewStateSnapshot]:
        return {
            skill_id: ReviewStateSnapshot(
                stage=state.stage,
                consecutive_hits=state.consecutive_hits,
                graduated=state.graduated,
                next_due=state.next_due,
                last_review=state.last_review,
            )
            for skill_id, state in self._reviews.items()
        }

    # ------------------------------------------------------------------
    def get_review_state(self, skill_id: str) -> Optional[ReviewState]:
        return self._reviews.get(skill_id)

    def all_review_states(self) -> Dict[str, ReviewState]:
        return dict(self._reviews)

    def init_skill(self, skill_id: str, mastered_at: Optional[datetime] = None) -> ReviewState:
        anchor = mastered_at or self._clock()
        state = ReviewState(
            skill_id=skill_id,
            next_due=anchor + timedelta(days=self.intervals[0]),
            last_review=anchor,
        )
        self._reviews[skill_id] = state
        return state

    def reinit_skill(self, skill_id: str, now: Optional[datetime] = None) -> ReviewState:
        """Restart the schedule at stage 0 after a rusty skill recovers."""
        return self.init_skill(skill_id, now)

    # ------------------------------------------------------------------
    def record_review(
        self, skill_id: str, correct: bool, now: Optional[datetime] = None
    ) -> Optional[ReviewState]:
        """Advance or regress the review schedule; untracked skills are ignored."""

        state = self._reviews.get(skill_id)
        if state is None:
            return None
        now = now or self._clock()
        previous_stage = state.stage

        if correct:
            state.consecutive_hits += 1
            if state.stage >= MAX_STAGE:
                state.graduated = True
            state.stage = min(state.stage + 1, MAX_STAGE)
        else:
            state.consecutive_hits = 0
            state.graduated = False
            state.stage = max(state.stage - 1, 0)

        state.last_review = now
        state.next_due = now + timedelta(days=state.interval_days())
        _LOGGER.debug(
            "Review %s for %s: stage %d -> %d, next due %s",
            "hit" if correct else "miss",
            skill_id,
            previous_stage,
            state.stage,
            state.next_due.isoformat(),
        )
        return state

    # ------------------------------------------------------------------
    def _is_mastered(self, skill_id: str) -> bool:
        record = self._mastery.find_record(skill_id)
        return record is not None and record.state is MasteryState.MASTERED

    def due_skills(self, now: Optional[datetime] = None) -> List[str]:
        """Mastered skills whose review is due, most overdue first."""

        now = now or self._clock()
        due = [
            (state.overdue_days(now), skill_id)
            for skill_id, state in self._reviews.items()
            if state.is_due(now)
            and self._is_mastered(skill_id)
        ]
        due.sort(key=lambda item: (-item[0], item[1]))
        return [skill_id for _, skill_id in due]

    def run_decay_check(self, now: Optional[datetime] = None) -> List[StateTransition]:
        """Mark mastered skills rusty once they are overdue past the grace period."""

        now = now or self._clock()
        transitions: List[StateTransition] = []
        for skill_id in sorted(self._reviews):
            state = self._reviews[skill_id]
            if not self._is_mastered(skill_id):
                continue
            if not state.is_decayed(now):
                continue
            transition = self._mastery.mark_rusty(skill_id, now=now, trigger=Trigger.TIME_DECAY)
            if transition is not None:
                transitions.append(transition)
        if transitions:
            _LOGGER.info("Decay check marked %d skills rusty", len(transitions))
        return transitions

    def generate_review_insights(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Summarise review load for dashboards."""

        now = now or self._clock()
        if not self._reviews:
            return {"status": "No review data available"}
        counts = {
            ReviewStatus.NOT_DUE: 0,
            ReviewStatus.DUE: 0,
            ReviewStatus.OVERDUE: 0,
            ReviewStatus.GRADUATED: 0,
        }
        for state in self._reviews.values():
            counts[state.status(now)] += 1
        due_this_week = sum(
            1 for state in self._reviews.values() if state.days_until_review(now) <= 7
        )
        return {
            "total_items": len(self._reviews),
            "status_counts": counts,
            "due_this_week": due_this_week,
        }


__all__ = [
    "BASE_INTERVALS",
    "GRADUATED_INTERVAL_DAYS",
    "MAX_STAGE",
    "ReviewState",
    "ReviewStatus",
    "SpacedRepetitionScheduler",
    "bootstrap_from_mastery",
]
