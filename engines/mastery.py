"""Per-skill mastery lifecycle.

Each skill moves through ``new -> learning -> mastered`` with an optional
``rusty`` detour when a mastered skill decays. Learning is split into a
hint-friendly Learn tier and a timed Prove tier; every answer also feeds a
composite fluency score blending accuracy, speed and streak consistency.
The service keeps all records in memory and exports them as pydantic
snapshots for the persistence collaborator.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Union

from learner_history import HistoryProvider, SafeHistory
from schemas import LearnerSnapshot, MasteryRecordSnapshot
from skill_graph import SkillGraph, Tier, TierConfig, default_tiers, tier_from_string

_LOGGER = logging.getLogger(__name__)

DEFAULT_SPEED_WINDOW = 10
DEFAULT_STREAK_CAP = 8
NEUTRAL_SPEED_SCORE = 0.5
REVIEW_PERFORMANCE_WINDOW = 4
REVIEW_PERFORMANCE_FLOOR = 0.50

ACCURACY_WEIGHT = 0.6
SPEED_WEIGHT = 0.2
CONSISTENCY_WEIGHT = 0.2

RECOVERY_TIER = TierConfig(
    tier=Tier.LEARN,
    problems_required=4,
    accuracy_threshold=0.75,
    time_limit_secs=0,
    hints_allowed=True,
)


def _log_json(event: str, payload: Dict[str, Any]) -> None:
    """Emit structured JSON logs for downstream learning analytics."""

    record = {"event": event, **payload}
    try:
        message = json.dumps(record, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError):
        fallback = {
            "event": event,
            "error": "serialization_failed",
            "payload_repr": repr(payload),
        }
        message = json.dumps(fallback, ensure_ascii=False, sort_keys=True)
    _LOGGER.info(message)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MasteryState(Enum):
    NEW = "new"
    LEARNING = "learning"
    MASTERED = "mastered"
    RUSTY = "rusty"


class DisplayState(Enum):
    """UI-facing state combining mastery with prerequisite status."""

    LOCKED = "locked"
    AVAILABLE = "available"
    LEARNING = "learning"
    PROVING = "proving"
    MASTERED = "mastered"
    RUSTY = "rusty"


class Trigger:
    FIRST_ATTEMPT = "first-attempt"
    TIER_COMPLETE = "tier-complete"
    PROVE_COMPLETE = "prove-complete"
    TIME_DECAY = "time-decay"
    REVIEW_PERFORMANCE = "review-performance"
    RECOVERY_COMPLETE = "recovery-complete"


# ---------------------------------------------------------------------------
# Fluency
# ---------------------------------------------------------------------------


def _clamp(value: float, lower: float = 0.0, upper: float = 1.0) -> float:
    return max(lower, min(upper, value))


def speed_score(response_time_ms: int, tier_config: TierConfig) -> float:
    """Score a single response time against the tier's limit.

    Untimed tiers score neutral. Otherwise the score is 1.0 up to half the
    limit, falls linearly to 0.5 at the limit and to 0.0 at twice the limit.
    """

    if tier_config.time_limit_secs <= 0:
        return NEUTRAL_SPEED_SCORE
    ratio = response_time_ms / (tier_config.time_limit_secs * 1000.0)
    if ratio <= 0.5:
        return 1.0
    if ratio <= 1.0:
        return 1.0 - (ratio - 0.5)
    return max(0.0, 0.5 - 0.5 * (ratio - 1.0))


def consistency_score(streak: int, cap: int) -> float:
    if cap <= 0:
        return 0.0
    return min(streak / cap, 1.0)


@dataclass
class FluencyMetrics:
    speed_scores: List[float] = field(default_factory=list)
    speed_window: int = DEFAULT_SPEED_WINDOW
    streak: int = 0
    streak_cap: int = DEFAULT_STREAK_CAP

    def record_speed(self, score: float) -> None:
        window = self.speed_window if self.speed_window > 0 else DEFAULT_SPEED_WINDOW
        self.speed_scores.append(score)
        if len(self.speed_scores) > window:
            del self.speed_scores[: len(self.speed_scores) - window]

    def average_speed(self) -> float:
        if not self.speed_scores:
            return NEUTRAL_SPEED_SCORE
        return sum(self.speed_scores) / len(self.speed_scores)


def fluency_score(metrics: FluencyMetrics, accuracy: float) -> float:
    score = (
        ACCURACY_WEIGHT * _clamp(accuracy)
        + SPEED_WEIGHT * _clamp(metrics.average_speed())
        + CONSISTENCY_WEIGHT * _clamp(consistency_score(metrics.streak, metrics.streak_cap))
    )
    return _clamp(score)


def required_correct(tier_config: TierConfig, penalty: int = 0) -> int:
    # round() strips float noise such as 8 * 0.75 -> 6.000000000000001
    base = math.ceil(round(tier_config.problems_required * tier_config.accuracy_threshold, 9))
    return base + max(0, penalty)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class SkillMasteryRecord:
    skill_id: str
    state: MasteryState = MasteryState.NEW
    current_tier: Tier = Tier.LEARN
    total_attempts: int = 0
    correct_count: int = 0
    fluency: FluencyMetrics = field(default_factory=FluencyMetrics)
    mastered_at: Optional[datetime] = None
    rusty_at: Optional[datetime] = None
    misconception_penalty: int = 0

    @property
    def accuracy(self) -> float:
        if self.total_attempts == 0:
            return 0.0
        return self.correct_count / self.total_attempts

    def fluency_score(self) -> float:
        return fluency_score(self.fluency, self.accuracy)

    def is_tier_complete(self, tier_config: TierConfig) -> bool:
        if self.total_attempts < tier_config.problems_required:
            return False
        return self.correct_count >= required_correct(tier_config, self.misconception_penalty)

    def reset_counters(self) -> None:
        self.total_attempts = 0
        self.correct_count = 0
        self.misconception_penalty = 0


@dataclass(frozen=True)
class StateTransition:
    skill_id: str
    skill_name: str
    from_state: MasteryState
    to_state: MasteryState
    trigger: str

    @property
    def is_mastery(self) -> bool:
        return self.from_state is MasteryState.LEARNING and self.to_state is MasteryState.MASTERED

    @property
    def is_recovery(self) -> bool:
        return self.from_state is MasteryState.RUSTY and self.to_state is MasteryState.MASTERED

    @property
    def advances_tier(self) -> bool:
        return self.trigger in {
            Trigger.TIER_COMPLETE,
            Trigger.PROVE_COMPLETE,
            Trigger.RECOVERY_COMPLETE,
        }

    def to_dict(self) -> Dict[str, str]:
        return {
            "skill_id": self.skill_id,
            "skill_name": self.skill_name,
            "from": self.from_state.value,
            "to": self.to_state.value,
            "trigger": self.trigger,
        }


@dataclass(frozen=True)
class TierProgress:
    """Read-only view of a record's counters against its active tier."""

    skill_id: str
    current_tier: Tier
    total_attempts: int
    correct_count: int
    accuracy: float
    problems_required: int
    required_correct: int

    @property
    def is_complete(self) -> bool:
        return (
            self.total_attempts >= self.problems_required
            and self.correct_count >= self.required_correct
        )


def resolve_display_state(
    state: MasteryState, prerequisites_met: bool, current_tier: Tier
) -> DisplayState:
    if state is MasteryState.NEW:
        return DisplayState.AVAILABLE if prerequisites_met else DisplayState.LOCKED
    if state is MasteryState.LEARNING:
        return DisplayState.PROVING if current_tier is Tier.PROVE else DisplayState.LEARNING
    if state is MasteryState.MASTERED:
        return DisplayState.MASTERED
    if state is MasteryState.RUSTY:
        return DisplayState.RUSTY
    return DisplayState.LOCKED


# ---------------------------------------------------------------------------
# Snapshot helpers
# ---------------------------------------------------------------------------


SnapshotInput = Union[LearnerSnapshot, Mapping[str, Any], None]


def _coerce_snapshot(snapshot: SnapshotInput) -> Optional[LearnerSnapshot]:
    if snapshot is None:
        return None
    if isinstance(snapshot, LearnerSnapshot):
        return snapshot
    return LearnerSnapshot.model_validate(snapshot)


def migrate_legacy_snapshot(snapshot: SnapshotInput) -> Dict[str, MasteryRecordSnapshot]:
    """Convert a tier-progress + mastered-list snapshot into mastery records.

    Skills in the mastered list become mastered at the Prove tier; skills
    that only have tier progress become learning with their counters kept.
    """

    legacy = _coerce_snapshot(snapshot)
    if legacy is None:
        return {}

    mastered = set(legacy.mastered)
    migrated: Dict[str, MasteryRecordSnapshot] = {}
    for skill_id, progress in legacy.tier_progress.items():
        migrated[skill_id] = MasteryRecordSnapshot(
            state="mastered" if skill_id in mastered else "learning",
            current_tier=progress.current_tier,
            total_attempts=progress.total_attempts,
            correct_count=progress.correct_count,
            speed_window=DEFAULT_SPEED_WINDOW,
            streak=0,
            streak_cap=DEFAULT_STREAK_CAP,
        )
    for skill_id in legacy.mastered:
        if skill_id not in migrated:
            migrated[skill_id] = MasteryRecordSnapshot(
                state="mastered",
                current_tier="prove",
                speed_window=DEFAULT_SPEED_WINDOW,
                streak=0,
                streak_cap=DEFAULT_STREAK_CAP,
            )
    _LOGGER.info("Migrated %d legacy mastery entries", len(migrated))
    return migrated


def _record_from_snapshot(skill_id: str, data: MasteryRecordSnapshot) -> SkillMasteryRecord:
    return SkillMasteryRecord(
        skill_id=skill_id,
        state=MasteryState(data.state),
        current_tier=tier_from_string(data.current_tier),
        total_attempts=data.total_attempts,
        correct_count=data.correct_count,
        fluency=FluencyMetrics(
            speed_scores=list(data.speed_scores),
            speed_window=data.speed_window or DEFAULT_SPEED_WINDOW,
            streak=data.streak,
            streak_cap=data.streak_cap or DEFAULT_STREAK_CAP,
        ),
        mastered_at=data.mastered_at,
        rusty_at=data.rusty_at,
        misconception_penalty=data.misconception_penalty,
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class MasteryService:
    """Owns every :class:`SkillMasteryRecord` of one learner.

    Not thread-safe on its own: callers serialize mutations, normally through
    :class:`engines.practice_session.PracticeSession`.
    """

    def __init__(
        self,
        graph: Optional[SkillGraph] = None,
        history: Optional[HistoryProvider] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._graph = graph
        self._history = history if isinstance(history, SafeHistory) else SafeHistory(history)
        self._clock = clock or _utcnow
        self._records: Dict[str, SkillMasteryRecord] = {}

    # ------------------------------------------------------------------
    @classmethod
    def from_snapshot(
        cls,
        snapshot: SnapshotInput,
        graph: Optional[SkillGraph] = None,
        history: Optional[HistoryProvider] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "MasteryService":
        service = cls(graph, history, clock=clock)
        data = _coerce_snapshot(snapshot)
        if data is None:
            return service
        if data.mastery is not None:
            entries = data.mastery
        elif data.tier_progress or data.mastered:
            entries = migrate_legacy_snapshot(data)
        else:
            entries = {}
        for skill_id, entry in entries.items():
            service._records[skill_id] = _record_from_snapshot(skill_id, entry)
        return service

    # ------------------------------------------------------------------
    def snapshot_data(self) -> Dict[str, MasteryRecordSnapshot]:
        snapshot: Dict[str, MasteryRecordSnapshot] = {}
        for skill_id, record in self._records.items():
            snapshot[skill_id] = MasteryRecordSnapshot(
                state=record.state.value,
                current_tier=record.current_tier.value,
                total_attempts=record.total_attempts,
                correct_count=record.correct_count,
                speed_scores=list(record.fluency.speed_scores),
                speed_window=record.fluency.speed_window,
                streak=record.fluency.streak,
                streak_cap=record.fluency.streak_cap,
                mastered_at=record.mastered_at,
                rusty_at=record.rusty_at,
                misconception_penalty=record.misconception_penalty,
            )
        return snapshot

    # ------------------------------------------------------------------
    def get_mastery(self, skill_id: str) -> SkillMasteryRecord:
        record = self._records.get(skill_id)
        if record is None:
            record = SkillMasteryRecord(skill_id=skill_id)
            self._records[skill_id] = record
        return record

    def find_record(self, skill_id: str) -> Optional[SkillMasteryRecord]:
        """Lookup without the lazy creation done by :meth:`get_mastery`."""
        return self._records.get(skill_id)

    def all_records(self) -> Dict[str, SkillMasteryRecord]:
        return dict(self._records)

    def mastered_skills(self) -> Set[str]:
        return {
            skill_id
            for skill_id, record in self._records.items()
            if record.state is MasteryState.MASTERED
        }

    # ------------------------------------------------------------------
    def tier_config_for(self, skill_id: str) -> TierConfig:
        """Active tier configuration for ``skill_id``.

        Rusty skills practise against the fixed recovery tier. Raises
        ``SkillNotFoundError`` for ids missing from the graph.
        """

        record = self.get_mastery(skill_id)
        if record.state is MasteryState.RUSTY:
            return RECOVERY_TIER
        if self._graph is None:
            learn, prove = default_tiers()
            return prove if record.current_tier is Tier.PROVE else learn
        return self._graph.get_skill(skill_id).tier_config(record.current_tier)

    def tier_progress(self, skill_id: str) -> TierProgress:
        record = self.get_mastery(skill_id)
        config = self.tier_config_for(skill_id)
        return TierProgress(
            skill_id=skill_id,
            current_tier=record.current_tier,
            total_attempts=record.total_attempts,
            correct_count=record.correct_count,
            accuracy=record.accuracy,
            problems_required=config.problems_required,
            required_correct=required_correct(config, record.misconception_penalty),
        )

    def display_state(self, skill_id: str) -> DisplayState:
        record = self._records.get(skill_id)
        state = record.state if record else MasteryState.NEW
        tier = record.current_tier if record else Tier.LEARN
        prerequisites_met = (
            self._graph.is_unlocked(skill_id, self.mastered_skills()) if self._graph else True
        )
        return resolve_display_state(state, prerequisites_met, tier)

    # ------------------------------------------------------------------
    def record_answer(
        self,
        skill_id: str,
        correct: bool,
        response_time_ms: int,
        tier_config: Optional[TierConfig] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[StateTransition]:
        """Apply one answer and return the resulting transition, if any.

        A tier event on the same answer supersedes ``first-attempt``.
        """

        if tier_config is None:
            tier_config = self.tier_config_for(skill_id)
        record = self.get_mastery(skill_id)
        name = self._skill_name(skill_id)
        transition: Optional[StateTransition] = None

        if record.state is MasteryState.NEW:
            record.state = MasteryState.LEARNING
            transition = StateTransition(
                skill_id, name, MasteryState.NEW, MasteryState.LEARNING, Trigger.FIRST_ATTEMPT
            )

        record.total_attempts += 1
        if correct:
            record.correct_count += 1
            record.fluency.streak += 1
        else:
            record.fluency.streak = 0
        record.fluency.record_speed(speed_score(response_time_ms, tier_config))

        if record.is_tier_complete(tier_config):
            advanced = self._advance_tier(record, name, now or self._clock())
            if advanced is not None:
                transition = advanced

        if transition is not None:
            self._emit(transition)
        return transition

    # ------------------------------------------------------------------
    def _advance_tier(
        self, record: SkillMasteryRecord, name: str, now: datetime
    ) -> Optional[StateTransition]:
        if record.state is MasteryState.LEARNING and record.current_tier is Tier.LEARN:
            record.current_tier = Tier.PROVE
            record.reset_counters()
            return StateTransition(
                record.skill_id, name, MasteryState.LEARNING, MasteryState.LEARNING, Trigger.TIER_COMPLETE
            )
        if record.state is MasteryState.LEARNING and record.current_tier is Tier.PROVE:
            record.state = MasteryState.MASTERED
            record.mastered_at = now
            record.reset_counters()
            return StateTransition(
                record.skill_id, name, MasteryState.LEARNING, MasteryState.MASTERED, Trigger.PROVE_COMPLETE
            )
        if record.state is MasteryState.RUSTY:
            record.state = MasteryState.MASTERED
            record.rusty_at = None
            record.reset_counters()
            return StateTransition(
                record.skill_id, name, MasteryState.RUSTY, MasteryState.MASTERED, Trigger.RECOVERY_COMPLETE
            )
        return None

    # ------------------------------------------------------------------
    def mark_rusty(
        self,
        skill_id: str,
        *,
        now: Optional[datetime] = None,
        trigger: str = Trigger.TIME_DECAY,
    ) -> Optional[StateTransition]:
        """Move a mastered skill to rusty; no-op for any other state."""

        record = self.get_mastery(skill_id)
        if record.state is not MasteryState.MASTERED:
            return None
        record.state = MasteryState.RUSTY
        record.rusty_at = now or self._clock()
        record.current_tier = Tier.LEARN
        record.reset_counters()
        transition = StateTransition(
            skill_id, self._skill_name(skill_id), MasteryState.MASTERED, MasteryState.RUSTY, trigger
        )
        self._emit(transition)
        return transition

    def check_review_performance(
        self,
        skill_id: str,
        *,
        now: Optional[datetime] = None,
        history: Optional[HistoryProvider] = None,
    ) -> Optional[StateTransition]:
        """Mark a mastered skill rusty when its recent reviews fall below the floor.

        ``history`` overrides the provider given at construction.
        """

        record = self.get_mastery(skill_id)
        if record.state is not MasteryState.MASTERED:
            return None
        source = self._history
        if history is not None:
            source = history if isinstance(history, SafeHistory) else SafeHistory(history)
        accuracy, count = source.recent_review_accuracy(skill_id, REVIEW_PERFORMANCE_WINDOW)
        if count < REVIEW_PERFORMANCE_WINDOW or accuracy >= REVIEW_PERFORMANCE_FLOOR:
            return None
        return self.mark_rusty(skill_id, now=now, trigger=Trigger.REVIEW_PERFORMANCE)

    def apply_misconception_penalty(self, skill_id: str) -> int:
        record = self.get_mastery(skill_id)
        record.misconception_penalty += 1
        _LOGGER.debug(
            "Misconception penalty for %s raised to %d", skill_id, record.misconception_penalty
        )
        return record.misconception_penalty

    # ------------------------------------------------------------------
    def _skill_name(self, skill_id: str) -> str:
        if self._graph is None:
            return skill_id
        return self._graph.skill_name(skill_id)

    @staticmethod
    def _emit(transition: StateTransition) -> None:
        _log_json("mastery_transition", transition.to_dict())


__all__ = [
    "DEFAULT_SPEED_WINDOW",
    "DEFAULT_STREAK_CAP",
    "RECOVERY_TIER",
    "DisplayState",
    "FluencyMetrics",
    "MasteryService",
    "MasteryState",
    "SkillMasteryRecord",
    "StateTransition",
    "TierProgress",
    "Trigger",
    "consistency_score",
    "fluency_score",
    "migrate_legacy_snapshot",
    "required_correct",
    "resolve_display_state",
    "speed_score",
]
