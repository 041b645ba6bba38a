"""Runtime for a single practice session.

``PracticeSession`` is the one place where learner state changes during a
session: every answer, every asynchronous diagnosis result and every
recent-errors compression goes through the same re-entrant lock.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from fractions import Fraction
from typing import Callable, Dict, List, Optional, Set

from engines.diagnosis import (
    DiagnosisResult,
    DiagnosisService,
    ErrorCategory,
    PracticeQuestion,
)
from engines.mastery import MasteryService, MasteryState, StateTransition
from engines.session_planner import (
    Plan,
    PlanSlot,
    SlotCategory,
    advance_slot,
    require_plan,
)
from engines.spaced_repetition import SpacedRepetitionScheduler
from learner_history import AnswerEvent, HistoryProvider, InMemoryAnswerLog, SafeHistory
from skill_graph import Tier, TierConfig

_LOGGER = logging.getLogger(__name__)

MAX_RECENT_ERRORS = 5
DEFAULT_COMPRESSION_THRESHOLD = 800
COMPRESSED_PREFIX = "[compressed] "

CompressionDone = Callable[[str, str], None]
Compressor = Callable[[str, List[str], CompressionDone], None]


def _normalize_answer(answer: str, answer_type: str) -> Optional[str]:
    answer = answer.strip()
    if not answer:
        return None
    try:
        if answer_type == "integer":
            return str(int(answer))
        if answer_type == "decimal":
            return str(Decimal(answer).normalize())
        if answer_type == "fraction":
            numerator, _, denominator = answer.partition("/")
            if not denominator:
                return None
            return str(Fraction(int(numerator), int(denominator)))
    except (ValueError, ZeroDivisionError, InvalidOperation):
        return None
    return answer.casefold()


def check_answer(learner_answer: str, question: PracticeQuestion) -> bool:
    learner = _normalize_answer(learner_answer, question.answer_type)
    if learner is None:
        return False
    return learner == _normalize_answer(question.answer, question.answer_type)


def build_error_context(
    question: PracticeQuestion,
    learner_answer: str,
    diagnosis: Optional[DiagnosisResult],
    misconception_label: Optional[str] = None,
) -> str:
    base = (
        f"Answered {learner_answer} for '{question.text}', "
        f"correct answer was {question.answer}"
    )
    if diagnosis is None or diagnosis.category is ErrorCategory.UNCLASSIFIED:
        return base
    detail = diagnosis.category.value
    if misconception_label:
        detail += f": {misconception_label}"
    return f"{base} [{detail}]"


@dataclass
class SkillResult:
    skill_id: str
    skill_name: str
    category: SlotCategory
    tier_before: Tier
    tier_after: Tier
    attempted: int = 0
    correct: int = 0
    fluency_score: float = -1.0


@dataclass(frozen=True)
class AnswerOutcome:
    correct: bool
    transition: Optional[StateTransition] = None
    diagnosis: Optional[DiagnosisResult] = None
    slot_completed: bool = False


@dataclass
class SessionSummary:
    duration_seconds: float
    total_questions: int
    total_correct: int
    accuracy: float
    skill_results: List[SkillResult] = field(default_factory=list)


class PracticeSession:
    def __init__(
        self,
        plan: Plan,
        mastery: MasteryService,
        *,
        scheduler: Optional[SpacedRepetitionScheduler] = None,
        diagnosis: Optional[DiagnosisService] = None,
        history: Optional[HistoryProvider] = None,
        answer_log: Optional[InMemoryAnswerLog] = None,
        compressor: Optional[Compressor] = None,
        compression_threshold: int = DEFAULT_COMPRESSION_THRESHOLD,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.plan = require_plan(plan)
        self._mastery = mastery
        self._scheduler = scheduler
        self._diagnosis = diagnosis
        self._history = history if isinstance(history, SafeHistory) else SafeHistory(history)
        self._answer_log = answer_log
        # Review answers land in the answer log before the external history sees them.
        self._review_history = SafeHistory(answer_log) if answer_log is not None else self._history
        self._compressor = compressor
        self._compression_threshold = compression_threshold
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()

        self.started_at = self._clock()
        self.current_slot_index = 0
        self.questions_in_slot = 0
        self.completed_slots: Set[int] = set()
        self.total_questions = 0
        self.total_correct = 0
        self.recent_errors: Dict[str, List[str]] = {}
        self.last_diagnosis: Optional[DiagnosisResult] = None
        self.last_transition: Optional[StateTransition] = None
        self.per_skill_results: Dict[str, SkillResult] = {}
        for slot in self.plan.slots:
            if slot.skill.id not in self.per_skill_results:
                record = mastery.find_record(slot.skill.id)
                tier = record.current_tier if record else Tier.LEARN
                self.per_skill_results[slot.skill.id] = SkillResult(
                    skill_id=slot.skill.id,
                    skill_name=slot.skill.name,
                    category=slot.category,
                    tier_before=tier,
                    tier_after=tier,
                )

    # ------------------------------------------------------------------
    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def current_slot(self) -> Optional[PlanSlot]:
        if 0 <= self.current_slot_index < len(self.plan.slots):
            return self.plan.slots[self.current_slot_index]
        return None

    def should_advance_slot(self) -> bool:
        return self.questions_in_slot >= self.plan.questions_per_slot

    def advance_slot(self) -> bool:
        """Move to the next incomplete slot; ``False`` once every slot is done."""

        with self._lock:
            self.questions_in_slot = 0
            next_index = advance_slot(
                self.current_slot_index, self.completed_slots, len(self.plan.slots)
            )
            if next_index is None:
                return False
            self.current_slot_index = next_index
            return True

    def recent_errors_for(self, skill_id: str) -> List[str]:
        with self._lock:
            return list(self.recent_errors.get(skill_id, []))

    # ------------------------------------------------------------------
    def submit_answer(
        self,
        question: PracticeQuestion,
        learner_answer: str,
        response_time_ms: int,
        now: Optional[datetime] = None,
    ) -> AnswerOutcome:
        with self._lock:
            now = now or self._clock()
            skill_id = question.skill_id
            slot = self.current_slot()
            category = slot.category if slot and slot.skill.id == skill_id else SlotCategory.FRONTIER

            correct = check_answer(learner_answer, question)
            self.total_questions += 1
            self.questions_in_slot += 1
            if correct:
                self.total_correct += 1
            result = self.per_skill_results.get(skill_id)
            if result is not None:
                result.attempted += 1
                result.correct += int(correct)

            if self._answer_log is not None:
                self._answer_log.record(
                    AnswerEvent(skill_id, correct, category.value, response_time_ms, now)
                )

            tier_config = self._tier_config(slot, skill_id)
            transition = self._mastery.record_answer(
                skill_id, correct, response_time_ms, tier_config, now=now
            )

            if self._scheduler is not None:
                if category is SlotCategory.REVIEW:
                    self._scheduler.record_review(skill_id, correct, now)
                if transition is not None and transition.is_mastery:
                    self._scheduler.init_skill(skill_id, now)
                elif transition is not None and transition.is_recovery:
                    self._scheduler.reinit_skill(skill_id, now)

            if category is SlotCategory.REVIEW:
                decayed = self._mastery.check_review_performance(
                    skill_id, now=now, history=self._review_history
                )
                if decayed is not None:
                    transition = decayed

            slot_completed = False
            if transition is not None and transition.advances_tier and slot is not None:
                self.completed_slots.add(self.current_slot_index)
                slot_completed = True
            if result is not None:
                result.tier_after = self._mastery.get_mastery(skill_id).current_tier

            diagnosis: Optional[DiagnosisResult] = None
            if not correct:
                diagnosis = self._diagnose(question, learner_answer, response_time_ms)
                self._remember_error(question, learner_answer, diagnosis)

            self.last_diagnosis = diagnosis
            self.last_transition = transition
            return AnswerOutcome(correct, transition, diagnosis, slot_completed)

    def _tier_config(self, slot: Optional[PlanSlot], skill_id: str) -> TierConfig:
        """Mastered skills practise at the tier their slot was planned for."""
        record = self._mastery.find_record(skill_id)
        if (
            slot is not None
            and slot.skill.id == skill_id
            and record is not None
            and record.state is MasteryState.MASTERED
        ):
            return slot.skill.tier_config(slot.tier)
        return self._mastery.tier_config_for(skill_id)

    # ------------------------------------------------------------------
    def _diagnose(
        self, question: PracticeQuestion, learner_answer: str, response_time_ms: int
    ) -> Optional[DiagnosisResult]:
        if self._diagnosis is None:
            return None
        skill_id = question.skill_id
        result = self._diagnosis.diagnose(
            question,
            learner_answer,
            response_time_ms,
            self._history.skill_accuracy(skill_id),
            callback=lambda outcome: self._on_async_diagnosis(skill_id, outcome),
        )
        if result.category is ErrorCategory.MISCONCEPTION:
            self._mastery.apply_misconception_penalty(skill_id)
        return result

    def _on_async_diagnosis(self, skill_id: str, result: DiagnosisResult) -> None:
        if result.category is not ErrorCategory.MISCONCEPTION:
            return
        with self._lock:
            self._mastery.apply_misconception_penalty(skill_id)
            self.last_diagnosis = result
        _LOGGER.info("Async diagnosis for %s: %s", skill_id, result.misconception_id)

    def _remember_error(
        self,
        question: PracticeQuestion,
        learner_answer: str,
        diagnosis: Optional[DiagnosisResult],
    ) -> None:
        label = None
        if diagnosis is not None and diagnosis.misconception_id and self._diagnosis is not None:
            entry = self._diagnosis.taxonomy.get(diagnosis.misconception_id)
            label = entry.label if entry else None
        entry_text = build_error_context(question, learner_answer, diagnosis, label)

        skill_id = question.skill_id
        errors = self.recent_errors.setdefault(skill_id, [])
        errors.append(entry_text)
        del errors[:-MAX_RECENT_ERRORS]

        if self._compressor is None:
            return
        if sum(len(item) for item in errors) <= self._compression_threshold:
            return
        self._compressor(skill_id, list(errors), self._apply_compression)

    def _apply_compression(self, skill_id: str, summary: str) -> None:
        with self._lock:
            self.recent_errors[skill_id] = [COMPRESSED_PREFIX + summary]
        _LOGGER.debug("Compressed recent errors for %s", skill_id)

    # ------------------------------------------------------------------
    def build_summary(self, now: Optional[datetime] = None) -> SessionSummary:
        with self._lock:
            now = now or self._clock()
            results = []
            for result in self.per_skill_results.values():
                record = self._mastery.find_record(result.skill_id)
                result.fluency_score = record.fluency_score() if record else -1.0
                results.append(result)
            accuracy = self.total_correct / self.total_questions if self.total_questions else 0.0
            return SessionSummary(
                duration_seconds=(now - self.started_at).total_seconds(),
                total_questions=self.total_questions,
                total_correct=self.total_correct,
                accuracy=accuracy,
                skill_results=results,
            )


__all__ = [
    "AnswerOutcome",
    "COMPRESSED_PREFIX",
    "MAX_RECENT_ERRORS",
    "PracticeSession",
    "SessionSummary",
    "SkillResult",
    "build_error_context",
    "check_answer",
]
