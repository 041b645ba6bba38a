"""Composition root wiring the skill graph, learner state and sessions together."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Union

from engines.diagnosis import (
    ChatCompletionDiagnoser,
    Diagnoser,
    DiagnosisService,
    MisconceptionTaxonomy,
    load_misconceptions,
)
from engines.mastery import MasteryService
from engines.practice_session import Compressor, PracticeSession
from engines.session_planner import Plan, PlannerConfig, SessionPlanner
from engines.spaced_repetition import SpacedRepetitionScheduler
from env_validation import EngineSettings, validate_environment
from learner_history import HistoryProvider, InMemoryAnswerLog, SafeHistory
from schemas import LearnerSnapshot
from skill_graph import SkillGraph, load_skill_corpus

_LOGGER = logging.getLogger(__name__)


@dataclass
class LearnerState:
    """Mutable per-learner state; one session at a time may mutate it."""

    mastery: MasteryService
    scheduler: SpacedRepetitionScheduler
    answer_log: InMemoryAnswerLog
    history: SafeHistory


class PracticeEngine:
    """Owns the shared read-only graph and taxonomy for the application lifetime."""

    def __init__(
        self,
        graph: SkillGraph,
        taxonomy: MisconceptionTaxonomy,
        settings: Optional[EngineSettings] = None,
        *,
        diagnoser: Optional[Diagnoser] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.graph = graph
        self.taxonomy = taxonomy
        self.settings = settings or EngineSettings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.diagnosis: Optional[DiagnosisService] = None
        if self.settings.diagnosis_enabled:
            self.diagnosis = DiagnosisService(
                graph,
                taxonomy,
                diagnoser,
                queue_size=self.settings.diagnosis_queue_size,
            )

    @classmethod
    def from_settings(
        cls,
        settings: Optional[EngineSettings] = None,
        *,
        diagnoser: Optional[Diagnoser] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "PracticeEngine":
        settings = settings or validate_environment()
        graph = load_skill_corpus(settings.skill_corpus_path)
        taxonomy = load_misconceptions(settings.misconceptions_path)
        if diagnoser is None and settings.diagnosis_llm_url:
            diagnoser = ChatCompletionDiagnoser(
                settings.diagnosis_llm_url,
                settings.diagnosis_llm_model,
                timeout=settings.diagnosis_llm_timeout,
            )
        return cls(graph, taxonomy, settings, diagnoser=diagnoser, clock=clock)

    # ------------------------------------------------------------------
    def open_learner(
        self,
        snapshot: Union[LearnerSnapshot, Mapping[str, Any], None] = None,
        history: Optional[HistoryProvider] = None,
    ) -> LearnerState:
        """Restore learner state from a snapshot, migrating legacy data."""

        if snapshot is not None and not isinstance(snapshot, LearnerSnapshot):
            snapshot = LearnerSnapshot.model_validate(snapshot)
        answer_log = InMemoryAnswerLog()
        safe_history = SafeHistory(history if history is not None else answer_log)
        mastery = MasteryService.from_snapshot(snapshot, self.graph, safe_history, clock=self._clock)
        scheduler = SpacedRepetitionScheduler.from_snapshot(snapshot, mastery, clock=self._clock)
        return LearnerState(mastery, scheduler, answer_log, safe_history)

    def snapshot(self, learner: LearnerState) -> LearnerSnapshot:
        return LearnerSnapshot(
            mastery=learner.mastery.snapshot_data(),
            spaced_repetition=learner.scheduler.snapshot_data(),
        )

    # ------------------------------------------------------------------
    def plan_session(self, learner: LearnerState, now: Optional[datetime] = None) -> Plan:
        planner = SessionPlanner(
            self.graph,
            learner.mastery,
            learner.scheduler,
            learner.history,
            PlannerConfig(
                total_slots=self.settings.session_total_slots,
                session_minutes=self.settings.session_duration_minutes,
            ),
        )
        return planner.build_plan(now)

    def start_session(
        self,
        learner: LearnerState,
        *,
        now: Optional[datetime] = None,
        compressor: Optional[Compressor] = None,
    ) -> PracticeSession:
        """Run the decay check, plan, and open a session.

        Raises ``NothingToPracticeError`` when the plan comes back empty.
        """

        now = now or self._clock()
        decayed = learner.scheduler.run_decay_check(now)
        if decayed:
            _LOGGER.info("Skills decayed before session start: %s", [t.skill_id for t in decayed])
        plan = self.plan_session(learner, now)
        return PracticeSession(
            plan,
            learner.mastery,
            scheduler=learner.scheduler,
            diagnosis=self.diagnosis,
            history=learner.history,
            answer_log=learner.answer_log,
            compressor=compressor,
            compression_threshold=self.settings.recent_errors_compression_chars,
            clock=self._clock,
        )

    def close(self) -> None:
        if self.diagnosis is not None:
            self.diagnosis.close()


__all__ = ["LearnerState", "PracticeEngine"]
