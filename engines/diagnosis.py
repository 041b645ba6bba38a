"""Wrong-answer diagnosis: rule classifiers plus an optional asynchronous LLM pass.

Rules run synchronously in a fixed order and are cheap. When no rule fires
and a diagnoser is configured, the wrong answer is matched against the
misconception taxonomy of the skill's strand on a background worker fed by
a bounded queue. A full queue drops the job; diagnosis is best-effort.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import requests
from pydantic import ValidationError

from schemas import DiagnosisOutput, MisconceptionCatalog, parse_json_safe
from skill_graph import SkillGraph, SkillNotFoundError, Strand

_LOGGER = logging.getLogger(__name__)

DEFAULT_MISCONCEPTIONS_PATH = (
    Path(__file__).resolve().parent.parent / "competencies" / "misconceptions.json"
)
DEFAULT_QUEUE_SIZE = 32
SPEED_RUSH_THRESHOLD_MS = 2000
CARELESS_ACCURACY_THRESHOLD = 0.80


class ErrorCategory(Enum):
    CARELESS = "careless"
    SPEED_RUSH = "speed-rush"
    MISCONCEPTION = "misconception"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class PracticeQuestion:
    """A generated question as handed to the engine by the question source."""

    skill_id: str
    text: str
    answer: str
    answer_type: str = "integer"
    hint: str = ""


@dataclass(frozen=True)
class DiagnosisResult:
    category: ErrorCategory
    misconception_id: Optional[str] = None
    confidence: float = 0.0
    classifier_name: str = "none"
    reasoning: str = ""


UNCLASSIFIED = DiagnosisResult(ErrorCategory.UNCLASSIFIED)


# ---------------------------------------------------------------------------
# Taxonomy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Misconception:
    id: str
    strand: Strand
    label: str
    description: str
    examples: Tuple[str, ...] = ()


class MisconceptionTaxonomy:
    def __init__(self, entries: Sequence[Misconception]) -> None:
        self._by_id: Dict[str, Misconception] = {}
        self._by_strand: Dict[Strand, List[Misconception]] = {}
        for entry in entries:
            if entry.id in self._by_id:
                raise ValueError(f"duplicate misconception id: {entry.id!r}")
            self._by_id[entry.id] = entry
            self._by_strand.setdefault(entry.strand, []).append(entry)

    def __len__(self) -> int:
        return len(self._by_id)

    def get(self, misconception_id: str) -> Optional[Misconception]:
        return self._by_id.get(misconception_id)

    def by_strand(self, strand: Strand) -> List[Misconception]:
        return list(self._by_strand.get(strand, ()))

    def all(self) -> List[Misconception]:
        return list(self._by_id.values())


def load_misconceptions(path: Optional[Path] = None) -> MisconceptionTaxonomy:
    resolved = Path(path) if path is not None else DEFAULT_MISCONCEPTIONS_PATH
    catalog = MisconceptionCatalog.model_validate_json(resolved.read_text(encoding="utf-8"))
    entries = [
        Misconception(
            id=item.id,
            strand=Strand(item.strand),
            label=item.label,
            description=item.description,
            examples=tuple(item.examples),
        )
        for item in catalog.misconceptions
    ]
    _LOGGER.info("Loaded %d misconceptions from %s", len(entries), resolved.name)
    return MisconceptionTaxonomy(entries)


# ---------------------------------------------------------------------------
# Rule classifiers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClassifyInput:
    learner_answer: str
    response_time_ms: int
    skill_accuracy: float


class SpeedRushClassifier:
    name = "speed-rush"

    def classify(self, data: ClassifyInput) -> Optional[Tuple[ErrorCategory, float]]:
        if data.response_time_ms < SPEED_RUSH_THRESHOLD_MS:
            return ErrorCategory.SPEED_RUSH, 0.9
        return None


class CarelessClassifier:
    name = "careless"

    def classify(self, data: ClassifyInput) -> Optional[Tuple[ErrorCategory, float]]:
        if data.skill_accuracy > CARELESS_ACCURACY_THRESHOLD:
            return ErrorCategory.CARELESS, 0.8
        return None


def default_classifiers() -> List[object]:
    return [SpeedRushClassifier(), CarelessClassifier()]


def run_classifiers(classifiers: Sequence[object], data: ClassifyInput) -> Optional[DiagnosisResult]:
    """Return the first rule hit in order, or ``None`` when all abstain."""

    for classifier in classifiers:
        hit = classifier.classify(data)
        if hit is not None:
            category, confidence = hit
            return DiagnosisResult(category, confidence=confidence, classifier_name=classifier.name)
    return None


# ---------------------------------------------------------------------------
# LLM phase
# ---------------------------------------------------------------------------

DIAGNOSIS_SYSTEM_PROMPT = (
    "You are an expert math education diagnostician. A learner answered a math "
    "question incorrectly. Your job is to determine if their error matches a known "
    "misconception pattern.\n\n"
    "Instructions:\n"
    "- If the learner's error clearly matches one of the listed misconceptions, return its ID.\n"
    "- If the error does not match any listed misconception, return null for misconception_id.\n"
    "- Do NOT invent new misconception IDs. Only use IDs from the list provided.\n"
    "- Provide a confidence score (0.0-1.0) reflecting how well the error matches.\n"
    "- Keep reasoning to one sentence.\n"
    'Respond with JSON only: {"misconception_id": string|null, "confidence": number, "reasoning": string}'
)


@dataclass(frozen=True)
class DiagnosisRequest:
    skill_id: str
    skill_name: str
    question_text: str
    correct_answer: str
    learner_answer: str
    answer_type: str
    candidates: Tuple[Misconception, ...] = field(default_factory=tuple)

    def candidate_ids(self) -> set:
        return {candidate.id for candidate in self.candidates}


def build_diagnosis_message(request: DiagnosisRequest) -> str:
    lines = [
        f"Skill: {request.skill_name}",
        f"Question: {request.question_text}",
        f"Correct answer: {request.correct_answer}",
        f"Learner's answer: {request.learner_answer}",
        f"Answer type: {request.answer_type}",
        "",
        "Known misconceptions for this strand:",
    ]
    lines.extend(f"- {candidate.id}: {candidate.description}" for candidate in request.candidates)
    return "\n".join(lines) + "\n"


def build_diagnosis_messages(request: DiagnosisRequest) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": DIAGNOSIS_SYSTEM_PROMPT},
        {"role": "user", "content": build_diagnosis_message(request)},
    ]


def interpret_reply(raw: str, request: DiagnosisRequest) -> DiagnosisResult:
    """Turn a diagnoser reply into a result, rejecting ids outside the candidates."""

    output = parse_json_safe(raw, DiagnosisOutput)
    if output.misconception_id and output.misconception_id in request.candidate_ids():
        return DiagnosisResult(
            ErrorCategory.MISCONCEPTION,
            misconception_id=output.misconception_id,
            confidence=output.confidence,
            classifier_name="llm",
            reasoning=output.reasoning,
        )
    if output.misconception_id:
        _LOGGER.info(
            "Diagnoser returned unknown misconception %r for %s",
            output.misconception_id,
            request.skill_id,
        )
    return DiagnosisResult(
        ErrorCategory.UNCLASSIFIED,
        confidence=output.confidence,
        classifier_name="llm",
        reasoning=output.reasoning,
    )


Diagnoser = Callable[[List[Dict[str, str]]], str]
DiagnosisCallback = Callable[[DiagnosisResult], None]


class ChatCompletionDiagnoser:
    """Diagnoser backed by an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        url: str,
        model: str,
        *,
        timeout: float = 30.0,
        max_tokens: int = 256,
        temperature: float = 0.3,
    ) -> None:
        self.url = url
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature

    def __call__(self, messages: List[Dict[str, str]]) -> str:
        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        response = requests.post(self.url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        data = response.json()
        try:
            return data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            return data["choices"][0]["text"]


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@dataclass
class _DiagnosisJob:
    request: DiagnosisRequest
    callback: Optional[DiagnosisCallback]


_STOP = object()


class DiagnosisService:
    """Classifies wrong answers; the LLM pass runs on one daemon worker."""

    def __init__(
        self,
        graph: SkillGraph,
        taxonomy: MisconceptionTaxonomy,
        diagnoser: Optional[Diagnoser] = None,
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        classifiers: Optional[Sequence[object]] = None,
        autostart: bool = True,
    ) -> None:
        self._graph = graph
        self._taxonomy = taxonomy
        self._diagnoser = diagnoser
        self._classifiers = list(classifiers) if classifiers is not None else default_classifiers()
        self._pending: "queue.Queue[object]" = queue.Queue(maxsize=queue_size)
        self._worker: Optional[threading.Thread] = None
        self.dropped = 0
        if diagnoser is not None and autostart:
            self.start()

    @property
    def taxonomy(self) -> MisconceptionTaxonomy:
        return self._taxonomy

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(
            target=self._process_loop, name="diagnosis-worker", daemon=True
        )
        self._worker.start()

    def close(self, timeout: Optional[float] = 5.0) -> None:
        if self._worker is None:
            return
        try:
            self._pending.put(_STOP, timeout=timeout)
        except queue.Full:
            _LOGGER.warning(
                "Diagnosis queue still full on close, abandoning %d pending jobs",
                self._pending.qsize(),
            )
        else:
            self._worker.join(timeout)
        self._worker = None

    def wait_idle(self) -> None:
        """Block until every queued job has been processed."""
        self._pending.join()

    # ------------------------------------------------------------------
    def diagnose(
        self,
        question: PracticeQuestion,
        learner_answer: str,
        response_time_ms: int,
        skill_accuracy: float,
        callback: Optional[DiagnosisCallback] = None,
    ) -> DiagnosisResult:
        """Run the rule phase and, if inconclusive, queue the LLM phase.

        Returns the synchronous result; the asynchronous result, if any, is
        delivered to ``callback`` on the worker thread.
        """

        data = ClassifyInput(learner_answer, response_time_ms, skill_accuracy)
        result = run_classifiers(self._classifiers, data)
        if result is not None:
            return result
        if self._diagnoser is not None:
            self._dispatch(question, learner_answer, callback)
        return UNCLASSIFIED

    def _dispatch(
        self,
        question: PracticeQuestion,
        learner_answer: str,
        callback: Optional[DiagnosisCallback],
    ) -> bool:
        try:
            skill = self._graph.get_skill(question.skill_id)
        except SkillNotFoundError:
            return False
        candidates = self._taxonomy.by_strand(skill.strand)
        if not candidates:
            return False
        request = DiagnosisRequest(
            skill_id=skill.id,
            skill_name=skill.name,
            question_text=question.text,
            correct_answer=question.answer,
            learner_answer=learner_answer,
            answer_type=question.answer_type,
            candidates=tuple(candidates),
        )
        try:
            self._pending.put_nowait(_DiagnosisJob(request, callback))
        except queue.Full:
            self.dropped += 1
            _LOGGER.debug("Diagnosis queue full; dropping job for %s", skill.id)
            return False
        return True

    def _process_loop(self) -> None:
        while True:
            job = self._pending.get()
            try:
                if job is _STOP:
                    return
                self._process(job)
            finally:
                self._pending.task_done()

    def _process(self, job: _DiagnosisJob) -> None:
        try:
            raw = self._diagnoser(build_diagnosis_messages(job.request))
            result = interpret_reply(raw, job.request)
        except (requests.RequestException, ValidationError, ValueError) as exc:
            _LOGGER.warning("LLM diagnosis failed for %s: %s", job.request.skill_id, exc)
            return
        except Exception:
            _LOGGER.exception("Diagnoser raised for %s", job.request.skill_id)
            return
        if job.callback is None:
            return
        try:
            job.callback(result)
        except Exception:
            _LOGGER.exception("Diagnosis callback failed for %s", job.request.skill_id)


__all__ = [
    "CARELESS_ACCURACY_THRESHOLD",
    "DEFAULT_QUEUE_SIZE",
    "SPEED_RUSH_THRESHOLD_MS",
    "CarelessClassifier",
    "ChatCompletionDiagnoser",
    "ClassifyInput",
    "DiagnosisRequest",
    "DiagnosisResult",
    "DiagnosisService",
    "ErrorCategory",
    "Misconception",
    "MisconceptionTaxonomy",
    "PracticeQuestion",
    "SpeedRushClassifier",
    "build_diagnosis_message",
    "interpret_reply",
    "load_misconceptions",
    "run_classifiers",
]
