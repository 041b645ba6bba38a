"""Immutable skill dependency graph for the math practice curriculum."""

from __future__ import annotations

import heapq
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CORPUS_PATH = Path(__file__).resolve().parent / "competencies" / "math.skillgraph.json"


class Strand(Enum):
    """Top-level content strands, declared in display order."""

    NUMBER_PLACE = "number-and-place-value"
    ADD_SUB = "addition-and-subtraction"
    MULT_DIV = "multiplication-and-division"
    FRACTIONS = "fractions"
    MEASUREMENT = "measurement"


ALL_STRANDS: Tuple[Strand, ...] = tuple(Strand)

_STRAND_DISPLAY_NAMES = {
    Strand.NUMBER_PLACE: "Number & Place Value",
    Strand.ADD_SUB: "Addition & Subtraction",
    Strand.MULT_DIV: "Multiplication & Division",
    Strand.FRACTIONS: "Fractions",
    Strand.MEASUREMENT: "Measurement",
}


def strand_display_name(strand: Strand) -> str:
    return _STRAND_DISPLAY_NAMES.get(strand, strand.value)


class Tier(Enum):
    """Two-level difficulty track for every skill."""

    LEARN = "learn"  # hints available, untimed
    PROVE = "prove"  # timed, no hints


def tier_from_string(value: Optional[str]) -> Tier:
    if value == Tier.PROVE.value:
        return Tier.PROVE
    return Tier.LEARN


@dataclass(frozen=True)
class TierConfig:
    """Completion criteria for a single tier."""

    tier: Tier
    problems_required: int
    accuracy_threshold: float
    time_limit_secs: int = 0
    hints_allowed: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "problems_required": self.problems_required,
            "accuracy_threshold": self.accuracy_threshold,
            "time_limit_secs": self.time_limit_secs,
            "hints_allowed": self.hints_allowed,
        }


def default_tiers() -> Tuple[TierConfig, TierConfig]:
    return (
        TierConfig(Tier.LEARN, problems_required=8, accuracy_threshold=0.75, time_limit_secs=0, hints_allowed=True),
        TierConfig(Tier.PROVE, problems_required=6, accuracy_threshold=0.85, time_limit_secs=30, hints_allowed=False),
    )


@dataclass(frozen=True)
class SkillNode:
    """A single skill in the curriculum graph."""

    id: str
    name: str
    strand: Strand
    grade_level: int
    prerequisites: Tuple[str, ...] = ()
    tiers: Tuple[TierConfig, TierConfig] = field(default_factory=default_tiers)
    description: str = ""
    common_core_id: str = ""
    estimated_minutes: int = 0
    keywords: Tuple[str, ...] = ()

    @property
    def is_root(self) -> bool:
        return not self.prerequisites

    def tier_config(self, tier: Tier) -> TierConfig:
        return self.tiers[1] if tier is Tier.PROVE else self.tiers[0]


class SkillNotFoundError(KeyError):
    """Raised when a skill id is not part of the loaded graph."""

    def __init__(self, skill_id: str) -> None:
        super().__init__(skill_id)
        self.skill_id = skill_id

    def __str__(self) -> str:
        return f"skill not found: {self.skill_id!r}"


class SkillGraphValidationError(ValueError):
    """Raised when a skill corpus violates the structural invariants.

    ``errors`` holds every violation found, not just the first one.
    """

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = list(errors)
        joined = "\n  ".join(self.errors)
        super().__init__(f"skill graph validation failed:\n  {joined}")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def collect_violations(
    skills: Sequence[SkillNode], unparsed_ids: Iterable[str] = ()
) -> List[str]:
    """Return every structural problem found in ``skills``.

    ``unparsed_ids`` are skills that exist in the corpus but could not be
    built; prerequisites naming them are not reported as nonexistent.
    """

    errors: List[str] = []
    ids: Set[str] = set()
    strands: Set[Strand] = set()
    unique: Dict[str, SkillNode] = {}

    for skill in skills:
        if skill.id in ids:
            errors.append(f"duplicate skill ID: {skill.id!r}")
        else:
            unique[skill.id] = skill
        ids.add(skill.id)
        strands.add(skill.strand)

    referable = ids | set(unparsed_ids)
    for skill in skills:
        for prereq_id in skill.prerequisites:
            if prereq_id not in referable:
                errors.append(
                    f"skill {skill.id!r} references nonexistent prerequisite {prereq_id!r}"
                )

    residual = _residual_in_degree(unique)
    if residual:
        errors.append("cycle detected involving skills: " + ", ".join(residual))

    if not any(skill.is_root for skill in skills):
        errors.append("no root skills found (at least one skill must have no prerequisites)")

    for strand in ALL_STRANDS:
        if strand not in strands:
            errors.append(f"strand {strand.value!r} has no skills")

    for skill in skills:
        for index, cfg in enumerate(skill.tiers):
            prefix = f"skill {skill.id!r} tier {index}"
            if cfg.problems_required <= 0:
                errors.append(f"{prefix}: problems_required must be > 0, got {cfg.problems_required}")
            if not 0.0 < cfg.accuracy_threshold <= 1.0:
                errors.append(
                    f"{prefix}: accuracy_threshold must be in (0, 1.0], got {cfg.accuracy_threshold:f}"
                )
            if cfg.time_limit_secs < 0:
                errors.append(f"{prefix}: time_limit_secs must be >= 0, got {cfg.time_limit_secs}")

    return errors


def validate_skills(skills: Sequence[SkillNode]) -> None:
    errors = collect_violations(skills)
    if errors:
        raise SkillGraphValidationError(errors)


def _residual_in_degree(skills: Mapping[str, SkillNode]) -> List[str]:
    """Run Kahn's algorithm and return ids left with unresolved in-degree."""

    in_degree: Dict[str, int] = {}
    adjacency: Dict[str, List[str]] = {skill_id: [] for skill_id in skills}
    for skill_id, skill in skills.items():
        known = [p for p in skill.prerequisites if p in skills]
        in_degree[skill_id] = len(known)
        for prereq_id in known:
            adjacency[prereq_id].append(skill_id)

    queue = [skill_id for skill_id, degree in in_degree.items() if degree == 0]
    while queue:
        current = queue.pop()
        for dependent in adjacency[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    return [skill_id for skill_id in skills if in_degree[skill_id] > 0]


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


class SkillGraph:
    """Validated, read-only skill DAG with precomputed indices.

    Every lookup table is keyed by skill id, so a built graph can be shared
    between threads without locking.
    """

    def __init__(self, skills: Iterable[SkillNode]) -> None:
        skill_list = list(skills)
        validate_skills(skill_list)

        self._skills: Tuple[SkillNode, ...] = tuple(skill_list)
        self._by_id: Dict[str, SkillNode] = {skill.id: skill for skill in skill_list}
        self._dependents: Dict[str, Tuple[str, ...]] = {}

        reverse: Dict[str, List[str]] = {skill.id: [] for skill in skill_list}
        for skill in skill_list:
            for prereq_id in skill.prerequisites:
                reverse[prereq_id].append(skill.id)
        self._dependents = {skill_id: tuple(deps) for skill_id, deps in reverse.items()}

        self._topo_order: Tuple[SkillNode, ...] = self._kahn_order()
        self._topo_index: Dict[str, int] = {
            skill.id: index for index, skill in enumerate(self._topo_order)
        }
        self._roots: Tuple[SkillNode, ...] = tuple(s for s in skill_list if s.is_root)

        strand_rank = {strand: index for index, strand in enumerate(ALL_STRANDS)}
        by_strand: Dict[Strand, List[SkillNode]] = {}
        by_grade: Dict[int, List[SkillNode]] = {}
        for skill in skill_list:
            by_strand.setdefault(skill.strand, []).append(skill)
            by_grade.setdefault(skill.grade_level, []).append(skill)
        self._by_strand: Dict[Strand, Tuple[SkillNode, ...]] = {
            strand: tuple(
                sorted(members, key=lambda s: (s.grade_level, self._topo_index[s.id]))
            )
            for strand, members in by_strand.items()
        }
        self._by_grade: Dict[int, Tuple[SkillNode, ...]] = {
            grade: tuple(
                sorted(members, key=lambda s: (strand_rank[s.strand], self._topo_index[s.id]))
            )
            for grade, members in by_grade.items()
        }
        logger.debug(
            "Built skill graph: %d skills, %d roots", len(self._skills), len(self._roots)
        )

    # ------------------------------------------------------------------
    def _kahn_order(self) -> Tuple[SkillNode, ...]:
        in_degree = {skill.id: len(skill.prerequisites) for skill in self._skills}
        ready = [skill_id for skill_id, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        ordered: List[SkillNode] = []
        while ready:
            skill_id = heapq.heappop(ready)
            ordered.append(self._by_id[skill_id])
            for dependent in self._dependents[skill_id]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, dependent)
        return tuple(ordered)

    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return len(self._skills)

    def __contains__(self, skill_id: object) -> bool:
        return skill_id in self._by_id

    # ------------------------------------------------------------------
    def get_skill(self, skill_id: str) -> SkillNode:
        try:
            return self._by_id[skill_id]
        except KeyError:
            raise SkillNotFoundError(skill_id) from None

    # ------------------------------------------------------------------
    def skill_name(self, skill_id: str) -> str:
        skill = self._by_id.get(skill_id)
        return skill.name if skill else skill_id

    # ------------------------------------------------------------------
    def all_skills(self) -> List[SkillNode]:
        return list(self._skills)

    # ------------------------------------------------------------------
    def root_skills(self) -> List[SkillNode]:
        return list(self._roots)

    # ------------------------------------------------------------------
    def topological_order(self) -> List[SkillNode]:
        return list(self._topo_order)

    # ------------------------------------------------------------------
    def topo_position(self, skill_id: str) -> int:
        try:
            return self._topo_index[skill_id]
        except KeyError:
            raise SkillNotFoundError(skill_id) from None

    # ------------------------------------------------------------------
    def by_strand(self, strand: Strand) -> List[SkillNode]:
        """Skills of ``strand`` ordered by grade, then topological position."""

        return list(self._by_strand.get(strand, ()))

    # ------------------------------------------------------------------
    def by_grade(self, grade: int) -> List[SkillNode]:
        """Skills of ``grade`` ordered by strand, then topological position."""

        return list(self._by_grade.get(grade, ()))

    # ------------------------------------------------------------------
    def prerequisites(self, skill_id: str) -> List[SkillNode]:
        skill = self._by_id.get(skill_id)
        if skill is None:
            return []
        return [self._by_id[p] for p in skill.prerequisites if p in self._by_id]

    # ------------------------------------------------------------------
    def dependents(self, skill_id: str) -> List[SkillNode]:
        return [self._by_id[d] for d in self._dependents.get(skill_id, ())]

    # ------------------------------------------------------------------
    def dependent_count(self, skill_id: str) -> int:
        return len(self._dependents.get(skill_id, ()))

    # ------------------------------------------------------------------
    def is_unlocked(self, skill_id: str, mastered: Iterable[str]) -> bool:
        skill = self._by_id.get(skill_id)
        if skill is None:
            return False
        mastered_set = mastered if isinstance(mastered, (set, frozenset)) else set(mastered)
        return all(prereq_id in mastered_set for prereq_id in skill.prerequisites)

    # ------------------------------------------------------------------
    def available_skills(self, mastered: Iterable[str]) -> List[SkillNode]:
        """Unlocked skills that are not yet mastered, in topological order."""

        mastered_set = set(mastered)
        return [
            skill
            for skill in self._topo_order
            if skill.id not in mastered_set and self.is_unlocked(skill.id, mastered_set)
        ]

    # ------------------------------------------------------------------
    def frontier_skills(self, mastered: Iterable[str]) -> List[SkillNode]:
        """Available skills that represent forward progress.

        Non-root skills are preferred; when none are available the full
        available set (the roots) is returned instead.
        """

        available = self.available_skills(mastered)
        frontier = [skill for skill in available if not skill.is_root]
        return frontier or available

    # ------------------------------------------------------------------
    def blocked_skills(self, mastered: Iterable[str]) -> List[SkillNode]:
        mastered_set = set(mastered)
        return [skill for skill in self._topo_order if not self.is_unlocked(skill.id, mastered_set)]

    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "skills": [self._serialize_skill(skill) for skill in self._topo_order],
        }

    # ------------------------------------------------------------------
    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SkillGraph":
        return cls(skills_from_payload(payload))

    # ------------------------------------------------------------------
    @staticmethod
    def _serialize_skill(skill: SkillNode) -> Dict[str, Any]:
        learn, prove = skill.tiers
        return {
            "id": skill.id,
            "name": skill.name,
            "description": skill.description,
            "strand": skill.strand.value,
            "grade": skill.grade_level,
            "common_core_id": skill.common_core_id,
            "estimated_minutes": skill.estimated_minutes,
            "keywords": list(skill.keywords),
            "prerequisites": list(skill.prerequisites),
            "tiers": {"learn": learn.to_dict(), "prove": prove.to_dict()},
        }


# ---------------------------------------------------------------------------
# Corpus loading
# ---------------------------------------------------------------------------


def _load_corpus_payload(path: Path) -> Dict[str, Any]:
    suffix = path.suffix.lower()
    text = Path(path).read_text(encoding="utf-8")
    if suffix in {".json", ".jsonc"}:
        return json.loads(text)
    if suffix in {".yml", ".yaml"}:
        return yaml.safe_load(text)
    raise ValueError(f"Unsupported skill corpus format: {path}")


def _tier_from_payload(tier: Tier, data: Mapping[str, Any], fallback: TierConfig) -> TierConfig:
    return TierConfig(
        tier=tier,
        problems_required=int(data.get("problems_required", fallback.problems_required)),
        accuracy_threshold=float(data.get("accuracy_threshold", fallback.accuracy_threshold)),
        time_limit_secs=int(data.get("time_limit_secs", fallback.time_limit_secs)),
        hints_allowed=bool(data.get("hints_allowed", fallback.hints_allowed)),
    )


def skills_from_payload(payload: Mapping[str, Any]) -> List[SkillNode]:
    """Convert a corpus payload into skill nodes.

    Tier values missing on a skill fall back to the corpus-level
    ``default_tiers`` block, then to :func:`default_tiers`.
    """

    base_learn, base_prove = default_tiers()
    defaults = payload.get("default_tiers") or {}
    corpus_learn = _tier_from_payload(Tier.LEARN, defaults.get("learn") or {}, base_learn)
    corpus_prove = _tier_from_payload(Tier.PROVE, defaults.get("prove") or {}, base_prove)

    errors: List[str] = []
    unparsed_ids: List[str] = []
    skills: List[SkillNode] = []
    for index, entry in enumerate(payload.get("skills", []), start=1):
        skill_id = str(entry.get("id") or "").strip()
        if not skill_id:
            errors.append(f"skill #{index} is missing a non-empty 'id'")
            continue
        try:
            strand = Strand(entry.get("strand"))
        except ValueError:
            errors.append(f"skill {skill_id!r} has unknown strand {entry.get('strand')!r}")
            unparsed_ids.append(skill_id)
            continue
        tiers = entry.get("tiers") or {}
        skills.append(
            SkillNode(
                id=skill_id,
                name=entry.get("name", skill_id),
                strand=strand,
                grade_level=int(entry.get("grade", 0)),
                prerequisites=tuple(entry.get("prerequisites", [])),
                tiers=(
                    _tier_from_payload(Tier.LEARN, tiers.get("learn") or {}, corpus_learn),
                    _tier_from_payload(Tier.PROVE, tiers.get("prove") or {}, corpus_prove),
                ),
                description=entry.get("description", ""),
                common_core_id=entry.get("common_core_id", ""),
                estimated_minutes=int(entry.get("estimated_minutes", 0)),
                keywords=tuple(entry.get("keywords", [])),
            )
        )
    if errors:
        raise SkillGraphValidationError(errors + collect_violations(skills, unparsed_ids))
    return skills


def load_skill_corpus(path: Optional[Path] = None) -> SkillGraph:
    """Load, validate and index a JSON or YAML skill corpus."""

    resolved_path = Path(path) if path is not None else DEFAULT_CORPUS_PATH
    try:
        payload = _load_corpus_payload(resolved_path)
    except FileNotFoundError as exc:
        raise FileNotFoundError(f"Skill corpus not found at {resolved_path}") from exc

    graph = SkillGraph.from_dict(payload)
    logger.info(
        "Loaded skill corpus %s (%d skills, version %s)",
        resolved_path.name,
        len(graph),
        payload.get("version", "-"),
    )
    return graph


__all__ = [
    "ALL_STRANDS",
    "DEFAULT_CORPUS_PATH",
    "SkillGraph",
    "SkillGraphValidationError",
    "SkillNode",
    "SkillNotFoundError",
    "Strand",
    "Tier",
    "TierConfig",
    "collect_violations",
    "default_tiers",
    "load_skill_corpus",
    "skills_from_payload",
    "strand_display_name",
    "tier_from_string",
    "validate_skills",
]
