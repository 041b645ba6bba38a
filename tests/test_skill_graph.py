import json

import pytest
import yaml

from skill_graph import (
    ALL_STRANDS,
    SkillGraph,
    SkillGraphValidationError,
    SkillNode,
    SkillNotFoundError,
    Strand,
    Tier,
    load_skill_corpus,
)


def _skill(skill_id, strand, grade=3, prerequisites=()):
    return SkillNode(
        id=skill_id,
        name=skill_id.title(),
        strand=strand,
        grade_level=grade,
        prerequisites=tuple(prerequisites),
    )


def build_sample_graph() -> SkillGraph:
    return SkillGraph(
        [
            _skill("e", Strand.MEASUREMENT, 4, ["c"]),
            _skill("d", Strand.FRACTIONS, 4, ["b", "c"]),
            _skill("c", Strand.MULT_DIV, 3),
            _skill("b", Strand.ADD_SUB, 3, ["a"]),
            _skill("a", Strand.NUMBER_PLACE, 3),
        ]
    )


def test_topological_order_is_lexicographic_among_ready_skills():
    graph = build_sample_graph()
    assert [skill.id for skill in graph.topological_order()] == ["a", "b", "c", "d", "e"]
    assert graph.topo_position("d") == 3


def test_topological_order_ignores_declaration_order():
    first = build_sample_graph()
    second = SkillGraph(list(reversed(first.all_skills())))
    assert [s.id for s in first.topological_order()] == [s.id for s in second.topological_order()]


def test_prerequisites_precede_dependents_in_bundled_corpus(graph):
    for skill in graph.all_skills():
        for prereq in skill.prerequisites:
            assert graph.topo_position(prereq) < graph.topo_position(skill.id)


def test_unlocked_with_empty_mastery_is_roots_only(graph):
    roots = {skill.id for skill in graph.root_skills()}
    assert roots == {"pv-hundreds", "mult-facts", "meas-time"}
    unlocked = {skill.id for skill in graph.all_skills() if graph.is_unlocked(skill.id, set())}
    assert unlocked == roots
    assert [s.id for s in graph.available_skills([])] == ["meas-time", "mult-facts", "pv-hundreds"]


def test_available_skills_exclude_mastered(graph):
    mastered = {"pv-hundreds", "mult-facts"}
    available = {skill.id for skill in graph.available_skills(mastered)}
    assert available.isdisjoint(mastered)
    assert {"add-3digit", "sub-3digit", "div-facts", "meas-area", "pv-thousands"} <= available
    assert "mult-2digit" not in available


def test_frontier_prefers_non_root_skills(graph):
    assert {s.id for s in graph.frontier_skills([])} == {"pv-hundreds", "mult-facts", "meas-time"}
    frontier = graph.frontier_skills({"pv-hundreds"})
    assert frontier and all(not skill.is_root for skill in frontier)


def test_blocked_skills_complement_unlocked(graph):
    blocked = {s.id for s in graph.blocked_skills({"pv-hundreds"})}
    assert "pv-rounding" not in blocked
    assert "div-facts" in blocked


def test_dependents_and_counts(graph):
    assert graph.dependent_count("mult-facts") == 4
    assert {s.id for s in graph.dependents("pv-hundreds")} == {
        "pv-rounding",
        "pv-thousands",
        "add-3digit",
        "sub-3digit",
    }
    assert [s.id for s in graph.prerequisites("div-long")] == ["div-facts", "mult-2digit"]


def test_strand_and_grade_indexes(graph):
    place_value = [s.id for s in graph.by_strand(Strand.NUMBER_PLACE)]
    assert place_value[0] == "pv-hundreds"
    assert place_value[-1] == "pv-decimals"
    grades = [s.grade_level for s in graph.by_strand(Strand.FRACTIONS)]
    assert grades == sorted(grades)

    grade_three = graph.by_grade(3)
    strand_rank = {strand: i for i, strand in enumerate(ALL_STRANDS)}
    ranks = [strand_rank[s.strand] for s in grade_three]
    assert ranks == sorted(ranks)
    assert graph.by_grade(9) == []


def test_unknown_skill_lookup_raises():
    graph = build_sample_graph()
    with pytest.raises(SkillNotFoundError) as excinfo:
        graph.get_skill("missing")
    assert excinfo.value.skill_id == "missing"
    assert isinstance(excinfo.value, KeyError)
    assert "missing" not in graph
    assert graph.is_unlocked("missing", set()) is False


def test_validation_collects_every_violation():
    skills = [
        _skill("a", Strand.NUMBER_PLACE),
        _skill("a", Strand.NUMBER_PLACE),
        _skill("b", Strand.ADD_SUB, prerequisites=["ghost"]),
    ]
    with pytest.raises(SkillGraphValidationError) as excinfo:
        SkillGraph(skills)
    errors = excinfo.value.errors
    assert any("duplicate skill ID" in e for e in errors)
    assert any("'ghost'" in e for e in errors)
    assert sum("has no skills" in e for e in errors) == 3
    assert not any("cycle" in e for e in errors)


def test_validation_detects_cycles_and_missing_roots():
    skills = [
        _skill("x", Strand.NUMBER_PLACE, prerequisites=["y"]),
        _skill("y", Strand.ADD_SUB, prerequisites=["x"]),
        _skill("z", Strand.MULT_DIV, prerequisites=["x"]),
        _skill("f", Strand.FRACTIONS, prerequisites=["z"]),
        _skill("m", Strand.MEASUREMENT, prerequisites=["z"]),
    ]
    with pytest.raises(SkillGraphValidationError) as excinfo:
        SkillGraph(skills)
    errors = excinfo.value.errors
    assert any(e.startswith("cycle detected") for e in errors)
    assert any("no root skills" in e for e in errors)


def test_round_trip_through_dict_preserves_tiers(graph):
    restored = SkillGraph.from_dict(graph.to_dict())
    assert len(restored) == len(graph)
    skill = restored.get_skill("frac-multiply")
    assert skill.tier_config(Tier.PROVE).time_limit_secs == 30
    assert skill.tier_config(Tier.LEARN).problems_required == 8
    assert skill.prerequisites == graph.get_skill("frac-multiply").prerequisites


def test_yaml_corpus_with_tier_overrides(tmp_path):
    payload = {
        "version": "test",
        "default_tiers": {"prove": {"time_limit_secs": 45}},
        "skills": [
            {"id": "a", "name": "A", "strand": "number-and-place-value", "grade": 3},
            {"id": "b", "name": "B", "strand": "addition-and-subtraction", "grade": 3,
             "prerequisites": ["a"], "tiers": {"learn": {"problems_required": 4}}},
            {"id": "c", "name": "C", "strand": "multiplication-and-division", "grade": 3},
            {"id": "d", "name": "D", "strand": "fractions", "grade": 4, "prerequisites": ["c"]},
            {"id": "e", "name": "E", "strand": "measurement", "grade": 4},
        ],
    }
    path = tmp_path / "corpus.yaml"
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")

    graph = load_skill_corpus(path)
    assert len(graph) == 5
    assert graph.get_skill("a").tier_config(Tier.PROVE).time_limit_secs == 45
    assert graph.get_skill("b").tier_config(Tier.LEARN).problems_required == 4
    assert graph.get_skill("b").tier_config(Tier.LEARN).accuracy_threshold == 0.75


def test_unknown_strand_is_reported(tmp_path):
    path = tmp_path / "corpus.json"
    path.write_text('{"skills": [{"id": "a", "strand": "geometry"}, {"strand": "fractions"}]}')
    with pytest.raises(SkillGraphValidationError) as excinfo:
        load_skill_corpus(path)
    errors = excinfo.value.errors
    assert errors[:2] == [
        "skill 'a' has unknown strand 'geometry'",
        "skill #2 is missing a non-empty 'id'",
    ]
    assert any(error.startswith("no root skills") for error in errors)


def test_parse_errors_do_not_hide_structural_violations(tmp_path):
    path = tmp_path / "corpus.json"
    path.write_text(
        json.dumps(
            {
                "skills": [
                    {"id": "a", "strand": "geometry"},
                    {"id": "b", "strand": "fractions", "prerequisites": ["ghost", "a"]},
                ]
            }
        )
    )
    with pytest.raises(SkillGraphValidationError) as excinfo:
        load_skill_corpus(path)
    errors = excinfo.value.errors
    assert errors[0] == "skill 'a' has unknown strand 'geometry'"
    assert "skill 'b' references nonexistent prerequisite 'ghost'" in errors
    assert not any("nonexistent prerequisite 'a'" in error for error in errors)
    assert any(error.startswith("no root skills") for error in errors)
    assert sum("has no skills" in error for error in errors) == 4


def test_missing_corpus_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_skill_corpus(tmp_path / "nope.json")
