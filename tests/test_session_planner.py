from datetime import timedelta

import pytest

from engines.mastery import MasteryService
from engines.session_planner import (
    NothingToPracticeError,
    Plan,
    PlannerConfig,
    SessionPlanner,
    SlotCategory,
    advance_slot,
    require_plan,
    slot_mix,
)
from engines.spaced_repetition import SpacedRepetitionScheduler
from learner_history import AnswerEvent, InMemoryAnswerLog
from skill_graph import Tier


def _mastered(graph, *skill_ids):
    snapshot = {"mastery": {skill_id: {"state": "mastered", "current_tier": "prove"} for skill_id in skill_ids}}
    return MasteryService.from_snapshot(snapshot, graph)


def test_slot_mix_defaults():
    mix = slot_mix(5)
    assert (mix.frontier, mix.review, mix.booster) == (3, 1, 1)
    mix = slot_mix(10)
    assert (mix.frontier, mix.review, mix.booster) == (7, 2, 1)
    mix = slot_mix(1)
    assert (mix.frontier, mix.review, mix.booster) == (1, 0, 0)


def test_new_learner_gets_all_frontier_slots(graph, now):
    planner = SessionPlanner(graph, MasteryService(graph))
    plan = planner.build_plan(now)

    assert plan.categories() == [SlotCategory.FRONTIER] * 5
    assert [slot.skill.id for slot in plan.slots] == [
        "mult-facts",
        "pv-hundreds",
        "meas-time",
        "mult-facts",
        "pv-hundreds",
    ]
    assert all(slot.tier is Tier.LEARN for slot in plan.slots)
    assert plan.duration == timedelta(minutes=15)
    assert plan.questions_per_slot == 3


def test_mixed_plan_uses_due_reviews_and_booster(graph, now):
    mastery = _mastered(graph, "pv-hundreds", "mult-facts")
    scheduler = SpacedRepetitionScheduler(mastery)
    scheduler.init_skill("pv-hundreds", now - timedelta(days=20))
    scheduler.init_skill("mult-facts", now - timedelta(days=3))

    plan = SessionPlanner(graph, mastery, scheduler).build_plan(now)

    assert plan.categories() == [
        SlotCategory.FRONTIER,
        SlotCategory.FRONTIER,
        SlotCategory.FRONTIER,
        SlotCategory.REVIEW,
        SlotCategory.BOOSTER,
    ]
    assert [slot.skill.id for slot in plan.slots] == [
        "add-3digit",
        "div-facts",
        "meas-area",
        "pv-hundreds",
        "mult-facts",
    ]
    assert plan.slots[3].tier is Tier.PROVE
    assert plan.slots[4].tier is Tier.LEARN


def test_review_slot_falls_back_to_frontier_when_nothing_due(graph, now):
    mastery = _mastered(graph, "pv-hundreds")
    scheduler = SpacedRepetitionScheduler(mastery)
    scheduler.init_skill("pv-hundreds", now)

    plan = SessionPlanner(graph, mastery, scheduler).build_plan(now)

    assert plan.categories().count(SlotCategory.REVIEW) == 0
    assert plan.categories().count(SlotCategory.FRONTIER) == 4
    assert plan.slots[-1].category is SlotCategory.BOOSTER


def test_review_without_scheduler_prefers_least_recent(graph, now):
    mastery = _mastered(graph, "pv-hundreds", "mult-facts")
    log = InMemoryAnswerLog()
    log.record(AnswerEvent("pv-hundreds", True, "frontier", 3000, now - timedelta(days=1)))
    log.record(AnswerEvent("mult-facts", True, "frontier", 3000, now - timedelta(days=9)))
    log.record(AnswerEvent("mult-facts", False, "frontier", 3000, now - timedelta(days=9)))

    plan = SessionPlanner(graph, mastery, history=log).build_plan(now)

    review = [slot.skill.id for slot in plan.slots if slot.category is SlotCategory.REVIEW]
    booster = [slot.skill.id for slot in plan.slots if slot.category is SlotCategory.BOOSTER]
    assert review == ["mult-facts"]
    assert booster == ["pv-hundreds"]


def test_everything_mastered_fills_reviews_then_boosters(graph, now):
    all_ids = [skill.id for skill in graph.all_skills()]
    mastery = _mastered(graph, *all_ids)
    scheduler = SpacedRepetitionScheduler(mastery)
    scheduler.init_skill("meas-volume", now - timedelta(days=2))

    plan = SessionPlanner(graph, mastery, scheduler).build_plan(now)

    assert SlotCategory.FRONTIER not in plan.categories()
    assert plan.categories() == [SlotCategory.REVIEW, SlotCategory.BOOSTER]
    assert plan.slots[0].skill.id == "meas-volume"


def test_planner_does_not_create_records(graph, now):
    mastery = MasteryService(graph)
    SessionPlanner(graph, mastery, config=PlannerConfig(total_slots=3)).build_plan(now)
    assert mastery.all_records() == {}


def test_require_plan_rejects_empty_plan():
    with pytest.raises(NothingToPracticeError):
        require_plan(Plan())


def test_advance_slot_skips_completed():
    assert advance_slot(0, set(), 3) == 1
    assert advance_slot(2, set(), 3) == 0
    assert advance_slot(0, {1}, 3) == 2
    assert advance_slot(1, {0, 2}, 3) == 1
    assert advance_slot(0, {0, 1, 2}, 3) is None
    assert advance_slot(0, set(), 0) is None
