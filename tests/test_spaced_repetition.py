from datetime import timedelta

from engines.mastery import MasteryService, MasteryState, Trigger
from engines.spaced_repetition import (
    GRADUATED_INTERVAL_DAYS,
    MAX_STAGE,
    ReviewState,
    ReviewStatus,
    SpacedRepetitionScheduler,
    bootstrap_from_mastery,
)
from schemas import MasteryRecordSnapshot


def _mastered_service(graph, *skill_ids, clock=None):
    snapshot = {"mastery": {skill_id: {"state": "mastered", "current_tier": "prove"} for skill_id in skill_ids}}
    return MasteryService.from_snapshot(snapshot, graph, clock=clock)


def test_review_hit_and_miss_move_one_stage(graph, now):
    scheduler = SpacedRepetitionScheduler(_mastered_service(graph, "mult-facts"))
    state = scheduler.init_skill("mult-facts", now)
    state.stage = 2

    scheduler.record_review("mult-facts", True, now)
    assert state.stage == 3
    assert state.next_due == now + timedelta(days=14)

    scheduler.record_review("mult-facts", False, now)
    assert state.stage == 2
    assert state.consecutive_hits == 0
    assert state.next_due == now + timedelta(days=7)


def test_miss_at_stage_two_regresses_to_stage_one(graph, now):
    scheduler = SpacedRepetitionScheduler(_mastered_service(graph, "mult-facts"))
    state = scheduler.init_skill("mult-facts", now)
    state.stage, state.consecutive_hits = 2, 2

    scheduler.record_review("mult-facts", False, now)

    assert state.stage == 1
    assert state.consecutive_hits == 0
    assert state.next_due == now + timedelta(days=3)


def test_miss_at_stage_zero_stays_at_zero(graph, now):
    scheduler = SpacedRepetitionScheduler(_mastered_service(graph, "mult-facts"))
    scheduler.init_skill("mult-facts", now)
    state = scheduler.record_review("mult-facts", False, now)
    assert state.stage == 0
    assert state.next_due == now + timedelta(days=1)


def test_hit_at_final_stage_graduates(graph, now):
    scheduler = SpacedRepetitionScheduler(_mastered_service(graph, "mult-facts"))
    state = scheduler.init_skill("mult-facts", now)
    for _ in range(MAX_STAGE):
        scheduler.record_review("mult-facts", True, now)
    assert state.stage == MAX_STAGE and not state.graduated

    scheduler.record_review("mult-facts", True, now)
    assert state.graduated
    assert state.next_due == now + timedelta(days=GRADUATED_INTERVAL_DAYS)
    assert state.status(now) == ReviewStatus.GRADUATED

    scheduler.record_review("mult-facts", False, now)
    assert not state.graduated
    assert state.stage == MAX_STAGE - 1


def test_untracked_review_is_ignored(graph, now):
    scheduler = SpacedRepetitionScheduler(_mastered_service(graph))
    assert scheduler.record_review("mult-facts", True, now) is None


def test_due_skills_most_overdue_first(graph, now):
    scheduler = SpacedRepetitionScheduler(
        _mastered_service(graph, "mult-facts", "pv-hundreds", "meas-time")
    )
    scheduler.init_skill("mult-facts", now - timedelta(days=3))
    scheduler.init_skill("pv-hundreds", now - timedelta(days=5))
    scheduler.init_skill("meas-time", now)
    scheduler.init_skill("div-facts", now - timedelta(days=30))

    assert scheduler.due_skills(now) == ["pv-hundreds", "mult-facts"]


def test_decay_check_marks_overdue_skills_rusty(graph, now):
    mastery = _mastered_service(graph, "mult-facts", "pv-hundreds")
    scheduler = SpacedRepetitionScheduler(mastery)
    scheduler.init_skill("mult-facts", now - timedelta(days=2))
    scheduler.init_skill("pv-hundreds", now - timedelta(days=1, hours=6))

    transitions = scheduler.run_decay_check(now)

    assert [t.skill_id for t in transitions] == ["mult-facts"]
    assert transitions[0].trigger == Trigger.TIME_DECAY
    assert mastery.get_mastery("mult-facts").state is MasteryState.RUSTY
    assert mastery.get_mastery("pv-hundreds").state is MasteryState.MASTERED
    assert scheduler.due_skills(now) == ["pv-hundreds"]
    assert scheduler.run_decay_check(now) == []


def test_review_state_decay_boundary(now):
    state = ReviewState("x", next_due=now, stage=2)
    assert not state.is_decayed(now + timedelta(days=3.5))
    assert state.is_decayed(now + timedelta(days=3.5, seconds=1))
    assert state.status(now) == ReviewStatus.DUE
    assert state.status(now + timedelta(days=4)) == ReviewStatus.OVERDUE
    assert state.days_until_review(now - timedelta(hours=12)) == 1


def test_bootstrap_uses_mastered_at_or_now(now):
    mastered_at = now - timedelta(days=10)
    reviews = bootstrap_from_mastery(
        {
            "a": MasteryRecordSnapshot(state="mastered", mastered_at=mastered_at),
            "b": MasteryRecordSnapshot(state="mastered"),
            "c": MasteryRecordSnapshot(state="learning"),
        },
        now,
    )
    assert set(reviews) == {"a", "b"}
    assert reviews["a"].next_due == mastered_at + timedelta(days=1)
    assert reviews["b"].next_due == now + timedelta(days=1)
    assert all(review.stage == 0 for review in reviews.values())


def test_from_snapshot_bootstraps_when_schedule_missing(graph, clock):
    mastery = _mastered_service(graph, "mult-facts", clock=clock)
    scheduler = SpacedRepetitionScheduler.from_snapshot({"mastery": {}}, mastery, clock=clock)
    assert scheduler.get_review_state("mult-facts").next_due == clock.now + timedelta(days=1)


def test_snapshot_round_trip(graph, now):
    mastery = _mastered_service(graph, "mult-facts")
    scheduler = SpacedRepetitionScheduler(mastery)
    scheduler.init_skill("mult-facts", now)
    scheduler.record_review("mult-facts", True, now)

    restored = SpacedRepetitionScheduler.from_snapshot(
        {"spaced_repetition": scheduler.snapshot_data()}, mastery
    )
    state = restored.get_review_state("mult-facts")
    assert state.stage == 1
    assert state.consecutive_hits == 1
    assert state.next_due == now + timedelta(days=3)


def test_review_insights(graph, now):
    scheduler = SpacedRepetitionScheduler(_mastered_service(graph, "mult-facts", "pv-hundreds"))
    assert scheduler.generate_review_insights(now) == {"status": "No review data available"}
    scheduler.init_skill("mult-facts", now - timedelta(days=1))
    scheduler.init_skill("pv-hundreds", now)
    insights = scheduler.generate_review_insights(now)
    assert insights["total_items"] == 2
    assert insights["status_counts"][ReviewStatus.DUE] == 1
    assert insights["status_counts"][ReviewStatus.NOT_DUE] == 1
    assert insights["due_this_week"] == 2
