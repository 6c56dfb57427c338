from groupmatch.services.constraints import ConstraintFilter
from groupmatch.services.domain import Alignment, MatchingPolicy, Member
from groupmatch.services.scoring import (
    CompatibilityScorer,
    PairScoreTable,
    breakdown,
    canonical_pair,
    group_score,
    pair_score,
    size_variance,
)

ZERO_WEIGHTS = {
    "gender_weight": 0,
    "stage_weight": 0,
    "family_stage_weight": 0,
    "age_weight": 0,
    "same_community_weight": 0,
}


def _policy(**kwargs) -> MatchingPolicy:
    base = dict(ZERO_WEIGHTS, location_hard=False)
    base.update(kwargs)
    return MatchingPolicy(**base)


def _member(member_id: str, interests=(), availability=(), **kwargs) -> Member:
    return Member(id=member_id, interests=frozenset(interests), availability=frozenset(availability), **kwargs)


def test_all_zero_weights_scores_one():
    policy = _policy()
    assert pair_score(policy, _member("a"), _member("b")) == 1.0


def test_pair_score_is_weighted_average():
    policy = _policy(interests_weight=50, availability_weight=50)
    a = _member("a", interests={"hiking"}, availability={"sat_am"})
    b = _member("b", interests={"hiking"}, availability={"sun_pm"})
    assert pair_score(policy, a, b) == 0.5


def test_weights_need_not_sum_to_100():
    policy = _policy(interests_weight=10, availability_weight=30)
    a = _member("a", interests={"hiking"}, availability={"sat_am"})
    b = _member("b", interests={"hiking"}, availability={"sun_pm"})
    assert pair_score(policy, a, b) == 0.25


def test_group_score_is_mean_of_pairs():
    policy = _policy(interests_weight=100)
    a = _member("a", interests={"x"})
    b = _member("b", interests={"x"})
    c = _member("c", interests={"y"})
    assert group_score(policy, [a, b, c]) == 1 / 3
    assert group_score(policy, [a]) == 0.0


def test_breakdown_reports_active_criteria_only():
    policy = _policy(family_stage_weight=40, family_stage_alignment=Alignment.SAME, interests_weight=60)
    scorer = CompatibilityScorer(policy)
    a = _member("a", family_stage="couple", interests={"x"})
    b = _member("b", family_stage="couple", interests={"y"})
    assert scorer.breakdown([a, b]) == {"family_stage": 1.0, "interests": 0.0}


def test_size_variance():
    assert size_variance([3, 3]) == 0.0
    assert size_variance([2, 4]) == 1.0
    assert size_variance([5]) == 0.0


def test_canonical_pair_orders_ids():
    assert canonical_pair("b", "a") == ("a", "b")
    assert canonical_pair("a", "b") == ("a", "b")


def _pool() -> list[Member]:
    stages = ["single", "couple", "young-family"]
    return [
        _member(
            f"m{i:02d}",
            interests={f"tag{i % 4}", f"tag{i % 3}"},
            family_stage=stages[i % 3],
        )
        for i in range(12)
    ]


def test_pair_table_skips_infeasible_pairs():
    policy = _policy(interests_weight=100, family_stage_hard=True, family_stage_alignment=Alignment.SAME)
    members = _pool()
    table = PairScoreTable(CompatibilityScorer(policy), members, ConstraintFilter(policy).pair_feasible, workers=1)
    assert table.feasible("m00", "m03")
    assert not table.feasible("m00", "m01")
    assert "m01" not in table.partners("m00")
    assert len(table) == 3 * 6


def test_pair_table_ranking_is_sorted_and_tie_broken_by_id():
    policy = _policy()
    members = [_member("c"), _member("a"), _member("b")]
    table = PairScoreTable(CompatibilityScorer(policy), members, lambda a, b: True, workers=1)
    assert [(a, b) for a, b, _ in table.ranked_pairs()] == [("a", "b"), ("a", "c"), ("b", "c")]


def test_parallel_scoring_matches_serial():
    policy = _policy(interests_weight=70, family_stage_weight=30)
    members = _pool()
    scorer = CompatibilityScorer(policy)
    serial = PairScoreTable(scorer, members, lambda a, b: True, workers=1)
    threaded = PairScoreTable(scorer, members, lambda a, b: True, workers=4, parallel_min_pool=1)
    assert serial.ranked_pairs() == threaded.ranked_pairs()


def test_work_from_home_counts_only_when_weighted():
    a = _member("a", interests={"hiking"}, work_from_home="remote")
    b = _member("b", interests={"hiking"}, work_from_home="office")
    assert pair_score(_policy(interests_weight=50), a, b) == 1.0
    assert pair_score(_policy(interests_weight=50, work_from_home_weight=50), a, b) == 0.5
    assert "work_from_home" in breakdown(_policy(work_from_home_weight=10), [a, b])
