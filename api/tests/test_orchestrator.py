import pytest

from groupmatch.services.domain import (
    Alignment,
    FallbackStrategy,
    GroupStatus,
    Location,
    MatchingError,
    MatchingPolicy,
    Member,
    PolicyMode,
    PolicyValidationError,
)
from groupmatch.services.orchestrator import MatchRunOrchestrator, generate_matches, simulate_matching


def _policy(**kwargs) -> MatchingPolicy:
    kwargs.setdefault("location_hard", False)
    kwargs.setdefault("zone_id", "zone-1")
    return MatchingPolicy(**kwargs)


def _member(member_id: str, **kwargs) -> Member:
    return Member(id=member_id, **kwargs)


def _near(member_id: str, **kwargs) -> Member:
    return _member(member_id, location=Location(zone="north", lat=40.0, lng=-73.0), **kwargs)


def _far_apart(n: int) -> list[Member]:
    return [_member(f"p{i}", location=Location(lat=30.0 + i, lng=-90.0)) for i in range(n)]


def _accounted(outcome) -> int:
    return outcome.grouped_member_count + len(outcome.waitlist) + len(outcome.excluded)


def test_six_members_in_two_stages_make_two_groups_of_three():
    policy = _policy(default_group_size=3, family_stage_hard=True, family_stage_alignment=Alignment.SAME)
    pool = [_member(f"m{i}", family_stage="single" if i % 2 else "couple") for i in range(6)]
    outcome = generate_matches(policy, pool)
    assert [g.size for g in outcome.groups] == [3, 3]
    assert outcome.waitlist == []
    assert all(g.status == GroupStatus.ACTIVE for g in outcome.groups)


def test_five_members_size_four_waitlist_one():
    policy = _policy(default_group_size=4, fallback_strategy=FallbackStrategy.WAITLIST)
    pool = [_member(f"m{i}") for i in range(5)]
    outcome = generate_matches(policy, pool)
    assert [g.size for g in outcome.groups] == [4]
    assert len(outcome.waitlist) == 1
    assert outcome.excluded == {}


def test_far_apart_pool_with_hard_location_is_all_waitlisted():
    policy = _policy(location_hard=True, max_distance_miles=5, fallback_strategy=FallbackStrategy.WAITLIST)
    pool = _far_apart(5)
    outcome = generate_matches(policy, pool)
    assert outcome.groups == []
    assert outcome.waitlist == [m.id for m in pool]
    assert outcome.excluded == {}
    assert outcome.diagnostics.excluded_by_constraints == [m.id for m in pool]


def test_missing_data_is_excluded_and_conserved():
    policy = _policy(location_hard=True, default_group_size=2, fallback_strategy=FallbackStrategy.WAITLIST)
    pool = [_near("a"), _near("b"), _member("c"), _near("d")]
    outcome = generate_matches(policy, pool)
    assert outcome.excluded == {"c": ["location"]}
    assert outcome.diagnostics.excluded_missing_data == {"c": ["location"]}
    assert _accounted(outcome) == len(pool)


def test_review_required_groups_await_approval():
    policy = _policy(mode=PolicyMode.REVIEW_REQUIRED, default_group_size=2)
    outcome = generate_matches(policy, [_member("a"), _member("b")])
    assert [g.status for g in outcome.groups] == [GroupStatus.PENDING_APPROVAL]


def test_conservation_holds_for_every_strategy():
    pool = [_near(f"n{i}", age_group=["18-29", "40-49", "60+"][i % 3]) for i in range(10)] + [_member("nowhere")]
    for strategy in FallbackStrategy:
        policy = _policy(location_hard=True, age_hard=True, default_group_size=3, fallback_strategy=strategy)
        outcome = generate_matches(policy, pool)
        assert _accounted(outcome) == len(pool)
        assert all(2 <= g.size <= 12 for g in outcome.groups)


def test_generate_is_deterministic():
    policy = _policy(default_group_size=3, interests_weight=50)
    pool = [_member(f"m{i}", interests=frozenset({f"t{i % 3}"})) for i in range(9)]
    first = generate_matches(policy, pool)
    second = generate_matches(policy, pool)
    assert [g.member_ids for g in first.groups] == [g.member_ids for g in second.groups]
    assert first.fingerprint == second.fingerprint


def test_fingerprint_changes_with_policy_and_pool():
    pool = [_member("a"), _member("b")]
    base = generate_matches(_policy(default_group_size=2), pool).fingerprint
    assert generate_matches(_policy(default_group_size=3), pool).fingerprint != base
    assert generate_matches(_policy(default_group_size=2), pool + [_member("c")]).fingerprint != base


def test_simulation_has_no_side_effects_and_matches_generate():
    policy = _policy(default_group_size=3)
    pool = [_member(f"m{i}") for i in range(7)]
    snapshot = list(pool)
    sim = simulate_matching(policy, pool)
    again = simulate_matching(policy, pool)
    outcome = generate_matches(policy, pool)
    assert pool == snapshot
    assert sim.to_dict()["simulation_details"]["member_breakdown"] == again.to_dict()["simulation_details"]["member_breakdown"]
    assert sim.potential_groups == len(outcome.groups)
    assert sim.waitlist_members == len(outcome.waitlist)


def test_simulation_report_breakdown():
    policy = _policy(location_hard=True, default_group_size=2, fallback_strategy=FallbackStrategy.WAITLIST)
    pool = [_near("a"), _near("b"), _near("c"), _member("d")]
    result = simulate_matching(policy, pool)
    breakdown = result.simulation_details["member_breakdown"]
    assert breakdown == {
        "total": 4,
        "eligible": 3,
        "filtered_out": 1,
        "excluded_missing_data": 1,
        "excluded_by_constraints": 0,
        "waitlisted": 1,
        "grouped": 2,
    }
    assert result.eligible_members == 3
    assert result.potential_groups == 1
    assert result.simulation_details["policy_used"]["default_group_size"] == 2


def test_simulation_overrides_are_merged_and_validated():
    policy = _policy(default_group_size=4)
    pool = [_member(f"m{i}") for i in range(4)]
    assert simulate_matching(policy, pool).potential_groups == 1
    assert simulate_matching(policy, pool, overrides={"default_group_size": 2}).potential_groups == 2
    with pytest.raises(PolicyValidationError):
        simulate_matching(policy, pool, overrides={"default_group_size": 1})
    with pytest.raises(PolicyValidationError):
        simulate_matching(policy, pool, overrides={"no_such_field": True})


def test_relaxing_location_never_groups_fewer_members():
    pool = _far_apart(6)
    strict = _policy(location_hard=True, max_distance_miles=5, default_group_size=3, fallback_strategy=FallbackStrategy.WAITLIST)
    relaxed = _policy(location_hard=False, max_distance_miles=5, default_group_size=3, fallback_strategy=FallbackStrategy.WAITLIST)
    assert generate_matches(strict, pool).grouped_member_count == 0
    assert generate_matches(relaxed, pool).grouped_member_count == 6


def test_auto_relax_flags_relaxation_in_diagnostics():
    policy = _policy(location_hard=True, max_distance_miles=5, default_group_size=2, fallback_strategy=FallbackStrategy.AUTO_RELAX)
    outcome = generate_matches(policy, _far_apart(4))
    assert outcome.diagnostics.relaxation_applied is True
    assert all(g.relaxed for g in outcome.groups)
    assert outcome.waitlist == []


def test_budget_exhaustion_is_reported_not_raised():
    ticks = iter(range(0, 100_000, 10))
    orchestrator = MatchRunOrchestrator(time_budget_seconds=0.5, clock=lambda: float(next(ticks)))
    outcome = orchestrator.generate(_policy(default_group_size=2), [_member(f"m{i}") for i in range(6)])
    assert outcome.diagnostics.search_budget_exhausted is True
    assert "search budget exhausted" in outcome.diagnostics.notes
    assert outcome.grouped_member_count == 6


def test_duplicate_member_ids_are_rejected():
    with pytest.raises(MatchingError):
        generate_matches(_policy(), [_member("a"), _member("a")])


def test_policy_may_be_passed_as_dict():
    outcome = generate_matches({"default_group_size": 2, "location_hard": False}, [_member("a"), _member("b")])
    assert len(outcome.groups) == 1


@pytest.mark.parametrize(
    "strategy,sizes,waitlisted",
    [
        (FallbackStrategy.WAITLIST, [], 3),
        (FallbackStrategy.FILL_PARTIAL, [3], 0),
        (FallbackStrategy.AUTO_RELAX, [], 3),
    ],
)
def test_pool_below_group_size_goes_to_fallback(strategy, sizes, waitlisted):
    policy = _policy(default_group_size=5, fallback_strategy=strategy)
    outcome = generate_matches(policy, [_member(f"m{i}") for i in range(3)])
    assert [g.size for g in outcome.groups] == sizes
    assert len(outcome.waitlist) == waitlisted
    assert all(g.partial for g in outcome.groups)
    assert any("below default_group_size" in note for note in outcome.diagnostics.notes)


def _two_stage_pool() -> list[Member]:
    return [
        _member("a1", family_stage="single"),
        _member("a2", family_stage="single"),
        _member("b1", family_stage="couple"),
        _member("b2", family_stage="couple"),
    ]


def _three_stage_pool() -> list[Member]:
    return [
        _member("s1", family_stage="single"),
        _member("s2", family_stage="single"),
        _member("c1", family_stage="couple"),
        _member("c2", family_stage="couple"),
        _member("r1", family_stage="empty_nest"),
        _member("r2", family_stage="empty_nest"),
    ]


@pytest.mark.parametrize("strategy", list(FallbackStrategy))
@pytest.mark.parametrize("pool,size", [(_two_stage_pool(), 4), (_three_stage_pool(), 3)])
def test_relaxing_family_stage_never_lowers_group_count(strategy, pool, size):
    def run(hard):
        policy = _policy(
            default_group_size=size,
            family_stage_alignment=Alignment.SAME,
            family_stage_hard=hard,
            fallback_strategy=strategy,
        )
        return simulate_matching(policy, pool)

    strict, relaxed = run(True), run(False)
    assert relaxed.potential_groups >= strict.potential_groups
    assert relaxed.waitlist_members <= strict.waitlist_members
    assert relaxed.waitlist_members == 0


def test_soft_family_stage_fills_one_group_of_four():
    policy = _policy(default_group_size=4, family_stage_alignment=Alignment.SAME, fallback_strategy=FallbackStrategy.WAITLIST)
    outcome = generate_matches(policy, _two_stage_pool())
    assert [g.member_ids for g in outcome.groups] == [("a1", "a2", "b1", "b2")]
    assert outcome.waitlist == []
