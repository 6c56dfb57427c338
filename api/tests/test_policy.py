import pytest

from groupmatch.services.domain import Alignment, Criterion, FallbackStrategy, MatchingPolicy, PolicyValidationError
from groupmatch.services.policy import (
    POLICY_TEMPLATES,
    build_policy,
    default_policy_dict,
    merge_policy,
    resolve_policy,
    template_policy,
    validate_policy_dict,
)


def _paths(errors):
    return sorted(e["path"] for e in errors)


def test_defaults_build_a_valid_policy():
    policy = resolve_policy(None, zone_id="zone-1")
    assert policy.zone_id == "zone-1"
    assert policy.default_group_size == default_policy_dict()["default_group_size"]
    assert policy.fallback_strategy == FallbackStrategy(default_policy_dict()["fallback_strategy"])


@pytest.mark.parametrize(
    "field,value",
    [
        ("default_group_size", 1),
        ("default_group_size", 13),
        ("family_group_size", 1),
        ("gender_weight", 101),
        ("age_weight", -1),
        ("stage_alignment", "sideways"),
        ("max_distance_miles", 0),
        ("location_hard", "yes"),
        ("season_value", "monsoon"),
    ],
)
def test_invalid_values_are_rejected(field, value):
    errors = validate_policy_dict({field: value})
    assert _paths(errors) == [field]
    with pytest.raises(PolicyValidationError) as exc:
        build_policy({field: value})
    assert exc.value.errors[0]["path"] == field


def test_unknown_field_rejected_but_row_columns_ignored():
    assert _paths(validate_policy_dict({"colour": "blue"})) == ["colour"]
    assert validate_policy_dict({"colour": "blue"}, allow_unknown=True) == []
    policy = build_policy({"id": "row-1", "created_at": "2026-01-01", "default_group_size": 6})
    assert policy.default_group_size == 6


def test_validation_error_is_a_value_error():
    with pytest.raises(ValueError):
        build_policy({"default_group_size": 0})


def test_merge_overrides_onto_stored_policy():
    stored = {"default_group_size": 6, "age_alignment": "mix"}
    merged = merge_policy(stored, {"default_group_size": 3})
    assert merged["default_group_size"] == 3
    assert merged["age_alignment"] == "mix"
    assert merged["fallback_strategy"] == default_policy_dict()["fallback_strategy"]


def test_merge_onto_policy_object_round_trips():
    policy = MatchingPolicy(zone_id="z", default_group_size=7)
    again = resolve_policy(policy, {"stage_alignment": "same"}, zone_id="z")
    assert again.default_group_size == 7
    assert again.stage_alignment == Alignment.SAME


def test_season_weight_inactive_until_season_used():
    assert MatchingPolicy(season_weight=80).weight(Criterion.SEASON) == 0.0
    assert MatchingPolicy(season_use=True, season_weight=80).weight(Criterion.SEASON) == 80.0


def test_relaxed_policy_clears_hard_flags_and_keeps_weights():
    policy = MatchingPolicy(age_hard=True, location_hard=True, gender_hard=True, age_weight=70)
    relaxed = policy.with_relaxed_constraints()
    assert relaxed.hard_criteria == ()
    assert relaxed.age_weight == 70
    assert policy.hard_criteria != ()


@pytest.mark.parametrize("template_id", sorted(POLICY_TEMPLATES))
def test_every_template_is_valid(template_id):
    policy = template_policy(template_id, zone_id="zone-1")
    assert policy.zone_id == "zone-1"


def test_unknown_template_raises():
    with pytest.raises(PolicyValidationError):
        template_policy("chaotic")


@pytest.mark.parametrize(
    "field,value",
    [
        ("gender_weight", float("nan")),
        ("interests_weight", float("inf")),
        ("max_distance_miles", float("nan")),
        ("max_distance_miles", float("inf")),
        ("min_pair_score", float("nan")),
    ],
)
def test_non_finite_numbers_are_rejected(field, value):
    errors = validate_policy_dict({field: value})
    assert _paths(errors) == [field]
    assert errors[0]["code"] == "out_of_range"
    with pytest.raises(PolicyValidationError):
        build_policy({field: value})


def test_min_pair_score_must_be_a_fraction():
    assert _paths(validate_policy_dict({"min_pair_score": 1.5})) == ["min_pair_score"]
    assert _paths(validate_policy_dict({"min_pair_score": "high"})) == ["min_pair_score"]
    policy = build_policy({"min_pair_score": 0, "work_from_home_weight": 25})
    assert policy.min_pair_score == 0.0
    assert policy.weight(Criterion.WORK_FROM_HOME) == 25.0


def test_growth_threshold_and_work_from_home_have_defaults():
    defaults = default_policy_dict()
    assert defaults["min_pair_score"] == 0.3
    assert defaults["work_from_home_weight"] == 0
    assert resolve_policy(None).min_pair_score == 0.3
