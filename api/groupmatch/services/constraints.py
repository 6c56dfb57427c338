from __future__ import annotations

from itertools import combinations
from typing import Any, Sequence

from .domain import Alignment, Criterion, GenderMode, LocationScope, MatchingPolicy, Member
from .normalizer import CriterionNormalizer, normalize_category

REQUIRED_FIELDS: dict[Criterion, str] = {
    Criterion.GENDER: "gender",
    Criterion.STAGE: "life_stage",
    Criterion.SEASON: "season_interest",
    Criterion.FAMILY_STAGE: "family_stage",
    Criterion.AGE: "age_group",
    Criterion.LOCATION: "location",
}

CATEGORICAL_ATTRS: dict[Criterion, str] = {
    Criterion.GENDER: "gender",
    Criterion.STAGE: "life_stage",
    Criterion.FAMILY_STAGE: "family_stage",
    Criterion.SEASON: "season_interest",
}

MAX_AGE_BUCKET_GAP = 1


class HardRule:
    name = "rule"

    def member_ok(self, member: Member) -> bool:
        return True

    def pair_ok(self, a: Member, b: Member) -> bool:
        return True

    def group_ok(self, members: Sequence[Member]) -> bool:
        return True


class ExactMatchRule(HardRule):
    def __init__(self, criterion: Criterion) -> None:
        self.name = f"{criterion.value}_same"
        self.attr = CATEGORICAL_ATTRS[criterion]

    def pair_ok(self, a: Member, b: Member) -> bool:
        va, vb = normalize_category(getattr(a, self.attr)), normalize_category(getattr(b, self.attr))
        if va is None or vb is None:
            return True
        return va == vb


class DistinctValuesRule(HardRule):
    """A mixed group needs at least two distinct known values."""

    def __init__(self, criterion: Criterion) -> None:
        self.name = f"{criterion.value}_mix"
        self.attr = CATEGORICAL_ATTRS[criterion]

    def group_ok(self, members: Sequence[Member]) -> bool:
        if len(members) < 2:
            return True
        values = {normalize_category(getattr(m, self.attr)) for m in members}
        values.discard(None)
        if not values:
            return True
        return len(values) >= 2


class AllowedValuesRule(HardRule):
    name = "gender_allowed"

    def __init__(self, allowed: frozenset[str]) -> None:
        self.allowed = {normalize_category(v) for v in allowed}

    def member_ok(self, member: Member) -> bool:
        value = normalize_category(member.gender)
        if value is None:
            return True
        return value in self.allowed


class SeasonTargetRule(HardRule):
    name = "season_target"

    def __init__(self, season: str) -> None:
        self.season = normalize_category(season)

    def member_ok(self, member: Member) -> bool:
        value = normalize_category(member.season_interest)
        if value is None:
            return True
        return value == self.season


class AgeAdjacencyRule(HardRule):
    name = "age_adjacent"

    def __init__(self, normalizer: CriterionNormalizer, max_gap: int = MAX_AGE_BUCKET_GAP) -> None:
        self.normalizer = normalizer
        self.max_gap = max_gap

    def pair_ok(self, a: Member, b: Member) -> bool:
        gap = self.normalizer.age_distance(a, b)
        if gap is None:
            return True
        return gap <= self.max_gap


class MaxDistanceRule(HardRule):
    name = "max_distance"

    def __init__(self, normalizer: CriterionNormalizer, max_miles: float) -> None:
        self.normalizer = normalizer
        self.max_miles = max_miles

    def pair_ok(self, a: Member, b: Member) -> bool:
        miles = self.normalizer.distance_miles(a, b)
        if miles is None:
            return True
        return miles <= self.max_miles


class SameZoneRule(HardRule):
    name = "same_zone"

    def pair_ok(self, a: Member, b: Member) -> bool:
        za = a.location.zone if a.location else None
        zb = b.location.zone if b.location else None
        if not za or not zb:
            return True
        return za == zb


def compile_rules(policy: MatchingPolicy, normalizer: CriterionNormalizer) -> tuple[HardRule, ...]:
    rules: list[HardRule] = []
    for criterion in policy.hard_criteria:
        if criterion in (Criterion.STAGE, Criterion.FAMILY_STAGE):
            if policy.alignment(criterion) == Alignment.SAME:
                rules.append(ExactMatchRule(criterion))
            else:
                rules.append(DistinctValuesRule(criterion))
        elif criterion == Criterion.GENDER:
            if policy.gender_mode == GenderMode.SINGLE:
                rules.append(AllowedValuesRule(policy.gender_allowed))
            else:
                rules.append(DistinctValuesRule(criterion))
        elif criterion == Criterion.SEASON:
            rules.append(ExactMatchRule(criterion))
            if policy.season_value:
                rules.append(SeasonTargetRule(policy.season_value))
        elif criterion == Criterion.AGE:
            rules.append(AgeAdjacencyRule(normalizer))
        elif criterion == Criterion.LOCATION:
            rules.append(MaxDistanceRule(normalizer, policy.max_distance_miles))
            if policy.location_scope == LocationScope.INSIDE_ONLY:
                rules.append(SameZoneRule())
    return tuple(rules)


class ConstraintFilter:
    def __init__(self, policy: MatchingPolicy, normalizer: CriterionNormalizer | None = None) -> None:
        self.policy = policy
        self.normalizer = normalizer or CriterionNormalizer(policy)
        self.rules = compile_rules(policy, self.normalizer)
        self._member_rules = [r for r in self.rules if type(r).member_ok is not HardRule.member_ok]
        self._pair_rules = [r for r in self.rules if type(r).pair_ok is not HardRule.pair_ok]
        self._group_rules = [r for r in self.rules if type(r).group_ok is not HardRule.group_ok]

    @property
    def has_group_rules(self) -> bool:
        return bool(self._group_rules)

    def required_fields(self) -> list[str]:
        return [REQUIRED_FIELDS[c] for c in self.policy.hard_criteria]

    def missing_fields(self, member: Member) -> list[str]:
        missing: list[str] = []
        for field_name in self.required_fields():
            value: Any = getattr(member, field_name)
            if field_name == "location":
                if value is None or value.is_empty:
                    missing.append(field_name)
            elif field_name == "age_group":
                if self.normalizer.age_index(member) is None:
                    missing.append(field_name)
            elif normalize_category(value) is None:
                missing.append(field_name)
        return missing

    def member_ok(self, member: Member) -> bool:
        return all(r.member_ok(member) for r in self._member_rules)

    def pair_feasible(self, a: Member, b: Member) -> bool:
        if not self.member_ok(a) or not self.member_ok(b):
            return False
        return all(r.pair_ok(a, b) for r in self._pair_rules)

    def can_extend(self, members: Sequence[Member], candidate: Member) -> bool:
        if not self.member_ok(candidate):
            return False
        return all(self.pair_feasible(m, candidate) for m in members)

    def group_rules_ok(self, members: Sequence[Member]) -> bool:
        return all(r.group_ok(members) for r in self._group_rules)

    def group_feasible(self, members: Sequence[Member]) -> bool:
        if not all(self.member_ok(m) for m in members):
            return False
        for a, b in combinations(members, 2):
            if not all(r.pair_ok(a, b) for r in self._pair_rules):
                return False
        return self.group_rules_ok(members)

    def violations(self, members: Sequence[Member]) -> list[str]:
        out: list[str] = []
        for rule in self.rules:
            if not all(rule.member_ok(m) for m in members):
                out.append(rule.name)
            elif not all(rule.pair_ok(a, b) for a, b in combinations(members, 2)):
                out.append(rule.name)
            elif not rule.group_ok(members):
                out.append(rule.name)
        return out


def pair_feasible(policy: MatchingPolicy, a: Member, b: Member) -> bool:
    return ConstraintFilter(policy).pair_feasible(a, b)


def group_feasible(policy: MatchingPolicy, members: Sequence[Member]) -> bool:
    return ConstraintFilter(policy).group_feasible(members)


def required_fields(policy: MatchingPolicy) -> list[str]:
    return ConstraintFilter(policy).required_fields()


def missing_fields(policy: MatchingPolicy, member: Member) -> list[str]:
    return ConstraintFilter(policy).missing_fields(member)


def can_extend(policy: MatchingPolicy, members: Sequence[Member], candidate: Member) -> bool:
    return ConstraintFilter(policy).can_extend(members, candidate)
