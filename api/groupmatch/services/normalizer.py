from __future__ import annotations

import math
from typing import Any, Callable

from ..config import AGE_BUCKETS, ZONE_ADJACENCY, ZONE_ADJACENT_MILES
from .domain import Alignment, Criterion, MatchingPolicy, Member

NEUTRAL = 0.5
EARTH_RADIUS_MILES = 3958.8


def haversine_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    lat1_r = math.radians(lat1)
    lat2_r = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    c = 2 * math.asin(min(1.0, math.sqrt(a)))
    return EARTH_RADIUS_MILES * c


def jaccard(a: frozenset[str], b: frozenset[str]) -> float | None:
    if not a and not b:
        return None
    union = a | b
    return len(a & b) / len(union)


def _symmetric_adjacency(raw: dict[str, list[str]]) -> dict[str, set[str]]:
    out: dict[str, set[str]] = {}
    for zone, neighbours in (raw or {}).items():
        for other in neighbours or []:
            out.setdefault(str(zone), set()).add(str(other))
            out.setdefault(str(other), set()).add(str(zone))
    return out


def normalize_category(value: Any) -> str | None:
    if value is None:
        return None
    v = str(value).strip().lower()
    return v or None


class CriterionNormalizer:
    """Per-criterion pair similarity in [0, 1].

    Built once per run from the policy; alignment, season target and distance
    bound are resolved here so the hot path never re-reads policy flags.
    ``raw_similarity`` returns ``None`` when either member lacks the attribute;
    ``similarity`` maps that to the neutral 0.5.
    """

    def __init__(
        self,
        policy: MatchingPolicy,
        age_buckets: list[str] | None = None,
        zone_adjacency: dict[str, list[str]] | None = None,
        adjacent_zone_miles: float | None = None,
    ) -> None:
        self.max_distance_miles = float(policy.max_distance_miles)
        self.season_value = normalize_category(policy.season_value) if policy.season_use else None
        self._alignments = {c: policy.alignment(c) for c in Criterion}
        buckets = age_buckets if age_buckets is not None else AGE_BUCKETS
        self._age_index = {b: i for i, b in enumerate(buckets)}
        self._age_span = max(1, len(buckets) - 1)
        self._adjacency = _symmetric_adjacency(zone_adjacency if zone_adjacency is not None else ZONE_ADJACENCY)
        self._adjacent_miles = ZONE_ADJACENT_MILES if adjacent_zone_miles is None else adjacent_zone_miles
        self._dispatch: dict[Criterion, Callable[[Member, Member], float | None]] = {
            Criterion.GENDER: lambda a, b: self._categorical(Criterion.GENDER, a.gender, b.gender),
            Criterion.STAGE: lambda a, b: self._categorical(Criterion.STAGE, a.life_stage, b.life_stage),
            Criterion.FAMILY_STAGE: lambda a, b: self._categorical(Criterion.FAMILY_STAGE, a.family_stage, b.family_stage),
            Criterion.GROUP_INTEREST: lambda a, b: self._categorical(Criterion.GROUP_INTEREST, a.group_interest, b.group_interest),
            Criterion.WORK_FROM_HOME: lambda a, b: self._categorical(Criterion.WORK_FROM_HOME, a.work_from_home, b.work_from_home),
            Criterion.SEASON: self._season,
            Criterion.AGE: self._age,
            Criterion.LOCATION: self._location,
            Criterion.INTERESTS: lambda a, b: jaccard(a.interests, b.interests),
            Criterion.AVAILABILITY: lambda a, b: jaccard(a.availability, b.availability),
        }

    def similarity(self, criterion: Criterion, a: Member, b: Member) -> float:
        value = self.raw_similarity(criterion, a, b)
        return NEUTRAL if value is None else value

    def raw_similarity(self, criterion: Criterion, a: Member, b: Member) -> float | None:
        return self._dispatch[criterion](a, b)

    def age_index(self, member: Member) -> int | None:
        if member.age_group is None:
            return None
        return self._age_index.get(member.age_group)

    def age_distance(self, a: Member, b: Member) -> int | None:
        ia = self.age_index(a)
        ib = self.age_index(b)
        if ia is None or ib is None:
            return None
        return abs(ia - ib)

    def distance_miles(self, a: Member, b: Member) -> float | None:
        la, lb = a.location, b.location
        if la is None or lb is None:
            return None
        if la.has_coordinates and lb.has_coordinates:
            return haversine_miles(la.lat, la.lng, lb.lat, lb.lng)
        if la.zone and lb.zone:
            if la.zone == lb.zone:
                return 0.0
            if lb.zone in self._adjacency.get(la.zone, set()):
                return self._adjacent_miles
            return math.inf
        return None

    def _aligned(self, criterion: Criterion, value: float) -> float:
        if self._alignments[criterion] == Alignment.MIX:
            return 1.0 - value
        return value

    def _categorical(self, criterion: Criterion, va: Any, vb: Any) -> float | None:
        a, b = normalize_category(va), normalize_category(vb)
        if a is None or b is None:
            return None
        return self._aligned(criterion, 1.0 if a == b else 0.0)

    def _season(self, a: Member, b: Member) -> float | None:
        sa, sb = normalize_category(a.season_interest), normalize_category(b.season_interest)
        if sa is None or sb is None:
            return None
        if self.season_value and (sa != self.season_value or sb != self.season_value):
            return 0.0
        return 1.0 if sa == sb else 0.0

    def _age(self, a: Member, b: Member) -> float | None:
        distance = self.age_distance(a, b)
        if distance is None:
            return None
        return self._aligned(Criterion.AGE, 1.0 - distance / self._age_span)

    def _location(self, a: Member, b: Member) -> float | None:
        miles = self.distance_miles(a, b)
        if miles is None:
            return None
        return max(0.0, 1.0 - miles / self.max_distance_miles)
