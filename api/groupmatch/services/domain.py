from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any


class PolicyMode(str, Enum):
    AUTOMATIC = "automatic"
    REVIEW_REQUIRED = "review_required"


class Alignment(str, Enum):
    MIX = "mix"
    SAME = "same"


class GenderMode(str, Enum):
    MIXED = "mixed"
    SINGLE = "single"


class LocationScope(str, Enum):
    INSIDE_ONLY = "inside_only"
    NEARBY_OK = "nearby_ok"


class FallbackStrategy(str, Enum):
    FILL_PARTIAL = "fill_partial"
    AUTO_RELAX = "auto_relax"
    WAITLIST = "waitlist"


class GroupStatus(str, Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    ACTIVE = "active"


class Criterion(str, Enum):
    GENDER = "gender"
    STAGE = "stage"
    SEASON = "season"
    FAMILY_STAGE = "family_stage"
    AGE = "age"
    LOCATION = "location"
    INTERESTS = "interests"
    GROUP_INTEREST = "group_interest"
    AVAILABILITY = "availability"
    WORK_FROM_HOME = "work_from_home"


# Criteria that carry a *_hard flag on the policy.
HARD_CAPABLE = (
    Criterion.GENDER,
    Criterion.STAGE,
    Criterion.SEASON,
    Criterion.FAMILY_STAGE,
    Criterion.AGE,
    Criterion.LOCATION,
)

WEIGHT_FIELDS: dict[Criterion, str] = {
    Criterion.GENDER: "gender_weight",
    Criterion.STAGE: "stage_weight",
    Criterion.SEASON: "season_weight",
    Criterion.FAMILY_STAGE: "family_stage_weight",
    Criterion.AGE: "age_weight",
    Criterion.LOCATION: "same_community_weight",
    Criterion.INTERESTS: "interests_weight",
    Criterion.GROUP_INTEREST: "group_interest_weight",
    Criterion.AVAILABILITY: "availability_weight",
    Criterion.WORK_FROM_HOME: "work_from_home_weight",
}

HARD_FIELDS: dict[Criterion, str] = {
    Criterion.GENDER: "gender_hard",
    Criterion.STAGE: "stage_hard",
    Criterion.SEASON: "season_hard",
    Criterion.FAMILY_STAGE: "family_stage_hard",
    Criterion.AGE: "age_hard",
    Criterion.LOCATION: "location_hard",
}


class MatchingError(Exception):
    pass


class PolicyValidationError(ValueError):
    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.errors = errors or []


class ConservationError(MatchingError):
    pass


@dataclass(frozen=True)
class Location:
    zone: str | None = None
    lat: float | None = None
    lng: float | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None

    @property
    def is_empty(self) -> bool:
        return not self.zone and not self.has_coordinates


@dataclass(frozen=True)
class Member:
    id: str
    age_group: str | None = None
    location: Location | None = None
    family_stage: str | None = None
    gender: str | None = None
    life_stage: str | None = None
    season_interest: str | None = None
    group_interest: str | None = None
    work_from_home: str | None = None
    interests: frozenset[str] = frozenset()
    availability: frozenset[str] = frozenset()

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["interests"] = sorted(self.interests)
        out["availability"] = sorted(self.availability)
        return out


@dataclass(frozen=True)
class MatchingPolicy:
    zone_id: str | None = None
    mode: PolicyMode = PolicyMode.AUTOMATIC
    default_group_size: int = 5
    family_group_size: int = 4

    gender_mode: GenderMode = GenderMode.MIXED
    gender_allowed: frozenset[str] = frozenset({"men", "women"})
    gender_hard: bool = False
    gender_weight: float = 40

    stage_alignment: Alignment = Alignment.MIX
    stage_hard: bool = False
    stage_weight: float = 60

    season_use: bool = False
    season_value: str | None = None
    season_hard: bool = False
    season_weight: float = 50

    family_stage_alignment: Alignment = Alignment.MIX
    family_stage_hard: bool = False
    family_stage_weight: float = 40

    age_alignment: Alignment = Alignment.SAME
    age_hard: bool = False
    age_weight: float = 30

    location_scope: LocationScope = LocationScope.INSIDE_ONLY
    max_distance_miles: float = 25.0
    location_hard: bool = True
    same_community_weight: float = 50

    interests_weight: float = 0
    group_interest_weight: float = 0
    availability_weight: float = 0
    work_from_home_weight: float = 0

    # Growth stops once the best candidate scores at or below this.
    min_pair_score: float = 0.3

    fallback_strategy: FallbackStrategy = FallbackStrategy.AUTO_RELAX

    def weight(self, criterion: Criterion) -> float:
        if criterion == Criterion.SEASON and not self.season_use:
            return 0.0
        return float(getattr(self, WEIGHT_FIELDS[criterion]))

    def is_hard(self, criterion: Criterion) -> bool:
        if criterion not in HARD_FIELDS:
            return False
        if criterion == Criterion.SEASON and not self.season_use:
            return False
        return bool(getattr(self, HARD_FIELDS[criterion]))

    def alignment(self, criterion: Criterion) -> Alignment:
        if criterion == Criterion.FAMILY_STAGE:
            return self.family_stage_alignment
        if criterion == Criterion.STAGE:
            return self.stage_alignment
        if criterion == Criterion.AGE:
            return self.age_alignment
        if criterion == Criterion.GENDER:
            return Alignment.MIX if self.gender_mode == GenderMode.MIXED else Alignment.SAME
        return Alignment.SAME

    @property
    def hard_criteria(self) -> tuple[Criterion, ...]:
        return tuple(c for c in HARD_CAPABLE if self.is_hard(c))

    def with_relaxed_constraints(self) -> MatchingPolicy:
        return replace(self, **{name: False for name in HARD_FIELDS.values()})

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key, value in asdict(self).items():
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, frozenset):
                value = sorted(value)
            out[key] = value
        return out


@dataclass(frozen=True)
class Group:
    member_ids: tuple[str, ...]
    compatibility_score: float
    target_size: int
    status: GroupStatus = GroupStatus.DRAFT
    partial: bool = False
    relaxed: bool = False
    breakdown: dict[str, float] = field(default_factory=dict)

    @property
    def size(self) -> int:
        return len(self.member_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "member_ids": list(self.member_ids),
            "size": self.size,
            "target_size": self.target_size,
            "compatibility_score": self.compatibility_score,
            "status": self.status.value,
            "partial": self.partial,
            "relaxed": self.relaxed,
            "breakdown": dict(self.breakdown),
        }


@dataclass
class RunDiagnostics:
    pool_size: int = 0
    excluded_missing_data: dict[str, list[str]] = field(default_factory=dict)
    excluded_by_constraints: list[str] = field(default_factory=list)
    search_budget_exhausted: bool = False
    improvement_iterations: int = 0
    swaps_applied: int = 0
    relaxation_applied: bool = False
    elapsed_ms: float = 0.0
    notes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pool_size": self.pool_size,
            "excluded_missing_data": {k: list(v) for k, v in self.excluded_missing_data.items()},
            "excluded_by_constraints": list(self.excluded_by_constraints),
            "search_budget_exhausted": self.search_budget_exhausted,
            "improvement_iterations": self.improvement_iterations,
            "swaps_applied": self.swaps_applied,
            "relaxation_applied": self.relaxation_applied,
            "elapsed_ms": round(self.elapsed_ms, 3),
            "notes": list(self.notes),
        }


@dataclass(frozen=True)
class SimulationResult:
    eligible_members: int
    potential_groups: int
    waitlist_members: int
    simulation_details: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "eligible_members": self.eligible_members,
            "potential_groups": self.potential_groups,
            "waitlist_members": self.waitlist_members,
            "simulation_details": self.simulation_details,
        }


@dataclass
class RunOutcome:
    zone_id: str | None
    groups: list[Group]
    waitlist: list[str]
    excluded: dict[str, list[str]]
    diagnostics: RunDiagnostics
    fingerprint: str
    no_op: bool = False
    persisted_group_ids: list[str] = field(default_factory=list)

    @property
    def grouped_member_count(self) -> int:
        return sum(g.size for g in self.groups)

    def to_dict(self) -> dict[str, Any]:
        return {
            "zone_id": self.zone_id,
            "groups": [g.to_dict() for g in self.groups],
            "groups_created": len(self.groups),
            "members_matched": self.grouped_member_count,
            "waitlist": list(self.waitlist),
            "excluded": {k: list(v) for k, v in self.excluded.items()},
            "diagnostics": self.diagnostics.to_dict(),
            "fingerprint": self.fingerprint,
            "no_op": self.no_op,
            "persisted_group_ids": list(self.persisted_group_ids),
        }
