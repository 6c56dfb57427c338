from __future__ import annotations

import logging
import math
from typing import Any

from ..config import DEFAULT_POLICY, MAX_GROUP_SIZE, MIN_GROUP_SIZE
from .domain import (
    Alignment,
    FallbackStrategy,
    GenderMode,
    LocationScope,
    MatchingPolicy,
    PolicyMode,
    PolicyValidationError,
    WEIGHT_FIELDS,
)

logger = logging.getLogger(__name__)

ENUM_FIELDS: dict[str, type] = {
    "mode": PolicyMode,
    "gender_mode": GenderMode,
    "stage_alignment": Alignment,
    "family_stage_alignment": Alignment,
    "age_alignment": Alignment,
    "location_scope": LocationScope,
    "fallback_strategy": FallbackStrategy,
}
BOOL_FIELDS = {
    "gender_hard",
    "stage_hard",
    "season_use",
    "season_hard",
    "family_stage_hard",
    "age_hard",
    "location_hard",
}
SIZE_FIELDS = {"default_group_size", "family_group_size"}
VALID_SEASONS = {"fall", "winter", "spring", "summer"}

# Stored-row bookkeeping columns accepted and ignored.
IGNORED_FIELDS = {"id", "neighborhood_id", "created_at", "updated_at", "created_by"}

KNOWN_FIELDS = (
    set(ENUM_FIELDS)
    | BOOL_FIELDS
    | SIZE_FIELDS
    | set(WEIGHT_FIELDS.values())
    | {"zone_id", "gender_allowed", "season_value", "max_distance_miles", "min_pair_score"}
)

POLICY_TEMPLATES: dict[str, dict[str, Any]] = {
    "conservative": {
        "name": "Conservative Matching",
        "description": "Prioritizes similar demographics and strict location boundaries",
        "config": {
            "mode": "automatic",
            "default_group_size": 4,
            "family_group_size": 3,
            "gender_mode": "mixed",
            "gender_weight": 60,
            "stage_alignment": "same",
            "stage_weight": 80,
            "age_alignment": "same",
            "age_weight": 70,
            "location_scope": "inside_only",
            "location_hard": True,
            "fallback_strategy": "waitlist",
        },
    },
    "diverse": {
        "name": "Diversity Focused",
        "description": "Encourages mixing across demographics for rich conversations",
        "config": {
            "mode": "automatic",
            "default_group_size": 6,
            "family_group_size": 4,
            "gender_mode": "mixed",
            "gender_weight": 20,
            "stage_alignment": "mix",
            "stage_weight": 30,
            "age_alignment": "mix",
            "age_weight": 20,
            "location_scope": "nearby_ok",
            "max_distance_miles": 50,
            "location_hard": False,
            "fallback_strategy": "auto_relax",
        },
    },
    "family_friendly": {
        "name": "Family Focused",
        "description": "Optimized for families with children and similar schedules",
        "config": {
            "mode": "automatic",
            "default_group_size": 4,
            "family_group_size": 3,
            "gender_mode": "mixed",
            "gender_weight": 30,
            "stage_alignment": "same",
            "stage_weight": 90,
            "family_stage_alignment": "same",
            "family_stage_weight": 85,
            "age_alignment": "same",
            "age_weight": 40,
            "location_scope": "inside_only",
            "location_hard": True,
            "same_community_weight": 80,
            "fallback_strategy": "fill_partial",
        },
    },
    "professional": {
        "name": "Professional Network",
        "description": "For working professionals looking to build business connections",
        "config": {
            "mode": "review_required",
            "default_group_size": 5,
            "family_group_size": 4,
            "gender_mode": "mixed",
            "gender_weight": 25,
            "stage_alignment": "mix",
            "stage_weight": 40,
            "age_alignment": "mix",
            "age_weight": 35,
            "location_scope": "nearby_ok",
            "max_distance_miles": 30,
            "location_hard": False,
            "same_community_weight": 60,
            "fallback_strategy": "auto_relax",
        },
    },
    "seasonal": {
        "name": "Seasonal Interest",
        "description": "Groups people based on shared seasonal activities and interests",
        "config": {
            "mode": "automatic",
            "default_group_size": 6,
            "family_group_size": 4,
            "gender_mode": "mixed",
            "gender_weight": 35,
            "stage_alignment": "mix",
            "stage_weight": 45,
            "season_use": True,
            "season_weight": 75,
            "age_alignment": "mix",
            "age_weight": 25,
            "location_scope": "nearby_ok",
            "max_distance_miles": 40,
            "location_hard": False,
            "fallback_strategy": "auto_relax",
        },
    },
    "high_energy": {
        "name": "High Energy Matching",
        "description": "Fast, frequent matching for active communities",
        "config": {
            "mode": "automatic",
            "default_group_size": 7,
            "family_group_size": 5,
            "gender_mode": "mixed",
            "gender_weight": 15,
            "stage_alignment": "mix",
            "stage_weight": 20,
            "age_alignment": "mix",
            "age_weight": 15,
            "location_scope": "nearby_ok",
            "max_distance_miles": 60,
            "location_hard": False,
            "same_community_weight": 30,
            "fallback_strategy": "fill_partial",
        },
    },
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _not_finite(key: str) -> dict[str, Any]:
    return {"code": "out_of_range", "path": key, "message": f"{key} must be a finite number"}


def validate_policy_dict(data: dict[str, Any], *, allow_unknown: bool = False) -> list[dict[str, Any]]:
    errors: list[dict[str, Any]] = []

    for key in data:
        if key in KNOWN_FIELDS or key in IGNORED_FIELDS:
            continue
        if not allow_unknown:
            errors.append({"code": "unknown_field", "path": key, "message": f"unknown policy field '{key}'"})

    for key, enum_cls in ENUM_FIELDS.items():
        if key not in data:
            continue
        allowed = [e.value for e in enum_cls]
        value = data[key]
        if isinstance(value, enum_cls):
            continue
        if value not in allowed:
            errors.append({"code": "invalid_enum", "path": key, "message": f"{key} must be one of {allowed}"})

    for key in BOOL_FIELDS:
        if key in data and not isinstance(data[key], bool):
            errors.append({"code": "invalid_type", "path": key, "message": f"{key} must be a boolean"})

    for key in SIZE_FIELDS:
        if key not in data:
            continue
        value = data[key]
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append({"code": "invalid_type", "path": key, "message": f"{key} must be an integer"})
        elif value < MIN_GROUP_SIZE or value > MAX_GROUP_SIZE:
            errors.append(
                {
                    "code": "out_of_range",
                    "path": key,
                    "message": f"{key} must be between {MIN_GROUP_SIZE} and {MAX_GROUP_SIZE}",
                }
            )

    for key in WEIGHT_FIELDS.values():
        if key not in data:
            continue
        value = data[key]
        if not _is_number(value):
            errors.append({"code": "invalid_type", "path": key, "message": f"{key} must be a number"})
        elif not math.isfinite(value):
            errors.append(_not_finite(key))
        elif value < 0 or value > 100:
            errors.append({"code": "out_of_range", "path": key, "message": f"{key} must be between 0 and 100"})

    if "max_distance_miles" in data:
        value = data["max_distance_miles"]
        if not _is_number(value):
            errors.append({"code": "invalid_type", "path": "max_distance_miles", "message": "max_distance_miles must be a number"})
        elif not math.isfinite(value):
            errors.append(_not_finite("max_distance_miles"))
        elif value <= 0:
            errors.append({"code": "out_of_range", "path": "max_distance_miles", "message": "max_distance_miles must be positive"})

    if "min_pair_score" in data:
        value = data["min_pair_score"]
        if not _is_number(value):
            errors.append({"code": "invalid_type", "path": "min_pair_score", "message": "min_pair_score must be a number"})
        elif not math.isfinite(value):
            errors.append(_not_finite("min_pair_score"))
        elif value < 0 or value > 1:
            errors.append({"code": "out_of_range", "path": "min_pair_score", "message": "min_pair_score must be between 0 and 1"})

    if "gender_allowed" in data:
        value = data["gender_allowed"]
        if not isinstance(value, (list, tuple, set, frozenset)) or not all(isinstance(v, str) for v in value):
            errors.append({"code": "invalid_type", "path": "gender_allowed", "message": "gender_allowed must be a list of strings"})

    season_value = data.get("season_value")
    if season_value is not None and season_value not in VALID_SEASONS:
        errors.append(
            {"code": "invalid_enum", "path": "season_value", "message": f"season_value must be one of {sorted(VALID_SEASONS)}"}
        )

    return errors


def build_policy(data: dict[str, Any], zone_id: str | None = None) -> MatchingPolicy:
    errors = validate_policy_dict(data)
    if errors:
        logger.info("[POLICY] rejected zone=%s errors=%s", zone_id, [e["path"] for e in errors])
        raise PolicyValidationError("Invalid matching policy", errors)

    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key in IGNORED_FIELDS or key == "zone_id":
            continue
        if key in ENUM_FIELDS:
            value = ENUM_FIELDS[key](value)
        elif key == "gender_allowed":
            value = frozenset(str(v).strip().lower() for v in value)
        elif key == "season_value" and value is not None:
            value = str(value)
        elif key in WEIGHT_FIELDS.values() or key in ("max_distance_miles", "min_pair_score"):
            value = float(value)
        kwargs[key] = value

    return MatchingPolicy(zone_id=zone_id or data.get("zone_id"), **kwargs)


def default_policy_dict() -> dict[str, Any]:
    return dict(DEFAULT_POLICY)


def merge_policy(base: dict[str, Any] | MatchingPolicy | None, overrides: dict[str, Any] | None) -> dict[str, Any]:
    if isinstance(base, MatchingPolicy):
        merged = base.to_dict()
    else:
        merged = default_policy_dict()
        merged.update(base or {})
    for key in IGNORED_FIELDS:
        merged.pop(key, None)
    merged.update(overrides or {})
    return merged


def resolve_policy(
    stored: dict[str, Any] | MatchingPolicy | None,
    overrides: dict[str, Any] | None = None,
    zone_id: str | None = None,
) -> MatchingPolicy:
    return build_policy(merge_policy(stored, overrides), zone_id=zone_id)


def template_policy(template_id: str, zone_id: str | None = None) -> MatchingPolicy:
    template = POLICY_TEMPLATES.get(template_id)
    if not template:
        raise PolicyValidationError(
            f"Unknown policy template '{template_id}'",
            [{"code": "unknown_template", "path": "template_id", "message": f"must be one of {sorted(POLICY_TEMPLATES)}"}],
        )
    return resolve_policy(None, template["config"], zone_id=zone_id)
