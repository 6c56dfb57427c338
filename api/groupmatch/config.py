import json
import os
from typing import Any

ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DATABASE_URL = os.getenv("DATABASE_URL", "postgresql+psycopg2://postgres:postgres@db:5432/groupmatch")

AGE_BUCKETS: list[str] = [
    b.strip() for b in os.getenv("AGE_BUCKETS", "18-29,30-39,40-49,50-59,60+").split(",") if b.strip()
]
FAMILY_STAGES: set[str] = {
    s.strip()
    for s in os.getenv(
        "FAMILY_STAGES",
        "young-family,growing-family,family_with_kids,married_with_children,single_with_children",
    ).split(",")
    if s.strip()
}

MIN_GROUP_SIZE = 2
MAX_GROUP_SIZE = int(os.getenv("MAX_GROUP_SIZE", "12"))
ZONE_ADJACENT_MILES = float(os.getenv("ZONE_ADJACENT_MILES", "3.0"))

LOCAL_SEARCH_MAX_ITERATIONS = int(os.getenv("LOCAL_SEARCH_MAX_ITERATIONS", "200"))
LOCAL_SEARCH_TIME_BUDGET_SECONDS = float(os.getenv("LOCAL_SEARCH_TIME_BUDGET_SECONDS", "2.0"))
SCORING_WORKERS = int(os.getenv("SCORING_WORKERS", "4"))
PARALLEL_SCORING_MIN_POOL = int(os.getenv("PARALLEL_SCORING_MIN_POOL", "200"))

DEFAULT_POLICY: dict[str, Any] = {
    "mode": "automatic",
    "default_group_size": 5,
    "family_group_size": 4,
    "gender_mode": "mixed",
    "gender_allowed": ["men", "women"],
    "gender_hard": False,
    "gender_weight": 40,
    "stage_alignment": "mix",
    "stage_hard": False,
    "stage_weight": 60,
    "season_use": False,
    "season_value": None,
    "season_hard": False,
    "season_weight": 50,
    "family_stage_alignment": "mix",
    "family_stage_hard": False,
    "family_stage_weight": 40,
    "age_alignment": "same",
    "age_hard": False,
    "age_weight": 30,
    "location_scope": "inside_only",
    "max_distance_miles": 25.0,
    "location_hard": True,
    "same_community_weight": 50,
    "interests_weight": 0,
    "group_interest_weight": 0,
    "availability_weight": 0,
    "work_from_home_weight": 0,
    "min_pair_score": 0.3,
    "fallback_strategy": "auto_relax",
}

if os.getenv("DEFAULT_POLICY_JSON"):
    try:
        DEFAULT_POLICY.update(json.loads(os.getenv("DEFAULT_POLICY_JSON", "{}")))
    except json.JSONDecodeError:
        pass

ZONE_ADJACENCY: dict[str, list[str]] = {}
if os.getenv("ZONE_ADJACENCY_JSON"):
    try:
        ZONE_ADJACENCY = json.loads(os.getenv("ZONE_ADJACENCY_JSON", "{}"))
    except json.JSONDecodeError:
        pass
