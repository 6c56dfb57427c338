from __future__ import annotations

import hashlib
import json
from typing import Any, Sequence

from .domain import MatchingPolicy, Member


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def run_fingerprint(policy: MatchingPolicy, members: Sequence[Member]) -> str:
    # zone_id lives on the run row, not in the hash.
    policy_payload = policy.to_dict()
    policy_payload.pop("zone_id", None)
    payload = {
        "policy": policy_payload,
        "members": [m.to_dict() for m in members],
    }
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()
