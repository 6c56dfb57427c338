from __future__ import annotations

from typing import Any

_LABELS = {
    "gender": "Gender mix",
    "stage": "Stage of life",
    "season": "Seasonal interest",
    "family_stage": "Family stage",
    "age": "Age range",
    "location": "Distance between members",
    "interests": "Shared interests",
    "group_interest": "Group focus",
    "availability": "Overlapping availability",
    "work_from_home": "Work-from-home pattern",
}

STRONG_THRESHOLD = 0.7
WEAK_THRESHOLD = 0.4


def _safe_num(v: Any, default: float = 0.5) -> float:
    try:
        return float(v)
    except (TypeError, ValueError):
        return default


def _label(key: str) -> str:
    return _LABELS.get(key, key.replace("_", " ").capitalize())


def build_group_explanation(breakdown: dict[str, Any] | None, compatibility_score: Any = None) -> dict[str, Any]:
    items = sorted(
        ((k, _safe_num(v)) for k, v in (breakdown or {}).items()),
        key=lambda x: (-x[1], x[0]),
    )
    strengths = [f"{_label(k)} lines up well across the group." for k, v in items if v >= STRONG_THRESHOLD][:2]
    watch_outs = [
        f"{_label(k)} varies within the group; a quick check-in may help."
        for k, v in reversed(items)
        if v < WEAK_THRESHOLD
    ][:2]

    score = _safe_num(compatibility_score, 0.0)
    if not items:
        summary = "No weighted criteria were active for this group."
    elif strengths:
        summary = f"Strongest fit: {_label(items[0][0]).lower()}."
    else:
        summary = "A balanced group without a single dominant shared trait."

    return {
        "summary": summary,
        "strengths": strengths,
        "watch_outs": watch_outs,
        "score_percent": int(round(score * 100)),
    }
