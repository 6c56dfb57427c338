import json
import uuid
from datetime import datetime, timezone
from typing import Any, Sequence

from sqlalchemy import text

from groupmatch.database import SessionLocal
from groupmatch.services.domain import Location, MatchingPolicy, Member, RunOutcome


def _now_utc() -> str:
    return datetime.now(timezone.utc).isoformat()


def _load_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def get_zone_policy(zone_id: str) -> dict[str, Any] | None:
    with SessionLocal() as db:
        row = db.execute(
            text(
                """
                SELECT zone_id, config, created_by, updated_at
                FROM matching_policy
                WHERE zone_id = :zone_id
                """
            ),
            {"zone_id": zone_id},
        ).mappings().first()
    if not row:
        return None
    return _load_json(row["config"], {})


def upsert_zone_policy(zone_id: str, config: dict[str, Any], created_by: str | None = None) -> dict[str, Any]:
    now = _now_utc()
    with SessionLocal() as db:
        db.execute(
            text(
                """
                INSERT INTO matching_policy (id, zone_id, config, created_by, created_at, updated_at)
                VALUES (:id, :zone_id, :config, :created_by, :now, :now)
                ON CONFLICT (zone_id)
                DO UPDATE SET config = excluded.config, created_by = excluded.created_by, updated_at = excluded.updated_at
                """
            ),
            {
                "id": str(uuid.uuid4()),
                "zone_id": zone_id,
                "config": json.dumps(config, sort_keys=True),
                "created_by": created_by,
                "now": now,
            },
        )
        db.commit()
    return get_zone_policy(zone_id) or {}


def upsert_members(zone_id: str, members: Sequence[Member]) -> int:
    written = 0
    with SessionLocal() as db:
        for member in members:
            location = member.location or Location()
            db.execute(
                text(
                    """
                    INSERT INTO community_member
                    (id, zone_id, member_id, age_group, family_stage, gender, life_stage, season_interest,
                     group_interest, work_from_home, location_zone, lat, lng, interests, availability, active, updated_at)
                    VALUES (:id, :zone_id, :member_id, :age_group, :family_stage, :gender, :life_stage, :season_interest,
                            :group_interest, :work_from_home, :location_zone, :lat, :lng, :interests, :availability, :active, :now)
                    ON CONFLICT (zone_id, member_id)
                    DO UPDATE SET
                      age_group = excluded.age_group,
                      family_stage = excluded.family_stage,
                      gender = excluded.gender,
                      life_stage = excluded.life_stage,
                      season_interest = excluded.season_interest,
                      group_interest = excluded.group_interest,
                      work_from_home = excluded.work_from_home,
                      location_zone = excluded.location_zone,
                      lat = excluded.lat,
                      lng = excluded.lng,
                      interests = excluded.interests,
                      availability = excluded.availability,
                      active = excluded.active,
                      updated_at = excluded.updated_at
                    """
                ),
                {
                    "id": str(uuid.uuid4()),
                    "zone_id": zone_id,
                    "member_id": member.id,
                    "age_group": member.age_group,
                    "family_stage": member.family_stage,
                    "gender": member.gender,
                    "life_stage": member.life_stage,
                    "season_interest": member.season_interest,
                    "group_interest": member.group_interest,
                    "work_from_home": member.work_from_home,
                    "location_zone": location.zone,
                    "lat": location.lat,
                    "lng": location.lng,
                    "interests": json.dumps(sorted(member.interests)),
                    "availability": json.dumps(sorted(member.availability)),
                    "active": True,
                    "now": _now_utc(),
                },
            )
            written += 1
        db.commit()
    return written


def _member_from_row(row: Any) -> Member:
    location = None
    if row.get("location_zone") or row.get("lat") is not None or row.get("lng") is not None:
        location = Location(zone=row.get("location_zone"), lat=row.get("lat"), lng=row.get("lng"))
    return Member(
        id=str(row["member_id"]),
        age_group=row.get("age_group"),
        location=location,
        family_stage=row.get("family_stage"),
        gender=row.get("gender"),
        life_stage=row.get("life_stage"),
        season_interest=row.get("season_interest"),
        group_interest=row.get("group_interest"),
        work_from_home=row.get("work_from_home"),
        interests=frozenset(_load_json(row.get("interests"), [])),
        availability=frozenset(_load_json(row.get("availability"), [])),
    )


def list_zone_members(zone_id: str) -> list[Member]:
    with SessionLocal() as db:
        rows = db.execute(
            text(
                """
                SELECT member_id, age_group, family_stage, gender, life_stage, season_interest,
                       group_interest, work_from_home, location_zone, lat, lng, interests, availability
                FROM community_member
                WHERE zone_id = :zone_id
                  AND active = :active
                ORDER BY member_id
                """
            ),
            {"zone_id": zone_id, "active": True},
        ).mappings().all()
    return [_member_from_row(r) for r in rows]


def get_latest_run(zone_id: str) -> dict[str, Any] | None:
    with SessionLocal() as db:
        row = db.execute(
            text(
                """
                SELECT id, zone_id, fingerprint, groups_created, members_matched, created_at
                FROM match_run
                WHERE zone_id = :zone_id
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """
            ),
            {"zone_id": zone_id},
        ).mappings().first()
    return dict(row) if row else None


def create_match_run(outcome: RunOutcome, policy: MatchingPolicy) -> tuple[str, list[str]]:
    run_id = str(uuid.uuid4())
    group_ids: list[str] = []
    now = _now_utc()
    with SessionLocal() as db:
        db.execute(
            text(
                """
                INSERT INTO match_run
                (id, zone_id, fingerprint, policy_snapshot, groups_created, members_matched,
                 waitlist, excluded_members, diagnostics, created_at)
                VALUES (:id, :zone_id, :fingerprint, :policy_snapshot, :groups_created, :members_matched,
                        :waitlist, :excluded_members, :diagnostics, :now)
                """
            ),
            {
                "id": run_id,
                "zone_id": outcome.zone_id,
                "fingerprint": outcome.fingerprint,
                "policy_snapshot": json.dumps(policy.to_dict(), sort_keys=True),
                "groups_created": len(outcome.groups),
                "members_matched": outcome.grouped_member_count,
                "waitlist": json.dumps(outcome.waitlist),
                "excluded_members": json.dumps(outcome.excluded, sort_keys=True),
                "diagnostics": json.dumps(outcome.diagnostics.to_dict(), sort_keys=True),
                "now": now,
            },
        )
        for position, group in enumerate(outcome.groups):
            group_id = str(uuid.uuid4())
            db.execute(
                text(
                    """
                    INSERT INTO match_group
                    (id, run_id, zone_id, position, status, compatibility_score, target_size,
                     partial, relaxed, breakdown, created_at)
                    VALUES (:id, :run_id, :zone_id, :position, :status, :compatibility_score, :target_size,
                            :partial, :relaxed, :breakdown, :now)
                    """
                ),
                {
                    "id": group_id,
                    "run_id": run_id,
                    "zone_id": outcome.zone_id,
                    "position": position,
                    "status": group.status.value,
                    "compatibility_score": group.compatibility_score,
                    "target_size": group.target_size,
                    "partial": group.partial,
                    "relaxed": group.relaxed,
                    "breakdown": json.dumps(group.breakdown, sort_keys=True),
                    "now": now,
                },
            )
            for member_position, member_id in enumerate(group.member_ids):
                db.execute(
                    text(
                        """
                        INSERT INTO match_group_member (id, group_id, member_id, position)
                        VALUES (:id, :group_id, :member_id, :position)
                        """
                    ),
                    {"id": str(uuid.uuid4()), "group_id": group_id, "member_id": member_id, "position": member_position},
                )
            group_ids.append(group_id)
        db.commit()
    return run_id, group_ids


def list_zone_groups(zone_id: str, status: str | None = None) -> list[dict[str, Any]]:
    with SessionLocal() as db:
        groups = db.execute(
            text(
                """
                SELECT g.id, g.run_id, g.zone_id, g.position, g.status, g.compatibility_score, g.target_size,
                       g.partial, g.relaxed, g.breakdown, g.created_at
                FROM match_group g
                WHERE g.zone_id = :zone_id
                  AND (:status IS NULL OR g.status = :status)
                ORDER BY g.created_at DESC, g.position ASC
                """
            ),
            {"zone_id": zone_id, "status": status},
        ).mappings().all()
        members = db.execute(
            text(
                """
                SELECT gm.group_id, gm.member_id
                FROM match_group_member gm
                JOIN match_group g ON g.id = gm.group_id
                WHERE g.zone_id = :zone_id
                ORDER BY gm.group_id, gm.position
                """
            ),
            {"zone_id": zone_id},
        ).mappings().all()

    by_group: dict[str, list[str]] = {}
    for row in members:
        by_group.setdefault(str(row["group_id"]), []).append(str(row["member_id"]))

    out = []
    for g in groups:
        member_ids = by_group.get(str(g["id"]), [])
        out.append(
            {
                "id": str(g["id"]),
                "run_id": str(g["run_id"]),
                "zone_id": g["zone_id"],
                "status": g["status"],
                "compatibility_score": float(g["compatibility_score"]),
                "target_size": int(g["target_size"]),
                "size": len(member_ids),
                "partial": bool(g["partial"]),
                "relaxed": bool(g["relaxed"]),
                "breakdown": _load_json(g["breakdown"], {}),
                "member_ids": member_ids,
                "created_at": g["created_at"],
            }
        )
    return out
