from groupmatch.services.domain import FallbackStrategy, Location, MatchingPolicy, Member
from groupmatch.services.orchestrator import generate_matches


def _member(member_id: str, **kwargs) -> Member:
    return Member(id=member_id, **kwargs)


def test_policy_upsert_and_get(sqlite_repo):
    assert sqlite_repo.get_zone_policy("zone-1") is None
    sqlite_repo.upsert_zone_policy("zone-1", {"default_group_size": 4})
    assert sqlite_repo.get_zone_policy("zone-1") == {"default_group_size": 4}
    sqlite_repo.upsert_zone_policy("zone-1", {"default_group_size": 6})
    assert sqlite_repo.get_zone_policy("zone-1") == {"default_group_size": 6}
    assert sqlite_repo.get_zone_policy("zone-2") is None


def test_members_upsert_and_list_in_id_order(sqlite_repo):
    members = [
        _member("b", age_group="30-39", location=Location(zone="north", lat=40.0, lng=-73.0), interests=frozenset({"chess"})),
        _member("a", family_stage="couple"),
    ]
    assert sqlite_repo.upsert_members("zone-1", members) == 2
    listed = sqlite_repo.list_zone_members("zone-1")
    assert [m.id for m in listed] == ["a", "b"]
    assert listed[0].location is None
    assert listed[1].location == Location(zone="north", lat=40.0, lng=-73.0)
    assert listed[1].interests == frozenset({"chess"})

    sqlite_repo.upsert_members("zone-1", [_member("a", family_stage="single")])
    listed = sqlite_repo.list_zone_members("zone-1")
    assert len(listed) == 2
    assert listed[0].family_stage == "single"
    assert sqlite_repo.list_zone_members("zone-2") == []


def test_match_run_persists_groups_in_order(sqlite_repo):
    policy = MatchingPolicy(
        zone_id="zone-1",
        location_hard=False,
        default_group_size=2,
        fallback_strategy=FallbackStrategy.WAITLIST,
    )
    pool = [_member(f"m{i}") for i in range(5)]
    outcome = generate_matches(policy, pool)
    run_id, group_ids = sqlite_repo.create_match_run(outcome, policy)

    assert len(group_ids) == 2
    latest = sqlite_repo.get_latest_run("zone-1")
    assert latest["id"] == run_id
    assert latest["fingerprint"] == outcome.fingerprint
    assert sqlite_repo.get_latest_run("zone-2") is None

    groups = sqlite_repo.list_zone_groups("zone-1")
    assert [g["id"] for g in groups] == group_ids
    assert [tuple(g["member_ids"]) for g in groups] == [g.member_ids for g in outcome.groups]
    assert all(g["status"] == "active" for g in groups)
    assert groups[0]["breakdown"] == outcome.groups[0].breakdown
    assert sqlite_repo.list_zone_groups("zone-1", status="pending_approval") == []


def test_work_from_home_pattern_is_stored(sqlite_repo):
    sqlite_repo.upsert_members("zone-1", [_member("a", work_from_home="hybrid"), _member("b")])
    listed = sqlite_repo.list_zone_members("zone-1")
    assert [m.work_from_home for m in listed] == ["hybrid", None]
