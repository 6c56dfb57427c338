import logging
import uuid
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException
from fastapi.encoders import jsonable_encoder
from pydantic import ValidationError

from .. import repo
from ..deps import require_admin_token
from ..schemas import GenerateRequest, MemberImportRequest, MemberIn, PolicyTemplate, SimulateRequest, SimulationResponse
from ..services.domain import MatchingError, MatchingPolicy, PolicyValidationError, RunOutcome
from ..services.explanations import build_group_explanation
from ..services.orchestrator import MatchRunOrchestrator
from ..services.policy import POLICY_TEMPLATES, resolve_policy

logger = logging.getLogger(__name__)

router = APIRouter()


def _json(data: Any) -> Any:
    return jsonable_encoder(data)


def _detail(*, message: str, hint: str | None = None, errors: list[dict[str, Any]] | None = None, trace_id: str | None = None) -> dict[str, Any]:
    return {
        "success": False,
        "message": message,
        "hint": hint,
        "errors": errors or [],
        "trace_id": trace_id or str(uuid.uuid4()),
    }


def _policy_error(exc: PolicyValidationError) -> HTTPException:
    return HTTPException(
        status_code=422,
        detail=_detail(message=exc.message, hint="Fix the listed policy fields and retry.", errors=exc.errors),
    )


def _matching_error(exc: MatchingError, zone_id: str) -> HTTPException:
    trace_id = str(uuid.uuid4())
    logger.error("[MATCHING] zone=%s run failed trace_id=%s: %s", zone_id, trace_id, exc)
    return HTTPException(status_code=500, detail=_detail(message="Matching run failed", hint=str(exc), trace_id=trace_id))


def _resolve(source: dict[str, Any] | None, overrides: dict[str, Any] | None, zone_id: str) -> MatchingPolicy:
    try:
        return resolve_policy(source, overrides, zone_id=zone_id)
    except PolicyValidationError as exc:
        raise _policy_error(exc)


def _with_explanation(group: dict[str, Any]) -> dict[str, Any]:
    return {**group, "explanation": build_group_explanation(group.get("breakdown"), group.get("compatibility_score"))}


def _outcome_payload(outcome: RunOutcome, run_id: str | None = None) -> dict[str, Any]:
    payload = outcome.to_dict()
    payload["groups"] = [_with_explanation(g) for g in payload["groups"]]
    payload["run_id"] = run_id
    return payload


@router.get("/admin/policy-templates")
def admin_policy_templates(_: str = Depends(require_admin_token)) -> dict[str, Any]:
    templates = [
        PolicyTemplate(id=template_id, name=t["name"], description=t["description"], config=t["config"])
        for template_id, t in POLICY_TEMPLATES.items()
    ]
    return _json({"templates": templates})


@router.get("/admin/zones/{zone_id}/policy")
def admin_zone_policy_get(zone_id: str, _: str = Depends(require_admin_token)) -> dict[str, Any]:
    stored = repo.get_zone_policy(zone_id)
    policy = _resolve(stored, None, zone_id)
    return _json({"zone_id": zone_id, "stored": stored is not None, "policy": policy.to_dict()})


@router.put("/admin/zones/{zone_id}/policy")
def admin_zone_policy_put(
    zone_id: str,
    payload: dict[str, Any] = Body(...),
    _: str = Depends(require_admin_token),
) -> dict[str, Any]:
    policy = _resolve(None, payload, zone_id)
    config = policy.to_dict()
    config.pop("zone_id", None)
    repo.upsert_zone_policy(zone_id, config)
    logger.info("[POLICY] zone=%s policy updated mode=%s fallback=%s", zone_id, policy.mode.value, policy.fallback_strategy.value)
    return _json({"zone_id": zone_id, "stored": True, "policy": policy.to_dict()})


@router.post("/admin/zones/{zone_id}/matches/simulate", response_model=SimulationResponse)
def admin_zone_simulate(
    zone_id: str,
    payload: SimulateRequest | None = Body(default=None),
    _: str = Depends(require_admin_token),
) -> dict[str, Any]:
    payload = payload or SimulateRequest()
    policy = _resolve(repo.get_zone_policy(zone_id), payload.policy_overrides, zone_id)
    pool = repo.list_zone_members(zone_id)
    try:
        result = MatchRunOrchestrator().simulate(policy, pool)
    except MatchingError as exc:
        raise _matching_error(exc, zone_id)
    return _json(result.to_dict())


@router.post("/admin/zones/{zone_id}/matches/generate")
def admin_zone_generate(
    zone_id: str,
    payload: GenerateRequest | None = Body(default=None),
    _: str = Depends(require_admin_token),
) -> dict[str, Any]:
    payload = payload or GenerateRequest()
    if payload.policy is not None:
        policy = _resolve(None, payload.policy, zone_id)
    else:
        stored = repo.get_zone_policy(zone_id)
        if stored is None:
            raise HTTPException(
                status_code=404,
                detail=_detail(
                    message="No matching policy configured for zone",
                    hint="Save a policy for this zone or pass an explicit policy in the request body.",
                ),
            )
        policy = _resolve(stored, None, zone_id)

    pool = repo.list_zone_members(zone_id)
    try:
        outcome = MatchRunOrchestrator().generate(policy, pool)
    except MatchingError as exc:
        raise _matching_error(exc, zone_id)

    latest = repo.get_latest_run(zone_id)
    if not payload.force and latest and latest.get("fingerprint") == outcome.fingerprint:
        outcome.no_op = True
        logger.info("[MATCHING] zone=%s pool and policy unchanged since run %s; nothing persisted", zone_id, latest.get("id"))
        return _json(_outcome_payload(outcome, run_id=str(latest.get("id"))))

    run_id, group_ids = repo.create_match_run(outcome, policy)
    outcome.persisted_group_ids = group_ids
    logger.info("[MATCHING] zone=%s run=%s persisted groups=%s", zone_id, run_id, len(group_ids))
    return _json(_outcome_payload(outcome, run_id=run_id))


@router.get("/admin/zones/{zone_id}/groups")
def admin_zone_groups(zone_id: str, status: str | None = None, _: str = Depends(require_admin_token)) -> dict[str, Any]:
    groups = repo.list_zone_groups(zone_id, status=status)
    return _json({"zone_id": zone_id, "count": len(groups), "groups": [_with_explanation(g) for g in groups]})


@router.post("/admin/zones/{zone_id}/members/import")
def admin_zone_members_import(
    zone_id: str,
    payload: MemberImportRequest,
    _: str = Depends(require_admin_token),
) -> dict[str, Any]:
    members = []
    errors: list[dict[str, Any]] = []
    seen: set[str] = set()
    for row, raw in enumerate(payload.members):
        try:
            member = MemberIn.model_validate(raw).to_member()
        except ValidationError as exc:
            errors.append({"row": row, "errors": exc.errors(include_url=False, include_context=False)})
            continue
        if member.id in seen:
            errors.append({"row": row, "errors": [{"type": "duplicate", "loc": ["id"], "msg": f"duplicate member id '{member.id}'"}]})
            continue
        seen.add(member.id)
        members.append(member)

    if errors:
        raise HTTPException(status_code=422, detail=_json(_detail(message="Invalid member records", errors=errors)))

    imported = repo.upsert_members(zone_id, members)
    logger.info("[MEMBERS] zone=%s imported=%s", zone_id, imported)
    return {"zone_id": zone_id, "imported": imported}
