from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from statistics import mean
from typing import Any, Callable, Sequence

from ..config import MAX_GROUP_SIZE, MIN_GROUP_SIZE
from .constraints import ConstraintFilter
from .domain import (
    ConservationError,
    Group,
    GroupStatus,
    MatchingError,
    MatchingPolicy,
    Member,
    PolicyMode,
    RunDiagnostics,
    RunOutcome,
    SimulationResult,
)
from .fallback import FallbackResolver
from .fingerprint import run_fingerprint
from .policy import resolve_policy
from .scoring import CompatibilityScorer
from .solver import GroupFormationSolver

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    groups: list[Group]
    waitlist: list[str]
    excluded: dict[str, list[str]]
    eligible: list[Member]
    diagnostics: RunDiagnostics


class MatchRunOrchestrator:
    """Runs filter, solver and fallback over one zone's pool.

    The orchestrator holds no state between runs. ``simulate`` and
    ``generate`` share ``run_pipeline``; only ``generate`` assigns final group
    statuses and a fingerprint, and neither touches storage.
    """

    def __init__(
        self,
        *,
        max_iterations: int | None = None,
        time_budget_seconds: float | None = None,
        workers: int | None = None,
        parallel_min_pool: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_iterations = max_iterations
        self.time_budget_seconds = time_budget_seconds
        self.workers = workers
        self.parallel_min_pool = parallel_min_pool
        self._clock = clock

    def run_pipeline(self, policy: MatchingPolicy, pool: Sequence[Member]) -> PipelineResult:
        started = self._clock()
        pool = list(pool)
        seen: set[str] = set()
        duplicates: set[str] = set()
        for member in pool:
            if member.id in seen:
                duplicates.add(member.id)
            seen.add(member.id)
        if duplicates:
            raise MatchingError(f"duplicate member ids in pool: {sorted(duplicates)}")

        diagnostics = RunDiagnostics(pool_size=len(pool))
        constraints = ConstraintFilter(policy)
        scorer = CompatibilityScorer(policy, constraints.normalizer)

        excluded: dict[str, list[str]] = {}
        eligible: list[Member] = []
        for member in pool:
            missing = constraints.missing_fields(member)
            if missing:
                excluded[member.id] = missing
            else:
                eligible.append(member)
        diagnostics.excluded_missing_data = excluded
        if excluded:
            logger.info(
                "[MATCHING] zone=%s excluded %s members missing required fields", policy.zone_id, len(excluded)
            )

        solver = GroupFormationSolver(
            policy,
            constraints,
            scorer,
            max_iterations=self.max_iterations,
            time_budget_seconds=self.time_budget_seconds,
            workers=self.workers,
            parallel_min_pool=self.parallel_min_pool,
            clock=self._clock,
        )
        capacity = solver.group_capacity(eligible)
        solved = solver.solve(eligible, max_groups=capacity)
        if eligible and len(eligible) < policy.default_group_size:
            diagnostics.notes.append(
                f"{len(eligible)} eligible members is below default_group_size {policy.default_group_size}: no groups formed"
            )
        diagnostics.excluded_by_constraints = [m.id for m in eligible if not solved.table.partners(m.id)]
        if diagnostics.excluded_by_constraints:
            diagnostics.notes.append(
                f"{len(diagnostics.excluded_by_constraints)} members have no feasible partner under hard constraints"
            )
        if solved.stats.dissolved:
            diagnostics.notes.append(
                f"{solved.stats.dissolved} candidate groups dissolved: group-level constraints could not be satisfied"
            )

        fallback = FallbackResolver(solver).resolve(
            policy, solved.groups, solved.leftover, table=solved.table, max_groups=capacity
        )

        stats = [solved.stats] + ([fallback.stats] if fallback.stats else [])
        diagnostics.improvement_iterations = sum(s.iterations for s in stats)
        diagnostics.swaps_applied = sum(s.swaps for s in stats)
        diagnostics.search_budget_exhausted = any(s.budget_exhausted for s in stats)
        if diagnostics.search_budget_exhausted:
            diagnostics.notes.append("search budget exhausted")
        diagnostics.relaxation_applied = fallback.relaxation_applied
        diagnostics.notes.extend(fallback.notes)

        self._check_invariants(pool, fallback.groups, fallback.waitlist, excluded)
        diagnostics.elapsed_ms = (self._clock() - started) * 1000.0

        logger.info(
            "[MATCHING] zone=%s pool=%s eligible=%s groups=%s waitlist=%s elapsed_ms=%.1f",
            policy.zone_id,
            len(pool),
            len(eligible),
            len(fallback.groups),
            len(fallback.waitlist),
            diagnostics.elapsed_ms,
        )
        return PipelineResult(
            groups=fallback.groups,
            waitlist=fallback.waitlist,
            excluded=excluded,
            eligible=eligible,
            diagnostics=diagnostics,
        )

    def _check_invariants(
        self,
        pool: list[Member],
        groups: list[Group],
        waitlist: list[str],
        excluded: dict[str, list[str]],
    ) -> None:
        placed = [mid for g in groups for mid in g.member_ids] + list(waitlist) + list(excluded)
        if len(placed) != len(pool) or set(placed) != {m.id for m in pool}:
            logger.error(
                "[MATCHING] conservation violated pool=%s grouped=%s waitlisted=%s excluded=%s",
                len(pool),
                sum(g.size for g in groups),
                len(waitlist),
                len(excluded),
            )
            raise ConservationError(
                f"grouped + waitlisted + excluded ({len(placed)}) does not match pool size ({len(pool)})"
            )
        for group in groups:
            if group.size < MIN_GROUP_SIZE or group.size > MAX_GROUP_SIZE:
                raise MatchingError(f"group of size {group.size} outside {MIN_GROUP_SIZE}..{MAX_GROUP_SIZE}")

    def simulate(self, policy: MatchingPolicy, pool: Sequence[Member]) -> SimulationResult:
        pool = list(pool)
        result = self.run_pipeline(policy, pool)
        grouped = sum(g.size for g in result.groups)
        return SimulationResult(
            eligible_members=len(result.eligible),
            potential_groups=len(result.groups),
            waitlist_members=len(result.waitlist),
            simulation_details={
                "member_breakdown": {
                    "total": len(pool),
                    "eligible": len(result.eligible),
                    "filtered_out": len(pool) - len(result.eligible),
                    "excluded_missing_data": len(result.excluded),
                    "excluded_by_constraints": len(result.diagnostics.excluded_by_constraints),
                    "waitlisted": len(result.waitlist),
                    "grouped": grouped,
                },
                "group_sizes": [g.size for g in result.groups],
                "average_compatibility": round(mean(g.compatibility_score for g in result.groups), 6)
                if result.groups
                else 0.0,
                "policy_used": policy.to_dict(),
                "diagnostics": result.diagnostics.to_dict(),
            },
        )

    def generate(self, policy: MatchingPolicy, pool: Sequence[Member]) -> RunOutcome:
        pool = list(pool)
        result = self.run_pipeline(policy, pool)
        status = GroupStatus.ACTIVE if policy.mode == PolicyMode.AUTOMATIC else GroupStatus.PENDING_APPROVAL
        return RunOutcome(
            zone_id=policy.zone_id,
            groups=[replace(g, status=status) for g in result.groups],
            waitlist=result.waitlist,
            excluded=result.excluded,
            diagnostics=result.diagnostics,
            fingerprint=run_fingerprint(policy, pool),
        )


def _as_policy(policy: MatchingPolicy | dict[str, Any] | None, overrides: dict[str, Any] | None = None) -> MatchingPolicy:
    if isinstance(policy, MatchingPolicy) and not overrides:
        return policy
    zone_id = policy.zone_id if isinstance(policy, MatchingPolicy) else (policy or {}).get("zone_id")
    return resolve_policy(policy, overrides, zone_id=zone_id)


def simulate_matching(
    policy: MatchingPolicy | dict[str, Any] | None,
    member_pool: Sequence[Member],
    overrides: dict[str, Any] | None = None,
) -> SimulationResult:
    return MatchRunOrchestrator().simulate(_as_policy(policy, overrides), member_pool)


def generate_matches(policy: MatchingPolicy | dict[str, Any] | None, member_pool: Sequence[Member]) -> RunOutcome:
    return MatchRunOrchestrator().generate(_as_policy(policy), member_pool)
