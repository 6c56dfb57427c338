from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Sequence

from .domain import FallbackStrategy, Group, MatchingPolicy, Member
from .scoring import PairScoreTable, size_variance
from .solver import GroupFormationSolver, SolverStats, build_group

logger = logging.getLogger(__name__)


@dataclass
class FallbackOutcome:
    groups: list[Group]
    waitlist: list[str]
    notes: list[str] = field(default_factory=list)
    relaxation_applied: bool = False
    stats: SolverStats | None = None


class FallbackResolver:
    """Places the solver's leftover members according to ``fallback_strategy``.

    ``fill_partial`` tops up groups still below their target and packs the
    rest into undersized groups, ``auto_relax`` re-runs the solver once on the
    leftover with every hard constraint cleared, and ``waitlist`` does
    nothing. New groups never push the total past ``max_groups``. Anyone still
    unplaced ends up on the waitlist, in pool order.
    """

    def __init__(self, solver: GroupFormationSolver | None = None) -> None:
        self.solver = solver

    def _solver_for(self, policy: MatchingPolicy) -> GroupFormationSolver:
        if self.solver is not None and self.solver.policy == policy:
            return self.solver
        return GroupFormationSolver(policy)

    def resolve(
        self,
        policy: MatchingPolicy,
        groups: Sequence[Group],
        leftover: Sequence[Member],
        *,
        members: Sequence[Member] | None = None,
        table: PairScoreTable | None = None,
        max_groups: int | None = None,
    ) -> FallbackOutcome:
        groups = list(groups)
        leftover = list(leftover)
        if not leftover:
            return FallbackOutcome(groups=groups, waitlist=[])

        strategy = policy.fallback_strategy
        if strategy == FallbackStrategy.FILL_PARTIAL:
            outcome = self._fill_partial(policy, groups, leftover, members, table, max_groups)
        elif strategy == FallbackStrategy.AUTO_RELAX:
            outcome = self._auto_relax(policy, groups, leftover, max_groups)
        else:
            outcome = FallbackOutcome(
                groups=groups,
                waitlist=[m.id for m in leftover],
                notes=[f"waitlist: {len(leftover)} members waitlisted"],
            )

        logger.info(
            "[FALLBACK] strategy=%s leftover=%s placed=%s waitlisted=%s",
            strategy.value,
            len(leftover),
            len(leftover) - len(outcome.waitlist),
            len(outcome.waitlist),
        )
        return outcome

    def _fill_partial(
        self,
        policy: MatchingPolicy,
        groups: list[Group],
        leftover: list[Member],
        members: Sequence[Member] | None,
        table: PairScoreTable | None,
        max_groups: int | None,
    ) -> FallbackOutcome:
        solver = self._solver_for(policy)
        if table is None:
            pool = {m.id: m for m in (members or [])}
            for m in leftover:
                pool.setdefault(m.id, m)
            table = solver.score_table(list(pool.values()))
        by_id = table.by_id
        order = {mid: i for i, mid in enumerate(by_id)}

        working = [list(g.member_ids) for g in groups]
        changed: set[int] = set()
        unplaced: list[Member] = []
        for member in leftover:
            best_idx: int | None = None
            best_key: tuple[float, float] | None = None
            for idx, ids in enumerate(working):
                if len(ids) >= groups[idx].target_size:
                    continue
                if not all(table.feasible(member.id, other) for other in ids):
                    continue
                trial = ids + [member.id]
                if not solver.constraints.group_rules_ok([by_id[i] for i in trial]):
                    continue
                sizes = [len(w) for w in working]
                sizes[idx] += 1
                key = (table.group_score(trial), -size_variance(sizes))
                if best_key is None or key > best_key:
                    best_idx, best_key = idx, key
            if best_idx is None:
                unplaced.append(member)
                continue
            working[best_idx].append(member.id)
            changed.add(best_idx)

        out: list[Group] = []
        for idx, group in enumerate(groups):
            if idx not in changed:
                out.append(group)
                continue
            rebuilt = build_group(
                solver.scorer,
                [by_id[i] for i in sorted(working[idx], key=order.__getitem__)],
                group.target_size,
                relaxed=group.relaxed,
            )
            out.append(replace(rebuilt, partial=group.partial))

        joined = len(leftover) - len(unplaced)
        room = None if max_groups is None else max(0, max_groups - len(out))
        packed, waitlist = self._pack_partial(solver, unplaced, table, order, room)
        out.extend(packed)

        notes = []
        if joined:
            notes.append(f"fill_partial: {joined} members joined groups below target size")
        if packed:
            notes.append(f"fill_partial: {len(packed)} partial groups formed")
        if waitlist:
            notes.append(f"fill_partial: {len(waitlist)} members waitlisted")
        return FallbackOutcome(groups=out, waitlist=waitlist, notes=notes)

    def _pack_partial(
        self,
        solver: GroupFormationSolver,
        unplaced: list[Member],
        table: PairScoreTable,
        order: dict[str, int],
        room: int | None = None,
    ) -> tuple[list[Group], list[str]]:
        remaining = list(unplaced)
        packed: list[Group] = []
        waitlist: list[str] = []
        while remaining:
            if room is not None and len(packed) >= room:
                waitlist.extend(m.id for m in remaining)
                break
            seed = remaining.pop(0)
            target = solver.target_size([seed])
            group = [seed]
            candidates = [m for m in remaining if table.feasible(seed.id, m.id)]
            while len(group) < target:
                fits = [c for c in candidates if all(table.feasible(c.id, g.id) for g in group)]
                if not fits:
                    break
                best = max(fits, key=lambda c: sum(table.score(c.id, g.id) for g in group))
                if sum(table.score(best.id, g.id) for g in group) / len(group) <= solver.policy.min_pair_score:
                    break
                group.append(best)
                candidates.remove(best)
            if len(group) < 2 or not solver.constraints.group_rules_ok(group):
                waitlist.append(seed.id)
                continue
            taken = {m.id for m in group}
            remaining = [m for m in remaining if m.id not in taken]
            group.sort(key=lambda m: order[m.id])
            packed.append(build_group(solver.scorer, group, target, partial=True))
        return packed, waitlist

    def _auto_relax(
        self,
        policy: MatchingPolicy,
        groups: list[Group],
        leftover: list[Member],
        max_groups: int | None,
    ) -> FallbackOutcome:
        strict = self._solver_for(policy)
        relaxed_policy = policy.with_relaxed_constraints()
        relaxed_solver = GroupFormationSolver(
            relaxed_policy,
            max_iterations=strict.max_iterations,
            time_budget_seconds=strict.time_budget_seconds,
            workers=strict.workers,
            parallel_min_pool=strict.parallel_min_pool,
        )
        room = None if max_groups is None else max(0, max_groups - len(groups))
        result = relaxed_solver.solve(leftover, max_groups=room)
        relaxed_groups = [replace(g, relaxed=True) for g in result.groups]
        waitlist = [m.id for m in result.leftover]

        notes = [f"auto_relax: {len(leftover) - len(waitlist)} of {len(leftover)} leftover members grouped with relaxed constraints"]
        if waitlist:
            notes.append(f"auto_relax: {len(waitlist)} members waitlisted")
        return FallbackOutcome(
            groups=groups + relaxed_groups,
            waitlist=waitlist,
            notes=notes,
            relaxation_applied=True,
            stats=result.stats,
        )


def resolve_leftover(
    policy: MatchingPolicy,
    groups: Sequence[Group],
    leftover: Sequence[Member],
    members: Sequence[Member] | None = None,
    max_groups: int | None = None,
) -> FallbackOutcome:
    return FallbackResolver().resolve(policy, groups, leftover, members=members, max_groups=max_groups)
