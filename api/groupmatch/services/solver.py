from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from itertools import combinations, permutations
from typing import Callable, Sequence

from ..config import FAMILY_STAGES, LOCAL_SEARCH_MAX_ITERATIONS, LOCAL_SEARCH_TIME_BUDGET_SECONDS
from .constraints import ConstraintFilter
from .domain import Alignment, Group, MatchingPolicy, Member
from .normalizer import normalize_category
from .scoring import CompatibilityScorer, PairScoreTable

logger = logging.getLogger(__name__)

# Minimum score gain for a swap to count as an improvement.
EPSILON = 1e-9


@dataclass
class SolverStats:
    iterations: int = 0
    swaps: int = 0
    budget_exhausted: bool = False
    dissolved: int = 0
    repaired: int = 0
    moves: int = 0


@dataclass
class SolveResult:
    groups: list[Group]
    leftover: list[Member]
    stats: SolverStats
    table: PairScoreTable


def build_group(
    scorer: CompatibilityScorer,
    members: Sequence[Member],
    target_size: int,
    *,
    partial: bool = False,
    relaxed: bool = False,
) -> Group:
    return Group(
        member_ids=tuple(m.id for m in members),
        compatibility_score=round(scorer.group_score(members), 6),
        target_size=target_size,
        partial=partial,
        relaxed=relaxed,
        breakdown=scorer.breakdown(members),
    )


class GroupFormationSolver:
    """Greedy seed-and-grow group formation with a bounded swap search.

    Seeds are taken from the ranked feasible pairs (best score first, ties by
    id) and grown toward the target size until no candidate scores above
    ``min_pair_score``. Seeding stops at ``group_capacity`` groups, and a pool
    smaller than ``default_group_size`` forms none. A grown group that breaks a
    group-level rule gets one repair attempt (best single swap-in from the
    pool) and is dissolved otherwise. Members then move from larger groups to
    smaller ones while the summed score holds, and pairwise member swaps are
    applied while they strictly improve it, bounded by an iteration cap and a
    wall-clock budget.
    """

    def __init__(
        self,
        policy: MatchingPolicy,
        constraint_filter: ConstraintFilter | None = None,
        scorer: CompatibilityScorer | None = None,
        *,
        max_iterations: int | None = None,
        time_budget_seconds: float | None = None,
        workers: int | None = None,
        parallel_min_pool: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policy = policy
        self.constraints = constraint_filter or ConstraintFilter(policy)
        self.scorer = scorer or CompatibilityScorer(policy, self.constraints.normalizer)
        self.max_iterations = LOCAL_SEARCH_MAX_ITERATIONS if max_iterations is None else max_iterations
        self.time_budget_seconds = (
            LOCAL_SEARCH_TIME_BUDGET_SECONDS if time_budget_seconds is None else time_budget_seconds
        )
        self.workers = workers
        self.parallel_min_pool = parallel_min_pool
        self._clock = clock

    def target_size(self, seed: Sequence[Member]) -> int:
        if self.policy.family_stage_alignment == Alignment.SAME and all(
            normalize_category(m.family_stage) in FAMILY_STAGES for m in seed
        ):
            return self.policy.family_group_size
        return self.policy.default_group_size

    def score_table(self, members: Sequence[Member]) -> PairScoreTable:
        return PairScoreTable(
            self.scorer,
            members,
            self.constraints.pair_feasible,
            workers=self.workers,
            parallel_min_pool=self.parallel_min_pool,
        )

    def group_capacity(self, members: Sequence[Member]) -> int:
        """Most groups a pool of ``members`` may be split into.

        Each stage class yields one group per full target plus one for a
        remainder of at least two. Only ``family_stage_alignment=same`` splits
        the pool into classes; the hard flags never change the count, so
        relaxing a constraint cannot lower it.
        """
        if self.policy.family_stage_alignment == Alignment.SAME:
            family = sum(1 for m in members if normalize_category(m.family_stage) in FAMILY_STAGES)
            classes = [(family, self.policy.family_group_size), (len(members) - family, self.policy.default_group_size)]
        else:
            classes = [(len(members), self.policy.default_group_size)]
        return sum(n // t + (1 if n % t >= 2 else 0) for n, t in classes)

    def solve(self, members: Sequence[Member], max_groups: int | None = None) -> SolveResult:
        members = list(members)
        by_id = {m.id: m for m in members}
        order = {m.id: i for i, m in enumerate(members)}
        table = self.score_table(members)
        stats = SolverStats()

        if len(members) < self.policy.default_group_size:
            logger.info(
                "[SOLVER] pool=%s below default_group_size=%s, no groups formed",
                len(members),
                self.policy.default_group_size,
            )
            return SolveResult(groups=[], leftover=members, stats=stats, table=table)

        cap = self.group_capacity(members) if max_groups is None else max_groups
        unassigned = set(by_id)
        formed: list[tuple[list[str], int]] = []
        for a_id, b_id, _ in table.ranked_pairs():
            if len(formed) >= cap:
                break
            if a_id not in unassigned or b_id not in unassigned:
                continue
            target = self.target_size([by_id[a_id], by_id[b_id]])
            group = self._grow([a_id, b_id], unassigned - {a_id, b_id}, target, table, by_id, stats)
            if group is None:
                stats.dissolved += 1
                continue
            formed.append((group, target))
            unassigned.difference_update(group)

        self._rebalance(formed, table, by_id, stats)
        self._improve(formed, table, by_id, stats)

        groups = []
        for ids, target in formed:
            ordered = sorted(ids, key=order.__getitem__)
            groups.append(build_group(self.scorer, [by_id[i] for i in ordered], target))
        leftover = [m for m in members if m.id in unassigned]

        logger.info(
            "[SOLVER] pool=%s groups=%s leftover=%s iterations=%s swaps=%s moves=%s dissolved=%s",
            len(members),
            len(groups),
            len(leftover),
            stats.iterations,
            stats.swaps,
            stats.moves,
            stats.dissolved,
        )
        return SolveResult(groups=groups, leftover=leftover, stats=stats, table=table)

    def _rules_ok(self, ids: Sequence[str], by_id: dict[str, Member]) -> bool:
        if not self.constraints.has_group_rules:
            return True
        return self.constraints.group_rules_ok([by_id[i] for i in ids])

    def _grow(
        self,
        seed: list[str],
        pool: set[str],
        target: int,
        table: PairScoreTable,
        by_id: dict[str, Member],
        stats: SolverStats,
    ) -> list[str] | None:
        group = list(seed)
        pool = set(pool)
        while len(group) < target:
            candidates = [c for c in sorted(table.partners(group[0]) & pool) if all(table.feasible(c, g) for g in group)]
            if not candidates:
                break
            if self.constraints.has_group_rules and len(group) + 1 == target:
                closing = [c for c in candidates if self._rules_ok(group + [c], by_id)]
                if closing:
                    candidates = closing
            # Adding c raises the mean by its summed score to the group.
            best = max(candidates, key=lambda c: sum(table.score(c, g) for g in group))
            if sum(table.score(best, g) for g in group) / len(group) <= self.policy.min_pair_score:
                break
            group.append(best)
            pool.discard(best)

        if self._rules_ok(group, by_id):
            return group
        repaired = self._repair(group, pool, table, by_id)
        if repaired is not None:
            stats.repaired += 1
        return repaired

    def _repair(
        self,
        group: list[str],
        pool: set[str],
        table: PairScoreTable,
        by_id: dict[str, Member],
    ) -> list[str] | None:
        best: list[str] | None = None
        best_score = -1.0
        for idx in range(len(group)):
            rest = group[:idx] + group[idx + 1:]
            for candidate in sorted(pool):
                if not all(table.feasible(candidate, m) for m in rest):
                    continue
                trial = group[:idx] + [candidate] + group[idx + 1:]
                if not self._rules_ok(trial, by_id):
                    continue
                score = table.group_score(trial)
                if score > best_score + EPSILON:
                    best, best_score = trial, score
        return best

    def _rebalance(
        self,
        formed: list[tuple[list[str], int]],
        table: PairScoreTable,
        by_id: dict[str, Member],
        stats: SolverStats,
    ) -> None:
        """Move members from larger groups into smaller ones while the summed
        score does not drop. Each move narrows a size gap of two or more, so
        equal-scoring splits settle on the lowest size variance."""
        while True:
            move = self._best_move(formed, table, by_id)
            if move is None:
                return
            src, dst, member_id = move
            formed[src][0].remove(member_id)
            formed[dst][0].append(member_id)
            stats.moves += 1

    def _best_move(
        self,
        formed: list[tuple[list[str], int]],
        table: PairScoreTable,
        by_id: dict[str, Member],
    ) -> tuple[int, int, str] | None:
        best: tuple[int, int, str] | None = None
        best_gain = -EPSILON
        for src, dst in permutations(range(len(formed)), 2):
            group_a, group_b = formed[src][0], formed[dst][0]
            if len(group_a) - len(group_b) < 2 or len(group_b) >= formed[dst][1]:
                continue
            base = table.group_score(group_a) + table.group_score(group_b)
            for member_id in group_a:
                if not all(table.feasible(member_id, m) for m in group_b):
                    continue
                rest = [m for m in group_a if m != member_id]
                grown = group_b + [member_id]
                if not (self._rules_ok(rest, by_id) and self._rules_ok(grown, by_id)):
                    continue
                gain = table.group_score(rest) + table.group_score(grown) - base
                if gain < -EPSILON:
                    continue
                if best is None or gain > best_gain + EPSILON:
                    best, best_gain = (src, dst, member_id), gain
        return best

    def _improve(
        self,
        formed: list[tuple[list[str], int]],
        table: PairScoreTable,
        by_id: dict[str, Member],
        stats: SolverStats,
    ) -> None:
        if len(formed) < 2 or self.max_iterations <= 0:
            return
        deadline = self._clock() + self.time_budget_seconds if self.time_budget_seconds > 0 else None

        while True:
            if stats.iterations >= self.max_iterations:
                # The cap only cut the search short if a swap was still pending.
                stats.budget_exhausted = any(
                    self._best_swap(formed[i][0], formed[j][0], table, by_id) is not None
                    for i, j in combinations(range(len(formed)), 2)
                )
                break
            stats.iterations += 1
            swapped = False
            timed_out = False
            for i, j in combinations(range(len(formed)), 2):
                if deadline is not None and self._clock() > deadline:
                    timed_out = True
                    break
                swap = self._best_swap(formed[i][0], formed[j][0], table, by_id)
                if swap is None:
                    continue
                formed[i] = (swap[0], formed[i][1])
                formed[j] = (swap[1], formed[j][1])
                stats.swaps += 1
                swapped = True
            if timed_out:
                stats.budget_exhausted = True
                break
            if not swapped:
                break

        if stats.budget_exhausted:
            logger.warning(
                "[SOLVER] local search budget exhausted iterations=%s swaps=%s", stats.iterations, stats.swaps
            )

    def _best_swap(
        self,
        group_a: list[str],
        group_b: list[str],
        table: PairScoreTable,
        by_id: dict[str, Member],
    ) -> tuple[list[str], list[str]] | None:
        base = table.group_score(group_a) + table.group_score(group_b)
        best: tuple[list[str], list[str]] | None = None
        best_gain = EPSILON
        for ia, x in enumerate(group_a):
            rest_a = group_a[:ia] + group_a[ia + 1:]
            for ib, y in enumerate(group_b):
                rest_b = group_b[:ib] + group_b[ib + 1:]
                if not all(table.feasible(y, m) for m in rest_a):
                    continue
                if not all(table.feasible(x, m) for m in rest_b):
                    continue
                new_a = group_a[:ia] + [y] + group_a[ia + 1:]
                new_b = group_b[:ib] + [x] + group_b[ib + 1:]
                if not (self._rules_ok(new_a, by_id) and self._rules_ok(new_b, by_id)):
                    continue
                gain = table.group_score(new_a) + table.group_score(new_b) - base
                if gain > best_gain:
                    best, best_gain = (new_a, new_b), gain
        return best


def form_groups(policy: MatchingPolicy, members: Sequence[Member]) -> tuple[list[Group], list[Member]]:
    result = GroupFormationSolver(policy).solve(members)
    return result.groups, result.leftover
