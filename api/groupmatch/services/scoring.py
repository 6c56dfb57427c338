from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from itertools import combinations
from statistics import mean, pvariance
from typing import Callable, Iterable, Sequence

from ..config import PARALLEL_SCORING_MIN_POOL, SCORING_WORKERS
from .domain import Criterion, MatchingPolicy, Member
from .normalizer import CriterionNormalizer

logger = logging.getLogger(__name__)


def canonical_pair(a: str, b: str) -> tuple[str, str]:
    return (a, b) if a <= b else (b, a)


def size_variance(sizes: Iterable[int]) -> float:
    values = list(sizes)
    if len(values) < 2:
        return 0.0
    return float(pvariance(values))


class CompatibilityScorer:
    def __init__(self, policy: MatchingPolicy, normalizer: CriterionNormalizer | None = None) -> None:
        self.policy = policy
        self.normalizer = normalizer or CriterionNormalizer(policy)
        self.weights: list[tuple[Criterion, float]] = []
        for criterion in Criterion:
            w = policy.weight(criterion)
            if w > 0:
                self.weights.append((criterion, w))
        self.total_weight = sum(w for _, w in self.weights)

    def pair_score(self, a: Member, b: Member) -> float:
        if self.total_weight <= 0:
            return 1.0
        total = 0.0
        for criterion, w in self.weights:
            total += w * self.normalizer.similarity(criterion, a, b)
        return total / self.total_weight

    def pair_breakdown(self, a: Member, b: Member) -> dict[str, float]:
        return {c.value: self.normalizer.similarity(c, a, b) for c, _ in self.weights}

    def group_score(self, members: Sequence[Member]) -> float:
        if len(members) < 2:
            return 0.0
        return mean(self.pair_score(a, b) for a, b in combinations(members, 2))

    def breakdown(self, members: Sequence[Member]) -> dict[str, float]:
        if len(members) < 2:
            return {}
        per_pair = [self.pair_breakdown(a, b) for a, b in combinations(members, 2)]
        return {c.value: round(mean(p[c.value] for p in per_pair), 6) for c, _ in self.weights}


def pair_score(policy: MatchingPolicy, a: Member, b: Member) -> float:
    return CompatibilityScorer(policy).pair_score(a, b)


def group_score(policy: MatchingPolicy, members: Sequence[Member]) -> float:
    return CompatibilityScorer(policy).group_score(members)


def breakdown(policy: MatchingPolicy, members: Sequence[Member]) -> dict[str, float]:
    return CompatibilityScorer(policy).breakdown(members)


class PairScoreTable:
    """Scores of every feasible pair in a pool, computed once per run.

    Rows may be scored on worker threads; the table is only read after every
    row is collected, so ordering never depends on completion order.
    """

    def __init__(
        self,
        scorer: CompatibilityScorer,
        members: Sequence[Member],
        feasible: Callable[[Member, Member], bool],
        workers: int | None = None,
        parallel_min_pool: int | None = None,
    ) -> None:
        self.scorer = scorer
        self.members = list(members)
        self.by_id = {m.id: m for m in self.members}
        self._feasible = feasible
        self._scores: dict[tuple[str, str], float] = {}
        self._partners: dict[str, set[str]] = {m.id: set() for m in self.members}

        workers = SCORING_WORKERS if workers is None else workers
        parallel_min_pool = PARALLEL_SCORING_MIN_POOL if parallel_min_pool is None else parallel_min_pool
        indices = range(len(self.members))
        if workers > 1 and len(self.members) >= parallel_min_pool:
            logger.debug("[SCORING] scoring %s members on %s threads", len(self.members), workers)
            with ThreadPoolExecutor(max_workers=workers) as pool:
                rows = list(pool.map(self._score_row, indices))
        else:
            rows = [self._score_row(i) for i in indices]

        for row in rows:
            for a_id, b_id, score in row:
                self._scores[canonical_pair(a_id, b_id)] = score
                self._partners[a_id].add(b_id)
                self._partners[b_id].add(a_id)

    def _score_row(self, i: int) -> list[tuple[str, str, float]]:
        a = self.members[i]
        out: list[tuple[str, str, float]] = []
        for b in self.members[i + 1:]:
            if self._feasible(a, b):
                out.append((a.id, b.id, self.scorer.pair_score(a, b)))
        return out

    def __len__(self) -> int:
        return len(self._scores)

    def feasible(self, a_id: str, b_id: str) -> bool:
        return canonical_pair(a_id, b_id) in self._scores

    def partners(self, member_id: str) -> set[str]:
        return self._partners.get(member_id, set())

    def score(self, a_id: str, b_id: str) -> float:
        key = canonical_pair(a_id, b_id)
        if key in self._scores:
            return self._scores[key]
        return self.scorer.pair_score(self.by_id[a_id], self.by_id[b_id])

    def group_score(self, member_ids: Sequence[str]) -> float:
        if len(member_ids) < 2:
            return 0.0
        return mean(self.score(a, b) for a, b in combinations(member_ids, 2))

    def ranked_pairs(self) -> list[tuple[str, str, float]]:
        ordered = sorted(self._scores.items(), key=lambda kv: (-kv[1], kv[0][0], kv[0][1]))
        return [(a, b, s) for (a, b), s in ordered]
