"""
Composite scoring of vector-search candidates.

weighted = 0.50·similarity + 0.15·domain_match + 0.15·role_score
         + 0.10·authority + 0.05·confidence + 0.05·time
then multiplied by a per-role boost and clamped to [0, 1].

Candidates carry `composite = 1 - weighted` so that, like raw distances,
lower is better and the window is sorted ascending.
"""

import time
from typing import List, Optional

from ragcore.shared.config import RetrievalConfig
from ragcore.shared.observability.metrics import ranking_candidates_total, ranking_latency_ms

from .contracts import Candidate, ScoreFeatures, normalize_domain

AUTHORITY_SCORES = {"high": 1.0, "low": 0.2}
DEFAULT_AUTHORITY_SCORE = 0.6

TIME_SCORES = {"current": 1.0, "near_term": 0.8, "long_term": 0.6}
DEFAULT_TIME_SCORE = 0.5


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


class CompositeScorer:
    def __init__(self, config: Optional[RetrievalConfig] = None):
        self.config = config or RetrievalConfig()
        self.weights = self.config.weights

    def extract_features(self, candidate: Candidate, query_domain: str) -> ScoreFeatures:
        chunk = candidate.chunk
        similarity = clamp(1.0 - candidate.distance)

        chunk_domain = normalize_domain(chunk.domain)
        query_domain = normalize_domain(query_domain)
        domain_match = (
            1.0
            if chunk_domain
            and query_domain
            and (query_domain in chunk_domain or chunk_domain in query_domain)
            else 0.0
        )

        return ScoreFeatures(
            similarity=similarity,
            domain_match=domain_match,
            role_score=float(self.config.role_priorities.get(chunk.role, 0.0)),
            authority_score=AUTHORITY_SCORES.get(chunk.authority, DEFAULT_AUTHORITY_SCORE),
            confidence_score=clamp(0.7 * chunk.confidence + 0.3 * chunk.item_confidence),
            time_score=TIME_SCORES.get(chunk.time_horizon, DEFAULT_TIME_SCORE),
            role_boost=float(self.config.role_boosts.get(chunk.role, 1.0)),
        )

    def weighted_score(self, features: ScoreFeatures) -> float:
        w = self.weights
        base = (
            w.similarity * features.similarity
            + w.domain * features.domain_match
            + w.role * features.role_score
            + w.authority * features.authority_score
            + w.confidence * features.confidence_score
            + w.time * features.time_score
        )
        return clamp(clamp(base) * features.role_boost)

    def score(self, candidate: Candidate, query_domain: str) -> Candidate:
        """Populate features, weighted score, composite and the soft-score flag in place."""
        candidate.features = self.extract_features(candidate, query_domain)
        candidate.weighted_score = self.weighted_score(candidate.features)
        candidate.composite = 1.0 - candidate.weighted_score
        candidate.soft_rejected = candidate.composite > self.config.soft_score_limit
        return candidate

    def rank(self, candidates: List[Candidate], query_domain: str) -> List[Candidate]:
        """Score every candidate and return them ordered by composite, ascending."""
        if not candidates:
            return []
        start_time = time.time()

        for candidate in candidates:
            self.score(candidate, query_domain)
        ranked = sorted(candidates, key=lambda c: (c.composite, c.distance, c.chunk_id))

        ranking_latency_ms.observe((time.time() - start_time) * 1000)
        ranking_candidates_total.observe(len(candidates))
        return ranked

    def window_size(self, limit: int) -> int:
        return max(limit * 3, self.config.top_n)
