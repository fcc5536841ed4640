from __future__ import annotations

from grounding.resolver.brands import BrandIndex, build_brand_index
from grounding.resolver.normalize import normalize_text, tokenize
from grounding.resolver.ranking import decide, rank_candidates
from grounding.resolver.scoring import DEFAULT_THRESHOLDS, build_query_profile, score_candidates
from grounding.resolver.types import ResolutionDecision, ScoredCandidate, ScoringVersion


def rank_products(
    query: str,
    products: list[dict],
    version: ScoringVersion = ScoringVersion.V2,
    brand_index: BrandIndex | None = None,
    prefer_merchants: list[str] | None = None,
    min_confidence: float | None = None,
) -> tuple[list[ScoredCandidate], ResolutionDecision]:
    """Score, rank and decide over an in-memory candidate list (no retrieval)."""
    index = brand_index or build_brand_index()
    normalized = normalize_text(query)
    tokens = tokenize(normalized)
    if not normalized or not tokens:
        return [], ResolutionDecision(resolved=False, product_ref=None, confidence=0.0, reason="empty_query")
    profile = build_query_profile(normalized, tokens, index)
    ranked = rank_candidates(score_candidates(profile, products, version, index, prefer_merchants), version)
    threshold = min_confidence if min_confidence is not None else DEFAULT_THRESHOLDS[version]
    return ranked, decide(ranked, threshold)


__all__ = ["rank_products"]
