from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any, TypeVar

from grounding.resolver.types import ResolutionDecision, ScoredCandidate, ScoringVersion

T = TypeVar("T")


def dedupe_keep_first(items: Iterable[T], key: Callable[[T], str | None]) -> list[T]:
    seen: set[str] = set()
    out: list[T] = []
    for item in items:
        item_key = key(item)
        if not item_key or item_key in seen:
            continue
        seen.add(item_key)
        out.append(item)
    return out


def _sort_key(candidate: ScoredCandidate, version: ScoringVersion) -> tuple[Any, ...]:
    signal = -candidate.signal_score if version is ScoringVersion.V2 else 0.0
    return (
        -candidate.raw_rank_score,
        signal,
        0 if candidate.preferred_merchant else 1,
        -candidate.score,
        candidate.product_ref.key,
    )


def rank_candidates(candidates: list[ScoredCandidate], version: ScoringVersion) -> list[ScoredCandidate]:
    unique = dedupe_keep_first(candidates, lambda item: item.product_ref.key)
    return sorted(unique, key=lambda item: _sort_key(item, version))


def decide(ranked: list[ScoredCandidate], threshold: float) -> ResolutionDecision:
    if not ranked:
        return ResolutionDecision(resolved=False, product_ref=None, confidence=0.0, reason="no_candidates")
    top = ranked[0]
    if top.score < threshold:
        return ResolutionDecision(resolved=False, product_ref=None, confidence=top.score, reason="low_confidence")
    return ResolutionDecision(resolved=True, product_ref=top.product_ref, confidence=top.score, reason=top.reason or "matched")
