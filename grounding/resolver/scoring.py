from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from grounding.resolver.brands import BrandIndex
from grounding.resolver.normalize import compact_text, normalize_text, tokenize
from grounding.resolver.signals import extract_signals
from grounding.resolver.types import CandidateProfile, ProductRef, ScoredCandidate, ScoringVersion

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLDS = {
    ScoringVersion.V1: 0.72,
    ScoringVersion.V2: 0.68,
}

PREFERRED_MERCHANT_BOOST = 0.18
INVENTORY_BOOST = 0.05
NOT_ORDERABLE_PENALTY = -0.25

# (agree, disagree, candidate lacks the signal)
SIGNAL_DELTAS = {
    "volume": (0.18, -0.22, -0.04),
    "spf": (0.14, -0.16, -0.03),
    "percent": (0.10, -0.12, -0.02),
    "model": (0.08, -0.10, 0.0),
}
BRAND_MATCH_BOOST = 0.14
BRAND_CONFLICT_PENALTY = -0.06
SPARSE_OVERLAP_PENALTY = -0.10
NO_OVERLAP_PENALTY = -0.18
SHORT_QUERY_MISS_PENALTY = -0.08

EXTERNAL_SEED_MERCHANT_ID = "external_seed"


def _to_str(value: Any) -> str:
    return ("" if value is None else str(value)).strip()


def candidate_title(product: dict[str, Any]) -> str:
    for field in ("title", "name", "display_name", "displayName", "product_title", "productTitle"):
        value = _to_str(product.get(field))
        if value:
            return value
    return ""


def candidate_brand(product: dict[str, Any]) -> str:
    brand = product.get("brand")
    if isinstance(brand, dict):
        brand = brand.get("name")
    for value in (brand, product.get("vendor"), product.get("vendor_name"), product.get("manufacturer")):
        text = _to_str(value)
        if text:
            return text
    return ""


def candidate_merchant_name(product: dict[str, Any]) -> str | None:
    for field in ("merchant_name", "merchantName", "store_name", "storeName"):
        value = _to_str(product.get(field))
        if value:
            return value
    return None


def candidate_ref(product: dict[str, Any]) -> ProductRef | None:
    product_id = _to_str(product.get("product_id") or product.get("productId") or product.get("id"))
    if not product_id:
        return None
    merchant_id = _to_str(product.get("merchant_id") or product.get("merchantId"))
    return ProductRef(product_id=product_id, merchant_id=merchant_id or None)


def is_external_product(product: dict[str, Any]) -> bool:
    merchant_id = _to_str(product.get("merchant_id") or product.get("merchantId"))
    if merchant_id == EXTERNAL_SEED_MERCHANT_ID:
        return True
    if _to_str(product.get("platform")).lower() == "external":
        return True
    source = _to_str(product.get("source") or product.get("source_type")).lower()
    if source in {"external_seed", "external"}:
        return True
    return _to_str(product.get("product_id") or product.get("productId") or product.get("id")).startswith("ext_")


def _as_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return _to_str(value).lower() == "true"


def is_orderable(product: dict[str, Any]) -> bool | None:
    for field in ("orderable", "is_orderable", "isOrderable"):
        if product.get(field) is not None:
            return _as_bool(product.get(field))
    return None


def inventory_boost(product: dict[str, Any]) -> float:
    for field in ("in_stock", "inStock"):
        value = product.get(field)
        if isinstance(value, bool):
            if value:
                return INVENTORY_BOOST
            break
    quantity = product.get("inventory_quantity")
    if quantity is None:
        quantity = product.get("inventoryQuantity")
    if quantity is None and isinstance(product.get("inventory"), dict):
        quantity = product["inventory"].get("quantity")
    if quantity is None or isinstance(quantity, bool):
        return 0.0
    try:
        return INVENTORY_BOOST if float(quantity) > 0 else 0.0
    except (TypeError, ValueError):
        return 0.0


def orderable_penalty(product: dict[str, Any]) -> float:
    return NOT_ORDERABLE_PENALTY if is_orderable(product) is False else 0.0


def token_overlap_score(query_tokens: list[str], candidate_tokens: Iterable[str]) -> float:
    token_set = set(candidate_tokens)
    if not query_tokens or not token_set:
        return 0.0
    common = sum(1 for token in query_tokens if token in token_set)
    recall = common / len(query_tokens)
    precision = common / len(token_set)
    denom = recall + precision
    f1 = (2 * recall * precision) / denom if denom > 0 else 0.0
    return max(f1, recall * 0.9)


class QueryProfile:
    def __init__(self, normalized: str, tokens: list[str], brands: frozenset[str] = frozenset()) -> None:
        self.normalized = normalized
        self.tokens = tokens
        self.compact = compact_text(normalized)
        self.signals = extract_signals(tokens)
        self.brands = brands


def build_query_profile(
    normalized: str,
    tokens: list[str],
    brand_index: BrandIndex,
    hint_brand: str | None = None,
) -> QueryProfile:
    brands = set(brand_index.match(normalized))
    if hint_brand:
        brands |= brand_index.canonical_for(hint_brand)
    return QueryProfile(normalized, tokens, frozenset(brands))


def build_candidate_profile(
    product: dict[str, Any],
    version: ScoringVersion,
    brand_index: BrandIndex,
) -> CandidateProfile:
    title = normalize_text(candidate_title(product))
    brand = normalize_text(candidate_brand(product))
    combined = normalize_text(f"{candidate_brand(product)} {candidate_title(product)}")
    tokens = tokenize(combined)
    if version is ScoringVersion.V1:
        return CandidateProfile(title=title, brand=brand, combined=combined, tokens=frozenset(tokens))
    signals = extract_signals(tokens)
    return CandidateProfile(
        title=title,
        brand=brand,
        combined=combined,
        compact=compact_text(combined),
        tokens=frozenset(tokens),
        volume=signals.volume,
        spf=signals.spf,
        percent=signals.percent,
        model=signals.model,
        brands=brand_index.match(combined),
    )


def score_v1(query: QueryProfile, profile: CandidateProfile) -> tuple[float, float, str]:
    if profile.title and profile.title == query.normalized:
        return 1.0, 0.0, "exact_title"
    if profile.title and query.normalized in profile.title:
        return 0.95, 0.0, "title_contains_query"
    if profile.combined and query.normalized in profile.combined:
        return 0.9, 0.0, "brand_title_contains_query"
    return token_overlap_score(query.tokens, profile.tokens), 0.0, "token_overlap"


def _signal_delta(query_values: frozenset[str], candidate_values: frozenset[str], family: str) -> float:
    if not query_values:
        return 0.0
    agree, disagree, missing = SIGNAL_DELTAS[family]
    if not candidate_values:
        return missing
    return agree if query_values & candidate_values else disagree


def _signal_score(query: QueryProfile, profile: CandidateProfile) -> float:
    total = 0.0
    total += _signal_delta(query.signals.volume, profile.volume, "volume")
    total += _signal_delta(query.signals.spf, profile.spf, "spf")
    total += _signal_delta(query.signals.percent, profile.percent, "percent")
    total += _signal_delta(query.signals.model, profile.model, "model")
    if query.brands:
        if query.brands & profile.brands:
            total += BRAND_MATCH_BOOST
        elif profile.brands:
            total += BRAND_CONFLICT_PENALTY
    return total


def score_v2(query: QueryProfile, profile: CandidateProfile) -> tuple[float, float, str]:
    signal_score = _signal_score(query, profile)
    if profile.title and profile.title == query.normalized:
        return 1.0, signal_score, "exact_title"
    if profile.combined and profile.combined == query.normalized:
        return 1.0, signal_score, "exact_combined"

    score = token_overlap_score(query.tokens, profile.tokens)
    reason = "token_overlap"
    if profile.title and query.normalized in profile.title:
        score = max(score + 0.06, 0.90)
        reason = "title_contains_query"
    elif profile.combined and query.normalized in profile.combined:
        score = max(score + 0.06, 0.84)
        reason = "brand_title_contains_query"

    compact_hit = len(query.compact) >= 2 and bool(profile.compact) and query.compact in profile.compact
    if compact_hit and score < 0.82:
        score = 0.82
        if reason == "token_overlap":
            reason = "compact_contains_query"

    score += signal_score

    common = sum(1 for token in query.tokens if token in profile.tokens)
    query_len = len(query.tokens)
    if query_len >= 2 and common == 0:
        score += NO_OVERLAP_PENALTY
    elif query_len >= 3 and common <= 1:
        score += SPARSE_OVERLAP_PENALTY
    if query_len <= 1 and common == 0 and not compact_hit:
        score += SHORT_QUERY_MISS_PENALTY

    return max(0.0, min(1.0, score)), signal_score, reason


def score_candidates(
    query: QueryProfile,
    products: list[dict[str, Any]],
    version: ScoringVersion,
    brand_index: BrandIndex,
    prefer_merchants: list[str] | None = None,
) -> list[ScoredCandidate]:
    preferred = set(prefer_merchants or [])
    scorer = score_v1 if version is ScoringVersion.V1 else score_v2
    scored: list[ScoredCandidate] = []
    for product in products:
        ref = candidate_ref(product)
        if ref is None:
            continue
        profile = build_candidate_profile(product, version, brand_index)
        text_score, signal_score, reason = scorer(query, profile)
        is_preferred = bool(ref.merchant_id) and ref.merchant_id in preferred
        rank_score = text_score
        rank_score += PREFERRED_MERCHANT_BOOST if is_preferred else 0.0
        rank_score += inventory_boost(product)
        rank_score += orderable_penalty(product)
        scored.append(
            ScoredCandidate(
                product_ref=ref,
                title=candidate_title(product) or None,
                brand=candidate_brand(product) or None,
                merchant_name=candidate_merchant_name(product),
                score=round(max(0.0, min(1.0, rank_score)), 4),
                raw_rank_score=round(rank_score, 6),
                signal_score=round(signal_score, 6),
                preferred_merchant=is_preferred,
                reason=reason,
            )
        )
    logger.debug("score_candidates version=%s candidates=%s", version.value, len(scored))
    return scored
