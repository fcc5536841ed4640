from __future__ import annotations

import pytest

from grounding.resolver.brands import build_brand_index
from grounding.resolver.normalize import normalize_text, tokenize
from grounding.resolver.scoring import (
    DEFAULT_THRESHOLDS,
    build_query_profile,
    inventory_boost,
    is_external_product,
    orderable_penalty,
    score_candidates,
    token_overlap_score,
)
from grounding.resolver.types import ScoringVersion

INDEX = build_brand_index()
V1 = ScoringVersion.V1
V2 = ScoringVersion.V2


def _query(text: str, brand: str | None = None):
    normalized = normalize_text(text)
    return build_query_profile(normalized, tokenize(normalized), INDEX, brand)


def _score(query: str, products: list[dict], version: ScoringVersion, prefer=None, brand=None):
    return {c.product_ref.product_id: c for c in score_candidates(_query(query, brand), products, version, INDEX, prefer)}


def test_default_thresholds():
    assert DEFAULT_THRESHOLDS[V1] == 0.72
    assert DEFAULT_THRESHOLDS[V2] == 0.68


def test_token_overlap_prefers_recall_weighted_value():
    assert token_overlap_score(["a1", "b1"], ["a1", "c1", "d1"]) == pytest.approx(0.45)
    assert token_overlap_score(["a1", "b1"], ["a1", "b1"]) == pytest.approx(1.0)
    assert token_overlap_score([], ["a1"]) == 0.0
    assert token_overlap_score(["a1"], []) == 0.0


def test_v1_rules():
    products = [
        {"product_id": "exact", "merchant_id": "m1", "title": "CeraVe Hydrating Cleanser"},
        {"product_id": "contains", "merchant_id": "m1", "title": "CeraVe Hydrating Cleanser 355ml"},
        {"product_id": "combined", "merchant_id": "m1", "title": "Hydrating Cleanser", "vendor": "CeraVe"},
        {"product_id": "overlap", "merchant_id": "m1", "title": "CeraVe Foaming Cleanser"},
    ]
    scored = _score("CeraVe Hydrating Cleanser", products, V1)

    assert (scored["exact"].score, scored["exact"].reason) == (1.0, "exact_title")
    assert (scored["contains"].score, scored["contains"].reason) == (0.95, "title_contains_query")
    assert (scored["combined"].score, scored["combined"].reason) == (0.9, "brand_title_contains_query")
    assert scored["overlap"].reason == "token_overlap"
    assert scored["overlap"].score == pytest.approx(0.6667, abs=1e-4)


def test_v2_exact_combined():
    products = [{"product_id": "c1", "merchant_id": "m1", "title": "Hydrating Cleanser", "vendor": "CeraVe"}]
    scored = _score("cerave hydrating cleanser", products, V2)
    assert scored["c1"].score == 1.0
    assert scored["c1"].reason == "exact_combined"


def test_v2_volume_disagreement_is_penalized():
    products = [
        {"product_id": "c355", "merchant_id": "m1", "title": "CeraVe Hydrating Cleanser 355ml", "vendor": "CeraVe"},
        {"product_id": "c50", "merchant_id": "m1", "title": "CeraVe Hydrating Cleanser 50ml", "vendor": "CeraVe"},
    ]
    scored = _score("CeraVe Hydrating Cleanser 355ml", products, V2)

    assert scored["c355"].score == 1.0
    assert scored["c355"].signal_score == pytest.approx(0.32)
    assert scored["c50"].score == pytest.approx(0.67)
    assert scored["c50"].signal_score == pytest.approx(-0.08)


def test_v1_ignores_volume():
    products = [{"product_id": "c50", "merchant_id": "m1", "title": "CeraVe Hydrating Cleanser 50ml", "vendor": "CeraVe"}]
    scored = _score("CeraVe Hydrating Cleanser 355ml", products, V1)
    assert scored["c50"].score == pytest.approx(0.75)
    assert scored["c50"].signal_score == 0.0


def test_v2_spf_and_compact_match():
    products = [
        {"product_id": "a50", "merchant_id": "m1", "title": "La Roche-Posay Anthelios SPF 50"},
        {"product_id": "a30", "merchant_id": "m1", "title": "La Roche-Posay Anthelios SPF 30"},
    ]
    scored = _score("anthelios spf50", products, V2)

    assert scored["a50"].reason == "compact_contains_query"
    assert scored["a50"].score == pytest.approx(0.96)
    assert scored["a30"].score == pytest.approx(0.29)


def test_v2_brand_agreement_and_conflict():
    products = [
        {"product_id": "w", "merchant_id": "m1", "title": "Winona Soothing Moisturizer"},
        {"product_id": "o", "merchant_id": "m1", "title": "Olay Moisturizer"},
    ]
    scored = _score("winona moisturizer", products, V2)

    assert scored["w"].score == 1.0
    assert scored["w"].signal_score == pytest.approx(0.14)
    assert scored["o"].score == pytest.approx(0.44)
    assert scored["o"].signal_score == pytest.approx(-0.06)


def test_v2_hint_brand_counts_as_query_brand():
    products = [{"product_id": "w", "merchant_id": "m1", "title": "Soothing Moisturizer", "vendor": "Winona"}]
    without_hint = _score("soothing moisturizer cream", products, V2)
    with_hint = _score("soothing moisturizer cream", products, V2, brand="Winona")
    assert with_hint["w"].signal_score == pytest.approx(without_hint["w"].signal_score + 0.14)


def test_v2_sparse_overlap_penalty():
    products = [{"product_id": "mist", "merchant_id": "m1", "title": "Facial Mist"}]
    scored = _score("gentle foaming facial cleanser", products, V2)
    assert scored["mist"].score == pytest.approx(0.2333, abs=1e-4)


def test_v2_no_overlap_clamps_to_zero():
    products = [{"product_id": "lotion", "merchant_id": "m1", "title": "Body Lotion"}]
    scored = _score("vitamin serum", products, V2)
    assert scored["lotion"].score == 0.0


def test_v2_short_query_miss_penalty():
    products = [{"product_id": "cream", "merchant_id": "m1", "title": "Cream", "brand": "薇诺娜"}]
    scored = _score("winona", products, V2)
    assert scored["cream"].score == pytest.approx(0.06)


def test_rank_adjustments_raise_raw_but_not_score():
    products = [
        {"product_id": "p1", "merchant_id": "m1", "title": "Winona Moisturizer 50ml", "in_stock": True},
        {"product_id": "p2", "merchant_id": "m2", "title": "Winona Moisturizer 50ml", "orderable": "false"},
    ]
    scored = _score("winona moisturizer 50ml", products, V1, prefer=["m1"])

    assert scored["p1"].preferred_merchant is True
    assert scored["p1"].score == 1.0
    assert scored["p1"].raw_rank_score == pytest.approx(1.23)
    assert scored["p2"].preferred_merchant is False
    assert scored["p2"].score == pytest.approx(0.75)
    assert scored["p2"].raw_rank_score == pytest.approx(0.75)


def test_products_without_id_are_skipped():
    assert score_candidates(_query("cream"), [{"title": "Cream"}], V2, INDEX) == []


def test_inventory_boost_variants():
    assert inventory_boost({"in_stock": True}) == 0.05
    assert inventory_boost({"in_stock": False}) == 0.0
    assert inventory_boost({"inStock": False, "inventory_quantity": 5}) == 0.05
    assert inventory_boost({"inventory": {"quantity": 2}}) == 0.05
    assert inventory_boost({"inventoryQuantity": 0}) == 0.0
    assert inventory_boost({"inventory_quantity": "n/a"}) == 0.0
    assert inventory_boost({}) == 0.0


def test_orderable_penalty_variants():
    assert orderable_penalty({"orderable": "false"}) == -0.25
    assert orderable_penalty({"is_orderable": False}) == -0.25
    assert orderable_penalty({"isOrderable": True}) == 0.0
    assert orderable_penalty({}) == 0.0


@pytest.mark.parametrize(
    "product, expected",
    [
        ({"product_id": "p1", "merchant_id": "external_seed"}, True),
        ({"product_id": "p1", "merchant_id": "m1", "platform": "External"}, True),
        ({"product_id": "p1", "merchant_id": "m1", "source": "external_seed"}, True),
        ({"product_id": "ext_123", "merchant_id": "m1"}, True),
        ({"product_id": "p1", "merchant_id": "m1", "source_type": "products_cache"}, False),
    ],
)
def test_external_product_detection(product, expected):
    assert is_external_product(product) is expected
