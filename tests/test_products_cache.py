from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import make_transient
from sqlalchemy.pool import StaticPool

from grounding.models import Base, ProductCache
from grounding.resolver.types import SourceFailureReason
from grounding.services.products_cache import ProductsCacheSource, fetch_limit_for


def _rows():
    cleanser = {"title": "CeraVe Hydrating Cleanser 355ml", "vendor": "CeraVe"}
    return [
        ProductCache(
            merchant_id="m1",
            platform_product_id="p1",
            product_data={**cleanser, "price": 15},
            cached_at=datetime(2026, 1, 1),
        ),
        ProductCache(
            merchant_id="m1",
            platform_product_id="p1",
            product_data={**cleanser, "price": 17},
            cached_at=datetime(2026, 2, 1),
        ),
        ProductCache(
            merchant_id="m2",
            product_data={"id": "p2", "title": "Hydrating Cleanser", "vendor": "CeraVe"},
            cached_at=datetime(2026, 1, 15),
        ),
        ProductCache(
            merchant_id="m1",
            platform_product_id="p3",
            product_data={"title": "Olay Regenerist Cream"},
            cached_at=datetime(2026, 1, 10),
        ),
        ProductCache(
            merchant_id="m1",
            platform_product_id="p4",
            product_data={"title": "CeraVe Cleanser Old Stock"},
            cached_at=datetime(2026, 1, 5),
            expires_at=datetime(2020, 1, 1),
        ),
        ProductCache(
            merchant_id="m1",
            platform_product_id="p5",
            product_data={"title": "CeraVe Cleanser Archived", "status": "archived"},
            cached_at=datetime(2026, 1, 6),
        ),
        ProductCache(
            merchant_id="m1",
            platform_product_id="p6",
            product_data={"title": "CeraVe Cleanser Sample", "orderable": False},
            cached_at=datetime(2026, 1, 7),
        ),
        ProductCache(
            merchant_id="m1",
            platform_product_id="p7",
            product_data={"title": "CeraVe Foaming Cleanser", "status": "ACTIVE"},
            cached_at=datetime(2026, 1, 20),
        ),
    ]


async def _prepare(create_tables: bool = True, rows=None):
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True, poolclass=StaticPool)
    if create_tables:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    Session = async_sessionmaker(engine, expire_on_commit=False)
    if create_tables:
        async with Session() as session:
            seed = rows if rows is not None else _rows()
            # rows reused across fresh databases must be re-inserted, not treated as detached
            for row in seed:
                make_transient(row)
            session.add_all(seed)
            await session.commit()
    return engine, Session


def _fetch(query, merchant_ids, create_tables=True, rows=None, limit=20):
    async def _run():
        engine, Session = await _prepare(create_tables, rows)
        try:
            return await ProductsCacheSource(Session).fetch(query, merchant_ids=merchant_ids, limit=limit, timeout_ms=2000)
        finally:
            await engine.dispose()

    return asyncio.run(_run())


def test_fetch_limit_for():
    assert fetch_limit_for(1) == 80
    assert fetch_limit_for(20) == 120
    assert fetch_limit_for(50) == 250


def test_scoped_fetch_keeps_newest_orderable_active_rows():
    result = _fetch("cerave cleanser", ["m1"])

    assert result.ok is True
    assert [p["product_id"] for p in result.products] == ["p1", "p7"]
    first = result.products[0]
    assert first["price"] == 17
    assert first["merchant_id"] == "m1"
    assert first["source_type"] == "products_cache"


def test_global_fetch_spans_merchants():
    result = _fetch("cerave cleanser", None)
    assert [(p["merchant_id"], p["product_id"]) for p in result.products] == [
        ("m1", "p1"),
        ("m1", "p7"),
        ("m2", "p2"),
    ]


def test_tokens_match_any_field_but_all_tokens_required():
    result = _fetch("cerave hydrating", None)
    assert [p["product_id"] for p in result.products] == ["p1", "p2"]

    nothing = _fetch("cerave olay", None)
    assert nothing.ok is True
    assert nothing.products == []


def test_repeated_snapshots_do_not_crowd_out_other_products():
    rows = [
        ProductCache(
            merchant_id="m1",
            platform_product_id="hot",
            product_data={"title": "CeraVe Hydrating Cleanser", "price": n},
            cached_at=datetime(2026, 3, 1) + timedelta(minutes=n),
        )
        for n in range(100)
    ]
    rows.append(
        ProductCache(
            merchant_id="m1",
            platform_product_id="other",
            product_data={"title": "CeraVe Foaming Cleanser"},
            cached_at=datetime(2026, 1, 1),
        )
    )
    result = _fetch("cerave cleanser", ["m1"], rows=rows, limit=1)

    assert fetch_limit_for(1) < 100
    assert [p["product_id"] for p in result.products] == ["hot", "other"]
    assert result.products[0]["price"] == 99


def test_matching_ignores_case_of_stored_text():
    rows = [
        ProductCache(merchant_id="m1", platform_product_id="u1", product_data={"title": "CERAVE HYDRATING CLEANSER"}),
        ProductCache(merchant_id="m1", platform_product_id="u2", product_data={"title": "Olay Cream", "vendor": "OLAY"}),
    ]
    assert [p["product_id"] for p in _fetch("cerave cleanser", None, rows=rows).products] == ["u1"]
    assert [p["product_id"] for p in _fetch("olay", None, rows=rows).products] == ["u2"]


def test_missing_table():
    result = _fetch("cerave cleanser", ["m1"], create_tables=False)
    assert result.ok is False
    assert result.failure is SourceFailureReason.TABLE_MISSING
    assert result.reason == "table_missing"


def test_not_configured_and_empty_merchant_scope():
    source = ProductsCacheSource(None)
    result = asyncio.run(source.fetch("cerave", merchant_ids=None, limit=20, timeout_ms=300))
    assert result.reason == "db_not_configured"

    scoped = asyncio.run(source.fetch("cerave", merchant_ids=[], limit=20, timeout_ms=300))
    assert scoped.reason == "merchant_ids_missing"


class _FakeSession:
    def __init__(self, behaviour):
        self._behaviour = behaviour

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, *_args, **_kwargs):
        return await self._behaviour()


def test_connection_error_maps_to_db_error():
    async def refuse():
        raise ConnectionRefusedError("connection refused")

    source = ProductsCacheSource(lambda: _FakeSession(refuse))
    result = asyncio.run(source.fetch("cerave", merchant_ids=["m1"], limit=20, timeout_ms=300))
    assert result.ok is False
    assert result.reason == "db_error"


def test_slow_query_is_bounded():
    async def hang():
        await asyncio.sleep(2)

    source = ProductsCacheSource(lambda: _FakeSession(hang))
    result = asyncio.run(source.fetch("cerave", merchant_ids=["m1"], limit=20, timeout_ms=50))
    assert result.reason == "db_error"


def test_query_without_tokens_returns_empty():
    source = ProductsCacheSource(lambda: _FakeSession(None))
    result = asyncio.run(source.fetch("  ", merchant_ids=None, limit=20, timeout_ms=300))
    assert result.ok is True
    assert result.products == []
