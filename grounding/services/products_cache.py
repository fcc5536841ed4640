from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from grounding.models import ProductCache
from grounding.resolver.normalize import normalize_text, tokenize
from grounding.resolver.scoring import is_orderable
from grounding.resolver.types import SourceFailureReason, SourceResult

logger = logging.getLogger(__name__)

MATCH_FIELDS = ("title", "name", "description", "product_type", "sku", "vendor", "brand")
MAX_MATCH_TOKENS = 10
_MISSING_TABLE_MARKERS = ("no such table", "does not exist", "undefinedtable")
# symbol words produced by normalization never occur in raw catalog text
_LEXICALIZED_TOKENS = {"plus", "percent"}


def _to_str(v: Any) -> str:
    return ("" if v is None else str(v)).strip()


def fetch_limit_for(limit: int) -> int:
    return min(250, max(limit * 6, 80))


def _field_text(field: str):
    return func.coalesce(ProductCache.product_data[field].as_string(), "")


def _product_id_expr():
    data = ProductCache.product_data
    return func.coalesce(
        func.nullif(ProductCache.platform_product_id, ""),
        data["id"].as_string(),
        data["product_id"].as_string(),
        data["productId"].as_string(),
    )


def build_products_query(tokens: list[str], merchant_ids: list[str] | None, fetch_limit: int, now: datetime):
    filters = [
        or_(ProductCache.expires_at.is_(None), ProductCache.expires_at > now),
        func.coalesce(func.lower(ProductCache.product_data["status"].as_string()), "active") == "active",
    ]
    if merchant_ids:
        filters.append(ProductCache.merchant_id.in_(merchant_ids))
    match_tokens = [token for token in tokens if token not in _LEXICALIZED_TOKENS]
    for token in match_tokens[:MAX_MATCH_TOKENS]:
        pattern = f"%{token}%"
        filters.append(or_(*[_field_text(field).ilike(pattern) for field in MATCH_FIELDS]))
    # newest matching snapshot per product, numbered before the limit applies
    snapshot_rank = (
        func.row_number()
        .over(
            partition_by=(ProductCache.merchant_id, _product_id_expr()),
            order_by=(ProductCache.cached_at.desc(), ProductCache.id.desc()),
        )
        .label("snapshot_rank")
    )
    latest = select(ProductCache.id.label("row_id"), snapshot_rank).where(and_(*filters)).subquery()
    return (
        select(ProductCache)
        .join(latest, latest.c.row_id == ProductCache.id)
        .where(latest.c.snapshot_rank == 1)
        .order_by(ProductCache.cached_at.desc(), ProductCache.id.desc())
        .limit(fetch_limit)
    )


def _is_missing_table(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code == "42P01":
        return True
    message = str(orig or exc).lower()
    return any(marker in message for marker in _MISSING_TABLE_MARKERS)


def _row_product_id(row: ProductCache, data: dict[str, Any]) -> str:
    for value in (row.platform_product_id, data.get("id"), data.get("product_id"), data.get("productId")):
        text = _to_str(value)
        if text:
            return text
    return ""


def rows_to_products(rows: list[ProductCache]) -> list[dict[str, Any]]:
    seen: set[tuple[str, str]] = set()
    products: list[dict[str, Any]] = []
    for row in rows:
        data = row.product_data if isinstance(row.product_data, dict) else None
        if not data:
            continue
        merchant_id = _to_str(row.merchant_id)
        product_id = _row_product_id(row, data)
        if not merchant_id or not product_id:
            continue
        # rows arrive newest first; keep the freshest snapshot per product
        if (merchant_id, product_id) in seen:
            continue
        seen.add((merchant_id, product_id))
        if is_orderable(data) is False:
            continue
        products.append(
            {
                **data,
                "merchant_id": merchant_id,
                "product_id": product_id,
                "source_type": data.get("source_type") or data.get("source") or "products_cache",
            }
        )
    return products


class ProductsCacheSource:
    """Bounded read against the sellable-product cache table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None) -> None:
        self._session_factory = session_factory

    async def fetch(
        self,
        query: str,
        *,
        merchant_ids: list[str] | None,
        limit: int,
        timeout_ms: int,
    ) -> SourceResult:
        if merchant_ids is not None and not merchant_ids:
            return SourceResult(ok=False, failure=SourceFailureReason.MERCHANT_IDS_MISSING, attempts=0)
        if self._session_factory is None:
            return SourceResult(ok=False, failure=SourceFailureReason.DB_NOT_CONFIGURED, attempts=0)

        tokens = tokenize(normalize_text(query))
        if not tokens:
            return SourceResult(ok=True, products=[])

        fetch_limit = fetch_limit_for(limit)
        stmt = build_products_query(tokens, merchant_ids, fetch_limit, datetime.utcnow())
        try:
            async with self._session_factory() as session:
                result = await asyncio.wait_for(session.execute(stmt), timeout=timeout_ms / 1000)
                rows = list(result.scalars().all())
        except asyncio.TimeoutError:
            logger.warning("products_cache timeout timeout_ms=%s tokens=%s", timeout_ms, tokens)
            return SourceResult(ok=False, failure=SourceFailureReason.DB_ERROR)
        except DBAPIError as exc:
            if _is_missing_table(exc):
                logger.warning("products_cache table missing")
                return SourceResult(ok=False, failure=SourceFailureReason.TABLE_MISSING)
            logger.exception("products_cache query failed")
            return SourceResult(ok=False, failure=SourceFailureReason.DB_ERROR)
        except (SQLAlchemyError, OSError):
            logger.exception("products_cache query failed")
            return SourceResult(ok=False, failure=SourceFailureReason.DB_ERROR)

        products = rows_to_products(rows)
        logger.info(
            "products_cache tokens=%s merchants=%s rows=%s products=%s",
            tokens,
            len(merchant_ids or []),
            len(rows),
            len(products),
        )
        return SourceResult(ok=True, products=products[:fetch_limit])
