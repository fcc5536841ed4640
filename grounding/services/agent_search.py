from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from grounding.resolver.types import SourceFailureReason, SourceResult

logger = logging.getLogger(__name__)

SEARCH_PATH = "/agent/v1/products/search"
MIN_ATTEMPT_MS = 50

Extractor = Callable[[Any], tuple[bool, list[Any]]]


def _list_at(*path: str) -> Extractor:
    def extract(payload: Any) -> tuple[bool, list[Any]]:
        node = payload
        for key in path:
            if not isinstance(node, dict):
                return False, []
            node = node.get(key)
        return (True, node) if isinstance(node, list) else (False, [])

    return extract


# tried in order, first hit wins
RESPONSE_EXTRACTORS: tuple[Extractor, ...] = (
    _list_at(),
    _list_at("products"),
    _list_at("data", "products"),
    _list_at("items"),
    _list_at("data", "items"),
    _list_at("results"),
    _list_at("data", "results"),
    _list_at("data"),
)


def extract_products(payload: Any) -> list[dict[str, Any]]:
    for extractor in RESPONSE_EXTRACTORS:
        found, items = extractor(payload)
        if found:
            return [item for item in items if isinstance(item, dict)]
    return []


def normalize_base_url(raw: str) -> str:
    return (raw or "").strip().rstrip("/")


def build_headers(api_key: str | None, checkout_token: str | None) -> dict[str, str]:
    token = (checkout_token or "").strip()
    if token:
        return {"X-Checkout-Token": token}
    key = (api_key or "").strip()
    if not key:
        return {}
    return {"X-API-Key": key, "Authorization": f"Bearer {key}"}


def build_params(
    query: str,
    merchant_ids: list[str] | None,
    search_all_merchants: bool,
    limit: int,
) -> list[tuple[str, str | int]]:
    params: list[tuple[str, str | int]] = [
        ("query", query),
        ("in_stock_only", "false"),
        ("limit", max(1, min(50, limit))),
        ("offset", 0),
    ]
    if search_all_merchants:
        params.append(("search_all_merchants", "true"))
    for merchant_id in merchant_ids or []:
        params.append(("merchant_ids", merchant_id))
    return params


def _retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class AgentSearchSource:
    """Upstream product search with linear-backoff retries on 429/5xx and timeouts."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = normalize_base_url(base_url)
        self._api_key = api_key
        self._client = client

    async def fetch(
        self,
        query: str,
        *,
        merchant_ids: list[str] | None,
        search_all_merchants: bool,
        limit: int,
        timeout_ms: int,
        retries: int = 0,
        backoff_ms: int = 0,
        checkout_token: str | None = None,
    ) -> SourceResult:
        if not self._base_url:
            return SourceResult(ok=False, failure=SourceFailureReason.UPSTREAM_NOT_CONFIGURED, attempts=0)
        q = (query or "").strip()
        if not q:
            return SourceResult(ok=False, failure=SourceFailureReason.QUERY_MISSING, attempts=0)

        endpoint = f"{self._base_url}{SEARCH_PATH}"
        params = build_params(q, merchant_ids, search_all_merchants, limit)
        headers = build_headers(self._api_key, checkout_token)
        started = time.monotonic()
        timeout_s = timeout_ms / 1000

        if self._client is not None:
            return await self._attempts(self._client, endpoint, params, headers, timeout_s, retries, backoff_ms, started)
        async with httpx.AsyncClient(timeout=timeout_s) as client:
            return await self._attempts(client, endpoint, params, headers, timeout_s, retries, backoff_ms, started)

    async def _attempts(
        self,
        client: httpx.AsyncClient,
        endpoint: str,
        params: list[tuple[str, str | int]],
        headers: dict[str, str],
        timeout_s: float,
        retries: int,
        backoff_ms: int,
        started: float,
    ) -> SourceResult:
        attempt = 0
        last = SourceResult(ok=False, failure=SourceFailureReason.UPSTREAM_ERROR, attempts=0)
        while True:
            attempt += 1
            last = await self._attempt(client, endpoint, params, headers, timeout_s, attempt)
            if last.ok or not self._should_retry(last) or attempt > retries:
                return last
            delay_s = backoff_ms * attempt / 1000
            left_s = timeout_s - (time.monotonic() - started)
            if left_s - delay_s < MIN_ATTEMPT_MS / 1000:
                logger.info("agent_search retry budget exhausted attempt=%s reason=%s", attempt, last.reason)
                return last
            logger.info("agent_search retry attempt=%s reason=%s delay_ms=%s", attempt, last.reason, int(delay_s * 1000))
            await asyncio.sleep(delay_s)

    @staticmethod
    def _should_retry(result: SourceResult) -> bool:
        if result.failure in {SourceFailureReason.UPSTREAM_TIMEOUT, SourceFailureReason.UPSTREAM_ERROR}:
            return True
        return result.failure is SourceFailureReason.UPSTREAM_STATUS and _retryable_status(result.status_code or 0)

    @staticmethod
    async def _attempt(
        client: httpx.AsyncClient,
        endpoint: str,
        params: list[tuple[str, str | int]],
        headers: dict[str, str],
        timeout_s: float,
        attempt: int,
    ) -> SourceResult:
        try:
            response = await client.get(endpoint, params=params, headers=headers, timeout=timeout_s)
        except httpx.TimeoutException:
            logger.warning("agent_search timeout endpoint=%s attempt=%s", endpoint, attempt)
            return SourceResult(ok=False, failure=SourceFailureReason.UPSTREAM_TIMEOUT, attempts=attempt)
        except (httpx.HTTPError, httpx.InvalidURL):
            logger.exception("agent_search request failed endpoint=%s attempt=%s", endpoint, attempt)
            return SourceResult(ok=False, failure=SourceFailureReason.UPSTREAM_ERROR, attempts=attempt)

        if response.status_code != 200:
            logger.warning("agent_search status=%s endpoint=%s attempt=%s", response.status_code, endpoint, attempt)
            return SourceResult(
                ok=False,
                failure=SourceFailureReason.UPSTREAM_STATUS,
                status_code=response.status_code,
                attempts=attempt,
            )
        try:
            payload = response.json()
        except ValueError:
            logger.warning("agent_search invalid json endpoint=%s", endpoint)
            return SourceResult(ok=False, failure=SourceFailureReason.UPSTREAM_ERROR, attempts=attempt)
        return SourceResult(ok=True, products=extract_products(payload), attempts=attempt)
