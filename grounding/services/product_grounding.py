from __future__ import annotations

import logging
import re
import time
from typing import Any

from grounding.config import Settings, settings
from grounding.resolver.brands import BrandIndex, build_brand_index
from grounding.resolver.budget import Deadline, Stage, StageState, clamp_timeout_ms, run_stages
from grounding.resolver.normalize import normalize_text, tokenize
from grounding.resolver.ranking import decide, dedupe_keep_first, rank_candidates
from grounding.resolver.scoring import (
    DEFAULT_THRESHOLDS,
    build_query_profile,
    candidate_ref,
    is_external_product,
    score_candidates,
)
from grounding.resolver.types import (
    CandidateView,
    ResolutionEnvelope,
    ResolutionMetadata,
    ResolveOptions,
    ResolverHints,
    ResolverQuery,
    ScoringVersion,
    SourceFailureReason,
    SourceResult,
)
from grounding.services.agent_search import AgentSearchSource
from grounding.services.products_cache import ProductsCacheSource

logger = logging.getLogger(__name__)

HINT_SEED = "hint_seed"
CACHE_SCOPED = "products_cache_scoped"
SEARCH_SCOPED = "agent_search_scoped"
CACHE_GLOBAL = "products_cache_global"
SEARCH_GLOBAL = "agent_search_global"

GLOBAL_SEARCH_MIN_LIMIT = 18

_UUID_RE = re.compile(r"^[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}$", re.IGNORECASE)
_HEX_ID_RE = re.compile(r"^(?:[a-z]{1,12}[_:\-])?[0-9a-f]{12,}$", re.IGNORECASE)
_NUMERIC_ID_RE = re.compile(r"^\d{6,}$")


def looks_like_identifier(text: str) -> bool:
    raw = (text or "").strip()
    if not raw:
        return True
    if " " in raw:
        return False
    return bool(_UUID_RE.match(raw) or _HEX_ID_RE.match(raw) or _NUMERIC_ID_RE.match(raw))


def effective_query_from_hints(raw_text: str, hints: ResolverHints) -> tuple[str, bool]:
    usable_now = bool(tokenize(normalize_text(raw_text)))
    if usable_now and not looks_like_identifier(raw_text):
        return raw_text, False
    for alias in hints.aliases:
        if tokenize(normalize_text(alias)):
            return alias, True
    if hints.brand and tokenize(normalize_text(hints.brand)):
        return hints.brand, True
    return raw_text, False


def global_candidate_floor(limit: int) -> int:
    return max(6, min(14, limit))


def _product_key(product: dict[str, Any]) -> str | None:
    ref = candidate_ref(product)
    return ref.key if ref else None


class ProductGroundingResolver:
    def __init__(
        self,
        *,
        brand_index: BrandIndex,
        catalog: ProductsCacheSource,
        search: AgentSearchSource,
        config: Settings | None = None,
    ) -> None:
        self._brands = brand_index
        self._catalog = catalog
        self._search = search
        self._config = config or settings

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "ProductGroundingResolver":
        from grounding.database import SessionLocal

        config = config or settings
        return cls(
            brand_index=build_brand_index(),
            catalog=ProductsCacheSource(SessionLocal),
            search=AgentSearchSource(config.search_api_base, api_key=config.search_api_key),
            config=config,
        )

    def _default_version(self) -> ScoringVersion:
        raw = (self._config.resolver_scoring_version or "").strip().lower()
        return ScoringVersion.V1 if raw == "v1" else ScoringVersion.V2

    def _build_stages(
        self,
        query: str,
        hints: ResolverHints,
        options: ResolveOptions,
        checkout_token: str | None,
    ) -> list[Stage]:
        cfg = self._config
        prefer = options.prefer_merchants
        search_all = options.search_all_merchants is True or (not prefer and options.search_all_merchants is not False)
        retries = options.upstream_retries
        if retries is None:
            retries = max(0, min(3, cfg.resolver_upstream_retries))
        backoff_ms = options.upstream_retry_backoff_ms
        if backoff_ms is None:
            backoff_ms = max(0, min(2000, cfg.resolver_upstream_retry_backoff_ms))
        global_floor = global_candidate_floor(options.limit)

        async def seed_hint(_timeout_ms: int) -> SourceResult:
            ref = hints.product_ref
            product = {
                "product_id": ref.product_id,
                "merchant_id": ref.merchant_id,
                "title": hints.aliases[0] if hints.aliases else query,
                "brand": hints.brand,
                "source_type": HINT_SEED,
            }
            return SourceResult(ok=True, products=[product], attempts=0)

        async def cache_scoped(timeout_ms: int) -> SourceResult:
            return await self._catalog.fetch(query, merchant_ids=prefer, limit=options.limit, timeout_ms=timeout_ms)

        async def search_scoped(timeout_ms: int) -> SourceResult:
            return await self._search.fetch(
                query,
                merchant_ids=prefer,
                search_all_merchants=False,
                limit=options.limit,
                timeout_ms=timeout_ms,
                retries=retries,
                backoff_ms=backoff_ms,
                checkout_token=checkout_token,
            )

        async def cache_global(timeout_ms: int) -> SourceResult:
            return await self._catalog.fetch(query, merchant_ids=None, limit=options.limit, timeout_ms=timeout_ms)

        async def search_global(timeout_ms: int) -> SourceResult:
            return await self._search.fetch(
                query,
                merchant_ids=None,
                search_all_merchants=True,
                limit=max(options.limit, GLOBAL_SEARCH_MIN_LIMIT),
                timeout_ms=timeout_ms,
                retries=retries,
                backoff_ms=backoff_ms,
                checkout_token=checkout_token,
            )

        def below_global_floor(state: StageState) -> bool:
            return len(state.products) < global_floor

        return [
            Stage(HINT_SEED, seed_hint, enabled=hints.product_ref is not None, timed=False),
            Stage(
                CACHE_SCOPED,
                cache_scoped,
                cap_ms=cfg.resolver_cache_scoped_cap_ms,
                floor_ms=cfg.resolver_cache_scoped_floor_ms,
                enabled=bool(prefer),
                timeout_failure=SourceFailureReason.DB_ERROR,
                error_failure=SourceFailureReason.DB_ERROR,
            ),
            Stage(
                SEARCH_SCOPED,
                search_scoped,
                cap_ms=cfg.resolver_search_scoped_cap_ms,
                floor_ms=cfg.resolver_search_scoped_floor_ms,
                enabled=bool(prefer),
                should_run=lambda state: state.count(CACHE_SCOPED) == 0,
            ),
            Stage(
                CACHE_GLOBAL,
                cache_global,
                cap_ms=cfg.resolver_cache_global_cap_ms,
                floor_ms=cfg.resolver_cache_global_floor_ms,
                enabled=search_all,
                should_run=below_global_floor,
                timeout_failure=SourceFailureReason.DB_ERROR,
                error_failure=SourceFailureReason.DB_ERROR,
            ),
            Stage(
                SEARCH_GLOBAL,
                search_global,
                cap_ms=cfg.resolver_search_global_cap_ms,
                floor_ms=cfg.resolver_search_global_floor_ms,
                enabled=search_all,
                should_run=below_global_floor,
            ),
        ]

    async def resolve(
        self,
        query: str,
        lang: str = "en",
        hints: ResolverHints | dict[str, Any] | None = None,
        options: ResolveOptions | dict[str, Any] | None = None,
        checkout_token: str | None = None,
    ) -> ResolutionEnvelope:
        started = time.monotonic()
        opts = options if isinstance(options, ResolveOptions) else ResolveOptions.model_validate(options or {})
        request = ResolverQuery(
            raw_text=query,
            lang=lang,
            hints=hints if isinstance(hints, ResolverHints) else ResolverHints.model_validate(hints or {}),
        )
        version = opts.scoring_version or self._default_version()
        timeout_ms = clamp_timeout_ms(opts.timeout_ms, self._config.resolver_timeout_ms)
        deadline = Deadline(timeout_ms)

        effective_query, from_hints = effective_query_from_hints(request.raw_text, request.hints)
        normalized_query = normalize_text(effective_query)
        query_tokens = tokenize(normalized_query)

        metadata = ResolutionMetadata(
            lang=request.lang,
            timeout_ms=timeout_ms,
            latency_ms=0,
            scoring_version=version,
            prefer_merchants=opts.prefer_merchants or None,
            allow_external_seed=True if opts.allow_external_seed else None,
        )
        if from_hints:
            metadata.query_from_hints = True
            metadata.effective_query = effective_query
            metadata.original_query = request.raw_text

        if not normalized_query or not query_tokens:
            metadata.latency_ms = int((time.monotonic() - started) * 1000)
            logger.info("resolve empty_query raw=%r", request.raw_text)
            return ResolutionEnvelope(
                resolved=False,
                product_ref=None,
                confidence=0.0,
                reason="empty_query",
                candidates=[],
                normalized_query=normalized_query,
                scoring_version=version,
                metadata=metadata,
            )

        stages = self._build_stages(effective_query, request.hints, opts, checkout_token)
        state = await run_stages(stages, deadline)
        metadata.sources = state.diagnostics

        products = [
            product
            for product in state.products
            if isinstance(product, dict) and (opts.allow_external_seed or not is_external_product(product))
        ]
        products = dedupe_keep_first(products, _product_key)

        query_profile = build_query_profile(normalized_query, query_tokens, self._brands, request.hints.brand)
        scored = score_candidates(query_profile, products, version, self._brands, opts.prefer_merchants)
        ranked = rank_candidates(scored, version)
        threshold = opts.min_confidence if opts.min_confidence is not None else DEFAULT_THRESHOLDS[version]
        decision = decide(ranked, threshold)

        metadata.latency_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "resolve query=%r version=%s resolved=%s reason=%s confidence=%s candidates=%s latency_ms=%s",
            normalized_query,
            version.value,
            decision.resolved,
            decision.reason,
            decision.confidence,
            len(ranked),
            metadata.latency_ms,
        )
        return ResolutionEnvelope(
            resolved=decision.resolved,
            product_ref=decision.product_ref,
            confidence=decision.confidence,
            reason=decision.reason,
            candidates=[
                CandidateView(
                    product_ref=item.product_ref,
                    title=item.title,
                    score=item.score,
                    merchant_name=item.merchant_name,
                )
                for item in ranked[: opts.candidates_limit]
            ],
            normalized_query=normalized_query,
            scoring_version=version,
            metadata=metadata,
        )


async def resolve_product_ref(
    query: str,
    lang: str = "en",
    hints: dict[str, Any] | None = None,
    options: dict[str, Any] | None = None,
    checkout_token: str | None = None,
    resolver: ProductGroundingResolver | None = None,
) -> dict[str, Any]:
    resolver = resolver or ProductGroundingResolver.from_settings()
    envelope = await resolver.resolve(query, lang, hints=hints, options=options, checkout_token=checkout_token)
    return envelope.to_payload()
