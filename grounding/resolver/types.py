from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

Lang = Literal["en", "cn"]

NO_MERCHANT_KEY = "__no_merchant__"
MAX_PREFER_MERCHANTS = 20


class ScoringVersion(str, Enum):
    V1 = "v1"
    V2 = "v2"


class SourceFailureReason(str, Enum):
    DB_NOT_CONFIGURED = "db_not_configured"
    DB_ERROR = "db_error"
    TABLE_MISSING = "table_missing"
    MERCHANT_IDS_MISSING = "merchant_ids_missing"
    UPSTREAM_NOT_CONFIGURED = "upstream_not_configured"
    QUERY_MISSING = "query_missing"
    UPSTREAM_TIMEOUT = "upstream_timeout"
    UPSTREAM_ERROR = "upstream_error"
    UPSTREAM_STATUS = "upstream_status"
    NO_RESULTS = "no_results"
    BUDGET_EXHAUSTED = "budget_exhausted"


def _clamp_int(value: Any, *, low: int, high: int, fallback: int | None) -> int | None:
    if value is None or isinstance(value, bool):
        return fallback
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return fallback
    return max(low, min(high, number))


class ProductRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    merchant_id: str | None = None

    @field_validator("product_id", mode="before")
    @classmethod
    def _strip_product_id(cls, value: Any) -> str:
        return ("" if value is None else str(value)).strip()

    @field_validator("merchant_id", mode="before")
    @classmethod
    def _strip_merchant_id(cls, value: Any) -> str | None:
        text = ("" if value is None else str(value)).strip()
        return text or None

    @property
    def key(self) -> str:
        return f"{self.merchant_id or NO_MERCHANT_KEY}::{self.product_id}"


class ResolverHints(BaseModel):
    product_ref: ProductRef | None = None
    aliases: list[str] = Field(default_factory=list)
    brand: str | None = None

    @field_validator("product_ref", mode="before")
    @classmethod
    def _drop_empty_ref(cls, value: Any) -> Any:
        if isinstance(value, dict):
            product_id = str(value.get("product_id") or value.get("productId") or "").strip()
            if not product_id:
                return None
        return value

    @field_validator("aliases", mode="before")
    @classmethod
    def _clean_aliases(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple)):
            return []
        return [str(item).strip() for item in value if item is not None and str(item).strip()]

    @field_validator("brand", mode="before")
    @classmethod
    def _clean_brand(cls, value: Any) -> str | None:
        text = ("" if value is None else str(value)).strip()
        return text or None


class ResolveOptions(BaseModel):
    """Per-call knobs; malformed values degrade to defaults instead of failing."""

    scoring_version: ScoringVersion | None = None
    min_confidence: float | None = None
    prefer_merchants: list[str] = Field(default_factory=list)
    allow_external_seed: bool = False
    search_all_merchants: bool | None = None
    limit: int = 20
    timeout_ms: int | None = None
    upstream_retries: int | None = None
    upstream_retry_backoff_ms: int | None = None
    candidates_limit: int = 6

    @field_validator("scoring_version", mode="before")
    @classmethod
    def _parse_version(cls, value: Any) -> ScoringVersion | None:
        text = str(value or "").strip().lower()
        return ScoringVersion(text) if text in {"v1", "v2"} else None

    @field_validator("min_confidence", mode="before")
    @classmethod
    def _parse_min_confidence(cls, value: Any) -> float | None:
        if value is None or isinstance(value, bool):
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        return max(0.0, min(1.0, number))

    @field_validator("prefer_merchants", mode="before")
    @classmethod
    def _parse_prefer_merchants(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple)):
            return []
        seen: set[str] = set()
        out: list[str] = []
        for item in value:
            merchant_id = ("" if item is None else str(item)).strip()
            if not merchant_id or merchant_id in seen:
                continue
            seen.add(merchant_id)
            out.append(merchant_id)
        return out[:MAX_PREFER_MERCHANTS]

    @field_validator("allow_external_seed", mode="before")
    @classmethod
    def _parse_allow_external(cls, value: Any) -> bool:
        return value is True

    @field_validator("search_all_merchants", mode="before")
    @classmethod
    def _parse_search_all(cls, value: Any) -> bool | None:
        return value if isinstance(value, bool) else None

    @field_validator("limit", mode="before")
    @classmethod
    def _parse_limit(cls, value: Any) -> int:
        return _clamp_int(value, low=1, high=50, fallback=20)

    @field_validator("timeout_ms", mode="before")
    @classmethod
    def _parse_timeout(cls, value: Any) -> int | None:
        return _clamp_int(value, low=100, high=15000, fallback=None)

    @field_validator("upstream_retries", mode="before")
    @classmethod
    def _parse_retries(cls, value: Any) -> int | None:
        return _clamp_int(value, low=0, high=3, fallback=None)

    @field_validator("upstream_retry_backoff_ms", mode="before")
    @classmethod
    def _parse_backoff(cls, value: Any) -> int | None:
        return _clamp_int(value, low=0, high=2000, fallback=None)

    @field_validator("candidates_limit", mode="before")
    @classmethod
    def _parse_candidates_limit(cls, value: Any) -> int:
        return _clamp_int(value, low=1, high=12, fallback=6)


class ResolverQuery(BaseModel):
    model_config = ConfigDict(frozen=True)

    raw_text: str
    lang: Lang = "en"
    hints: ResolverHints = Field(default_factory=ResolverHints)

    @field_validator("raw_text", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> str:
        return ("" if value is None else str(value)).strip()

    @field_validator("lang", mode="before")
    @classmethod
    def _parse_lang(cls, value: Any) -> str:
        return "cn" if str(value or "").strip().lower() == "cn" else "en"


class CandidateProfile(BaseModel):
    title: str = ""
    brand: str = ""
    combined: str = ""
    compact: str = ""
    tokens: frozenset[str] = frozenset()
    volume: frozenset[str] = frozenset()
    spf: frozenset[str] = frozenset()
    percent: frozenset[str] = frozenset()
    model: frozenset[str] = frozenset()
    brands: frozenset[str] = frozenset()


class ScoredCandidate(BaseModel):
    product_ref: ProductRef
    title: str | None = None
    brand: str | None = None
    merchant_name: str | None = None
    score: float
    raw_rank_score: float
    signal_score: float = 0.0
    preferred_merchant: bool = False
    reason: str


class ResolutionDecision(BaseModel):
    resolved: bool
    product_ref: ProductRef | None = None
    confidence: float = 0.0
    reason: str


class SourceResult(BaseModel):
    ok: bool
    products: list[dict[str, Any]] = Field(default_factory=list)
    failure: SourceFailureReason | None = None
    status_code: int | None = None
    attempts: int = 1

    @property
    def reason(self) -> str | None:
        if self.failure is None:
            return None
        if self.failure is SourceFailureReason.UPSTREAM_STATUS and self.status_code is not None:
            return f"upstream_status_{self.status_code}"
        return self.failure.value


class SourceDiagnostic(BaseModel):
    source_name: str
    ok: bool
    count: int | None = None
    reason: str | None = None
    attempts: int = 0
    timeout_ms: int | None = None


class CandidateView(BaseModel):
    product_ref: ProductRef
    title: str | None = None
    score: float
    merchant_name: str | None = None


class ResolutionMetadata(BaseModel):
    lang: Lang
    timeout_ms: int
    latency_ms: int
    scoring_version: ScoringVersion
    sources: list[SourceDiagnostic] = Field(default_factory=list)
    query_from_hints: bool | None = None
    effective_query: str | None = None
    original_query: str | None = None
    prefer_merchants: list[str] | None = None
    allow_external_seed: bool | None = None


class ResolutionEnvelope(BaseModel):
    resolved: bool
    product_ref: ProductRef | None = None
    confidence: float = 0.0
    reason: str
    candidates: list[CandidateView] = Field(default_factory=list)
    normalized_query: str
    scoring_version: ScoringVersion
    metadata: ResolutionMetadata

    def to_payload(self) -> dict[str, Any]:
        payload = self.model_dump(mode="json", exclude={"metadata", "candidates"})
        payload["candidates"] = [item.model_dump(mode="json", exclude_none=True) for item in self.candidates]
        metadata = self.metadata.model_dump(mode="json", exclude_none=True)
        metadata["sources"] = [item.model_dump(mode="json", exclude_none=True) for item in self.metadata.sources]
        payload["metadata"] = metadata
        return payload
