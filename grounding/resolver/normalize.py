from __future__ import annotations

import re
import unicodedata

MAX_TOKENS = 12

_PLUS_RE = re.compile(r"[＋+]")
_PERCENT_RE = re.compile(r"[%％]")
_APOSTROPHE_RE = re.compile(r"['’`]")
_NON_WORD_RE = re.compile(r"[\W_]+")
_SPACE_RE = re.compile(r"\s+")
_LATIN_TOKEN_RE = re.compile(r"^[a-z0-9]+$")

STOP_WORDS = frozenset(
    {
        "a",
        "an",
        "and",
        "are",
        "as",
        "at",
        "be",
        "by",
        "for",
        "from",
        "have",
        "i",
        "in",
        "is",
        "it",
        "of",
        "on",
        "or",
        "the",
        "this",
        "to",
        "with",
        "you",
        "your",
    }
)


def normalize_text(text: str | None) -> str:
    raw = (text or "").strip()
    if not raw:
        return ""
    normalized = unicodedata.normalize("NFKC", raw).lower()
    normalized = _PLUS_RE.sub(" plus ", normalized)
    normalized = _PERCENT_RE.sub(" percent ", normalized)
    normalized = normalized.replace("&", " and ")
    normalized = _APOSTROPHE_RE.sub("", normalized)
    normalized = _NON_WORD_RE.sub(" ", normalized)
    normalized = _SPACE_RE.sub(" ", normalized).strip()
    return normalized


def tokenize(normalized: str) -> list[str]:
    tokens: list[str] = []
    seen: set[str] = set()
    for token in (normalized or "").split():
        if _LATIN_TOKEN_RE.match(token) and not token.isdigit():
            if token in STOP_WORDS or len(token) < 2:
                continue
        if token in seen:
            continue
        seen.add(token)
        tokens.append(token)
        if len(tokens) >= MAX_TOKENS:
            break
    return tokens


def compact_text(normalized: str) -> str:
    return (normalized or "").replace(" ", "")


def is_cjk_char(ch: str) -> bool:
    code = ord(ch)
    return (
        0x4E00 <= code <= 0x9FFF
        or 0x3400 <= code <= 0x4DBF
        or 0x3040 <= code <= 0x30FF
        or 0xAC00 <= code <= 0xD7AF
        or 0xF900 <= code <= 0xFAFF
    )


def has_cjk(text: str) -> bool:
    return any(is_cjk_char(ch) for ch in text or "")
