from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict

_VOLUME_RE = re.compile(r"^(\d+)(ml|l|g|kg|mg|oz|floz|毫升|升|克)$")
_NUMBER_RE = re.compile(r"^\d+$")
_SPF_FUSED_RE = re.compile(r"^spf(\d+)$")
_MODEL_RE = re.compile(r"^[a-z0-9]{4,16}$")
_LETTER_PREFIX_RE = re.compile(r"^[a-z]{1,3}$")
_UNITS = {"ml", "l", "g", "kg", "mg", "oz", "floz", "毫升", "升", "克"}


class Signals(BaseModel):
    model_config = ConfigDict(frozen=True)

    volume: frozenset[str] = frozenset()
    spf: frozenset[str] = frozenset()
    percent: frozenset[str] = frozenset()
    model: frozenset[str] = frozenset()


def _is_model_code(token: str) -> bool:
    if not _MODEL_RE.match(token):
        return False
    return any(ch.isdigit() for ch in token) and any(ch.isalpha() for ch in token)


def _strip_zeros(number: str) -> str:
    return number.lstrip("0") or "0"


def extract_signals(tokens: list[str]) -> Signals:
    volume: set[str] = set()
    spf: set[str] = set()
    percent: set[str] = set()
    model: set[str] = set()
    measured: set[str] = set()

    for idx, token in enumerate(tokens):
        nxt = tokens[idx + 1] if idx + 1 < len(tokens) else ""

        match = _VOLUME_RE.match(token)
        if match:
            volume.add(f"{_strip_zeros(match.group(1))}{match.group(2)}")
            measured.add(token)
        elif _NUMBER_RE.match(token) and nxt in _UNITS:
            volume.add(f"{_strip_zeros(token)}{nxt}")

        match = _SPF_FUSED_RE.match(token)
        if match:
            spf.add(_strip_zeros(match.group(1)))
            measured.add(token)
        elif token == "spf" and _NUMBER_RE.match(nxt):
            spf.add(_strip_zeros(nxt))

        if _NUMBER_RE.match(token) and nxt == "percent":
            percent.add(_strip_zeros(token))

    for idx, token in enumerate(tokens):
        if token not in measured and _is_model_code(token):
            model.add(token)
        nxt = tokens[idx + 1] if idx + 1 < len(tokens) else ""
        if token != "spf" and _LETTER_PREFIX_RE.match(token) and nxt[:1].isdigit():
            merged = token + nxt
            if _is_model_code(merged):
                model.add(merged)

    return Signals(
        volume=frozenset(volume),
        spf=frozenset(spf),
        percent=frozenset(percent),
        model=frozenset(model),
    )
