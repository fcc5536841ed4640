from __future__ import annotations

from collections.abc import Iterable, Mapping

from pydantic import BaseModel, ConfigDict

from grounding.resolver.normalize import compact_text, has_cjk, normalize_text

# canonical brand -> aliases (latin spellings, compressed forms, CJK names)
DEFAULT_BRAND_ALIASES: dict[str, tuple[str, ...]] = {
    "cerave": ("cerave", "cera ve", "适乐肤"),
    "winona": ("winona", "薇诺娜"),
    "la roche-posay": ("la roche posay", "laroche posay", "larocheposay", "la roche", "lrp", "理肤泉"),
    "the ordinary": ("the ordinary", "theordinary"),
    "sk-ii": ("sk ii", "skii", "sk2", "sk 2"),
    "ipsa": ("ipsa", "茵芙莎"),
    "estee lauder": ("estee lauder", "estée lauder", "esteelauder", "雅诗兰黛"),
    "lancome": ("lancome", "lancôme", "兰蔻"),
    "shiseido": ("shiseido", "资生堂"),
    "clinique": ("clinique", "倩碧"),
    "kiehls": ("kiehls", "kiehl s", "科颜氏"),
    "avene": ("avene", "avène", "eau thermale avene", "雅漾"),
    "vichy": ("vichy", "薇姿"),
    "loreal": ("loreal", "l oreal", "loréal", "欧莱雅"),
    "neutrogena": ("neutrogena", "露得清"),
    "bioderma": ("bioderma", "贝德玛"),
    "anessa": ("anessa", "安热沙", "安耐晒"),
    "olay": ("olay", "玉兰油"),
    "proya": ("proya", "珀莱雅"),
    "florasis": ("florasis", "花西子"),
}


class BrandAlias(BaseModel):
    model_config = ConfigDict(frozen=True)

    canonical: str
    alias: str
    compact: bool


class BrandIndex(BaseModel):
    """Immutable alias lookup; build once and hand to the scorer."""

    model_config = ConfigDict(frozen=True)

    aliases: tuple[BrandAlias, ...] = ()

    def match(self, normalized: str) -> frozenset[str]:
        text = (normalized or "").strip()
        if not text or not self.aliases:
            return frozenset()
        padded = f" {text} "
        squeezed = compact_text(text)
        found: set[str] = set()
        for entry in self.aliases:
            if entry.canonical in found:
                continue
            if entry.compact:
                if entry.alias in text or entry.alias in squeezed:
                    found.add(entry.canonical)
            elif f" {entry.alias} " in padded:
                found.add(entry.canonical)
        return frozenset(found)

    def canonical_for(self, brand: str | None) -> frozenset[str]:
        return self.match(normalize_text(brand))


def build_brand_index(table: Mapping[str, Iterable[str]] | None = None) -> BrandIndex:
    source = DEFAULT_BRAND_ALIASES if table is None else table
    entries: list[BrandAlias] = []
    seen: set[tuple[str, str]] = set()
    for canonical, aliases in source.items():
        canonical_name = (canonical or "").strip().lower()
        if not canonical_name:
            continue
        for raw_alias in (canonical_name, *aliases):
            alias = normalize_text(raw_alias)
            if not alias or (canonical_name, alias) in seen:
                continue
            seen.add((canonical_name, alias))
            compact = has_cjk(alias) and " " not in alias
            entries.append(BrandAlias(canonical=canonical_name, alias=alias, compact=compact))
    # longer aliases first so multi-word forms win over their prefixes
    entries.sort(key=lambda entry: len(entry.alias), reverse=True)
    return BrandIndex(aliases=tuple(entries))
