"""
Catalog matching: resolve free text from an email to a catalog product.

Tiers are tried in order and the first tier with a hit wins (no scoring across tiers):
1. exact name            -> exact
2. substring either way  -> partial
3. token overlap         -> partial (at least half of the candidate's tokens hit the entry)
4. nothing               -> none (the line is kept for a human to resolve)

Inside a tier the best entry is picked by score, then shortest name, then id, over an
index built once per catalog, so the result never depends on catalog storage order.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional

from .models import CatalogProduct, MatchKind

logger = logging.getLogger(__name__)

_WS_RE = re.compile(r"\s+")

MIN_TOKEN_LEN = 3
MIN_TOKEN_OVERLAP = 0.5


def normalize_name(text: str | None) -> str:
    return _WS_RE.sub(" ", (text or "").strip().lower())


def name_tokens(text: str | None) -> tuple[str, ...]:
    """Whitespace tokens longer than two characters."""
    return tuple(t for t in normalize_name(text).split(" ") if len(t) >= MIN_TOKEN_LEN)


@dataclass(frozen=True)
class _Entry:
    product: CatalogProduct
    name: str
    tokens: tuple[str, ...]

    def rank(self, score: float) -> tuple[float, int, str]:
        return (-score, len(self.name), self.product.id)


@dataclass(frozen=True)
class MatchResult:
    product: Optional[CatalogProduct]
    kind: MatchKind
    score: float = 0.0


NO_MATCH = MatchResult(None, MatchKind.NONE, 0.0)


class CatalogIndex:
    """Entries live in one list; name and token indexes hold positions into it."""

    def __init__(self, products: Iterable[CatalogProduct]):
        self._entries: list[_Entry] = []
        self._by_id: dict[str, int] = {}
        self._by_name: dict[str, list[int]] = {}
        self._by_token: dict[str, list[int]] = {}

        for product in products:
            name = normalize_name(product.name)
            if not name:
                continue
            pos = len(self._entries)
            entry = _Entry(product, name, name_tokens(name))
            self._entries.append(entry)
            self._by_id[product.id] = pos
            self._by_name.setdefault(name, []).append(pos)
            for tok in set(entry.tokens):
                self._by_token.setdefault(tok, []).append(pos)

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, product_id: str | None) -> Optional[CatalogProduct]:
        if product_id is None:
            return None
        pos = self._by_id.get(product_id)
        return self._entries[pos].product if pos is not None else None

    def products(self) -> list[CatalogProduct]:
        return [e.product for e in self._entries]

    def _best(self, scored: Iterable[tuple[int, float]]) -> Optional[tuple[_Entry, float]]:
        best: Optional[tuple[_Entry, float]] = None
        for pos, score in scored:
            entry = self._entries[pos]
            if best is None or entry.rank(score) < best[0].rank(best[1]):
                best = (entry, score)
        return best

    def _exact(self, cand: str) -> Optional[tuple[_Entry, float]]:
        return self._best((pos, 1.0) for pos in self._by_name.get(cand, ()))

    def _containment(self, cand: str) -> Optional[tuple[_Entry, float]]:
        def scored():
            for pos, entry in enumerate(self._entries):
                if cand in entry.name or entry.name in cand:
                    shorter, longer = sorted((len(cand), len(entry.name)))
                    yield pos, shorter / longer
        return self._best(scored())

    def _token_overlap(self, cand: str) -> Optional[tuple[_Entry, float]]:
        cand_tokens = name_tokens(cand)
        if not cand_tokens:
            return None

        # positions -> number of candidate tokens that hit some token of that entry
        hits: dict[int, int] = {}
        for tok in cand_tokens:
            hit_positions: set[int] = set()
            for vocab_tok, positions in self._by_token.items():
                if tok in vocab_tok or vocab_tok in tok:
                    hit_positions.update(positions)
            for pos in hit_positions:
                hits[pos] = hits.get(pos, 0) + 1

        n = len(cand_tokens)
        return self._best(
            (pos, count / n) for pos, count in hits.items() if count / n >= MIN_TOKEN_OVERLAP
        )

    def match(self, text: str | None) -> MatchResult:
        cand = normalize_name(text)
        if not cand:
            return NO_MATCH

        found = self._exact(cand)
        if found:
            return MatchResult(found[0].product, MatchKind.EXACT, 1.0)

        for tier in (self._containment, self._token_overlap):
            found = tier(cand)
            if found:
                entry, score = found
                logger.debug(
                    "Partial catalog match",
                    extra={"candidate": cand, "product_id": entry.product.id, "score": round(score, 3)},
                )
                return MatchResult(entry.product, MatchKind.PARTIAL, score)

        logger.debug("No catalog match", extra={"candidate": cand})
        return NO_MATCH


def match_product(text: str | None, catalog: Iterable[CatalogProduct]) -> MatchResult:
    """One-off convenience; build a CatalogIndex when matching many lines."""
    return CatalogIndex(catalog).match(text)
