"""
Branch resolution: map a branch name as written in an email ("303 ROST. AMATRIAS") to one
of the client's registered branches.

Steps, first hit wins:
1. leading branch number equals a registered branch's leading number
2. key name equal (number and common prefixes like "rost.", "suc.", "la" removed)
3. key names contain one another (key of at least 3 chars)
4. a shared word longer than 2 chars
5. Dice bigram similarity above 0.7 (best score)
"""
from __future__ import annotations

import logging
import re
from typing import Iterable, Optional

from .models import RegisteredBranch

logger = logging.getLogger(__name__)

_BRANCH_PREFIXES = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^rost\.?\s*",
        r"^rosticer[ií]a\s*",
        r"^panader[ií]a\s*",
        r"^pan\s+",
        r"^pollos\s*",
        r"^(?:la|el|los|las)\s+",
        r"^v\.\s*de\s*",
        r"^villa\s+de\s*",
        r"^av\.\s*",
        r"^avenida\s*",
        r"^sucursal\s*",
        r"^suc\.?\s+",
    )
]
_LEADING_NUMBER_RE = re.compile(r"^(\d+)\s*")
_WS_RE = re.compile(r"\s+")

MIN_SIMILARITY = 0.7


def branch_key_name(name: str) -> str:
    """Lowercased name without its leading number and common prefixes."""
    key = _WS_RE.sub(" ", name.lower().strip())
    key = _LEADING_NUMBER_RE.sub("", key)
    prev = None
    while prev != key:
        prev = key
        for prefix in _BRANCH_PREFIXES:
            key = prefix.sub("", key).strip()
    return key


def _leading_number(name: str) -> Optional[str]:
    m = _LEADING_NUMBER_RE.match(name.strip())
    return m.group(1) if m else None


def _bigrams(s: str) -> set[str]:
    return {s[i:i + 2] for i in range(len(s) - 1)}


def dice_similarity(a: str, b: str) -> float:
    if a == b:
        return 1.0
    if len(a) < 2 or len(b) < 2:
        return 0.0
    ba, bb = _bigrams(a), _bigrams(b)
    return 2 * len(ba & bb) / (len(ba) + len(bb))


def match_branch(
    name: str,
    registered: Iterable[RegisteredBranch],
) -> Optional[RegisteredBranch]:
    candidates = sorted(registered, key=lambda b: (b.name.lower(), b.id))
    if not candidates or not name.strip():
        return None

    number = _leading_number(name)
    key = branch_key_name(name)
    keyed = [(b, branch_key_name(b.name)) for b in candidates]

    if number:
        for b in candidates:
            if _leading_number(b.name) == number:
                return b

    if key:
        for b, bkey in keyed:
            if bkey == key:
                return b

    if len(key) >= 3:
        for b, bkey in keyed:
            if bkey and (key in bkey or bkey in key):
                return b

    words = {w for w in key.split(" ") if len(w) > 2}
    if words:
        for b, bkey in keyed:
            if words & {w for w in bkey.split(" ") if len(w) > 2}:
                return b

    best: Optional[RegisteredBranch] = None
    best_score = 0.0
    for b, bkey in keyed:
        if len(bkey) < 2:
            continue
        score = dice_similarity(key, bkey)
        if score > MIN_SIMILARITY and score > best_score:
            best, best_score = b, score
    if best is None:
        logger.debug("No registered branch for name", extra={"branch_name": name})
    return best
