"""
Verification policy: which commodities need an operator to weigh them before an order
is finalized, and which confirmed quantities are implausible enough to ask twice.

Policy is versioned data keyed by commodity category (JSON), not code. The packaged
default lives in `data/verification_policy.json`; set VERIFICATION_POLICY_FILE to
point at another version.
"""
from __future__ import annotations

import json
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from .config import settings


class CommodityPolicy(BaseModel):
    label: str
    fragments: list[str] = Field(description="Lowercase name fragments identifying the commodity")
    requires_verification: bool = False
    max_plausible_kg: Optional[float] = None


class VerificationPolicy(BaseModel):
    version: str
    categories: dict[str, CommodityPolicy] = Field(default_factory=dict)

    def category_for(self, product_name: str | None) -> Optional[str]:
        """First category (in file order) whose fragment occurs in the product name."""
        name = (product_name or "").lower()
        if not name:
            return None
        for key, cat in self.categories.items():
            if any(frag.lower() in name for frag in cat.fragments):
                return key
        return None

    @property
    def watch_list(self) -> list[str]:
        return [
            frag.lower()
            for cat in self.categories.values()
            if cat.requires_verification
            for frag in cat.fragments
        ]

    def requires_verification(self, product_name: str | None) -> bool:
        name = (product_name or "").lower()
        return bool(name) and any(frag in name for frag in self.watch_list)

    def implausible_threshold(self, product_name: str | None) -> Optional[tuple[str, float]]:
        """(category, max kg) when the product's category carries a sanity threshold."""
        name = (product_name or "").lower()
        for key, cat in self.categories.items():
            if cat.max_plausible_kg is None:
                continue
            if any(frag.lower() in name for frag in cat.fragments):
                return key, cat.max_plausible_kg
        return None


def _read_policy(raw: str) -> VerificationPolicy:
    return VerificationPolicy.model_validate(json.loads(raw))


def load_policy(path: str | Path | None = None) -> VerificationPolicy:
    """Load policy from `path`, VERIFICATION_POLICY_FILE, or the packaged default."""
    if path:
        return _read_policy(Path(path).read_text(encoding="utf-8"))
    return default_policy()


def default_policy() -> VerificationPolicy:
    """Policy used when a component is not given one: VERIFICATION_POLICY_FILE when set."""
    if settings.VERIFICATION_POLICY_FILE:
        return _configured_policy(str(settings.VERIFICATION_POLICY_FILE))
    return packaged_policy()


@lru_cache(maxsize=4)
def _configured_policy(path: str) -> VerificationPolicy:
    return _read_policy(Path(path).read_text(encoding="utf-8"))


@lru_cache(maxsize=1)
def packaged_policy() -> VerificationPolicy:
    raw = resources.files("order_ingest").joinpath("data/verification_policy.json").read_text(
        encoding="utf-8"
    )
    return _read_policy(raw)
