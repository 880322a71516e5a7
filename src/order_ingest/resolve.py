"""
Turn extracted (product text, quantity, unit) candidates into priced ParsedLines, and the
review helpers an operator uses to settle lines that found no catalog match.
"""
from __future__ import annotations

from typing import Optional

from .catalog import CatalogIndex
from .models import CatalogProduct, MatchKind, ParsedBranch, ParsedLine
from .policy import VerificationPolicy, default_policy
from .pricing import line_subtotal
from .uom import normalize_quantity


def build_line(
    product: CatalogProduct,
    kind: MatchKind,
    raw_product_text: str,
    raw_quantity: float,
    raw_unit_hint: Optional[str],
    policy: VerificationPolicy,
    suggested_price: Optional[float] = None,
    notes: Optional[str] = None,
    raw_quantity_text: Optional[str] = None,
) -> ParsedLine:
    """Matched line: normalized quantity, quoted price (else the price the email suggested)."""
    nq = normalize_quantity(raw_quantity, raw_unit_hint, product, raw_quantity_text)
    unit_price = product.quoted_price if product.quoted_price is not None else (suggested_price or 0.0)
    return ParsedLine(
        raw_product_text=raw_product_text,
        raw_quantity=raw_quantity,
        raw_unit_hint=raw_unit_hint,
        matched_product_id=product.id,
        matched_product_name=product.name,
        match_kind=kind,
        normalized_quantity=nq.quantity,
        normalized_unit=nq.unit,
        requires_verification=policy.requires_verification(product.name),
        unit_price=unit_price,
        line_subtotal=line_subtotal(nq.quantity, unit_price),
        annotation=nq.annotation,
        notes=notes,
    )


def unmatched_line(
    raw_product_text: str,
    raw_quantity: float,
    raw_unit_hint: Optional[str],
    suggested_price: Optional[float] = None,
    notes: Optional[str] = None,
) -> ParsedLine:
    return ParsedLine(
        raw_product_text=raw_product_text,
        raw_quantity=raw_quantity,
        raw_unit_hint=raw_unit_hint,
        match_kind=MatchKind.NONE,
        normalized_quantity=raw_quantity,
        normalized_unit=raw_unit_hint,
        unit_price=suggested_price,
        notes=notes,
    )


class LineResolver:
    """Catalog matching + quantity normalization + pricing for one client's catalog."""

    def __init__(self, catalog: CatalogIndex, policy: Optional[VerificationPolicy] = None):
        self.catalog = catalog
        self.policy = policy or default_policy()

    def resolve(
        self,
        product_text: str,
        quantity: float,
        unit_hint: Optional[str],
        *,
        suggested_price: Optional[float] = None,
        notes: Optional[str] = None,
        catalog_id: Optional[str] = None,
        quantity_text: Optional[str] = None,
    ) -> ParsedLine:
        # A catalog id supplied by the extractor is trusted only if it exists in this catalog
        product = self.catalog.get(catalog_id)
        kind = MatchKind.EXACT
        if product is None:
            result = self.catalog.match(product_text)
            product, kind = result.product, result.kind
        if product is None:
            return unmatched_line(product_text, quantity, unit_hint, suggested_price, notes)
        return build_line(
            product,
            kind,
            product_text,
            quantity,
            unit_hint,
            self.policy,
            suggested_price,
            notes,
            raw_quantity_text=quantity_text,
        )


# --- review helpers ---


def unresolved_lines(branch: ParsedBranch) -> list[ParsedLine]:
    return [ln for ln in branch.lines if ln.matched_product_id is None]


def resolve_line(
    branch: ParsedBranch,
    index: int,
    product: CatalogProduct,
    policy: Optional[VerificationPolicy] = None,
) -> ParsedBranch:
    """Operator assigns a catalog product to line `index`; returns an updated copy."""
    line = branch.lines[index]
    resolved = build_line(
        product,
        MatchKind.EXACT,
        line.raw_product_text,
        line.raw_quantity,
        line.raw_unit_hint,
        policy or default_policy(),
        suggested_price=line.unit_price,
        notes=line.notes,
    )
    lines = list(branch.lines)
    lines[index] = resolved
    return branch.model_copy(update={"lines": lines})


def drop_line(branch: ParsedBranch, index: int) -> ParsedBranch:
    lines = [ln for i, ln in enumerate(branch.lines) if i != index]
    return branch.model_copy(update={"lines": lines})
