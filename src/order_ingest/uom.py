"""
Quantity normalization between the two pricing models of the catalog.

Policy:
1. Priced by weight: quantity stays in kg whatever unit the email used.
2. Sold in discrete units, email gives a weight, catalog knows kg per unit:
   convert kg -> units (nearest integer) and keep the original weight as an annotation.
3. Anything else: quantity and unit pass through unchanged.

The catalog's sale unit is authoritative for pricing; a weight written in an email is only
a way of asking for a quantity, except for goods that are genuinely sold by the kilo.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from .models import CatalogProduct

# --- unit alias sets ---

UOM_WEIGHT_KG = frozenset({
    "KG", "KGS", "KILO", "KILOS", "KILOGRAMO", "KILOGRAMOS",
})

# Normalize raw unit string to canonical label
UOM_ALIASES = {
    "KG": "kg", "KGS": "kg", "KILO": "kg", "KILOS": "kg", "KILOGRAMO": "kg", "KILOGRAMOS": "kg",
    "PZ": "pz", "PZA": "pz", "PZAS": "pz", "PIEZA": "pz", "PIEZAS": "pz",
    "CAJA": "caja", "CAJAS": "caja",
    "BULTO": "bulto", "BULTOS": "bulto",
    "COSTAL": "costal", "COSTALES": "costal",
    "CUBETA": "cubeta", "CUBETAS": "cubeta",
    "BOLSA": "bolsa", "BOLSAS": "bolsa",
    "LITRO": "litro", "LITROS": "litro", "LT": "litro",
}


def _normalize_uom_key(raw: str | None) -> Optional[str]:
    r = (raw or "").strip().upper().rstrip(".")
    return r or None


def canonical_unit(raw: str | None) -> Optional[str]:
    """'KILOS' -> 'kg', 'Piezas' -> 'pz'; unknown units are returned lowercased."""
    key = _normalize_uom_key(raw)
    if key is None:
        return None
    return UOM_ALIASES.get(key, key.lower())


def is_weight_unit(raw: str | None) -> bool:
    key = _normalize_uom_key(raw)
    return key in UOM_WEIGHT_KG if key else False


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class NormalizedQuantity:
    quantity: float
    unit: Optional[str]
    annotation: Optional[str] = None


def normalize_quantity(
    raw_qty: float,
    raw_unit_hint: Optional[str],
    product: CatalogProduct,
    raw_qty_text: Optional[str] = None,
) -> NormalizedQuantity:
    """
    Convert a matched line's quantity into the catalog's canonical unit.
    Pure: depends only on (raw_qty, raw_unit_hint, priced_by_weight, weight_per_unit).
    The weight annotation keeps raw_qty_text as written when the caller has it.
    """
    if product.priced_by_weight:
        return NormalizedQuantity(raw_qty, "kg")

    wpu = product.weight_per_unit
    if is_weight_unit(raw_unit_hint) and wpu is not None and wpu > 0:
        return NormalizedQuantity(
            float(_round_half_up(raw_qty / wpu)),
            product.sale_unit,
            annotation=f"{raw_qty_text or f'{raw_qty:.2f}'} kg",
        )

    return NormalizedQuantity(raw_qty, raw_unit_hint)
