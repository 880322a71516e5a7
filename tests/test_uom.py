"""
Tests for quantity normalization between weight-priced and unit-priced products.
"""

from order_ingest.models import CatalogProduct
from order_ingest.uom import canonical_unit, is_weight_unit, normalize_quantity

SUGAR = CatalogProduct(id="s", name="AZUCAR ESTANDAR", sale_unit="bulto", weight_per_unit=25)
PILONCILLO = CatalogProduct(id="p", name="PILONCILLO", priced_by_weight=True)
OIL = CatalogProduct(id="o", name="ACEITE VEGETAL 1L", sale_unit="pieza")


class TestUnitAliases:
    def test_canonical_unit(self):
        assert canonical_unit("KILOS") == "kg"
        assert canonical_unit("Piezas") == "pz"
        assert canonical_unit("pieza") == "pz"
        assert canonical_unit("kg.") == "kg"
        assert canonical_unit("DOCENA") == "docena"
        assert canonical_unit(None) is None

    def test_is_weight_unit(self):
        assert is_weight_unit("kg")
        assert is_weight_unit("KILOS")
        assert not is_weight_unit("pz")
        assert not is_weight_unit(None)


class TestNormalizeQuantity:
    def test_weight_converted_to_sale_units(self):
        """925.00 KILOS of a 25 kg bag -> 37 bags, original weight kept as annotation."""
        nq = normalize_quantity(925.0, "kg", SUGAR)
        assert nq.quantity == 37
        assert nq.unit == "bulto"
        assert nq.annotation == "925.00 kg"

    def test_conversion_rounds_half_up(self):
        assert normalize_quantity(37.5, "kg", SUGAR).quantity == 2
        assert normalize_quantity(30, "kg", SUGAR).quantity == 1

    def test_priced_by_weight_passes_through_in_kg(self):
        nq = normalize_quantity(40, "kg", PILONCILLO)
        assert (nq.quantity, nq.unit, nq.annotation) == (40, "kg", None)

    def test_priced_by_weight_ignores_unit_hint(self):
        nq = normalize_quantity(3, "pz", PILONCILLO)
        assert (nq.quantity, nq.unit) == (3, "kg")

    def test_unit_hint_without_weight_passes_through(self):
        nq = normalize_quantity(12, "pz", SUGAR)
        assert (nq.quantity, nq.unit, nq.annotation) == (12, "pz", None)

    def test_weight_without_weight_per_unit_passes_through(self):
        nq = normalize_quantity(10, "kg", OIL)
        assert (nq.quantity, nq.unit, nq.annotation) == (10, "kg", None)

    def test_annotation_uses_quantity_as_written(self):
        nq = normalize_quantity(1250.5, "kg", SUGAR, "1,250.5")
        assert nq.quantity == 50
        assert nq.annotation == "1,250.5 kg"
