"""
Shared fixtures: a small grocery catalog, two registered branches and in-memory stores.
"""

from datetime import date

import pytest

from order_ingest.catalog import CatalogIndex
from order_ingest.models import (
    CatalogProduct,
    MatchKind,
    OrderRequest,
    ParsedBranch,
    ParsedLine,
    RegisteredBranch,
)
from order_ingest.policy import packaged_policy
from order_ingest.store import InMemoryDraftStore

DELIVERY = date(2024, 11, 18)

BRANCH_TABLE_EMAIL = """Pedido para entrega 18/11/2024
VENTAS TOTALES PRODUCTO A ENTREGAR
12 DALLAS
1043\tAZUCAR ESTANDAR\t925.00 KILOS
2001\tPILONCILLO\t40 KILOS
303 ROST. AMATRIAS
2002\tACEITE VEGETAL 1L\t24
TOTAL GENERAL\t989
"""


@pytest.fixture
def products():
    return [
        CatalogProduct(
            id="p-azucar",
            name="AZUCAR ESTANDAR",
            sale_unit="bulto",
            weight_per_unit=25,
            quoted_price=500.0,
        ),
        CatalogProduct(
            id="p-azucar-ref",
            name="AZUCAR REFINADA",
            sale_unit="bulto",
            weight_per_unit=50,
            quoted_price=1100.0,
        ),
        CatalogProduct(
            id="p-piloncillo",
            name="PILONCILLO",
            priced_by_weight=True,
            quoted_price=30.0,
        ),
        CatalogProduct(
            id="p-canela",
            name="CANELA MOLIDA",
            priced_by_weight=True,
            quoted_price=200.0,
        ),
        CatalogProduct(
            id="p-aceite",
            name="ACEITE VEGETAL 1L",
            sale_unit="pieza",
            applies_tax_a=True,
            quoted_price=40.0,
        ),
    ]


@pytest.fixture
def catalog(products):
    return CatalogIndex(products)


@pytest.fixture
def branches():
    return [
        RegisteredBranch(id="b-dallas", name="12 DALLAS"),
        RegisteredBranch(id="b-amatrias", name="303 ROST. AMATRIAS"),
    ]


@pytest.fixture
def policy():
    return packaged_policy()


@pytest.fixture
def store():
    return InMemoryDraftStore()


@pytest.fixture
def make_request(products, branches):
    def _make(body=BRANCH_TABLE_EMAIL, email_id="email-1", subject="Pedido", sender="compras@lecaroz.com.mx"):
        return OrderRequest(
            email_id=email_id,
            email_body=body,
            email_subject=subject,
            email_from=sender,
            client_id="c-lecaroz",
            catalog_context=products,
            registered_branches=branches,
        )
    return _make


@pytest.fixture
def matched_line():
    """Builds a ParsedLine as the resolver would produce it for an exact match."""
    return _matched_line


def _matched_line(product, quantity, unit="kg", price=None, annotation=None):
    price = product.quoted_price if price is None else price
    return ParsedLine(
        raw_product_text=product.name,
        raw_quantity=quantity,
        raw_unit_hint=unit,
        matched_product_id=product.id,
        matched_product_name=product.name,
        match_kind=MatchKind.EXACT,
        normalized_quantity=quantity,
        normalized_unit=unit,
        unit_price=price,
        line_subtotal=round(quantity * price, 2),
        annotation=annotation,
    )


@pytest.fixture
def make_branch():
    def _make(lines, branch_id="b-dallas", delivery=DELIVERY, name="DALLAS"):
        return ParsedBranch(
            branch_name_as_written=name,
            matched_branch_id=branch_id,
            delivery_date=delivery,
            lines=lines,
        )
    return _make
