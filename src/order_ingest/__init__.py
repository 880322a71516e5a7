"""
Order email ingestion: email body -> branch/product extraction -> catalog matching ->
quantity normalization -> cumulative per-branch drafts -> verified sales orders.
"""

from .aggregator import OrderAggregator, merge_branch
from .models import (
    CatalogProduct,
    CumulativeDraftOrder,
    OrderRequest,
    ParsedOrder,
    RegisteredBranch,
    SalesOrder,
)
from .pipeline import process_order_email, run_on_folder
from .store import InMemoryDraftStore, JsonDraftStore
from .verification import VerificationGate

__all__ = [
    "process_order_email",
    "run_on_folder",
    "merge_branch",
    "OrderAggregator",
    "VerificationGate",
    "InMemoryDraftStore",
    "JsonDraftStore",
    "CatalogProduct",
    "CumulativeDraftOrder",
    "OrderRequest",
    "ParsedOrder",
    "RegisteredBranch",
    "SalesOrder",
]
