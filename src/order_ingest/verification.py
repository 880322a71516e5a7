"""
Verification gate between a cumulative draft and the sales order created from it.

Watch-listed commodities (see policy.py) are requested by weight but delivered in pieces
of varying weight, so an operator confirms the real weight before the order can be
finalized. Lifecycle: draft -> finalized (gate satisfied) or draft -> deleted.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from .errors import (
    ConfirmationRequiredError,
    DraftFinalizedError,
    LineNotFoundError,
    OrderIngestError,
    VerificationIncompleteError,
)
from .models import (
    CumulativeDraftOrder,
    DraftLine,
    DraftStatus,
    SalesOrder,
    SalesOrderLine,
    VerifiedOverride,
)
from .policy import VerificationPolicy, default_policy
from .pricing import compute_totals, line_subtotal
from .store import DraftStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImplausibleQuantity:
    product_id: str
    product_name: str
    category: str
    quantity: float
    threshold: float


@dataclass(frozen=True)
class FinalizeOutcome:
    draft_id: str
    sales_order_ids: list[str]
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class VerificationGate:
    def __init__(self, store: DraftStore, policy: Optional[VerificationPolicy] = None):
        self.store = store
        self.policy = policy or default_policy()

    def requires_verification(self, line: DraftLine) -> bool:
        return self.policy.requires_verification(line.product_name)

    def pending_lines(self, draft: CumulativeDraftOrder) -> list[DraftLine]:
        """Watch-listed lines not yet verified."""
        return [ln for ln in draft.lines.values() if self.requires_verification(ln) and not ln.verified]

    def _flag(self, line: DraftLine, quantity: float) -> Optional[ImplausibleQuantity]:
        found = self.policy.implausible_threshold(line.product_name)
        if found is None:
            return None
        category, threshold = found
        if quantity <= threshold:
            return None
        return ImplausibleQuantity(line.product_id, line.product_name, category, quantity, threshold)

    def implausible_quantities(self, draft: CumulativeDraftOrder) -> list[ImplausibleQuantity]:
        flags = (self._flag(ln, ln.quantity) for ln in draft.lines.values())
        return [f for f in flags if f is not None]

    def _open_draft(self, draft_id: str) -> CumulativeDraftOrder:
        draft = self.store.get_draft(draft_id)
        if draft.status != DraftStatus.DRAFT:
            raise DraftFinalizedError(f"Draft {draft_id} is finalized")
        return draft

    @staticmethod
    def _line(draft: CumulativeDraftOrder, line_id: str) -> DraftLine:
        line = draft.lines.get(line_id)
        if line is None:
            raise LineNotFoundError(f"Draft {draft.id} has no line for product {line_id}")
        return line

    def mark_verified(
        self,
        draft_id: str,
        line_id: str,
        confirmed_quantity: float,
        confirmed_unit_count: Optional[int] = None,
        confirm_implausible: bool = False,
    ) -> CumulativeDraftOrder:
        """
        Record the weighed quantity for one line. The subtotal becomes confirmed weight x
        unit price. A weight above the category threshold needs confirm_implausible=True.
        """
        draft = self._open_draft(draft_id)
        version = draft.version
        line = self._line(draft, line_id)

        flag = self._flag(line, confirmed_quantity)
        if flag is not None and not confirm_implausible:
            raise ConfirmationRequiredError([flag])

        line.quantity = confirmed_quantity
        line.subtotal = line_subtotal(confirmed_quantity, line.unit_price)
        line.verified = True
        line.verified_override = VerifiedOverride(
            confirmed_quantity=confirmed_quantity,
            confirmed_unit_count=confirmed_unit_count,
        )
        draft.totals = compute_totals(draft.lines.values())

        saved = self.store.save_draft(draft, version)
        logger.info(
            "Line verified",
            extra={
                "draft_id": draft_id,
                "product_id": line_id,
                "confirmed_quantity": confirmed_quantity,
                "confirmed_unit_count": confirmed_unit_count,
            },
        )
        return saved

    def mark_all_verified(
        self,
        draft_id: str,
        line_ids: Optional[Iterable[str]] = None,
        confirm_implausible: bool = False,
    ) -> CumulativeDraftOrder:
        """Mark lines verified as they stand. Default: every watch-listed line."""
        draft = self._open_draft(draft_id)
        version = draft.version
        if line_ids is None:
            lines = [ln for ln in draft.lines.values() if self.requires_verification(ln)]
        else:
            lines = [self._line(draft, lid) for lid in line_ids]

        flags = [f for f in (self._flag(ln, ln.quantity) for ln in lines) if f is not None]
        if flags and not confirm_implausible:
            raise ConfirmationRequiredError(flags)

        for line in lines:
            line.verified = True
        saved = self.store.save_draft(draft, version)
        logger.info("Lines verified", extra={"draft_id": draft_id, "count": len(lines)})
        return saved

    def finalize(self, draft_id: str, now: Optional[datetime] = None) -> list[str]:
        """Create the sales order for a draft whose watch-listed lines are all verified."""
        draft = self._open_draft(draft_id)
        pending = self.pending_lines(draft)
        if pending:
            raise VerificationIncompleteError(draft_id, [ln.product_name for ln in pending])

        now = now or datetime.now(timezone.utc)
        order = SalesOrder(
            folio=self.store.allocate_folio(now.date()),
            client_id=draft.client_id,
            branch_id=draft.branch_id,
            delivery_date=draft.delivery_date,
            lines=[
                SalesOrderLine(
                    product_id=ln.product_id,
                    quantity=ln.quantity,
                    unit_price=ln.unit_price,
                    subtotal=ln.subtotal,
                )
                for ln in draft.lines.values()
            ],
            totals=draft.totals,
            source_draft_id=draft.id,
            notes=draft.notes,
            created_at=now,
        )
        created = self.store.finalize_draft(draft, draft.version, [order])
        logger.info(
            "Draft finalized",
            extra={"draft_id": draft_id, "folio": order.folio, "grand_total": order.totals.grand_total},
        )
        return [o.id for o in created]

    def finalize_many(self, draft_ids: Iterable[str]) -> list[FinalizeOutcome]:
        """Finalize each draft independently; failures are reported per draft."""
        outcomes: list[FinalizeOutcome] = []
        for draft_id in draft_ids:
            try:
                outcomes.append(FinalizeOutcome(draft_id, self.finalize(draft_id)))
            except OrderIngestError as e:
                logger.warning("Finalize failed", extra={"draft_id": draft_id, "error": str(e)})
                outcomes.append(FinalizeOutcome(draft_id, [], error=str(e)))
        return outcomes

    def delete_draft(self, draft_id: str) -> None:
        self.store.delete_draft(draft_id)
        logger.info("Draft deleted", extra={"draft_id": draft_id})
