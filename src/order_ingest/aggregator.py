"""
Cumulative drafts: fold parsed branches from many emails into one running order per
(client, branch, delivery date).

`merge_branch` is a pure reducer (draft, branch) -> draft'. `OrderAggregator` is the only
writer to the store: it reads the open draft, applies the reducer and saves with the
version it read, re-reading and re-applying on a conflict.
"""
from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from .catalog import CatalogIndex
from .config import settings
from .errors import (
    DraftFinalizedError,
    DuplicateDraftError,
    MergeRejectedError,
    UnresolvedLinesError,
    VersionConflictError,
)
from .models import (
    CumulativeDraftOrder,
    DraftLine,
    DraftStatus,
    ParsedBranch,
    ParsedLine,
    ParsedOrder,
)
from .policy import VerificationPolicy, default_policy
from .pricing import compute_totals, line_subtotal, round_currency
from .resolve import unresolved_lines
from .store import DraftStore

logger = logging.getLogger(__name__)


def check_mergeable(branch: ParsedBranch) -> None:
    """Raise unless the branch is resolved to a registered branch with only matched lines."""
    if not branch.matched_branch_id:
        raise MergeRejectedError(
            f"Branch {branch.branch_name_as_written!r} is not resolved to a registered branch"
        )
    pending = unresolved_lines(branch)
    if pending:
        raise UnresolvedLinesError(
            branch.branch_name_as_written, [ln.raw_product_text for ln in pending]
        )
    if not branch.lines:
        raise MergeRejectedError(
            f"Branch {branch.branch_name_as_written!r} has no matched product lines"
        )


def _new_draft_line(line: ParsedLine, catalog: CatalogIndex, policy: VerificationPolicy) -> DraftLine:
    product = catalog.get(line.matched_product_id)
    if product is None:
        raise MergeRejectedError(
            f"Product {line.matched_product_id} is not in the client's catalog"
        )
    return DraftLine(
        product_id=product.id,
        product_name=product.name,
        quantity=line.normalized_quantity,
        unit=line.normalized_unit,
        unit_price=line.unit_price or 0.0,
        subtotal=line.line_subtotal or 0.0,
        applies_tax_a=product.applies_tax_a,
        applies_tax_b=product.applies_tax_b,
        requires_verification=policy.requires_verification(product.name),
        annotations=[line.annotation] if line.annotation else [],
    )


def merge_branch(
    draft: Optional[CumulativeDraftOrder],
    client_id: str,
    branch: ParsedBranch,
    source_email_id: str,
    catalog: CatalogIndex,
    policy: Optional[VerificationPolicy] = None,
    today: Optional[date] = None,
) -> CumulativeDraftOrder:
    """
    Fold one parsed branch into a draft and return the new draft; `draft` is not modified.

    Lines are keyed by product id. Quantities and subtotals of a product already in the
    draft are added; a watch-listed line that grows loses its verification. An email id
    the draft has already seen leaves it unchanged.
    """
    check_mergeable(branch)
    policy = policy or default_policy()

    if draft is None:
        draft = CumulativeDraftOrder(
            client_id=client_id,
            branch_id=branch.matched_branch_id,
            delivery_date=branch.delivery_date or today or date.today(),
        )
    else:
        if draft.status != DraftStatus.DRAFT:
            raise DraftFinalizedError(f"Draft {draft.id} is finalized")
        if source_email_id in draft.processed_email_ids:
            return draft
        draft = draft.model_copy(deep=True)

    for line in branch.lines:
        existing = draft.lines.get(line.matched_product_id)
        if existing is None:
            draft.lines[line.matched_product_id] = _new_draft_line(line, catalog, policy)
            continue
        existing.quantity += line.normalized_quantity
        existing.subtotal = round_currency(existing.subtotal + (line.line_subtotal or 0.0))
        if not existing.unit_price and line.unit_price:
            existing.unit_price = line.unit_price
        if line.annotation:
            existing.annotations.append(line.annotation)
        if existing.requires_verification:
            existing.verified = False

    draft.totals = compute_totals(draft.lines.values())
    draft.processed_email_ids.add(source_email_id)
    return draft


def recalculate_draft(draft: CumulativeDraftOrder) -> CumulativeDraftOrder:
    """Rebuild every subtotal from quantity x unit price, then the totals."""
    draft = draft.model_copy(deep=True)
    for line in draft.lines.values():
        line.subtotal = line_subtotal(line.quantity, line.unit_price)
    draft.totals = compute_totals(draft.lines.values())
    return draft


class OrderAggregator:
    def __init__(
        self,
        store: DraftStore,
        catalog: CatalogIndex,
        policy: Optional[VerificationPolicy] = None,
        max_attempts: Optional[int] = None,
    ):
        self.store = store
        self.catalog = catalog
        self.policy = policy or default_policy()
        self.max_attempts = max(1, settings.MERGE_MAX_ATTEMPTS if max_attempts is None else max_attempts)

    def merge(
        self,
        client_id: str,
        parsed_branch: ParsedBranch,
        source_email_id: str,
        today: Optional[date] = None,
    ) -> CumulativeDraftOrder:
        """
        Merge one branch into the open draft for its key, retrying on concurrent writes.
        An email already absorbed by any draft for the key returns that draft unchanged.
        """
        check_mergeable(parsed_branch)
        delivery_date = parsed_branch.delivery_date or today or date.today()
        branch = parsed_branch.model_copy(update={"delivery_date": delivery_date})

        attempt = 0
        while True:
            attempt += 1
            # Finalized drafts count too: their orders already carry this email
            seen = self.store.find_draft_with_email(
                client_id, branch.matched_branch_id, delivery_date, source_email_id
            )
            if seen is not None:
                logger.info(
                    "Email already merged into draft",
                    extra={"draft_id": seen.id, "email_id": source_email_id, "status": seen.status.value},
                )
                return seen

            current = self.store.find_open_draft(client_id, branch.matched_branch_id, delivery_date)

            merged = merge_branch(
                current, client_id, branch, source_email_id, self.catalog, self.policy
            )
            try:
                saved = self.store.save_draft(merged, current.version if current else None)
            except (VersionConflictError, DuplicateDraftError, DraftFinalizedError) as e:
                if attempt == self.max_attempts:
                    raise
                logger.warning(
                    "Draft changed during merge, retrying",
                    extra={"email_id": source_email_id, "attempt": attempt, "error": str(e)},
                )
                continue

            logger.info(
                "Merged branch into draft",
                extra={
                    "draft_id": saved.id,
                    "email_id": source_email_id,
                    "branch_id": saved.branch_id,
                    "delivery_date": saved.delivery_date.isoformat(),
                    "lines": len(branch.lines),
                    "version": saved.version,
                },
            )
            return saved

    def merge_order(
        self,
        client_id: str,
        order: ParsedOrder,
        today: Optional[date] = None,
    ) -> list[CumulativeDraftOrder]:
        """Merge every branch of a parsed email, in order."""
        return [
            self.merge(client_id, branch, order.source_email_id, today=today)
            for branch in order.branches
        ]

    def recalculate(self, draft_id: str) -> CumulativeDraftOrder:
        draft = self.store.get_draft(draft_id)
        if draft.status != DraftStatus.DRAFT:
            raise DraftFinalizedError(f"Draft {draft_id} is finalized")
        saved = self.store.save_draft(recalculate_draft(draft), draft.version)
        logger.info(
            "Recalculated draft",
            extra={"draft_id": draft_id, "grand_total": saved.totals.grand_total},
        )
        return saved

    def recalculate_all(self) -> list[CumulativeDraftOrder]:
        return [self.recalculate(d.id) for d in self.store.list_drafts(DraftStatus.DRAFT)]
