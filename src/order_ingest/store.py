"""
Draft and sales-order persistence.

Every draft write is a compare-and-set on the draft's `version`: the writer states the
version it read, and the store refuses the write if someone saved in between. Together with
the one-open-draft-per-key rule this makes a merge a single atomic upsert.

`InMemoryDraftStore` is the reference implementation; `JsonDraftStore` persists the same
state as one JSON file per record so CLI runs accumulate drafts across invocations.
"""
from __future__ import annotations

import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Optional

from .errors import (
    DraftFinalizedError,
    DraftNotFoundError,
    DuplicateDraftError,
    VersionConflictError,
)
from .models import CumulativeDraftOrder, DraftStatus, SalesOrder

logger = logging.getLogger(__name__)

FOLIO_PREFIX = "PED"


def format_folio(on: date, number: int) -> str:
    return f"{FOLIO_PREFIX}-{on.year}{on.month:02d}-{number:04d}"


class DraftStore(ABC):
    @abstractmethod
    def find_open_draft(
        self, client_id: str, branch_id: str, delivery_date: date
    ) -> Optional[CumulativeDraftOrder]:
        ...

    @abstractmethod
    def find_draft_with_email(
        self, client_id: str, branch_id: str, delivery_date: date, email_id: str
    ) -> Optional[CumulativeDraftOrder]:
        """Draft for the key that already absorbed `email_id`, finalized ones included."""

    @abstractmethod
    def get_draft(self, draft_id: str) -> CumulativeDraftOrder:
        ...

    @abstractmethod
    def list_drafts(self, status: Optional[DraftStatus] = None) -> list[CumulativeDraftOrder]:
        ...

    @abstractmethod
    def save_draft(
        self, draft: CumulativeDraftOrder, expected_version: Optional[int]
    ) -> CumulativeDraftOrder:
        """Insert (expected_version=None) or update a draft; returns the stored copy."""

    @abstractmethod
    def delete_draft(self, draft_id: str) -> None:
        ...

    @abstractmethod
    def finalize_draft(
        self,
        draft: CumulativeDraftOrder,
        expected_version: int,
        orders: list[SalesOrder],
    ) -> list[SalesOrder]:
        """Store the sales orders and mark the draft finalized in one step."""

    @abstractmethod
    def allocate_folio(self, on: date) -> str:
        ...

    @abstractmethod
    def get_sales_order(self, order_id: str) -> SalesOrder:
        ...


class InMemoryDraftStore(DraftStore):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._drafts: dict[str, CumulativeDraftOrder] = {}
        self._orders: dict[str, SalesOrder] = {}
        self._folio_counters: dict[str, int] = {}

    # --- hooks for persistent subclasses ---

    def _persist_draft(self, draft: CumulativeDraftOrder) -> None:
        pass

    def _remove_draft(self, draft_id: str) -> None:
        pass

    def _persist_order(self, order: SalesOrder) -> None:
        pass

    # --- reads ---

    def find_open_draft(
        self, client_id: str, branch_id: str, delivery_date: date
    ) -> Optional[CumulativeDraftOrder]:
        key = (client_id, branch_id, delivery_date)
        with self._lock:
            for d in self._drafts.values():
                if d.status == DraftStatus.DRAFT and d.key == key:
                    return d.model_copy(deep=True)
        return None

    def find_draft_with_email(
        self, client_id: str, branch_id: str, delivery_date: date, email_id: str
    ) -> Optional[CumulativeDraftOrder]:
        key = (client_id, branch_id, delivery_date)
        with self._lock:
            for d in self._drafts.values():
                if d.key == key and email_id in d.processed_email_ids:
                    return d.model_copy(deep=True)
        return None

    def get_draft(self, draft_id: str) -> CumulativeDraftOrder:
        with self._lock:
            d = self._drafts.get(draft_id)
            if d is None:
                raise DraftNotFoundError(f"Draft {draft_id} not found")
            return d.model_copy(deep=True)

    def list_drafts(self, status: Optional[DraftStatus] = None) -> list[CumulativeDraftOrder]:
        with self._lock:
            drafts = [
                d.model_copy(deep=True)
                for d in self._drafts.values()
                if status is None or d.status == status
            ]
        return sorted(drafts, key=lambda d: (d.created_at, d.id))

    def get_sales_order(self, order_id: str) -> SalesOrder:
        with self._lock:
            o = self._orders.get(order_id)
            if o is None:
                raise DraftNotFoundError(f"Sales order {order_id} not found")
            return o.model_copy(deep=True)

    # --- writes ---

    def _check_writable(self, draft_id: str, expected_version: Optional[int]) -> Optional[CumulativeDraftOrder]:
        current = self._drafts.get(draft_id)
        if expected_version is None:
            if current is not None:
                raise VersionConflictError(draft_id, None, current.version)
            return None
        if current is None:
            raise VersionConflictError(draft_id, expected_version, None)
        if current.status == DraftStatus.FINALIZED:
            raise DraftFinalizedError(f"Draft {draft_id} is finalized")
        if current.version != expected_version:
            raise VersionConflictError(draft_id, expected_version, current.version)
        return current

    def save_draft(
        self, draft: CumulativeDraftOrder, expected_version: Optional[int]
    ) -> CumulativeDraftOrder:
        with self._lock:
            current = self._check_writable(draft.id, expected_version)
            if draft.status == DraftStatus.DRAFT:
                for other in self._drafts.values():
                    if (
                        other.id != draft.id
                        and other.status == DraftStatus.DRAFT
                        and other.key == draft.key
                    ):
                        raise DuplicateDraftError(
                            f"Open draft {other.id} already exists for {draft.key}"
                        )
            stored = draft.model_copy(
                deep=True,
                update={
                    "version": (current.version if current else 0) + 1,
                    "updated_at": datetime.now(timezone.utc),
                },
            )
            self._drafts[stored.id] = stored
            self._persist_draft(stored)
            return stored.model_copy(deep=True)

    def delete_draft(self, draft_id: str) -> None:
        with self._lock:
            current = self._drafts.get(draft_id)
            if current is None:
                raise DraftNotFoundError(f"Draft {draft_id} not found")
            if current.status == DraftStatus.FINALIZED:
                raise DraftFinalizedError(f"Draft {draft_id} is finalized and cannot be deleted")
            del self._drafts[draft_id]
            self._remove_draft(draft_id)

    def allocate_folio(self, on: date) -> str:
        prefix = f"{on.year}{on.month:02d}"
        with self._lock:
            if prefix not in self._folio_counters:
                used = [
                    int(o.folio.rsplit("-", 1)[1])
                    for o in self._orders.values()
                    if o.folio.startswith(f"{FOLIO_PREFIX}-{prefix}-")
                ]
                self._folio_counters[prefix] = max(used, default=0)
            self._folio_counters[prefix] += 1
            return format_folio(on, self._folio_counters[prefix])

    def finalize_draft(
        self,
        draft: CumulativeDraftOrder,
        expected_version: int,
        orders: list[SalesOrder],
    ) -> list[SalesOrder]:
        with self._lock:
            current = self._check_writable(draft.id, expected_version)
            for order in orders:
                self._orders[order.id] = order.model_copy(deep=True)
                self._persist_order(order)
            stored = draft.model_copy(
                deep=True,
                update={
                    "status": DraftStatus.FINALIZED,
                    "version": current.version + 1,
                    "updated_at": datetime.now(timezone.utc),
                },
            )
            self._drafts[stored.id] = stored
            self._persist_draft(stored)
            return [o.model_copy(deep=True) for o in orders]


def _atomic_write(path: Path, content: str) -> None:
    """Write via a temp file in the same directory, then replace."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class JsonDraftStore(InMemoryDraftStore):
    """One JSON file per draft / sales order under `root`."""

    def __init__(self, root: str | Path):
        super().__init__()
        self.root = Path(root)
        self._drafts_dir = self.root / "drafts"
        self._orders_dir = self.root / "sales_orders"
        self._drafts_dir.mkdir(parents=True, exist_ok=True)
        self._orders_dir.mkdir(parents=True, exist_ok=True)

        for p in sorted(self._drafts_dir.glob("*.json")):
            d = CumulativeDraftOrder.model_validate_json(p.read_text(encoding="utf-8"))
            self._drafts[d.id] = d
        for p in sorted(self._orders_dir.glob("*.json")):
            o = SalesOrder.model_validate_json(p.read_text(encoding="utf-8"))
            self._orders[o.id] = o
        logger.info(
            "Loaded draft store",
            extra={"root": str(self.root), "drafts": len(self._drafts), "sales_orders": len(self._orders)},
        )

    def _persist_draft(self, draft: CumulativeDraftOrder) -> None:
        _atomic_write(self._drafts_dir / f"{draft.id}.json", draft.model_dump_json(indent=2))

    def _remove_draft(self, draft_id: str) -> None:
        (self._drafts_dir / f"{draft_id}.json").unlink(missing_ok=True)

    def _persist_order(self, order: SalesOrder) -> None:
        _atomic_write(self._orders_dir / f"{order.id}.json", order.model_dump_json(indent=2))
