"""
Exception types raised by the ingestion pipeline, the draft store and the verification gate.

Structural parse failures are never raised: an email the rule-based parser cannot read
simply yields zero branches. Everything below is a condition the caller must act on.
"""
from __future__ import annotations

from typing import Optional


class OrderIngestError(Exception):
    """Base class for all pipeline errors."""


# --- AI fallback ---


class FallbackParserError(OrderIngestError):
    """The AI extraction service failed. Carries the provider's status code and detail."""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail


class FallbackTimeoutError(FallbackParserError):
    """The extraction call exceeded its timeout. Treated as a parse failure, never retried."""


class FallbackRateLimitedError(FallbackParserError):
    """The provider rejected the call with HTTP 429."""


class FallbackQuotaExhaustedError(FallbackParserError):
    """The provider rejected the call with HTTP 402 (no credits left)."""


# --- store ---


class DraftNotFoundError(OrderIngestError):
    pass


class LineNotFoundError(DraftNotFoundError):
    """The draft has no line for the given product id."""


class DraftFinalizedError(OrderIngestError):
    """A finalized draft is terminal and cannot be mutated or deleted."""


class VersionConflictError(OrderIngestError):
    """The draft changed between read and write."""

    def __init__(self, draft_id: str, expected: Optional[int], actual: Optional[int]):
        super().__init__(
            f"Draft {draft_id} version conflict: expected {expected}, found {actual}"
        )
        self.draft_id = draft_id
        self.expected = expected
        self.actual = actual


class DuplicateDraftError(OrderIngestError):
    """Another open draft already exists for the same (client, branch, delivery date)."""


# --- aggregation ---


class MergeRejectedError(OrderIngestError):
    """The branch cannot be merged (no registered branch, or no matched product lines)."""


class UnresolvedLinesError(MergeRejectedError):
    """Lines with no catalog match must be resolved or dropped before merging."""

    def __init__(self, branch_name: str, product_texts: list[str]):
        listed = ", ".join(f'"{t}"' for t in product_texts)
        super().__init__(
            f"Branch {branch_name} has {len(product_texts)} unresolved line(s): {listed}"
        )
        self.branch_name = branch_name
        self.product_texts = product_texts


# --- verification ---


class VerificationIncompleteError(OrderIngestError):
    """finalize() was called while watch-listed lines are still unverified."""

    def __init__(self, draft_id: str, products: list[str]):
        super().__init__(
            f"Draft {draft_id} cannot be finalized; unverified products: " + ", ".join(products)
        )
        self.draft_id = draft_id
        self.products = products


class ConfirmationRequiredError(OrderIngestError):
    """A confirmed quantity looks implausible; repeat the call with confirm_implausible=True."""

    def __init__(self, flags: list):
        lines = "; ".join(f"{f.product_name}: {f.quantity} kg > {f.threshold} kg" for f in flags)
        super().__init__(f"Unusual quantities need explicit confirmation: {lines}")
        self.flags = flags
