"""
End-to-end pipeline: email -> normalize text -> segment branches -> extract lines ->
match catalog -> normalize quantities -> ParsedOrder (JSON).
When the rule-based parser finds no branch with a matched line, falls back to the AI parser.
"""
from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Optional, Protocol

from .aggregator import OrderAggregator
from .branches import match_branch
from .catalog import CatalogIndex
from .errors import OrderIngestError
from .extract import normalize_email_body, text_lines
from .llm_extract import FallbackParser
from .models import OrderRequest, ParsedBranch, ParsedOrder
from .parsers import detect_delivery_date, extract_lines, segment_branches
from .policy import VerificationPolicy, default_policy
from .resolve import LineResolver, unresolved_lines
from .sender_detection import BRANCH_TABLE, FREE_FORM, classify_sender
from .store import DraftStore

logger = logging.getLogger(__name__)

RULE_BASED_CONFIDENCE = 0.95
NO_BRANCH_CONFIDENCE = 0.3


class OrderParser(Protocol):
    name: str

    def parse(self, request: OrderRequest, text: Optional[str] = None) -> ParsedOrder:
        ...


class RuleBasedParser:
    """Reads branch-header / product-row emails. Never raises on unreadable layouts."""

    name = "rule_based"

    def __init__(self, policy: Optional[VerificationPolicy] = None):
        self._policy = policy

    @property
    def policy(self) -> VerificationPolicy:
        # PARSERS entries are built at import; read the configured default per parse
        return self._policy or default_policy()

    def parse(self, request: OrderRequest, text: Optional[str] = None) -> ParsedOrder:
        if text is None:
            text = normalize_email_body(request.email_body)
        segmentation = segment_branches(text_lines(text))
        delivery_date = detect_delivery_date(request.email_subject, segmentation.preamble)
        resolver = LineResolver(CatalogIndex(request.catalog_context), self.policy)

        branches: list[ParsedBranch] = []
        for raw in segmentation.branches:
            raw_lines = extract_lines(raw.lines)
            if not raw_lines:
                logger.debug("Branch header without product rows", extra={"branch": raw.full_name})
                continue
            registered = match_branch(raw.full_name, request.registered_branches)
            branches.append(
                ParsedBranch(
                    branch_name_as_written=raw.name,
                    matched_branch_id=registered.id if registered else None,
                    delivery_date=delivery_date,
                    lines=[
                        resolver.resolve(
                            rl.product_text, rl.quantity, rl.unit_hint, quantity_text=rl.quantity_text
                        )
                        for rl in raw_lines
                    ],
                )
            )

        total = sum(len(b.lines) for b in branches)
        if total:
            matched = total - sum(len(unresolved_lines(b)) for b in branches)
            confidence = RULE_BASED_CONFIDENCE * matched / total
        else:
            confidence = NO_BRANCH_CONFIDENCE

        logger.debug(
            "Rule-based parse",
            extra={"email_id": request.email_id, "branches": len(branches), "lines": total},
        )
        return ParsedOrder(
            source_email_id=request.email_id,
            branches=branches,
            confidence=round(confidence, 2),
            parser=self.name,
        )


# Primary parser per sender layout; the AI fallback is tried after any of them
PARSERS: dict[str, OrderParser] = {
    BRANCH_TABLE: RuleBasedParser(),
    FREE_FORM: RuleBasedParser(),
}


def register_parser(layout: str, parser: OrderParser) -> None:
    PARSERS[layout] = parser


def select_parser(request: OrderRequest) -> OrderParser:
    layout = classify_sender(request.email_from, request.email_subject)
    return PARSERS.get(layout, PARSERS[FREE_FORM])


def has_matched_branch(order: ParsedOrder) -> bool:
    """True when at least one branch carries a line matched to the catalog."""
    return any(
        any(ln.matched_product_id for ln in b.lines) for b in order.branches
    )


def process_order_email(
    request: OrderRequest,
    use_llm_fallback: bool = True,
    fallback: Optional[OrderParser] = None,
) -> ParsedOrder:
    """
    Parse a single order email.
    When use_llm_fallback is True and the primary parser yields no branch with a matched
    line, the AI fallback parses the same normalized text. Fallback errors propagate.
    """
    text = normalize_email_body(request.email_body)
    primary = select_parser(request)
    order = primary.parse(request, text)
    if has_matched_branch(order) or not use_llm_fallback:
        return order

    logger.info(
        "No matched branch from primary parser, using AI fallback",
        extra={"email_id": request.email_id, "parser": primary.name},
    )
    return (fallback or FallbackParser()).parse(request, text)


def is_fully_resolved(order: ParsedOrder) -> bool:
    """Every branch is registered and every line is matched: safe to merge."""
    return bool(order.branches) and all(
        b.matched_branch_id and b.lines and not unresolved_lines(b) for b in order.branches
    )


def _write_json(path: Path, data: dict) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


def _process_one(
    request_path: Path,
    output_path: Path,
    use_llm_fallback: bool,
    store: Optional[DraftStore],
) -> dict:
    """Process one request file. Used by parallel executor; never raises."""
    out_file = output_path / f"{request_path.stem}_parsed.json"
    try:
        request = OrderRequest.model_validate_json(request_path.read_text(encoding="utf-8"))
        order = process_order_email(request, use_llm_fallback=use_llm_fallback)
        result = order.model_dump(mode="json")

        if store is not None:
            if is_fully_resolved(order):
                aggregator = OrderAggregator(store, CatalogIndex(request.catalog_context))
                drafts = aggregator.merge_order(request.client_id, order)
                result["draft_ids"] = [d.id for d in drafts]
            else:
                result["draft_ids"] = []
                logger.info(
                    "Order needs review before merging",
                    extra={"email_id": request.email_id, "file": request_path.name},
                )

        _write_json(out_file, result)
        return result
    except Exception as e:
        logger.error(
            "Failed to process order email",
            extra={"file": request_path.name, "error": str(e)},
            exc_info=not isinstance(e, (OrderIngestError, ValueError, OSError)),
        )
        result = {
            "source_file": request_path.name,
            "branches": [],
            "error": str(e),
            "error_type": type(e).__name__,
        }
        _write_json(out_file, result)
        return result


def run_on_folder(
    input_dir: str | Path,
    output_dir: str | Path,
    use_llm_fallback: bool = True,
    max_workers: int = 1,
    store: Optional[DraftStore] = None,
) -> list[dict]:
    """Process every *.json OrderRequest in input_dir and write <stem>_parsed.json to output_dir.
    When max_workers > 1, processes emails in parallel. Results keep input order."""
    input_path = Path(input_dir)
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    if not input_path.exists():
        input_path.mkdir(parents=True, exist_ok=True)
        return []

    requests = sorted(input_path.glob("*.json"))
    if not requests:
        return []

    if max_workers <= 1:
        return [_process_one(p, output_path, use_llm_fallback, store) for p in requests]

    results: list[dict] = [{}] * len(requests)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_idx = {
            executor.submit(_process_one, p, output_path, use_llm_fallback, store): i
            for i, p in enumerate(requests)
        }
        for future in as_completed(future_to_idx):
            results[future_to_idx[future]] = future.result()
    return results
