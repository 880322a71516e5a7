"""
AI fallback parser: extract branches and product lines from free-form order emails via a
forced function call. Used only when the rule-based parser finds no usable branch.

The call is made once with a fixed timeout and no retries; every failure surfaces as a
FallbackParserError subclass so the caller can tell timeouts, rate limits and exhausted
credits apart. Extracted product names still go through catalog matching.
"""
from __future__ import annotations

import logging
from datetime import date
from typing import Any, Optional

import openai
from pydantic import BaseModel, Field, ValidationError

from .branches import match_branch
from .catalog import CatalogIndex
from .config import settings
from .errors import (
    FallbackParserError,
    FallbackQuotaExhaustedError,
    FallbackRateLimitedError,
    FallbackTimeoutError,
)
from .extract import normalize_email_body, truncate_for_fallback
from .models import OrderRequest, ParsedBranch, ParsedOrder
from .policy import VerificationPolicy, default_policy
from .resolve import LineResolver
from .uom import canonical_unit

logger = logging.getLogger(__name__)

TOOL_NAME = "extract_order"
MAX_CATALOG_HINTS = 200
DEFAULT_BRANCH_NAME = "Principal"
DEFAULT_CONFIDENCE = 0.5

SYSTEM_PROMPT = """You are an order-entry assistant for a grocery wholesaler. Extract the products and quantities a customer is ordering from an email.

RULES:
1. Extract EVERY product mentioned with its quantity. Orders come as lists, tables or free text.
2. Units can be kg, bulto, costal, caja, pieza, cubeta, litro.
3. If the email orders for several branches / delivery points, group lines per branch.
4. If no branch is named, use "Principal" as the branch name.
5. When a product clearly corresponds to a catalog entry listed below, set catalog_id to that entry's id. Otherwise leave it null. Never invent ids.
6. Include a price only if the email states one; otherwise null.
7. Skip headers, totals and signatures."""

EXTRACT_ORDER_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": TOOL_NAME,
        "description": "Extract products and quantities from an order email, grouped by branch",
        "parameters": {
            "type": "object",
            "properties": {
                "branches": {
                    "type": "array",
                    "description": "Branches / delivery points with their lines",
                    "items": {
                        "type": "object",
                        "properties": {
                            "branch_name": {
                                "type": "string",
                                "description": "Branch or delivery point as written",
                            },
                            "delivery_date": {
                                "type": "string",
                                "description": "Requested delivery date YYYY-MM-DD, null if not stated",
                            },
                            "lines": {
                                "type": "array",
                                "items": {
                                    "type": "object",
                                    "properties": {
                                        "product_name": {"type": "string"},
                                        "quantity": {"type": "number"},
                                        "unit": {
                                            "type": "string",
                                            "enum": ["kg", "bulto", "costal", "caja", "pieza", "cubeta", "litro"],
                                        },
                                        "suggested_price": {
                                            "type": "number",
                                            "description": "Price stated in the email, null if none",
                                        },
                                        "notes": {"type": "string"},
                                        "catalog_id": {
                                            "type": "string",
                                            "description": "Id of the matching catalog entry, null if unsure",
                                        },
                                    },
                                    "required": ["product_name", "quantity", "unit"],
                                },
                            },
                        },
                        "required": ["branch_name", "lines"],
                    },
                },
                "general_notes": {"type": "string"},
                "confidence": {
                    "type": "number",
                    "description": "Confidence in the extraction, 0 to 1",
                },
            },
            "required": ["branches", "confidence"],
        },
    },
}


# --- tool output, validated before use ---


class ExtractedLine(BaseModel):
    product_name: str
    quantity: float
    unit: Optional[str] = None
    suggested_price: Optional[float] = None
    notes: Optional[str] = None
    catalog_id: Optional[str] = None


class ExtractedBranch(BaseModel):
    branch_name: Optional[str] = None
    delivery_date: Optional[str] = None
    # Validated one by one in valid_lines so a malformed item only drops itself
    lines: list[Any] = Field(default_factory=list)

    def valid_lines(self) -> list[ExtractedLine]:
        out: list[ExtractedLine] = []
        for item in self.lines:
            try:
                line = ExtractedLine.model_validate(item)
            except ValidationError as e:
                logger.warning(
                    "Skipping malformed AI line",
                    extra={"branch": self.branch_name, "item": repr(item)[:200], "error": str(e)},
                )
                continue
            if line.product_name.strip() and line.quantity > 0:
                out.append(line)
        return out


class ExtractedOrder(BaseModel):
    branches: list[ExtractedBranch] = Field(default_factory=list)
    general_notes: Optional[str] = None
    confidence: Optional[float] = None


def _parse_iso_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        logger.debug("Ignoring unreadable delivery date", extra={"value": value})
        return None


def _catalog_hints(catalog: CatalogIndex) -> str:
    rows = [f"{p.id}\t{p.name}" for p in catalog.products()[:MAX_CATALOG_HINTS]]
    return "\n".join(rows)


def build_user_prompt(request: OrderRequest, text: str, catalog: CatalogIndex) -> str:
    hints = _catalog_hints(catalog)
    return f"""Extract the order from this email.

SUBJECT: {request.email_subject}
FROM: {request.email_from}

EMAIL TEXT:
{text}

CLIENT CATALOG (id<TAB>name):
{hints or "(empty)"}"""


def _status_detail(e: openai.APIStatusError) -> str:
    body = e.body
    if isinstance(body, dict):
        err = body.get("error", body)
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
    return e.message


def call_extraction(client: Any, request: OrderRequest, text: str, catalog: CatalogIndex) -> ExtractedOrder:
    """One forced function call; provider failures are mapped onto FallbackParserError types."""
    try:
        resp = client.with_options(
            timeout=settings.FALLBACK_TIMEOUT_SECONDS, max_retries=0
        ).chat.completions.create(
            model=settings.FALLBACK_MODEL,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_user_prompt(request, text, catalog)},
            ],
            tools=[EXTRACT_ORDER_TOOL],
            tool_choice={"type": "function", "function": {"name": TOOL_NAME}},
            temperature=0.1,
        )
    except openai.APITimeoutError as e:
        raise FallbackTimeoutError(
            f"AI extraction timed out after {settings.FALLBACK_TIMEOUT_SECONDS:g}s", detail=str(e)
        ) from e
    except openai.RateLimitError as e:
        raise FallbackRateLimitedError(
            "AI extraction rate limited", status_code=e.status_code, detail=_status_detail(e)
        ) from e
    except openai.APIStatusError as e:
        if e.status_code == 402:
            raise FallbackQuotaExhaustedError(
                "AI extraction credits exhausted", status_code=402, detail=_status_detail(e)
            ) from e
        raise FallbackParserError(
            f"AI extraction failed with HTTP {e.status_code}",
            status_code=e.status_code,
            detail=_status_detail(e),
        ) from e
    except openai.APIError as e:
        raise FallbackParserError("AI extraction request failed", detail=str(e)) from e

    choices = getattr(resp, "choices", None) or []
    tool_calls = (choices[0].message.tool_calls or []) if choices else []
    call = next((c for c in tool_calls if c.function.name == TOOL_NAME), None)
    if call is None:
        raise FallbackParserError("AI response did not contain an extract_order call")
    try:
        return ExtractedOrder.model_validate_json(call.function.arguments)
    except ValidationError as e:
        raise FallbackParserError("AI response arguments are not a valid order", detail=str(e)) from e


class FallbackParser:
    """OrderParser backed by an OpenAI-compatible chat completion endpoint."""

    name = "ai_fallback"

    def __init__(self, client: Any = None, policy: Optional[VerificationPolicy] = None):
        self._client = client
        self.policy = policy or default_policy()

    @property
    def client(self) -> Any:
        if self._client is None:
            from .api_client import get_openai_client
            self._client = get_openai_client()
        return self._client

    def parse(self, request: OrderRequest, text: Optional[str] = None) -> ParsedOrder:
        """`text` is the already-normalized body; normalized here when omitted."""
        client = self.client
        if client is None:
            raise FallbackParserError("No API key configured for the AI fallback")

        text = truncate_for_fallback(text if text is not None else normalize_email_body(request.email_body))
        catalog = CatalogIndex(request.catalog_context)
        resolver = LineResolver(catalog, self.policy)

        logger.info(
            "Calling AI fallback",
            extra={"email_id": request.email_id, "chars": len(text), "catalog_size": len(catalog)},
        )
        extracted = call_extraction(client, request, text, catalog)

        branches: list[ParsedBranch] = []
        for eb in extracted.branches:
            lines = [
                resolver.resolve(
                    el.product_name,
                    el.quantity,
                    canonical_unit(el.unit),
                    suggested_price=el.suggested_price,
                    notes=el.notes,
                    catalog_id=el.catalog_id,
                )
                for el in eb.valid_lines()
            ]
            name = (eb.branch_name or "").strip() or DEFAULT_BRANCH_NAME
            registered = match_branch(name, request.registered_branches)
            branches.append(
                ParsedBranch(
                    branch_name_as_written=name,
                    matched_branch_id=registered.id if registered else None,
                    delivery_date=_parse_iso_date(eb.delivery_date),
                    lines=lines,
                )
            )

        confidence = DEFAULT_CONFIDENCE if extracted.confidence is None else extracted.confidence
        return ParsedOrder(
            source_email_id=request.email_id,
            branches=branches,
            confidence=min(1.0, max(0.0, confidence)),
            general_notes=extracted.general_notes,
            parser=self.name,
        )
