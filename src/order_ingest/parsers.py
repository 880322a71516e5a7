"""
Rule-based reader for semi-tabular order emails: branch headers followed by product rows.

    VENTAS TOTALES PRODUCTO A ENTREGAR        <- table header, skipped
    12 DALLAS                                 <- opens branch "DALLAS"
    1043<TAB>AZUCAR ESTANDAR<TAB>925.00 KILOS <- product row
    TOTAL GENERAL<TAB>...                     <- footer, skipped

Nothing here raises on unreadable input: an unrecognized layout yields zero branches,
which tells the caller to escalate to the AI fallback.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

_UPPER_WORD = r"[A-ZÁÉÍÓÚÑÜ][A-ZÁÉÍÓÚÑÜ.'&-]*"
BRANCH_HEADER_RE = re.compile(rf"^(\d+)\s*({_UPPER_WORD}(?:\s+{_UPPER_WORD}){{0,2}})$")
MAX_BRANCH_NAME_CHARS = 30

_PRODUCT_KEYWORDS = ("product",)
_DELIVERY_KEYWORDS = ("entrega", "pedido", "deliver", "order")
_FOOTER_LITERALS = ("total general",)

_QTY_WITH_UNIT_RE = re.compile(
    r"^(\d[\d,]*(?:\.\d+)?)\s*(KILOS?|KGS?|PIEZAS?|PZAS?|PZ)\.?$",
    re.IGNORECASE,
)
_PURE_NUMBER_RE = re.compile(r"^\d+(?:[.,]\d+)*$")
_CODE_AND_NAME_RE = re.compile(r"^\d+\s*([^\W\d_].*)$")
_HAS_LETTER_RE = re.compile(r"[^\W\d_]")

MAX_PLAIN_QUANTITY = 100_000
PRODUCT_SCAN_COLUMNS = 3

_DMY_DATE_RE = re.compile(r"\b(\d{1,2})[/-](\d{1,2})[/-](\d{4})\b")
_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")


@dataclass(frozen=True)
class RawLine:
    """Candidate (product text, quantity, unit hint) triple from one table row."""
    product_text: str
    quantity: float
    unit_hint: Optional[str] = None
    # Quantity column text as written, e.g. "1,250.5"
    quantity_text: Optional[str] = field(default=None, compare=False)


@dataclass
class RawBranch:
    number: str
    name: str
    lines: list[str] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f"{self.number} {self.name}"


@dataclass
class Segmentation:
    preamble: list[str]
    branches: list[RawBranch]


def _parse_number(s: str | None) -> Optional[float]:
    if not s:
        return None
    try:
        return float(s.replace(",", "").strip())
    except ValueError:
        return None


def is_table_chrome(line: str) -> bool:
    """Table header / footer rows, recognized anywhere in the email."""
    low = line.lower()
    if any(lit in low for lit in _FOOTER_LITERALS):
        return True
    return any(k in low for k in _PRODUCT_KEYWORDS) and any(k in low for k in _DELIVERY_KEYWORDS)


def match_branch_header(line: str) -> Optional[tuple[str, str]]:
    """(number, name) when the line opens a branch, e.g. '12 DALLAS' -> ('12', 'DALLAS')."""
    m = BRANCH_HEADER_RE.match(line.strip())
    if not m:
        return None
    name = re.sub(r"\s+", " ", m.group(2))
    if len(name) > MAX_BRANCH_NAME_CHARS:
        return None
    return m.group(1), name


def segment_branches(lines: list[str]) -> Segmentation:
    """
    Split trimmed, non-empty lines into per-branch blocks.
    Lines before the first header form the preamble and are not parsed as rows.
    """
    preamble: list[str] = []
    branches: list[RawBranch] = []
    current: Optional[RawBranch] = None

    for line in lines:
        if is_table_chrome(line):
            continue
        header = match_branch_header(line)
        if header:
            current = RawBranch(number=header[0], name=header[1])
            branches.append(current)
            continue
        if current is None:
            preamble.append(line)
        else:
            current.lines.append(line)

    return Segmentation(preamble=preamble, branches=branches)


def _unit_hint(raw_unit: str) -> str:
    return "kg" if raw_unit.upper().startswith("K") else "pz"


def _quantity_with_unit(col: str) -> Optional[tuple[float, str, str]]:
    m = _QTY_WITH_UNIT_RE.match(col)
    if not m:
        return None
    qty = _parse_number(m.group(1))
    if qty is None:
        return None
    return qty, _unit_hint(m.group(2)), m.group(1)


def _product_column(columns: list[str]) -> Optional[tuple[int, str]]:
    """First of the leading columns holding letters; bare codes are skipped."""
    for i, col in enumerate(columns[:PRODUCT_SCAN_COLUMNS]):
        if _PURE_NUMBER_RE.match(col) or _quantity_with_unit(col):
            continue
        if not _HAS_LETTER_RE.search(col):
            continue
        m = _CODE_AND_NAME_RE.match(col)
        name = m.group(1).strip() if m else col
        return i, name
    return None


def extract_line(line: str) -> Optional[RawLine]:
    """Parse one table row into a RawLine; None when it carries no usable data."""
    columns = [c.strip() for c in line.split("\t") if c.strip()]
    if len(columns) < 2:
        return None

    product = _product_column(columns)
    if product is None:
        return None
    product_idx, product_text = product

    qty: Optional[float] = None
    unit: Optional[str] = None
    qty_text: Optional[str] = None
    for i, col in enumerate(columns):
        if i == product_idx:
            continue
        found = _quantity_with_unit(col)
        if found:
            qty, unit, qty_text = found
            break

    if qty is None:
        # Plain number after the product column; earlier numeric columns are product codes
        for col in columns[product_idx + 1:]:
            if not _PURE_NUMBER_RE.match(col):
                continue
            value = _parse_number(col)
            if value is not None and 0 < value < MAX_PLAIN_QUANTITY:
                qty, qty_text = value, col
                break

    if not qty or qty <= 0:
        return None
    return RawLine(product_text=product_text, quantity=qty, unit_hint=unit, quantity_text=qty_text)


def extract_lines(block: list[str]) -> list[RawLine]:
    out: list[RawLine] = []
    for line in block:
        parsed = extract_line(line)
        if parsed is not None:
            out.append(parsed)
    return out


def detect_delivery_date(subject: str | None, preamble: list[str] | None = None) -> Optional[date]:
    """Requested delivery date from the subject, else from the lines before the first branch."""
    for text in [subject or ""] + list(preamble or []):
        m = _ISO_DATE_RE.search(text)
        if m:
            parts = (int(m.group(1)), int(m.group(2)), int(m.group(3)))
        else:
            m = _DMY_DATE_RE.search(text)
            if not m:
                continue
            parts = (int(m.group(3)), int(m.group(2)), int(m.group(1)))
        try:
            return date(*parts)
        except ValueError:
            continue
    return None
