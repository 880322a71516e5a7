"""
Sender classification: decide which parser reads an email.
Uses deterministic pattern matching on the sender address and subject.
"""
from __future__ import annotations

import re

BRANCH_TABLE = "branch_table"
FREE_FORM = "free_form"

# Known sender signatures (regex patterns -> email layout)
SENDER_SIGNATURES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"lecaroz", re.I), BRANCH_TABLE),
    (re.compile(r"ventas\s+totales", re.I), BRANCH_TABLE),
    (re.compile(r"pedido\s+(?:semanal|sucursales)", re.I), BRANCH_TABLE),
]


def classify_sender(email_from: str | None, subject: str | None = None) -> str:
    """
    Layout a sender's emails are known to use. Unknown senders are tried with the
    rule-based parser as well; FREE_FORM only says no table layout is expected.
    """
    for text in (email_from or "", subject or ""):
        for pattern, layout in SENDER_SIGNATURES:
            if pattern.search(text):
                return layout
    return FREE_FORM
