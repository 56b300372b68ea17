from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

from pydantic import BaseModel

AMOUNT_PATTERN = re.compile(r"[\d.,]+(?:[.,]\d{2})?")
# OCR noise such as phone numbers and card fragments parses as large numbers.
AMOUNT_CEILING = Decimal("10000")
LABEL_MAX_LENGTH = 100
FALLBACK_LABEL = "Receipt"


class ReceiptExtraction(BaseModel):
    amount: Decimal | None = None
    label: str = FALLBACK_LABEL

    @property
    def found(self) -> bool:
        return self.amount is not None


def extract_from_text(text: str | None) -> ReceiptExtraction:
    """Pull a plausible amount and a short label out of raw OCR text.

    Best effort: an unreadable receipt yields ``amount=None`` and the
    fallback label, never an exception.
    """
    if not text:
        return ReceiptExtraction()
    return ReceiptExtraction(amount=extract_amount(text), label=extract_label(text))


def extract_amount(text: str) -> Decimal | None:
    for match in AMOUNT_PATTERN.finditer(text):
        amount = parse_candidate(match.group(0))
        if amount is not None and Decimal("0") < amount < AMOUNT_CEILING:
            return amount
    return None


def parse_candidate(value: str) -> Decimal | None:
    cleaned = value.replace(",", ".")
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return amount


def extract_label(text: str) -> str:
    for line in text.splitlines():
        cleaned = line.strip()
        if cleaned:
            return cleaned[:LABEL_MAX_LENGTH]
    return FALLBACK_LABEL


def apply_extraction(
    amount: Decimal | None,
    description: str | None,
    extraction: ReceiptExtraction,
) -> tuple[Decimal | None, str | None]:
    """Fill caller values the receipt can supply, keeping anything already set."""
    if amount is None and extraction.found:
        amount = extraction.amount
    if not (description and description.strip()):
        description = extraction.label
    return amount, description
