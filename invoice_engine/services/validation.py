"""
Confidence-scoring validation for parsed invoice data.

Validation never rejects an invoice. Each failed check adds an issue and a
bounded penalty; the overall confidence is ``100 - sum(penalties)`` clamped to
[20, 100] and the invoice is flagged for review when the score drops below 80
or more than three issues were found. Users must always be able to save their
edits, so ``is_valid`` is always true.
"""

import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

from dateutil.relativedelta import relativedelta
from loguru import logger
from pydantic import BaseModel

from .invoice_types import ParsedInvoiceData, RawExtraction, ValidationResult
from .rule_tables import get_rule_tables

MIN_CONFIDENCE = 20
REVIEW_THRESHOLD = 80
MAX_ISSUES_BEFORE_REVIEW = 3

MAX_AMOUNT = 10_000_000
MAX_AMOUNT_DECIMALS = 4
MAX_LINE_ITEMS = 50
MAX_QUANTITY = 1000
LINE_ITEM_TOLERANCE = 0.05
TOTALS_TOLERANCE = 0.02

DATE_PENALTY = 15
AMOUNT_PENALTY = 20
VENDOR_PENALTY = 15
LINE_ITEM_PENALTY_CAP = 15
LOW_OCR_PENALTY = 10
MULTI_PAGE_PENALTY = 3
CROSS_FIELD_PENALTY = 10
LOW_TAX_RATE_PENALTY = 3
HIGH_TAX_RATE_PENALTY = 8

PLACEHOLDER_VENDORS = {"unknown vendor", "unknown", "vendor", "n/a", "na", "none", "null", "test"}
STRUCTURAL_WORDS = {
    "total", "subtotal", "sub total", "tax", "amount", "amount due", "balance", "balance due",
    "invoice", "receipt", "date", "due", "description", "qty", "quantity", "price",
}


class FieldCheck(BaseModel):
    """Outcome of one field validator"""
    valid: bool
    error: str | None = None
    penalty: int = 0


class LineItemCheck(BaseModel):
    valid: bool
    issues: list[str] = []
    penalty: int = 0


def validate_date(value: date | None, today: date | None = None) -> FieldCheck:
    if value is None:
        return FieldCheck(valid=False, error="Date is required", penalty=DATE_PENALTY)

    today = today or date.today()
    if value < today - relativedelta(years=5):
        return FieldCheck(valid=False, error="Date seems too far in the past", penalty=DATE_PENALTY)
    if value > today + relativedelta(years=2):
        return FieldCheck(valid=False, error="Date is too far in the future", penalty=DATE_PENALTY)
    return FieldCheck(valid=True)


def _decimal_places(value: float) -> int:
    try:
        exponent = Decimal(str(value)).normalize().as_tuple().exponent
    except InvalidOperation:
        return 0
    return -exponent if isinstance(exponent, int) and exponent < 0 else 0


def validate_amount(value: float | None) -> FieldCheck:
    if value is None:
        return FieldCheck(valid=False, error="Amount is required", penalty=AMOUNT_PENALTY)
    if value <= 0:
        return FieldCheck(valid=False, error="Amount must be greater than zero", penalty=AMOUNT_PENALTY)
    if value > MAX_AMOUNT:
        return FieldCheck(valid=False, error="Amount seems unusually large - please verify", penalty=AMOUNT_PENALTY)
    if _decimal_places(value) > MAX_AMOUNT_DECIMALS:
        return FieldCheck(
            valid=False,
            error=f"Amount should have at most {MAX_AMOUNT_DECIMALS} decimal places",
            penalty=AMOUNT_PENALTY,
        )
    return FieldCheck(valid=True)


def validate_vendor(value: str | None) -> FieldCheck:
    if not value or not value.strip():
        return FieldCheck(valid=False, error="Vendor name is required", penalty=VENDOR_PENALTY)

    vendor = value.strip()
    if len(vendor) < 2:
        return FieldCheck(valid=False, error="Vendor name is too short", penalty=VENDOR_PENALTY)
    if len(vendor) > 100:
        return FieldCheck(valid=False, error="Vendor name is too long", penalty=VENDOR_PENALTY)
    if vendor.lower() in PLACEHOLDER_VENDORS:
        return FieldCheck(valid=False, error="Could not identify vendor name", penalty=VENDOR_PENALTY)
    if vendor.lower() in STRUCTURAL_WORDS:
        return FieldCheck(valid=False, error="Vendor name looks like a document label", penalty=VENDOR_PENALTY)

    suspicious = [
        r"^\d+$",       # only numbers
        r"^[^a-zA-Z]*$",  # no letters
        r"(.)\1{4,}",   # repeated characters
    ]
    if any(re.search(pattern, vendor) for pattern in suspicious):
        return FieldCheck(valid=False, error="Vendor name appears to be corrupted", penalty=VENDOR_PENALTY)

    return FieldCheck(valid=True)


def validate_line_items(data: ParsedInvoiceData) -> LineItemCheck:
    """Sanity checks on the line item array; penalties are capped in total."""
    items = data.line_items
    if not items:
        return LineItemCheck(valid=True)

    issues = []
    penalty = 0

    if len(items) > MAX_LINE_ITEMS:
        issues.append(f"Unusually many line items ({len(items)}) - verify extraction")
        penalty += 5

    for index, item in enumerate(items, start=1):
        if item.amount <= 0:
            issues.append(f"Line item {index} has a non-positive amount")
            penalty += 3
        if not 1 <= item.quantity <= MAX_QUANTITY:
            issues.append(f"Line item {index} has an implausible quantity ({item.quantity})")
            penalty += 3

    descriptions = [item.description.strip().lower() for item in items]
    if len(set(descriptions)) != len(descriptions):
        issues.append("Duplicate line item descriptions")
        penalty += 2

    items_total = sum(item.amount * item.quantity for item in items)
    if data.amount > 0:
        off_total = abs(items_total - data.amount) / data.amount > LINE_ITEM_TOLERANCE
        off_subtotal = (
            data.subtotal <= 0
            or abs(items_total - data.subtotal) / data.subtotal > LINE_ITEM_TOLERANCE
        )
        if off_total and off_subtotal:
            issues.append("Line items total does not match invoice total")
            penalty += 5

    return LineItemCheck(valid=not issues, issues=issues, penalty=min(penalty, LINE_ITEM_PENALTY_CAP))


def validate_cross_fields(data: ParsedInvoiceData) -> tuple[list[str], int]:
    """Subtotal + tax vs. total, and whether the tax rate is plausible."""
    issues = []
    penalty = 0

    if data.subtotal > 0:
        if abs(data.subtotal + data.tax - data.amount) > TOTALS_TOLERANCE:
            issues.append("Total amount does not match subtotal + tax")
            penalty += CROSS_FIELD_PENALTY

        if data.tax > 0:
            tax_rate = data.tax / data.subtotal * 100
            if tax_rate < 0.1:
                issues.append("Tax rate appears unusually low")
                penalty += LOW_TAX_RATE_PENALTY
            elif tax_rate > 50:
                issues.append("Tax rate appears unusually high")
                penalty += HIGH_TAX_RATE_PENALTY

    return issues, penalty


def validate_vendor_amount(data: ParsedInvoiceData) -> tuple[list[str], int]:
    for limit in get_rule_tables().vendor_amount_limits:
        if limit.pattern.search(data.vendor or "") and data.amount > limit.max_amount:
            return (
                [f"Amount ${data.amount:.2f} is unusual for a {limit.label} vendor"],
                limit.penalty,
            )
    return [], 0


def _extraction_quality(extraction_metadata: Any) -> tuple[float | None, int | None]:
    if extraction_metadata is None:
        return None, None
    if isinstance(extraction_metadata, RawExtraction):
        return extraction_metadata.confidence, extraction_metadata.page_count
    return extraction_metadata.get("ocr_confidence"), extraction_metadata.get("page_count")


def validate_invoice_data(
    data: ParsedInvoiceData,
    extraction_metadata: RawExtraction | dict | None = None,
    today: date | None = None,
) -> ValidationResult:
    """
    Validate parsed invoice data and score how much it can be trusted.

    Args:
        data: Parsed invoice fields
        extraction_metadata: The RawExtraction, or a dict with ``ocr_confidence``
            and ``page_count``
        today: Reference date for the date range checks (defaults to today)

    Returns:
        ValidationResult with per-field flags, issues and overall confidence
    """
    issues = []
    penalty = 0

    date_check = validate_date(data.date, today=today)
    amount_check = validate_amount(data.amount)
    vendor_check = validate_vendor(data.vendor)
    for check in (date_check, amount_check, vendor_check):
        if not check.valid:
            issues.append(check.error)
            penalty += check.penalty

    line_item_check = validate_line_items(data)
    issues.extend(line_item_check.issues)
    penalty += line_item_check.penalty

    ocr_confidence, page_count = _extraction_quality(extraction_metadata)
    if ocr_confidence is not None and ocr_confidence < 70:
        issues.append("Low OCR confidence - please verify extracted data")
        penalty += LOW_OCR_PENALTY
    if page_count and page_count > 1:
        issues.append("Multi-page document - verify all line items captured")
        penalty += MULTI_PAGE_PENALTY

    for extra_issues, extra_penalty in (validate_cross_fields(data), validate_vendor_amount(data)):
        issues.extend(extra_issues)
        penalty += extra_penalty

    overall_confidence = max(MIN_CONFIDENCE, min(100, 100 - penalty))
    needs_review = overall_confidence < REVIEW_THRESHOLD or len(issues) > MAX_ISSUES_BEFORE_REVIEW

    logger.debug(
        "Invoice validated",
        vendor=data.vendor,
        overall_confidence=overall_confidence,
        issues=len(issues),
        needs_review=needs_review,
    )

    return ValidationResult(
        is_valid=True,
        date_valid=date_check.valid,
        amount_valid=amount_check.valid,
        vendor_valid=vendor_check.valid,
        line_items_valid=line_item_check.valid,
        overall_confidence=overall_confidence,
        issues=issues,
        needs_review=needs_review,
    )


def validate_category_code(code: str | None) -> FieldCheck:
    """Category codes are 4-digit chart-of-accounts numbers in 1000-6999."""
    if not code or not isinstance(code, str):
        return FieldCheck(valid=False, error="Category code is required")
    if not re.fullmatch(r"\d{4}", code):
        return FieldCheck(valid=False, error="Category code must be a 4-digit number")

    valid_ranges = [
        (1000, 1999),  # Assets
        (2000, 2999),  # Liabilities
        (3000, 3999),  # Equity
        (4000, 4999),  # Revenue
        (5000, 6999),  # Expenses
    ]
    number = int(code)
    if not any(low <= number <= high for low, high in valid_ranges):
        return FieldCheck(valid=False, error="Invalid category code range")
    return FieldCheck(valid=True)


def sanitize_text(text: str | None) -> str:
    if not text or not isinstance(text, str):
        return ""
    text = re.sub(r"[\x00-\x1F\x7F]", "", text.strip())
    return re.sub(r"\s+", " ", text)[:1000]
