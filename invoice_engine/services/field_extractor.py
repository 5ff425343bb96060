"""
Heuristic structured-field extraction from OCR / PDF invoice text.

Every extractor has a documented fallback and never raises:

- vendor    -> "Unknown Vendor"
- amount    -> largest currency figure in the text, else 0
- date      -> today
- line items / tax / subtotal -> empty / 0

``parse_invoice_data`` runs all of them and scores how much the result can be
trusted (``parsing_confidence``, 0-100).
"""

import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from dateutil import parser as dateparser
from dateutil.relativedelta import relativedelta
from loguru import logger

from .invoice_types import LineItem, ParsedInvoiceData
from .rule_tables import RuleTables, get_rule_tables

UNKNOWN_VENDOR = "Unknown Vendor"
MAX_VENDOR_LINES = 8
MAX_PARSED_AMOUNT = 100000.0
FALLBACK_VENDOR_PRIORITY = 1


def _rx(pattern: str, flags: int = 0) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE | flags)


# "1,234.56", "1234.56", "1234"
_MONEY = r"(\d{1,3}(?:,\d{3})+(?:\.\d{2})?|\d+(?:\.\d{2})?)"
# Same but cents are mandatory, which is what makes a bare number "price-like"
_PRICE = r"(\d{1,3}(?:,\d{3})+\.\d{2}|\d+\.\d{2})"

_MONTH = (
    r"(?:jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?"
    r"|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)"
)
_MONTH_DATE = (
    rf"{_MONTH}\.?\s+\d{{1,2}}(?:st|nd|rd|th)?,?\s+\d{{4}}"
    rf"|\d{{1,2}}(?:st|nd|rd|th)?\s+{_MONTH}\.?,?\s+\d{{4}}"
)
_ISO_DATE = r"\d{4}-\d{1,2}-\d{1,2}"
_SLASH_DATE = r"\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}"
_ANY_DATE = rf"(?:{_MONTH_DATE}|{_ISO_DATE}|{_SLASH_DATE})"

# --- vendor -----------------------------------------------------------------

_NON_VENDOR_LINES = [
    _rx(r"^(receipt|invoice|order|date|total|subtotal|sub-total|tax|amount|bill\s+to|ship\s+to|sold\s+to"
        r"|page|due|balance|payment|paid|description|qty|quantity|thank\s+you)\b"),
    _rx(rf"\b{_SLASH_DATE}\b|\b{_ISO_DATE}\b"),
    _rx(rf"^(?:{_MONTH_DATE})$"),
    _rx(r"^[\d\s$€£.,#:/\-()%]+$"),
    _rx(r"^\d+\s+[\w .]*\b(street|st|avenue|ave|road|rd|boulevard|blvd|drive|dr|lane|ln|way|suite|ste|gateway|park)\b"),
    _rx(r",\s*[a-z]{2}\s+\d{5}(?:-\d{4})?\b"),
    _rx(r"\(?\d{3}\)?[\s.\-]\d{3}[\s.\-]\d{4}"),
    _rx(r"@|https?://|\bwww\."),
    _rx(r"\b(invoice|receipt|order|account|customer|transaction)\s*(#|no\.?|number|id)\b"),
]
_STRUCTURAL_START = _rx(r"^(total|subtotal|tax|amount|invoice|receipt|order|date|due|balance|bill|ship)\b")


@dataclass(frozen=True)
class VendorMatch:
    name: str
    priority: int


def clean_vendor_name(vendor: str) -> str:
    """Keep letters, digits, spaces, '&' and '-'; collapse whitespace; cap at 50 chars."""
    cleaned = re.sub(r"[^a-zA-Z0-9\s&-]", "", vendor)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return cleaned[:50].strip()


def _non_empty_lines(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def _is_non_vendor_line(line: str) -> bool:
    return any(p.search(line) for p in _NON_VENDOR_LINES)


def _is_substantial_line(line: str) -> bool:
    return (
        3 <= len(line) <= 50
        and not line[0].isdigit()
        and not _STRUCTURAL_START.match(line)
        and re.search(r"[a-zA-Z]", line) is not None
    )


def detect_vendor(text: str, tables: RuleTables | None = None) -> VendorMatch:
    """
    Find the vendor line and the priority tier it was matched at.

    Only the first few non-empty lines are considered. Known vendors and
    company-suffix patterns outrank the "first substantial line" fallback;
    among equal priorities the earliest line wins.
    """
    patterns = (tables or get_rule_tables()).vendor_patterns
    best: VendorMatch | None = None

    for line in _non_empty_lines(text or "")[:MAX_VENDOR_LINES]:
        if _is_non_vendor_line(line):
            continue

        priority = max((p.priority for p in patterns if p.pattern.search(line)), default=None)
        if priority is None:
            if best is not None or not _is_substantial_line(line):
                continue
            priority = FALLBACK_VENDOR_PRIORITY

        if best is None or priority > best.priority:
            name = clean_vendor_name(line)
            if name:
                best = VendorMatch(name=name, priority=priority)

    return best or VendorMatch(name=UNKNOWN_VENDOR, priority=0)


def extract_vendor(text: str) -> str:
    return detect_vendor(text).name


# --- amount -----------------------------------------------------------------

_AMOUNT_PREFIX = r"[:\s]*(?:usd\s*)?\$?\s*"
AMOUNT_PATTERNS = [
    (10, _rx(r"\bamount\s+due\b" + _AMOUNT_PREFIX + _MONEY)),
    (9, _rx(r"\btotal\s+amount\b" + _AMOUNT_PREFIX + _MONEY)),
    (8, _rx(r"^\s*total\b(?!\s+(?:amount|excluding|excl|before))" + _AMOUNT_PREFIX + _MONEY)),
    (8, _rx(r"\bgrand\s+total\b" + _AMOUNT_PREFIX + _MONEY)),
    (7, _rx(r"\bbalance\s+due\b" + _AMOUNT_PREFIX + _MONEY)),
    (6, _rx(r"\$\s?" + _MONEY + r"\s*usd\s+due\b")),
]
_CURRENCY_FIGURE = _rx(r"\$\s?" + _MONEY + r"|(?<![\d.,])" + _PRICE + r"(?![\d])")


def _to_amount(raw: str) -> float:
    return round(float(raw.replace(",", "")), 2)


def _same_amount(a: float, b: float) -> bool:
    return abs(a - b) < 0.005


def extract_amount(text: str) -> float:
    """
    Invoice total: the highest-priority total-like label anywhere in the text,
    else the largest currency figure in (0, 100000], else 0.
    """
    best_priority = 0
    best_amount = 0.0

    for line in _non_empty_lines(text or ""):
        for priority, pattern in AMOUNT_PATTERNS:
            if priority <= best_priority:
                continue
            match = pattern.search(line)
            if not match:
                continue
            value = _to_amount(match.group(1))
            if value > 0:
                best_priority, best_amount = priority, value

    if best_priority:
        return best_amount

    figures = [
        _to_amount(m.group(1) or m.group(2))
        for m in _CURRENCY_FIGURE.finditer(text or "")
    ]
    figures = [f for f in figures if 0 < f <= MAX_PARSED_AMOUNT]
    return max(figures) if figures else 0.0


# --- date -------------------------------------------------------------------

DATE_PATTERNS = [
    ("date of issue", _rx(rf"\bdate\s+of\s+issue\b[:\s]*({_ANY_DATE})")),
    ("date label", _rx(rf"(?<!due )\bdate\s*:\s*({_ANY_DATE})")),
    ("due label", _rx(rf"\bdue(?:\s+date)?\s*:\s*({_ANY_DATE})")),
    ("month name", _rx(rf"\b({_MONTH_DATE})\b")),
    ("iso", _rx(rf"\b({_ISO_DATE})\b")),
    ("slash", _rx(rf"\b({_SLASH_DATE})\b")),
]


def _parse_date_text(raw: str) -> date | None:
    cleaned = re.sub(r"(\d)(st|nd|rd|th)\b", r"\1", raw.strip(), flags=re.IGNORECASE)
    try:
        return dateparser.parse(cleaned, dayfirst=False, default=datetime(2000, 1, 1)).date()
    except (ValueError, OverflowError):
        return None


def extract_date(text: str, today: date | None = None) -> date:
    """
    First plausible date, trying labelled dates before free-standing ones.

    Only the first textual match of each pattern is considered; a date outside
    [today - 2y, today + 1y] moves the search on to the next pattern.
    """
    today = today or date.today()
    earliest = today - relativedelta(years=2)
    latest = today + relativedelta(years=1)

    for label, pattern in DATE_PATTERNS:
        match = pattern.search(text or "")
        if not match:
            continue
        parsed = _parse_date_text(match.group(1))
        if parsed and earliest <= parsed <= latest:
            return parsed
        logger.debug("Rejected date candidate", pattern=label, raw=match.group(1))

    return today


# --- line items -------------------------------------------------------------

_NOISE_LINES = [
    _rx(r"^(sub\s*-?\s*total|total|grand\s+total|amount|balance|tax|sales\s+tax|vat|gst|igst|cgst|sgst"
        r"|tip|gratuity|change|cash|payment|paid|discount|shipping|billing|bill\s+to|ship\s+to|sold\s+to"
        r"|date|due|invoice|receipt|order|page|description|qty|quantity|unit\s+price|thank)\b"),
    _rx(r"\bqty\b.*\bprice\b|\bdescription\b.*\bamount\b"),
    _rx(r"\b(invoice|receipt|order|account|customer|transaction|reference|ref|store|reg|register|terminal)"
        r"\s*(#|no\.?|number|id)\b|#\s*\d{3,}"),
    _rx(r"^\d+\s+[\w .]*\b(street|st|avenue|ave|road|rd|boulevard|blvd|drive|dr|lane|ln|way|suite|ste|gateway|park)\b"),
    _rx(r",\s*[a-z]{2}\s+\d{5}(?:-\d{4})?\b"),
    _rx(r"\(?\d{3}\)?[\s.\-]\d{3}[\s.\-]\d{4}"),
    _rx(r"^[\s$€£]*[\d,]+(?:\.\d{2})?\s*(usd|eur|gbp)?$"),
    _rx(r"^\d+(?:\.\d+)?\s*%$"),
]
_TOTALS_KEYWORD_END = _rx(
    r"\b(total|subtotal|tax|tip|gratuity|amount|due|balance|vat|gst|igst|discount|change|paid)\s*:?\s*$"
)

_PLAN_LINE = _rx(r"^[a-z0-9][\w &+.\-]{0,50}\b(plan|subscription|membership)\b[\w ]*$")
_DATE_RANGE_LINE = _rx(
    rf"^{_MONTH}\.?\s+\d{{1,2}}(?:,?\s+\d{{4}})?\s*[-–—]\s*{_MONTH}\.?\s+\d{{1,2}},?\s+\d{{4}}$"
)
# "1$10.0018%$10.00" -> qty 1, unit $10.00, tax rate 18%, amount $10.00
_COMPACT_PRICE_LINE = _rx(
    r"^(?P<qty>\d{1,3})\s*\$\s?(?P<unit>[\d,]*\d\.\d{2})\s*"
    r"(?:(?P<rate>\d{1,2}(?:\.\d+)?)\s*%)?\s*\$\s?(?P<amount>[\d,]*\d\.\d{2})$"
)

_TABLE_ROW = _rx(rf"^(?P<desc>.+?)\s+(?P<qty>\d{{1,4}})\s+\$\s?(?P<unit>{_PRICE[1:-1]})\s+\$\s?(?P<total>{_PRICE[1:-1]})$")
_DOLLAR_ITEM = _rx(rf"^(?P<desc>.+?)\s+\$\s?(?P<amount>{_MONEY[1:-1]})$")
_BARE_ITEM = _rx(rf"^(?P<desc>.+?)\s+(?P<amount>{_PRICE[1:-1]})$")


def _is_noise_line(line: str) -> bool:
    return any(p.search(line) for p in _NOISE_LINES)


def _acceptable_description(description: str) -> bool:
    return (
        len(description) >= 2
        and re.search(r"[a-zA-Z]", description) is not None
        and not _TOTALS_KEYWORD_END.search(description)
    )


def _subscription_item(lines: list[str], i: int) -> LineItem | None:
    if i + 2 >= len(lines):
        return None
    plan, period, prices = lines[i], lines[i + 1], lines[i + 2]
    if not (_PLAN_LINE.match(plan) and _DATE_RANGE_LINE.match(period)):
        return None
    match = _COMPACT_PRICE_LINE.match(prices)
    if not match:
        return None
    return LineItem(
        description=f"{plan} {period}",
        amount=_to_amount(match.group("unit")),
        quantity=max(1, int(match.group("qty"))),
    )


def _general_item(line: str) -> LineItem | None:
    match = _TABLE_ROW.match(line)
    if match:
        description = match.group("desc").strip()
        if _acceptable_description(description):
            return LineItem(
                description=description,
                amount=_to_amount(match.group("unit")),
                quantity=max(1, int(match.group("qty"))),
            )
        return None

    for pattern in (_DOLLAR_ITEM, _BARE_ITEM):
        match = pattern.match(line)
        if not match:
            continue
        description = match.group("desc").strip().rstrip(":").strip()
        if not _acceptable_description(description):
            return None
        amount = _to_amount(match.group("amount"))
        if amount <= 0:
            return None
        return LineItem(description=description, amount=amount, quantity=1)

    return None


def extract_line_items(text: str) -> list[LineItem]:
    """Line items in document order; structural and noise lines are skipped."""
    lines = _non_empty_lines(text or "")
    items = []
    i = 0
    while i < len(lines):
        subscription = _subscription_item(lines, i)
        if subscription:
            items.append(subscription)
            i += 3
            continue

        line = lines[i]
        i += 1
        if _is_noise_line(line):
            continue
        item = _general_item(line)
        if item:
            items.append(item)

    return items


# --- tax / subtotal ---------------------------------------------------------

_TAX_KEYWORD = _rx(r"\b(?:sales\s+)?(?:tax|vat|gst|igst|cgst|sgst)\b")
_TAX_LABEL_START = _rx(r"^(?:sales\s+)?(?:tax|vat|gst|igst|cgst|sgst)\b")
_DOLLAR_AMOUNT = _rx(r"\$\s?" + _MONEY)
_DOLLAR_ONLY_LINE = _rx(r"^\$\s?" + _PRICE + r"$")
_TRAILING_DOLLAR = _rx(r"\$\s?" + _MONEY + r"\s*$")
_PLAIN_TAX_VALUE = _rx(r"^\s*:?\s*" + _PRICE + r"\s*$")

SUBTOTAL_PATTERNS = [
    _rx(r"\bsub\s*-?\s*total\b[^$\d\n]*\$?\s*" + _MONEY),
    _rx(r"\bnet\s+amount\b[^$\d\n]*\$?\s*" + _MONEY),
    _rx(r"\btotal\s+(?:excluding|excl\.?|before)\s+tax\b[^$\d\n]*\$?\s*" + _MONEY),
]


def extract_subtotal(text: str) -> float:
    for pattern in SUBTOTAL_PATTERNS:
        for match in pattern.finditer(text or ""):
            value = _to_amount(match.group(1))
            if 0 < value <= MAX_PARSED_AMOUNT:
                return value
    return 0.0


def extract_tax(text: str, subtotal: float = 0.0, total: float = 0.0) -> float:
    """
    Tax amount.

    Subscription invoices often print the tax label and its amount on separate
    lines ("IGST (18% on $8.47)" then "$1.53"), so that layout is tried first.
    Inline figures equal to the subtotal or the total are never the tax.
    """
    lines = _non_empty_lines(text or "")

    for label, value_line in zip(lines, lines[1:]):
        if not _TAX_LABEL_START.match(label) or _TRAILING_DOLLAR.search(label):
            continue
        match = _DOLLAR_ONLY_LINE.match(value_line)
        if match:
            value = _to_amount(match.group(1))
            if 0 < value <= MAX_PARSED_AMOUNT:
                return value

    for line in lines:
        keyword = _TAX_KEYWORD.search(line)
        if not keyword:
            continue
        tail = line[keyword.end():]
        candidates = [m.group(1) for m in _DOLLAR_AMOUNT.finditer(tail)]
        plain = _PLAIN_TAX_VALUE.match(tail)
        if plain:
            candidates.append(plain.group(1))
        for raw in candidates:
            value = _to_amount(raw)
            if value <= 0 or value > MAX_PARSED_AMOUNT:
                continue
            if (subtotal and _same_amount(value, subtotal)) or (total and _same_amount(value, total)):
                continue
            return value

    return 0.0


# --- confidence / metadata --------------------------------------------------

_STRUCTURAL_KEYWORD = _rx(r"total|subtotal|tax|amount")


def calculate_parsing_confidence(parsed: dict[str, Any], original_text: str, today: date | None = None) -> float:
    """Score 0-100 for how trustworthy the extracted fields look."""
    today = today or date.today()
    confidence = 100.0

    vendor = parsed.get("vendor") or UNKNOWN_VENDOR
    if vendor == UNKNOWN_VENDOR:
        confidence -= 20
    elif len(vendor.strip()) < 3:
        confidence -= 15

    amount = parsed.get("amount") or 0.0
    if amount == 0:
        confidence -= 30
    elif amount > MAX_PARSED_AMOUNT:
        confidence -= 10

    invoice_date = parsed.get("date")
    if invoice_date is None or not (
        today - relativedelta(years=1) <= invoice_date <= today + relativedelta(years=1)
    ):
        confidence -= 15

    line_items = parsed.get("line_items") or []
    if len(line_items) == 0:
        confidence -= 10
    elif len(line_items) > 20:
        confidence -= 15

    subtotal = parsed.get("subtotal") or 0.0
    tax = parsed.get("tax") or 0.0
    if subtotal > 0:
        if abs(subtotal + tax - amount) <= 0.02:
            confidence += 5
        else:
            confidence -= 10

    if not _STRUCTURAL_KEYWORD.search(original_text or ""):
        confidence -= 15

    return max(0.0, min(100.0, confidence))


def extract_metadata(text: str) -> dict[str, Any]:
    """Coarse document hints used for logging and categorization context."""
    text = text or ""
    lowered = text.lower()
    english_words = ["the", "and", "total", "tax", "date", "amount"]
    english_hits = sum(1 for word in english_words if word in lowered)

    return {
        "has_receipt_number": re.search(r"receipt\s*#?\s*\d+", text, re.IGNORECASE) is not None,
        "has_order_number": re.search(r"order\s*#?\s*[\w-]*\d[\w-]*", text, re.IGNORECASE) is not None,
        "has_server_info": re.search(r"\b(server|cashier|clerk)\b", text, re.IGNORECASE) is not None,
        "is_restaurant": re.search(r"\b(restaurant|bistro|cafe|diner|eatery)\b", text, re.IGNORECASE) is not None,
        "is_gas_station": re.search(r"\b(gas|fuel|shell|exxon|bp|chevron)\b", text, re.IGNORECASE) is not None,
        "is_online_order": re.search(r"\b(amazon|ebay|paypal|online)\b", text, re.IGNORECASE) is not None,
        "language": "en" if english_hits >= 2 else "unknown",
    }


def parse_invoice_data(
    text: str,
    metadata: dict[str, Any] | None = None,
    today: date | None = None,
) -> ParsedInvoiceData:
    """Rule-based parse of raw invoice text into ``ParsedInvoiceData``."""
    text = text or ""
    today = today or date.today()

    amount = extract_amount(text)
    subtotal = extract_subtotal(text)
    fields = {
        "vendor": extract_vendor(text),
        "date": extract_date(text, today=today),
        "amount": amount,
        "line_items": extract_line_items(text),
        "tax": extract_tax(text, subtotal=subtotal, total=amount),
        "subtotal": subtotal,
    }
    fields["parsing_confidence"] = calculate_parsing_confidence(fields, text, today=today)

    logger.debug(
        "Parsed invoice text",
        vendor=fields["vendor"],
        amount=fields["amount"],
        line_items=len(fields["line_items"]),
        parsing_confidence=fields["parsing_confidence"],
        page_count=(metadata or {}).get("page_count"),
    )

    return ParsedInvoiceData(parsing_method="rules", **fields)
