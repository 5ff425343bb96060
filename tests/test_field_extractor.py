"""
Tests for rule-based field extraction.
"""

from datetime import date

import pytest

from invoice_engine.services.field_extractor import (
    calculate_parsing_confidence,
    clean_vendor_name,
    detect_vendor,
    extract_amount,
    extract_date,
    extract_line_items,
    extract_metadata,
    extract_subtotal,
    extract_tax,
    parse_invoice_data,
)
from invoice_engine.services.invoice_types import LineItem


def test_subscription_cluster_yields_single_line_item(midjourney_text):
    """Plan line + date range + compact price line become exactly one item"""
    items = extract_line_items(midjourney_text)

    assert len(items) == 1
    assert items[0].description == "Basic Plan Nov 5 – Dec 5, 2024"
    assert items[0].amount == 10.00
    assert items[0].quantity == 1


def test_known_vendor_detected_at_top_priority(midjourney_text):
    match = detect_vendor(midjourney_text)

    assert match.name == "Midjourney Inc"
    assert match.priority == 10


def test_known_vendor_outranks_first_substantial_line():
    text = "Receipt\nCorner Deli\nStarbucks Store\n123 Main Street\nTotal $5.00"

    match = detect_vendor(text)

    assert match.name == "Starbucks Store"
    assert match.priority == 9


def test_first_substantial_line_is_fallback_vendor():
    text = "Blue Door Studio\nInvoice #1001\nTotal $250.00"

    match = detect_vendor(text)

    assert match.name == "Blue Door Studio"
    assert match.priority == 1


def test_unknown_vendor_when_no_candidate_lines():
    match = detect_vendor("12345\n$4.50")

    assert match.name == "Unknown Vendor"
    assert match.priority == 0


def test_clean_vendor_name_strips_punctuation_and_whitespace():
    assert clean_vendor_name("  ACME,  Inc.!! ") == "ACME Inc"
    assert clean_vendor_name("Smith & Sons - Plumbing") == "Smith & Sons - Plumbing"
    assert len(clean_vendor_name("x" * 80)) == 50


def test_amount_due_beats_total():
    text = "Subtotal $90.00\nTotal $100.00\nAmount due $95.00"

    assert extract_amount(text) == 95.00


def test_equal_priority_keeps_first_total():
    assert extract_amount("Total $20.00\nTotal $30.00") == 20.00


def test_amount_with_thousands_separator():
    assert extract_amount("Grand Total: $1,234.56") == 1234.56


def test_amount_falls_back_to_largest_figure():
    assert extract_amount("Coffee 4.50\nMuffin 3.25") == 4.50


def test_amount_zero_when_nothing_found():
    assert extract_amount("hello world") == 0.0


def test_date_label_wins_over_due_date(today):
    text = "Invoice\nDue: 2024-12-15\nDate: 2024-11-20"

    assert extract_date(text, today=today) == date(2024, 11, 20)


def test_implausible_date_moves_to_next_pattern(today):
    text = "Date: 01/05/2019\nShipped 2024-11-28"

    assert extract_date(text, today=today) == date(2024, 11, 28)


def test_month_name_date(today):
    assert extract_date("Paid on Oct 3, 2024", today=today) == date(2024, 10, 3)


def test_date_falls_back_to_today(today):
    assert extract_date("no dates here", today=today) == today


def test_tax_on_line_after_label():
    text = "Subtotal $8.47\nIGST (18% on $8.47)\n$1.53\nTotal $10.00"

    assert extract_tax(text, subtotal=8.47, total=10.00) == 1.53


def test_inline_tax():
    text = "Subtotal $50.00\nTax $4.00\nTotal $54.00"

    assert extract_tax(text, subtotal=50.00, total=54.00) == 4.00


def test_inline_tax_ignores_total_amount():
    text = "Tax included $54.00\nTotal $54.00"

    assert extract_tax(text, subtotal=0.0, total=54.00) == 0.0


def test_subtotal():
    assert extract_subtotal("Sub-total: $42.10\nTotal $45.00") == 42.10
    assert extract_subtotal("Total excluding tax $80.00") == 80.00
    assert extract_subtotal("Total $45.00") == 0.0


def test_general_line_items():
    text = (
        "Widget 2 $5.00 $10.00\n"
        "Gadget $3.50\n"
        "Delivery tip $3.00\n"
        "Tip $2.00\n"
        "Subtotal $13.50"
    )

    items = extract_line_items(text)

    assert items == [
        LineItem(description="Widget", amount=5.00, quantity=2),
        LineItem(description="Gadget", amount=3.50, quantity=1),
    ]


def test_bare_amount_needs_cents():
    items = extract_line_items("Iced Americano 5.45\nRoom 101")

    assert [i.description for i in items] == ["Iced Americano"]


def test_parsing_confidence_penalties(today):
    parsed = {
        "vendor": "Unknown Vendor",
        "amount": 0.0,
        "date": today,
        "line_items": [],
        "subtotal": 0.0,
        "tax": 0.0,
    }

    assert calculate_parsing_confidence(parsed, "hello", today=today) == 25


def test_parsing_confidence_subtotal_mismatch(today):
    parsed = {
        "vendor": "Acme Corp",
        "amount": 100.0,
        "date": today,
        "line_items": [LineItem(description="Consulting", amount=80.0)],
        "subtotal": 80.0,
        "tax": 5.0,
    }

    assert calculate_parsing_confidence(parsed, "Total $100.00", today=today) == 90


def test_extract_metadata_flags():
    meta = extract_metadata("Joe's Bistro\nServer: Anna\nTotal $20.00 and tax")

    assert meta["is_restaurant"] is True
    assert meta["has_server_info"] is True
    assert meta["is_gas_station"] is False
    assert meta["language"] == "en"


def test_parse_invoice_data_end_to_end(midjourney_text, today):
    parsed = parse_invoice_data(midjourney_text, today=today)

    assert parsed.vendor == "Midjourney Inc"
    assert parsed.date == date(2024, 11, 5)
    assert parsed.amount == 10.00
    assert parsed.subtotal == 10.00
    assert parsed.tax == 0.0
    assert len(parsed.line_items) == 1
    assert parsed.parsing_method == "rules"
    assert parsed.parsing_confidence == 100


def test_parse_never_raises_on_empty_text(today):
    parsed = parse_invoice_data("", today=today)

    assert parsed.vendor == "Unknown Vendor"
    assert parsed.amount == 0.0
    assert parsed.date == today
    assert parsed.line_items == []


@pytest.mark.parametrize("text,expected", [
    ("Total amount: $90.00\nAmount due: $95.00", 95.00),
    ("Total: $80.00\nTotal amount: $90.00", 90.00),
    ("Balance due: $70.00\nTotal: $80.00", 80.00),
    ("Balance due: $70.00\nGrand total $85.00", 85.00),
    ("$45.00 USD due\nBalance due: $50.00", 50.00),
    ("Coffee $99.00\n$45.00 USD due", 45.00),
])
def test_higher_amount_tier_wins_regardless_of_position(text, expected):
    assert extract_amount(text) == expected


def test_net_amount_subtotal():
    assert extract_subtotal("Net amount: $42.00\nTotal $50.00") == 42.00


def _clean_parse(today, **overrides):
    parsed = {
        "vendor": "Acme Corp",
        "amount": 100.0,
        "date": today,
        "line_items": [LineItem(description="Consulting", amount=100.0)],
        "subtotal": 0.0,
        "tax": 0.0,
    }
    parsed.update(overrides)
    return parsed


@pytest.mark.parametrize("overrides,expected", [
    ({}, 100),
    ({"line_items": [LineItem(description=f"Item {i}", amount=1.0) for i in range(21)]}, 85),
    ({"vendor": "AB"}, 85),
    ({"amount": 150000.0}, 90),
])
def test_parsing_confidence_tiers(today, overrides, expected):
    assert calculate_parsing_confidence(_clean_parse(today, **overrides), "Total $100.00", today=today) == expected
