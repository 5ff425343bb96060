"""
Tests for LLM-assisted parsing.

HTTP calls are mocked with respx; nothing reaches a real model.
"""

import json
import math
from datetime import date

import httpx
import pytest
import respx

from invoice_engine.core.errors import LLMParseError
from invoice_engine.services import llm_parser
from invoice_engine.services.llm_parser import LLMInvoiceParser, parse_llm_date, parse_response

BASE_URL = "https://llm.example.com/v1"


def completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


@pytest.fixture
def parser():
    return LLMInvoiceParser(base_url=BASE_URL, api_key="test-key", deployment="test-model", timeout=5)


def test_fenced_json_is_parsed(today):
    response = """```json
{"vendor": "Midjourney Inc", "date": "2024-11-05", "amount": 10.00,
 "lineItems": [{"description": "Basic Plan", "amount": 10.00, "quantity": 1}],
 "tax": 0, "subtotal": 10.00, "confidence": 92}
```"""

    parsed = parse_response(response, "Midjourney Inc ...", today=today)

    assert parsed.parsing_method == "llm"
    assert parsed.vendor == "Midjourney Inc"
    assert parsed.date == date(2024, 11, 5)
    assert parsed.amount == 10.00
    assert parsed.subtotal == 10.00
    assert parsed.parsing_confidence == 92
    assert len(parsed.line_items) == 1


@pytest.mark.parametrize("response", ["I could not read this invoice", "", "[1, 2, 3]", "```json\n{broken\n```"])
def test_unreadable_response_degrades_to_fallback(today, response):
    parsed = parse_response(response, "some text", today=today)

    assert parsed.parsing_method == "llm-fallback"
    assert parsed.parsing_confidence == 10
    assert parsed.vendor == "Unknown Vendor"
    assert parsed.date == today


@pytest.mark.parametrize("value,expected", [
    ("2024-11-05", date(2024, 11, 5)),
    ("2019-01-01", date(2019, 1, 1)),
    ("2025-12-31", date(2025, 12, 31)),
    ("2018-12-31", date(2024, 12, 1)),
    ("2030-01-01", date(2024, 12, 1)),
    ("not a date", date(2024, 12, 1)),
    (None, date(2024, 12, 1)),
])
def test_date_plausibility_window(today, value, expected):
    assert parse_llm_date(value, today=today) == expected


def test_line_items_are_filtered(today):
    response = json.dumps({
        "vendor": "Starbucks",
        "date": "2024-11-20",
        "amount": 17.45,
        "lineItems": [
            {"description": "Iced Americano", "amount": 5.45},
            {"description": "Croissant", "amount": "3.50", "quantity": "2"},
            {"description": "123 Main Street", "amount": 1},
            {"description": "Store #13634", "amount": 2},
            {"description": "ab", "amount": 3},
            {"description": "Espresso Machine", "amount": 12000},
            {"description": "Refund", "amount": -5},
        ],
        "confidence": 80,
    })

    parsed = parse_response(response, today=today)

    assert [(i.description, i.amount, i.quantity) for i in parsed.line_items] == [
        ("Iced Americano", 5.45, 1),
        ("Croissant", 3.50, 2),
    ]


def test_missing_amount_backfilled_and_confidence_recalculated(today):
    response = json.dumps({"vendor": "Starbucks", "amount": 0, "confidence": "20"})

    parsed = parse_response(response, "Starbucks Store\nTotal $5.68", today=today)

    assert parsed.amount == 5.68
    # 50 base + vendor + amount + vendor present in text
    assert parsed.parsing_confidence == 95


def test_parse_calls_chat_completions(parser, today):
    content = json.dumps({"vendor": "Acme Corp", "date": "2024-11-01", "amount": 250, "confidence": 88})

    with respx.mock:
        route = respx.post(f"{BASE_URL}/chat/completions").mock(
            return_value=httpx.Response(200, json=completion(content))
        )

        parsed = parser.parse("Acme Corp\nTotal $250.00", today=today)

        assert route.called
        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer test-key"
        body = json.loads(request.content)
        assert body["model"] == "test-model"
        assert "Acme Corp" in body["messages"][0]["content"]

    assert parsed.parsing_method == "llm"
    assert parsed.amount == 250.0


def test_http_error_raises(parser):
    with respx.mock:
        respx.post(f"{BASE_URL}/chat/completions").mock(return_value=httpx.Response(500))

        with pytest.raises(LLMParseError):
            parser.parse("Acme Corp")


def test_unexpected_response_shape_raises(parser):
    with respx.mock:
        respx.post(f"{BASE_URL}/chat/completions").mock(return_value=httpx.Response(200, json={"choices": []}))

        with pytest.raises(LLMParseError):
            parser.parse("Acme Corp")


def test_unconfigured_parser_raises(no_external_services):
    parser = LLMInvoiceParser()

    assert parser.is_configured is False
    with pytest.raises(LLMParseError):
        parser.parse("Acme Corp")


@pytest.mark.parametrize("response", [
    '{"vendor": "Acme LLC", "amount": 10, "confidence": 1e400}',
    '{"vendor": "Acme LLC", "amount": 10, "confidence": NaN}',
    '{"vendor": "Acme LLC", "amount": 10, "lineItems": [{"description": "Widget", "amount": 10, "quantity": 1e400}]}',
    '{"vendor": "Acme LLC", "amount": 10, "lineItems": [{"description": "Widget", "amount": 10, "quantity": NaN}]}',
    '{"vendor": "Acme LLC", "amount": 1e400}',
    '{"vendor": "Acme LLC", "amount": NaN, "tax": Infinity, "subtotal": -Infinity}',
    '{"vendor": "Acme LLC", "amount": 10, "confidence": 1' + "0" * 400 + '}',
])
def test_non_finite_numbers_are_coerced(today, response):
    parsed = parse_response(response, "Acme LLC\nTotal $10.00", today=today)

    assert parsed.parsing_method == "llm"
    assert parsed.amount == 10.00
    assert math.isfinite(parsed.tax) and math.isfinite(parsed.subtotal)
    assert 0 <= parsed.parsing_confidence <= 100
    assert all(item.quantity == 1 for item in parsed.line_items)


def test_coercion_errors_degrade_to_fallback(monkeypatch, today):
    def broken_date(value, today=None):
        raise TypeError("unexpected date payload")

    monkeypatch.setattr(llm_parser, "parse_llm_date", broken_date)

    parsed = parse_response('{"vendor": "Acme LLC", "amount": 10}', today=today)

    assert parsed.parsing_method == "llm-fallback"
    assert parsed.parsing_confidence == 10
