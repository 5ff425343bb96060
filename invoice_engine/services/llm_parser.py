"""
LLM-assisted invoice parsing against an OpenAI-compatible chat completions API.

The model's answer is treated as untrusted: markdown fences are stripped,
malformed JSON degrades to a low-confidence placeholder, implausible dates are
replaced by today, and line items that look like addresses or headers are
dropped. ``parse_response`` therefore always returns a valid ParsedInvoiceData.
"""

import json
import math
import re
from datetime import date
from typing import Any

import httpx
from dateutil import parser as date_parser
from loguru import logger

from ..core.config import settings
from ..core.errors import LLMParseError
from .invoice_types import LineItem, ParsedInvoiceData

UNKNOWN_VENDOR = "Unknown Vendor"
MAX_LINE_ITEM_AMOUNT = 10000

PROMPT_TEMPLATE = """You are an expert at extracting structured data from invoice and receipt text.

The following text was extracted from an invoice/receipt using OCR and may contain errors (like "ss68" instead of "$5.68"):

---
{raw_text}
---

Return ONLY a valid JSON object with these exact fields:

{{
  "vendor": "string - the business/company name",
  "date": "YYYY-MM-DD - the invoice/transaction date",
  "amount": "number - the total amount (fix OCR errors like ss68 -> 5.68)",
  "lineItems": [
    {{
      "description": "string - item/service description",
      "amount": "number - individual item amount",
      "quantity": "number - quantity (default 1)"
    }}
  ],
  "tax": "number - tax amount (0 if not found)",
  "subtotal": "number - subtotal before tax (0 if not found)",
  "confidence": "number - your confidence in the extraction (0-100)"
}}

Rules:
1. Fix common OCR errors (ss -> $, 0 -> O, 1 -> I, etc.)
2. Line items are actual products or services, NOT addresses, store info or headers
3. Skip shipping addresses, phone numbers, store numbers and receipt headers
4. Amount is the final total, not the subtotal
5. Return only the JSON, no other text

Line items look like:
- "Vt Iced Americano"
- "JEEUE Headphones Adapter"
- "Basic Plan Nov 5 - Dec 5, 2024"

These are NOT line items:
- "9014 S Yale Ave" (address)
- "Draver: 1 Reg" (register info)
- "STARBUCKS Store #13634" (store header)
- "Shipping Address:" (label)"""

EXCLUDED_DESCRIPTIONS = [
    re.compile(r"^\d+\s+(gateway|main|park|oak|elm|ave|street|st|rd|blvd)", re.IGNORECASE),
    re.compile(r"^[a-zA-Z\s]+,\s+[A-Z]{2}\s+\d{5}", re.IGNORECASE),  # City, ST 12345
    re.compile(r"^\(\d{3}\)\s*\d{3}-\d{4}$"),  # Phone
    re.compile(r"^(store|order|reg|driver|receipt|invoice)", re.IGNORECASE),
]

_CODE_FENCE = re.compile(r"```(?:json)?\s*|\s*```")
_BACKUP_AMOUNT = re.compile(r"\$?(\d+\.\d{2})")


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return 0.0
        return number if math.isfinite(number) else 0.0
    if isinstance(value, str):
        match = re.search(r"-?\d+(?:\.\d+)?", value.replace(",", ""))
        if match:
            return float(match.group())
    return 0.0


def _to_int(value: Any) -> int:
    # _to_float never returns inf or nan
    return int(_to_float(value))


def is_excluded_description(description: str) -> bool:
    return any(pattern.search(description) for pattern in EXCLUDED_DESCRIPTIONS)


def parse_llm_date(value: Any, today: date | None = None) -> date:
    """Parse the model's date; anything missing, unparseable or implausible becomes today."""
    today = today or date.today()
    if not value or not isinstance(value, str):
        return today

    try:
        parsed = date_parser.parse(value).date()
    except (ValueError, OverflowError):
        logger.warning("Invalid date from LLM, using current date", value=value)
        return today

    earliest = date(today.year - 5, 1, 1)
    latest = date(today.year + 1, 12, 31)
    if not earliest <= parsed <= latest:
        logger.warning("Date from LLM seems unreasonable, using current date", value=value)
        return today
    return parsed


def fallback_result(today: date | None = None) -> ParsedInvoiceData:
    return ParsedInvoiceData(
        vendor=UNKNOWN_VENDOR,
        date=today or date.today(),
        parsing_confidence=10,
        parsing_method="llm-fallback",
    )


def calculate_llm_confidence(data: dict, original_text: str) -> float:
    """Confidence from how much was extracted, used when the model's own is low."""
    confidence = 50
    if data["vendor"] != UNKNOWN_VENDOR:
        confidence += 20
    if data["amount"] > 0:
        confidence += 20
    if data["line_items"]:
        confidence += 10
    if data["tax"] > 0 or data["subtotal"] > 0:
        confidence += 5
    if data["vendor"].lower() in original_text.lower():
        confidence += 5
    return float(min(100, max(10, confidence)))


def _coerce_payload(payload: dict, raw_text: str, today: date | None) -> ParsedInvoiceData:
    raw_items = payload.get("lineItems", payload.get("line_items"))
    line_items = []
    for item in raw_items if isinstance(raw_items, list) else []:
        if not isinstance(item, dict):
            continue
        description = str(item.get("description") or "").strip()
        amount = _to_float(item.get("amount"))
        if len(description) <= 2 or not 0 < amount < MAX_LINE_ITEM_AMOUNT or is_excluded_description(description):
            continue
        line_items.append(LineItem(description=description, amount=amount, quantity=max(1, _to_int(item.get("quantity")) or 1)))

    data = {
        "vendor": str(payload.get("vendor") or "").strip() or UNKNOWN_VENDOR,
        "amount": max(0.0, _to_float(payload.get("amount"))),
        "line_items": line_items,
        "tax": max(0.0, _to_float(payload.get("tax"))),
        "subtotal": max(0.0, _to_float(payload.get("subtotal"))),
    }

    if data["amount"] <= 0:
        backup = _BACKUP_AMOUNT.search(raw_text)
        if backup:
            data["amount"] = float(backup.group(1))

    confidence = float(min(100, max(0, _to_int(payload.get("confidence")) or 50)))
    if confidence < 50:
        confidence = calculate_llm_confidence(data, raw_text)

    return ParsedInvoiceData(
        **data,
        date=parse_llm_date(payload.get("date"), today),
        parsing_confidence=confidence,
        parsing_method="llm",
    )


def parse_response(response_text: str, raw_text: str = "", today: date | None = None) -> ParsedInvoiceData:
    """
    Coerce a model response into ParsedInvoiceData.

    Args:
        response_text: Raw model output, possibly wrapped in markdown fences
        raw_text: The OCR text that was sent, used to back-fill the amount
        today: Reference date for date plausibility (defaults to today)

    Returns:
        ParsedInvoiceData; ``parsing_method`` is "llm-fallback" when the
        response could not be read as a JSON object or its fields could
        not be coerced
    """
    clean = _CODE_FENCE.sub("", (response_text or "").strip())
    try:
        payload = json.loads(clean)
    except json.JSONDecodeError as e:
        logger.warning("Failed to parse LLM response", error=str(e), response=response_text[:200] if response_text else "")
        return fallback_result(today)

    if not isinstance(payload, dict):
        logger.warning("LLM response is not a JSON object", response_type=type(payload).__name__)
        return fallback_result(today)

    try:
        return _coerce_payload(payload, raw_text, today)
    except (ValueError, OverflowError, TypeError) as e:
        logger.warning("LLM response fields could not be coerced", error=str(e))
        return fallback_result(today)


class LLMInvoiceParser:
    """
    Client for an OpenAI-compatible chat completions deployment.

    ``parse`` raises LLMParseError when the service is not configured or the
    call fails; callers fall back to the rule-based parser.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        deployment: str | None = None,
        timeout: float | None = None,
        client: httpx.Client | None = None,
    ):
        self.base_url = (base_url or settings.llm_base_url or "").rstrip("/")
        self.api_key = api_key or settings.llm_api_key
        self.deployment = deployment or settings.llm_deployment
        self.timeout = timeout or settings.llm_timeout_seconds
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.api_key and self.deployment)

    def build_prompt(self, raw_text: str) -> str:
        return PROMPT_TEMPLATE.format(raw_text=raw_text)

    def complete(self, prompt: str) -> str:
        payload = {
            "model": self.deployment,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 0.1,
            "max_tokens": 1000,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            if self._client is not None:
                r = self._client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    r = client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
            r.raise_for_status()
            return r.json()["choices"][0]["message"]["content"] or ""
        except httpx.HTTPError as e:
            raise LLMParseError(f"LLM request failed: {e}") from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise LLMParseError(f"Unexpected LLM response shape: {e}") from e

    def parse(self, raw_text: str, metadata: dict | None = None, today: date | None = None) -> ParsedInvoiceData:
        if not self.is_configured:
            raise LLMParseError("LLM parsing not configured - set LLM_BASE_URL, LLM_API_KEY and LLM_DEPLOYMENT")

        logger.info("Parsing invoice with LLM", deployment=self.deployment, chars=len(raw_text))
        result = parse_response(self.complete(self.build_prompt(raw_text)), raw_text, today)

        logger.info(
            "LLM parsing completed",
            vendor=result.vendor,
            amount=result.amount,
            line_items=len(result.line_items),
            parsing_method=result.parsing_method,
        )
        return result

    def parse_response(self, response_text: str, raw_text: str = "", today: date | None = None) -> ParsedInvoiceData:
        return parse_response(response_text, raw_text, today)
