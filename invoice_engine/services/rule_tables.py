"""
Priority-ranked rule tables used by extraction, validation and categorization.

The tables are plain data (ordered lists of records) so new vendors and
categories can be added without touching any control flow. They are built once
per process by ``get_rule_tables()``; an optional JSON file named by the
``RULES_FILE`` setting is appended to the built-in tables:

    {
        "vendor_patterns": [{"pattern": "acme", "priority": 9, "name": "ACME"}],
        "category_rules": [{"pattern": "acme", "category": "5010", "confidence": 80}]
    }
"""

import json
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from loguru import logger

from ..core.config import settings


@dataclass(frozen=True)
class VendorPattern:
    """A vendor-name regex with its extraction priority (higher wins)."""

    pattern: re.Pattern
    priority: int
    name: str | None = None  # Canonical vendor name, informational only


@dataclass(frozen=True)
class CategoryRule:
    """Static vendor → category rule used when nothing has been learned yet."""

    pattern: re.Pattern
    category: str
    confidence: int


@dataclass(frozen=True)
class Category:
    code: str
    name: str
    description: str = ""


@dataclass(frozen=True)
class VendorAmountLimit:
    """Amount above which an invoice from a matching vendor looks implausible."""

    pattern: re.Pattern
    max_amount: float
    penalty: int
    label: str


@dataclass(frozen=True)
class RuleTables:
    vendor_patterns: tuple[VendorPattern, ...]
    category_rules: tuple[CategoryRule, ...]
    categories: tuple[Category, ...]
    vendor_amount_limits: tuple[VendorAmountLimit, ...]

    def category_name(self, code: str) -> str | None:
        for category in self.categories:
            if category.code == code:
                return category.name
        return None


def _rx(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


# Known vendors rank 6-10, generic company suffixes 7, store/shop suffixes 6.
# Lines that match nothing can still become the vendor at priority 1.
DEFAULT_VENDOR_PATTERNS = [
    {"pattern": r"\bmidjourney\b", "priority": 10, "name": "Midjourney"},
    {"pattern": r"\bopenai\b", "priority": 10, "name": "OpenAI"},
    {"pattern": r"\banthropic\b", "priority": 10, "name": "Anthropic"},
    {"pattern": r"\bamazon\s+web\s+services\b|\baws\b", "priority": 10, "name": "Amazon Web Services"},
    {"pattern": r"\bamazon(\.com)?\b", "priority": 9, "name": "Amazon"},
    {"pattern": r"\bstarbucks\b", "priority": 9, "name": "Starbucks"},
    {"pattern": r"\bmicrosoft\b", "priority": 9, "name": "Microsoft"},
    {"pattern": r"\badobe\b", "priority": 9, "name": "Adobe"},
    {"pattern": r"\bgithub\b", "priority": 9, "name": "GitHub"},
    {"pattern": r"\buber\b", "priority": 8, "name": "Uber"},
    {"pattern": r"\blyft\b", "priority": 8, "name": "Lyft"},
    {"pattern": r"\bwalmart\b", "priority": 8, "name": "Walmart"},
    {"pattern": r"\boffice\s+depot\b", "priority": 8, "name": "Office Depot"},
    {"pattern": r"\bbest\s+buy\b", "priority": 8, "name": "Best Buy"},
    {"pattern": r"\bhome\s+depot\b", "priority": 8, "name": "Home Depot"},
    {"pattern": r"\bgoogle\b", "priority": 8, "name": "Google"},
    {"pattern": r"\bslack\b|\bzoom\b|\bdropbox\b", "priority": 8, "name": None},
    {"pattern": r"\btarget\b", "priority": 6, "name": "Target"},
    {"pattern": r"\b\w+\s+(llc|inc|corp|corporation|ltd|limited|company|co)\b\.?", "priority": 7, "name": None},
    {"pattern": r"\b\w+\s+\w+\s+(store|shop|restaurant|bistro|cafe|market)\b", "priority": 6, "name": None},
]

DEFAULT_CATEGORY_RULES = [
    {"pattern": r"\b(midjourney|openai|chatgpt|claude|anthropic)\b", "category": "5020", "confidence": 95},
    {"pattern": r"amazon\s*(web\s*services|aws)|amzn.*aws", "category": "5020", "confidence": 90},
    {"pattern": r"microsoft|adobe|slack|zoom|dropbox|google\s*(workspace|cloud)|github", "category": "5020", "confidence": 90},
    {"pattern": r"\bgoogle\b", "category": "5020", "confidence": 85},
    {"pattern": r"\b(uber|lyft)\b", "category": "5040", "confidence": 90},
    {"pattern": r"\b(comcast|at&t|verizon|t-mobile)\b", "category": "5030", "confidence": 85},
    {"pattern": r"\bstarbucks\b", "category": "5050", "confidence": 80},
    {"pattern": r"\b(restaurant|cafe|bistro|diner|eatery)\b", "category": "5050", "confidence": 75},
    {"pattern": r"\b(walmart|target|office\s*depot|staples)\b", "category": "5010", "confidence": 65},
    {"pattern": r"amazon|amzn", "category": "5010", "confidence": 60},
]

DEFAULT_CATEGORIES = [
    ("1000", "Business Checking", "Primary business bank account"),
    ("1100", "Accounts Receivable", "Money owed by customers"),
    ("2000", "Accounts Payable", "Money owed to vendors"),
    ("2100", "Credit Card", "Business credit card balances"),
    ("3000", "Owner Equity", "Owner investment and retained earnings"),
    ("4000", "Sales Revenue", "Income from sales"),
    ("5010", "Office Supplies", "Pens, paper, printer cartridges, basic office items"),
    ("5020", "Software Subscriptions", "Adobe, Microsoft, Slack, SaaS tools"),
    ("5030", "Internet & Phone", "Comcast, AT&T, Zoom, communication services"),
    ("5040", "Travel & Transportation", "Flights, Uber, parking, business travel"),
    ("5050", "Meals & Entertainment", "Client dinners, team lunches, business meals"),
    ("5060", "Professional Services", "Legal, accounting, consulting, contractors"),
    ("5070", "Marketing & Advertising", "Google Ads, Facebook, print materials, promotion"),
    ("5080", "Rent & Utilities", "Office rent, electricity, water, gas"),
    ("5090", "Insurance", "Business insurance, liability, property coverage"),
    ("5100", "Equipment & Technology", "Computers, software, hardware purchases"),
    ("5110", "Maintenance & Repairs", "Equipment repairs, building maintenance"),
    ("5120", "Training & Education", "Courses, books, professional development"),
    ("5130", "Bank Fees", "Transaction fees, service charges"),
    ("5140", "Miscellaneous Expenses", "Other business expenses"),
]

DEFAULT_VENDOR_AMOUNT_LIMITS = [
    {"pattern": r"\b(midjourney|openai|chatgpt|anthropic|adobe|slack|zoom|dropbox|github)\b",
     "max_amount": 1000.0, "penalty": 3, "label": "subscription"},
    {"pattern": r"\b(starbucks|uber|lyft|cafe|coffee)\b",
     "max_amount": 500.0, "penalty": 2, "label": "everyday purchase"},
]


def _build_vendor_patterns(records: list[dict]) -> list[VendorPattern]:
    return [
        VendorPattern(pattern=_rx(r["pattern"]), priority=int(r["priority"]), name=r.get("name"))
        for r in records
    ]


def _build_category_rules(records: list[dict]) -> list[CategoryRule]:
    return [
        CategoryRule(pattern=_rx(r["pattern"]), category=str(r["category"]), confidence=int(r["confidence"]))
        for r in records
    ]


def load_rule_tables(rules_file: str | None = None) -> RuleTables:
    """Build the rule tables from the defaults plus an optional JSON extension file."""
    vendor_records = list(DEFAULT_VENDOR_PATTERNS)
    category_records = list(DEFAULT_CATEGORY_RULES)

    if rules_file:
        path = Path(rules_file)
        extra = json.loads(path.read_text(encoding="utf-8"))
        vendor_records.extend(extra.get("vendor_patterns", []))
        category_records.extend(extra.get("category_rules", []))
        logger.info(
            "Loaded rule table extensions",
            rules_file=str(path),
            vendor_patterns=len(extra.get("vendor_patterns", [])),
            category_rules=len(extra.get("category_rules", [])),
        )

    return RuleTables(
        vendor_patterns=tuple(_build_vendor_patterns(vendor_records)),
        category_rules=tuple(_build_category_rules(category_records)),
        categories=tuple(Category(code=c, name=n, description=d) for c, n, d in DEFAULT_CATEGORIES),
        vendor_amount_limits=tuple(
            VendorAmountLimit(
                pattern=_rx(r["pattern"]),
                max_amount=r["max_amount"],
                penalty=r["penalty"],
                label=r["label"],
            )
            for r in DEFAULT_VENDOR_AMOUNT_LIMITS
        ),
    )


@lru_cache(maxsize=1)
def get_rule_tables() -> RuleTables:
    """Rule tables for this process, loaded on first use."""
    return load_rule_tables(settings.rules_file)
