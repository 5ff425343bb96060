"""
Invoice engine: turns OCR / PDF invoice text into validated, categorized
records and learns vendor categories from confirmations.

The three pure operations (``parse``, ``validate``, ``find_duplicates``) need
no state. ``predict_category`` and ``update_mapping`` run against a default
learning engine backed by the SQLite file named by ``VENDOR_DB_PATH``; build a
``VendorLearningEngine`` yourself to use another repository.
"""

from functools import lru_cache
from typing import Any

from .services.duplicates import find_duplicates
from .services.invoice_types import (
    CategoryPrediction,
    DuplicateCandidate,
    ParsedInvoiceData,
    RawExtraction,
    StoredInvoice,
    ValidationResult,
)
from .services.learning import VendorLearningEngine
from .services.field_extractor import parse_invoice_data
from .services.storage import SQLiteVendorMappingRepository
from .services.validation import validate_invoice_data
from .core.config import settings

__all__ = [
    "CategoryPrediction",
    "DuplicateCandidate",
    "ParsedInvoiceData",
    "RawExtraction",
    "StoredInvoice",
    "ValidationResult",
    "VendorLearningEngine",
    "find_duplicates",
    "get_default_engine",
    "parse",
    "predict_category",
    "update_mapping",
    "validate",
]


def parse(text: str, metadata: dict[str, Any] | None = None) -> ParsedInvoiceData:
    return parse_invoice_data(text, metadata)


def validate(
    parsed: ParsedInvoiceData,
    extraction_metadata: RawExtraction | dict | None = None,
) -> ValidationResult:
    return validate_invoice_data(parsed, extraction_metadata)


@lru_cache(maxsize=1)
def get_default_engine() -> VendorLearningEngine:
    """Learning engine over the SQLite database configured in settings"""
    return VendorLearningEngine(SQLiteVendorMappingRepository(settings.vendor_db_path))


def predict_category(vendor: str, amount: float | None = None) -> CategoryPrediction | None:
    return get_default_engine().predict_category(vendor, amount)


def update_mapping(vendor: str, category: str, amount: float = 0.0, is_user_corrected: bool = False) -> bool:
    return get_default_engine().update_mapping(vendor, category, amount, is_user_corrected)
