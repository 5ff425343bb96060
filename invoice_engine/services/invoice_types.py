from datetime import date as Date, datetime, UTC
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ExtractionMethod(str, Enum):
    NATIVE_TEXT = "native-text"
    OPTICAL = "optical"


class RawExtraction(BaseModel):
    """Text pulled out of one uploaded document. Never mutated after creation."""
    model_config = ConfigDict(frozen=True)

    text: str = ""
    page_count: int = 1
    extraction_method: ExtractionMethod = ExtractionMethod.NATIVE_TEXT
    confidence: float = Field(default=0.0, ge=0, le=100)
    processing_time_ms: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None  # Set when this is a degraded record


class ExtractionQuality(BaseModel):
    quality_score: float
    issues: list[str] = []
    needs_review: bool = False
    extraction_method: ExtractionMethod


class LineItem(BaseModel):
    description: str
    amount: float
    quantity: int = 1


class ParsedInvoiceData(BaseModel):
    vendor: str = "Unknown Vendor"
    date: Date
    amount: float = Field(default=0.0, ge=0)
    line_items: list[LineItem] = []
    tax: float = Field(default=0.0, ge=0)
    subtotal: float = Field(default=0.0, ge=0)
    parsing_confidence: float = Field(default=0.0, ge=0, le=100)
    parsing_method: Literal["rules", "llm", "llm-fallback"] = "rules"


class ValidationResult(BaseModel):
    is_valid: bool = True  # Validation only ever degrades confidence
    date_valid: bool
    amount_valid: bool
    vendor_valid: bool
    line_items_valid: bool
    overall_confidence: float = Field(ge=20, le=100)
    issues: list[str] = []
    needs_review: bool

    @model_validator(mode="after")
    def _review_flag_matches_score(self):
        expected = self.overall_confidence < 80 or len(self.issues) > 3
        if self.needs_review != expected:
            raise ValueError("needs_review must be true iff overall_confidence < 80 or more than 3 issues")
        return self


class AmountRange(BaseModel):
    min: float = 0.0
    max: float = 0.0


class VendorMapping(BaseModel):
    vendor: str
    normalized_vendor: str
    category: str
    count: int = Field(default=1, ge=0)
    confidence: float = Field(default=50.0, ge=0, le=100)
    last_used: datetime = Field(default_factory=lambda: datetime.now(UTC))
    average_amount: float = 0.0
    amount_range: AmountRange = Field(default_factory=AmountRange)
    user_corrections: int = Field(default=0, ge=0)
    auto_assigned: bool = False


class CategoryAlternative(BaseModel):
    category: str
    confidence: int
    name: str | None = None


class CategoryPrediction(BaseModel):
    category: str
    confidence: int
    reason: str
    score: float | None = None
    name: str | None = None
    source: Literal["learned", "rules", "amount", "default"] = "learned"
    alternatives: list[CategoryAlternative] = []


class StoredInvoice(BaseModel):
    """A previously processed invoice as read back from the invoice store"""
    invoice_id: str
    vendor: str
    amount: float
    date: Date
    category: str | None = None
    is_duplicate: bool = False


class DuplicateCandidate(BaseModel):
    invoice_id: str
    similarity_score: int = Field(ge=0, le=100)


class ProcessedInvoice(BaseModel):
    invoice_id: str | None = None  # Set when the invoice was stored
    extraction: RawExtraction
    quality: ExtractionQuality
    parsed: ParsedInvoiceData
    invoice_metadata: dict[str, Any] = Field(default_factory=dict)
    validation: ValidationResult
    duplicates: list[DuplicateCandidate] = []
    prediction: CategoryPrediction | None = None
    is_duplicate: bool = False
    needs_review: bool = False
    processing_time_ms: int = 0
