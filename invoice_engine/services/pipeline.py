"""
Invoice processing pipeline.

extraction → quality check → parse → validation → duplicate scan → category
prediction → auto-learn. Every collaborator failure is logged and degraded;
processing an invoice never raises.
"""

import sqlite3
import time
from datetime import date
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from ..core.config import settings
from ..core.errors import ExtractionFailure, LLMParseError
from .categorization import CategoryPredictor
from .duplicates import DuplicateDetector
from .field_extractor import extract_metadata, parse_invoice_data
from .invoice_types import ExtractionMethod, ParsedInvoiceData, ProcessedInvoice, RawExtraction
from .learning import VendorLearningEngine
from .llm_parser import LLMInvoiceParser
from .storage.invoices_sqlite import SQLiteInvoiceStore
from .text_extraction import (
    calculate_pdf_confidence,
    degraded_extraction,
    extract_text,
    validate_extraction_quality,
)
from .validation import validate_invoice_data

ParseStrategy = Callable[[str, dict], ParsedInvoiceData]


class InvoicePipeline:
    """
    Orchestrates one invoice from file (or raw text) to a ProcessedInvoice.

    All collaborators are optional: without a learning engine predictions come
    from the rule tables only, without an invoice store no duplicate scan runs
    and nothing is saved, and the LLM parser is only used when configured.
    """

    def __init__(
        self,
        engine: VendorLearningEngine | None = None,
        invoice_store: SQLiteInvoiceStore | None = None,
        llm_parser: LLMInvoiceParser | None = None,
        predictor: CategoryPredictor | None = None,
        auto_learn_min_confidence: float | None = None,
        today: date | None = None,
    ):
        self.engine = engine
        self.invoice_store = invoice_store
        self.llm_parser = llm_parser if llm_parser is not None else LLMInvoiceParser()
        self.predictor = predictor or CategoryPredictor(engine)
        self.duplicate_detector = DuplicateDetector(invoice_store) if invoice_store is not None else None
        self.auto_learn_min_confidence = (
            settings.auto_learn_min_confidence if auto_learn_min_confidence is None else auto_learn_min_confidence
        )
        self.today = today

    def _parse_with_llm(self, text: str, metadata: dict) -> ParsedInvoiceData:
        parsed = self.llm_parser.parse(text, metadata, today=self.today)
        if parsed.parsing_method == "llm-fallback":
            raise LLMParseError("LLM response could not be read")
        return parsed

    def _parse_with_rules(self, text: str, metadata: dict) -> ParsedInvoiceData:
        return parse_invoice_data(text, metadata, today=self.today)

    @property
    def parse_strategies(self) -> list[ParseStrategy]:
        if self.llm_parser.is_configured:
            return [self._parse_with_llm, self._parse_with_rules]
        return [self._parse_with_rules]

    def parse(self, text: str, metadata: dict | None = None) -> ParsedInvoiceData:
        metadata = metadata or {}
        for strategy in self.parse_strategies[:-1]:
            try:
                return strategy(text, metadata)
            except LLMParseError as e:
                logger.warning("LLM parsing failed, falling back to rules", error=str(e))
        return self.parse_strategies[-1](text, metadata)

    def process_file(self, file_path: str | Path, file_type: str | None = None) -> ProcessedInvoice:
        """
        Process an invoice document.

        Args:
            file_path: Path to a PDF or image
            file_type: Declared type; defaults to the file suffix

        Returns:
            ProcessedInvoice (with an empty-text extraction if extraction failed)
        """
        path = Path(file_path)
        start = time.monotonic()

        try:
            extraction = extract_text(path, file_type)
        except ExtractionFailure as e:
            logger.error("Text extraction failed, continuing with empty text", file=str(path), error=str(e))
            extraction = degraded_extraction(str(e), file_type or path.suffix)

        return self._process(extraction, start)

    def process_text(self, text: str, metadata: dict[str, Any] | None = None) -> ProcessedInvoice:
        """
        Process already-extracted invoice text.

        ``metadata`` may carry ``ocr_confidence`` and ``page_count`` from the
        caller's own extraction step.
        """
        start = time.monotonic()
        metadata = metadata or {}
        ocr_confidence = metadata.get("ocr_confidence")

        extraction = RawExtraction(
            text=text or "",
            page_count=metadata.get("page_count") or 1,
            extraction_method=ExtractionMethod.OPTICAL if ocr_confidence is not None else ExtractionMethod.NATIVE_TEXT,
            confidence=ocr_confidence if ocr_confidence is not None else calculate_pdf_confidence(text or ""),
            metadata=metadata,
        )
        return self._process(extraction, start)

    def _process(self, extraction: RawExtraction, start: float) -> ProcessedInvoice:
        quality = validate_extraction_quality(extraction)
        parsed = self.parse(extraction.text, extraction.metadata | {"page_count": extraction.page_count})
        validation = validate_invoice_data(parsed, extraction, today=self.today)

        duplicates = []
        if self.duplicate_detector is not None:
            duplicates = self.duplicate_detector.scan(parsed.vendor, parsed.amount, parsed.date)
        is_duplicate = len(duplicates) > 0

        prediction = self.predictor.predict(parsed.vendor, parsed.amount)

        invoice_id = None
        if self.invoice_store is not None:
            try:
                invoice_id = self.invoice_store.save(
                    parsed.vendor,
                    parsed.amount,
                    parsed.date,
                    category=prediction.category,
                    is_duplicate=is_duplicate,
                )
            except sqlite3.Error as e:
                logger.error("Could not store invoice", vendor=parsed.vendor, error=str(e))

        if (
            self.engine is not None
            and prediction.confidence >= self.auto_learn_min_confidence
            and not is_duplicate
        ):
            self.engine.update_mapping(parsed.vendor, prediction.category, parsed.amount, is_user_corrected=False)

        result = ProcessedInvoice(
            invoice_id=invoice_id,
            extraction=extraction,
            quality=quality,
            parsed=parsed,
            invoice_metadata=extract_metadata(extraction.text),
            validation=validation,
            duplicates=duplicates,
            prediction=prediction,
            is_duplicate=is_duplicate,
            needs_review=validation.needs_review or quality.needs_review,
            processing_time_ms=int((time.monotonic() - start) * 1000),
        )

        logger.info(
            "Invoice processed",
            vendor=parsed.vendor,
            amount=parsed.amount,
            category=prediction.category,
            confidence=validation.overall_confidence,
            needs_review=result.needs_review,
            is_duplicate=is_duplicate,
        )
        return result

    def confirm_category(self, vendor: str, category: str, amount: float = 0.0) -> bool:
        """Record a category chosen by a person."""
        if self.engine is None:
            logger.warning("No learning engine configured, correction not recorded", vendor=vendor)
            return False
        return self.engine.update_mapping(vendor, category, amount, is_user_corrected=True)
