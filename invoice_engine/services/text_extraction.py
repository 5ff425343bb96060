"""
Text extraction from uploaded invoice documents.

PDFs are read natively with pdfplumber first; scanned PDFs and images go
through Azure Document Intelligence (``prebuilt-read``) when it is configured.
Every strategy either returns a RawExtraction or passes; if none succeeds an
ExtractionFailure is raised and the caller decides how to degrade.
"""

import re
import time
from pathlib import Path
from typing import Callable

import pdfplumber
from azure.ai.documentintelligence import DocumentIntelligenceClient
from azure.core.credentials import AzureKeyCredential
from loguru import logger

from ..core.config import settings
from ..core.errors import ExtractionFailure
from .invoice_types import ExtractionMethod, ExtractionQuality, RawExtraction

PDF_TYPES = {"pdf"}
IMAGE_TYPES = {"jpg", "jpeg", "png", "tiff", "bmp"}

MIN_NATIVE_TEXT_LENGTH = 50

_HAS_CURRENCY = re.compile(r"\$|\d+\.\d{2}")
_HAS_DATE = re.compile(r"\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4}")
_HAS_ANY_DATE = re.compile(r"\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4}|\d{4}-\d{2}-\d{2}")
_PDF_ARTIFACTS = re.compile(r"[|]{2,}|_{3,}|\.{4,}|[^\w\s$.,/:#()-]")
_OCR_ARTIFACTS = re.compile(r"[|]{2,}|_{3,}|\s{5,}")

Strategy = Callable[[Path], RawExtraction | None]


def calculate_pdf_confidence(text: str) -> float:
    """Heuristic confidence for natively extracted PDF text, in [10, 95]."""
    if not text or len(text) < 10:
        return 20.0

    confidence = 85

    if _PDF_ARTIFACTS.search(text):
        confidence -= 15

    words = text.split()
    if len(words) < 5:
        confidence -= 25
    elif len(words) > 50:
        confidence += 10

    if not re.search(r"\d", text):
        confidence -= 20
    if not _HAS_CURRENCY.search(text):
        confidence -= 10
    if _HAS_DATE.search(text):
        confidence += 5

    if "\n" in text and ":" in text:
        confidence += 5

    return float(max(10, min(95, confidence)))


def calculate_ocr_confidence(text: str, raw_confidence: float, word_confidences: list[float] | None = None) -> float:
    """Adjust an OCR engine's confidence (0-100) by what the text looks like."""
    if not text or len(text) < 5:
        return 0.0

    confidence = raw_confidence or 0.0

    if len(text) < 20:
        confidence *= 0.7
    if re.search(r"\$\d+\.\d{2}", text):
        confidence += 10
    if _HAS_DATE.search(text):
        confidence += 5

    special_ratio = len(re.findall(r"[^a-zA-Z0-9\s$.,/:-]", text)) / len(text)
    if special_ratio > 0.1:
        confidence *= 1 - special_ratio

    if word_confidences:
        low_ratio = sum(1 for c in word_confidences if c < 60) / len(word_confidences)
        if low_ratio > 0.3:
            confidence *= 1 - low_ratio * 0.5

    return float(max(0, min(100, round(confidence))))


def _looks_like_invoice_text(text: str) -> bool:
    clean = re.sub(r"\s+", " ", text.strip())
    has_numbers = bool(re.search(r"\d", clean))
    return len(clean) > MIN_NATIVE_TEXT_LENGTH and (has_numbers or bool(_HAS_CURRENCY.search(clean)))


def extract_native_pdf_text(file_path: Path) -> RawExtraction | None:
    """Text layer of a PDF, or None when it looks image-based."""
    start = time.monotonic()

    with pdfplumber.open(file_path) as pdf:
        page_count = len(pdf.pages)
        texts = []
        for page in pdf.pages:
            t = page.extract_text() or ""
            if t.strip():
                texts.append(t)
        info = dict(pdf.metadata or {})

    text = "\n".join(texts)
    if not _looks_like_invoice_text(text):
        logger.info("PDF appears to be image-based", file=str(file_path), chars=len(text))
        return None

    return RawExtraction(
        text=text,
        page_count=page_count,
        extraction_method=ExtractionMethod.NATIVE_TEXT,
        confidence=calculate_pdf_confidence(text),
        processing_time_ms=int((time.monotonic() - start) * 1000),
        metadata={"pages": page_count, "info": {k: str(v) for k, v in info.items()}, "text_length": len(text)},
    )


def extract_optical_text(file_path: Path) -> RawExtraction | None:
    """OCR through Azure Document Intelligence, or None when it is not configured."""
    if not (settings.az_di_endpoint and settings.az_di_api_key):
        logger.warning(
            "Azure Document Intelligence not configured - optical extraction unavailable. "
            "Set AZ_DI_ENDPOINT and AZ_DI_API_KEY to enable it."
        )
        return None

    start = time.monotonic()
    client = DocumentIntelligenceClient(
        endpoint=settings.az_di_endpoint,
        credential=AzureKeyCredential(settings.az_di_api_key),
    )

    file_bytes = file_path.read_bytes()
    logger.info("Analyzing document with Azure DI", file=str(file_path), size_bytes=len(file_bytes))

    poller = client.begin_analyze_document(
        "prebuilt-read",
        body=file_bytes,
        content_type="application/octet-stream",
    )
    result = poller.result()

    text = result.content or ""
    pages = result.pages or []
    word_confidences = [
        word.confidence * 100
        for page in pages
        for word in (page.words or [])
        if word.confidence is not None
    ]
    raw_confidence = sum(word_confidences) / len(word_confidences) if word_confidences else 0.0

    return RawExtraction(
        text=text,
        page_count=max(1, len(pages)),
        extraction_method=ExtractionMethod.OPTICAL,
        confidence=calculate_ocr_confidence(text, raw_confidence, word_confidences),
        processing_time_ms=int((time.monotonic() - start) * 1000),
        metadata={"model": "prebuilt-read", "word_count": len(word_confidences), "raw_confidence": raw_confidence},
    )


def strategies_for(file_type: str) -> list[Strategy]:
    file_type = file_type.lower().lstrip(".")
    if file_type in PDF_TYPES:
        return [extract_native_pdf_text, extract_optical_text]
    if file_type in IMAGE_TYPES:
        return [extract_optical_text]
    raise ExtractionFailure(f"Unsupported file type: {file_type}")


def extract_text(file_path: str | Path, file_type: str | None = None) -> RawExtraction:
    """
    Extract text from a PDF or image.

    Args:
        file_path: Path to the document
        file_type: Declared type ("pdf", "jpg", ...); defaults to the file suffix

    Returns:
        RawExtraction from the first strategy that produced text

    Raises:
        ExtractionFailure: Unsupported type, or every strategy failed
    """
    path = Path(file_path)
    file_type = file_type or path.suffix

    errors = []
    for strategy in strategies_for(file_type):
        try:
            extraction = strategy(path)
        except Exception as e:
            logger.warning("Text extraction strategy failed", strategy=strategy.__name__, file=str(path), error=str(e))
            errors.append(f"{strategy.__name__}: {e}")
            continue

        if extraction is not None and extraction.text.strip():
            logger.info(
                "Text extracted",
                file=str(path),
                method=extraction.extraction_method.value,
                pages=extraction.page_count,
                confidence=extraction.confidence,
            )
            return extraction

    raise ExtractionFailure(
        f"Failed to extract text from {path.name}" + (f": {'; '.join(errors)}" if errors else "")
    )


def degraded_extraction(error: str, file_type: str | None = None) -> RawExtraction:
    """Empty-text stand-in used when extraction failed but processing continues."""
    method = ExtractionMethod.OPTICAL if (file_type or "").lower().lstrip(".") in IMAGE_TYPES else ExtractionMethod.NATIVE_TEXT
    return RawExtraction(text="", confidence=0.0, extraction_method=method, error=error)


def validate_extraction_quality(extraction: RawExtraction) -> ExtractionQuality:
    """Score how usable the extracted text is before parsing."""
    text = extraction.text
    issues = []
    quality_score = extraction.confidence

    if len(text) < 20:
        issues.append("Very short text extracted - may be incomplete")
        quality_score -= 20

    if not _HAS_CURRENCY.search(text):
        issues.append("No currency amounts detected")
        quality_score -= 15

    if not _HAS_ANY_DATE.search(text):
        issues.append("No date pattern detected")
        quality_score -= 10

    if extraction.extraction_method == ExtractionMethod.OPTICAL:
        if extraction.confidence < 70:
            issues.append("Low OCR confidence - image quality may be poor")
            quality_score -= 10
        if _OCR_ARTIFACTS.search(text):
            issues.append("OCR artifacts detected - may need manual review")
            quality_score -= 5
    elif extraction.confidence < 80:
        issues.append("PDF extraction had issues - might be image-based")

    quality_score = max(0.0, quality_score)
    return ExtractionQuality(
        quality_score=quality_score,
        issues=issues,
        needs_review=quality_score < 70 or len(issues) > 2,
        extraction_method=extraction.extraction_method,
    )
