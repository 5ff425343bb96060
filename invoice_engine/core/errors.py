"""
Exception hierarchy for the invoice engine.

None of these are allowed to escape invoice processing: every seam that can
raise one of them (text extraction, LLM parsing, learning store, duplicate
store) catches it, logs it, and continues with a degraded result.
"""


class InvoiceEngineError(Exception):
    """Base class for all invoice engine errors"""


class ExtractionFailure(InvoiceEngineError):
    """The OCR / PDF text collaborator failed or produced no text"""


class ParsingAnomaly(InvoiceEngineError):
    """A field could not be parsed; always recovered by a documented fallback"""


class LLMParseError(ParsingAnomaly):
    """The LLM collaborator call failed or returned nothing usable"""


class LearningEngineFailure(InvoiceEngineError):
    """The vendor mapping store is unavailable or rejected an operation"""


class DuplicateScanFailure(InvoiceEngineError):
    """Prior invoices could not be read for duplicate scanning"""
