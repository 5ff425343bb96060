"""
Fuzzy duplicate-invoice detection.

Prior invoices are first narrowed to a window (similar vendor, amount within
5%, date within one day) and then scored pairwise. Scores are symmetric and
capped at 100.
"""

from datetime import date
from typing import Protocol

from loguru import logger
from pydantic import BaseModel

from ..core.errors import DuplicateScanFailure
from .invoice_types import DuplicateCandidate, StoredInvoice

AMOUNT_WINDOW = 0.05
DATE_WINDOW_DAYS = 1


class InvoiceFingerprint(BaseModel):
    """The three fields duplicate scoring looks at"""
    vendor: str
    amount: float
    date: date


class DuplicateStore(Protocol):
    def find_potential_duplicates(self, vendor: str, amount: float, invoice_date: date) -> list[StoredInvoice]:
        ...


def _vendor_overlap(a: str, b: str) -> bool:
    a, b = a.lower(), b.lower()
    return a in b or b in a


def calculate_similarity(a: InvoiceFingerprint | StoredInvoice, b: InvoiceFingerprint | StoredInvoice) -> int:
    score = 0

    # Amount
    if a.amount == b.amount:
        score += 40
    else:
        larger = max(a.amount, b.amount)
        diff = abs(a.amount - b.amount) / larger if larger > 0 else 1.0
        if diff < 0.05:
            score += 30
        elif diff < 0.10:
            score += 20

    # Vendor
    if a.vendor.lower() == b.vendor.lower():
        score += 30
    elif _vendor_overlap(a.vendor, b.vendor):
        score += 20

    # Date
    days_apart = abs((a.date - b.date).days)
    if days_apart == 0:
        score += 30
    elif days_apart <= 1:
        score += 20
    elif days_apart <= 7:
        score += 10

    return min(score, 100)


def in_duplicate_window(vendor: str, amount: float, invoice_date: date, stored: StoredInvoice) -> bool:
    """True when a stored invoice is close enough to be scored as a possible duplicate."""
    if stored.is_duplicate:
        return False
    if not _vendor_overlap(vendor, stored.vendor):
        return False
    if not amount * (1 - AMOUNT_WINDOW) <= stored.amount <= amount * (1 + AMOUNT_WINDOW):
        return False
    return abs((stored.date - invoice_date).days) <= DATE_WINDOW_DAYS


def find_duplicates(
    vendor: str,
    amount: float,
    invoice_date: date,
    candidates: list[StoredInvoice],
    exclude_id: str | None = None,
) -> list[DuplicateCandidate]:
    """
    Score prior invoices against a new one.

    Args:
        vendor: Vendor of the new invoice
        amount: Total of the new invoice
        invoice_date: Date of the new invoice
        candidates: Prior invoices to compare against
        exclude_id: Invoice ID to skip (the new invoice itself, if already stored)

    Returns:
        Candidates inside the duplicate window, highest similarity first
    """
    probe = InvoiceFingerprint(vendor=vendor, amount=amount, date=invoice_date)

    results = [
        DuplicateCandidate(invoice_id=stored.invoice_id, similarity_score=calculate_similarity(probe, stored))
        for stored in candidates
        if stored.invoice_id != exclude_id and in_duplicate_window(vendor, amount, invoice_date, stored)
    ]
    results.sort(key=lambda c: c.similarity_score, reverse=True)
    return results


class DuplicateDetector:
    """Runs duplicate scans against an invoice store. Store failures never propagate."""

    def __init__(self, store: DuplicateStore):
        self.store = store

    def scan(
        self,
        vendor: str,
        amount: float,
        invoice_date: date,
        exclude_id: str | None = None,
    ) -> list[DuplicateCandidate]:
        try:
            window = self.store.find_potential_duplicates(vendor, amount, invoice_date)
        except DuplicateScanFailure as e:
            logger.error("Duplicate scan failed", vendor=vendor, error=str(e))
            return []

        duplicates = find_duplicates(vendor, amount, invoice_date, window, exclude_id=exclude_id)
        if duplicates:
            logger.info(
                "Potential duplicates found",
                vendor=vendor,
                count=len(duplicates),
                best_score=duplicates[0].similarity_score,
            )
        return duplicates
