"""
Online vendor → category learning.

Every confirmed (vendor, category) pair updates a per-row statistic; the other
categories of the same vendor decay multiplicatively, so repeated confirmation
of one category erodes trust in the alternatives. Predictions rank the stored
rows by a composite score but report the row's raw confidence.
"""

import math
import re
from datetime import datetime, UTC
from typing import Iterable

from loguru import logger
from pydantic import BaseModel

from ..core.config import settings
from ..core.errors import LearningEngineFailure
from .invoice_types import (
    AmountRange,
    CategoryAlternative,
    CategoryPrediction,
    StoredInvoice,
    VendorMapping,
)
from .storage.vendor_mapping_base import VendorMappingRepositoryBase

UNKNOWN_VENDOR = "Unknown Vendor"
PREDICTION_CANDIDATES = 5


class BootstrapResult(BaseModel):
    learned: int = 0
    skipped: int = 0


class VendorStatistic(BaseModel):
    normalized_vendor: str
    categories: int
    total_count: int
    average_confidence: float


def normalize_vendor(vendor: str) -> str:
    """Lower-case, drop punctuation, collapse whitespace. Idempotent."""
    normalized = re.sub(r"[^a-z0-9\s]", "", (vendor or "").lower())
    return re.sub(r"\s+", " ", normalized).strip()


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def apply_observation(
    existing: VendorMapping | None,
    vendor: str,
    category: str,
    amount: float,
    is_user_corrected: bool,
    now: datetime | None = None,
) -> VendorMapping:
    """
    Pure update rule for one (vendor, category) row.

    Args:
        existing: Current row, or None when the pair has never been seen
        vendor: Vendor name as it appeared on the invoice
        category: Confirmed category code
        amount: Invoice total; only positive amounts feed the amount statistics
        is_user_corrected: Whether a person chose this category
        now: Timestamp to record as last_used (defaults to now, UTC)

    Returns:
        The new row
    """
    now = now or datetime.now(UTC)

    if existing is None:
        has_amount = amount > 0
        return VendorMapping(
            vendor=vendor,
            normalized_vendor=normalize_vendor(vendor),
            category=category,
            count=1,
            confidence=70.0 if is_user_corrected else 50.0,
            last_used=now,
            average_amount=amount if has_amount else 0.0,
            amount_range=AmountRange(min=amount, max=amount) if has_amount else AmountRange(),
            user_corrections=1 if is_user_corrected else 0,
            auto_assigned=not is_user_corrected,
        )

    count = existing.count + 1
    average_amount = existing.average_amount
    amount_range = existing.amount_range
    if amount > 0:
        average_amount = (existing.average_amount * (count - 1) + amount) / count
        amount_range = AmountRange(
            min=min(existing.amount_range.min or amount, amount),
            max=max(existing.amount_range.max or amount, amount),
        )

    user_corrections = existing.user_corrections
    if is_user_corrected:
        user_corrections += 1
        confidence = min(100.0, existing.confidence + 10)
    else:
        confidence = float(min(100, 50 + (count - 1) * 5 + user_corrections * 10))

    return existing.model_copy(update={
        "vendor": vendor,
        "count": count,
        "confidence": confidence,
        "last_used": now,
        "average_amount": average_amount,
        "amount_range": amount_range,
        "user_corrections": user_corrections,
    })


def score_mapping(mapping: VendorMapping, amount: float | None = None, now: datetime | None = None) -> float:
    """Composite ranking score; only used to order candidates."""
    now = now or datetime.now(UTC)
    score = mapping.confidence

    # Frequency, with diminishing returns
    score += math.log10(mapping.count + 1) * 10

    days_since_use = (now - mapping.last_used).total_seconds() / 86400
    if days_since_use < 30:
        score += 10
    elif days_since_use < 90:
        score += 5

    score += mapping.user_corrections * 15

    low, high = mapping.amount_range.min, mapping.amount_range.max
    if amount and low and high and not (low * 0.5 <= amount <= high * 2):
        score -= 5

    return score


class VendorLearningEngine:
    """
    Learns vendor → category mappings from confirmed categorizations.

    Storage failures never propagate: predictions degrade to None and updates
    report False, so callers can fall back to static rules.
    """

    def __init__(self, repository: VendorMappingRepositoryBase, decay_factor: float | None = None):
        self.repository = repository
        self.decay_factor = settings.decay_factor if decay_factor is None else decay_factor

    def update_mapping(
        self,
        vendor: str,
        category: str,
        amount: float = 0.0,
        is_user_corrected: bool = False,
    ) -> bool:
        """
        Record a confirmed category for a vendor and decay its competitors.

        Returns:
            True if the mapping was stored, False if learning was skipped or failed
        """
        normalized = normalize_vendor(vendor)
        if not normalized or not category:
            logger.warning("Skipping vendor mapping update", vendor=vendor, category=category)
            return False

        try:
            mapping = self.repository.atomic_upsert(
                normalized,
                category,
                lambda existing: apply_observation(existing, vendor, category, amount or 0.0, is_user_corrected),
            )
            self.repository.decay_siblings(normalized, category, self.decay_factor)
        except LearningEngineFailure as e:
            logger.error("Vendor mapping update failed", vendor=vendor, category=category, error=str(e))
            return False

        logger.info(
            "Vendor mapping updated",
            vendor=vendor,
            category=category,
            count=mapping.count,
            confidence=round(mapping.confidence, 2),
            user_corrected=is_user_corrected,
        )
        return True

    def predict_category(
        self,
        vendor: str,
        amount: float | None = None,
        now: datetime | None = None,
    ) -> CategoryPrediction | None:
        """
        Predict a category from previously learned mappings.

        Args:
            vendor: Vendor name as parsed
            amount: Invoice total, used to penalize out-of-range amounts
            now: Reference time for the recency bonus (defaults to now, UTC)

        Returns:
            CategoryPrediction, or None when the vendor is unknown or the store failed
        """
        normalized = normalize_vendor(vendor)
        if not normalized:
            return None

        try:
            mappings = self.repository.find_by_vendor(normalized, limit=PREDICTION_CANDIDATES)
        except LearningEngineFailure as e:
            logger.error("Vendor mapping lookup failed", vendor=vendor, error=str(e))
            return None

        if not mappings:
            return None

        now = now or datetime.now(UTC)
        scored = sorted(
            ((score_mapping(m, amount, now), m) for m in mappings),
            key=lambda pair: pair[0],
            reverse=True,
        )
        best_score, best = scored[0]

        return CategoryPrediction(
            category=best.category,
            confidence=round_half_up(best.confidence),
            reason=f"Based on {best.count} previous transactions",
            score=best_score,
            source="learned",
            alternatives=[
                CategoryAlternative(category=m.category, confidence=round_half_up(m.confidence))
                for _, m in scored[1:3]
            ],
        )

    def bootstrap(self, invoices: Iterable[StoredInvoice], is_user_corrected: bool = False) -> BootstrapResult:
        """Replay previously categorized invoices into the engine, oldest first."""
        result = BootstrapResult()

        for invoice in invoices:
            if invoice.vendor == UNKNOWN_VENDOR or invoice.is_duplicate or not invoice.category:
                result.skipped += 1
                continue

            if self.update_mapping(invoice.vendor, invoice.category, invoice.amount, is_user_corrected):
                result.learned += 1
            else:
                result.skipped += 1

        logger.info("Learning bootstrap complete", learned=result.learned, skipped=result.skipped)
        return result

    def vendor_statistics(self, limit: int = 10) -> list[VendorStatistic]:
        """Top vendors by number of learned transactions."""
        try:
            mappings = self.repository.list_all()
        except LearningEngineFailure as e:
            logger.error("Vendor statistics unavailable", error=str(e))
            return []

        grouped: dict[str, list[VendorMapping]] = {}
        for mapping in mappings:
            grouped.setdefault(mapping.normalized_vendor, []).append(mapping)

        stats = [
            VendorStatistic(
                normalized_vendor=vendor,
                categories=len(rows),
                total_count=sum(r.count for r in rows),
                average_confidence=sum(r.confidence for r in rows) / len(rows),
            )
            for vendor, rows in grouped.items()
        ]
        stats.sort(key=lambda s: s.total_count, reverse=True)
        return stats[:limit]
