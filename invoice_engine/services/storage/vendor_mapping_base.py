"""
Abstract base class for vendor mapping repositories.

Defines the interface the learning engine depends on, so storage backends can
be swapped (in-memory for tests, SQLite for single-instance deployments).
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional

from ..invoice_types import VendorMapping

ApplyFn = Callable[[Optional[VendorMapping]], VendorMapping]


class VendorMappingRepositoryBase(ABC):
    """
    Abstract base class for vendor → category mapping storage.

    There is one row per (normalized_vendor, category). Rows are never deleted;
    losing categories only see their confidence decay.
    """

    @abstractmethod
    def find_by_vendor(self, normalized_vendor: str, limit: int = 5) -> list[VendorMapping]:
        """
        Get the mappings for a vendor.

        Args:
            normalized_vendor: Vendor name as produced by normalize_vendor()
            limit: Maximum number of rows to return

        Returns:
            Mappings ordered by confidence (desc), then count (desc)
        """
        pass

    @abstractmethod
    def atomic_upsert(self, normalized_vendor: str, category: str, apply_fn: ApplyFn) -> VendorMapping:
        """
        Read-modify-write one mapping row atomically.

        Args:
            normalized_vendor: Vendor name as produced by normalize_vendor()
            category: Category code of the row
            apply_fn: Receives the current row (or None) and returns the new row

        Returns:
            The stored row
        """
        pass

    @abstractmethod
    def decay_siblings(self, normalized_vendor: str, winning_category: str, factor: float) -> int:
        """
        Multiply the confidence of every other category for a vendor by factor.

        Args:
            normalized_vendor: Vendor name as produced by normalize_vendor()
            winning_category: Category that is left untouched
            factor: Multiplicative decay (e.g. 0.95)

        Returns:
            Number of rows updated
        """
        pass

    @abstractmethod
    def list_all(self) -> list[VendorMapping]:
        """
        List all mappings.

        Returns:
            List of every stored VendorMapping
        """
        pass
