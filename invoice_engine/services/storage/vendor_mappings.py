"""
In-memory vendor mapping repository (for tests and demos).
Use the SQLite repository for anything that must survive a restart.
"""
import threading
from collections import defaultdict

from ..invoice_types import VendorMapping
from .vendor_mapping_base import ApplyFn, VendorMappingRepositoryBase


class InMemoryVendorMappingRepository(VendorMappingRepositoryBase):
    def __init__(self):
        self._rows: dict[tuple[str, str], VendorMapping] = {}
        self._row_locks: defaultdict[tuple[str, str], threading.Lock] = defaultdict(threading.Lock)
        self._registry_lock = threading.Lock()
        self._bulk_lock = threading.Lock()

    def _lock_for(self, key: tuple[str, str]) -> threading.Lock:
        with self._registry_lock:
            return self._row_locks[key]

    def find_by_vendor(self, normalized_vendor: str, limit: int = 5) -> list[VendorMapping]:
        rows = [m for (vendor, _), m in list(self._rows.items()) if vendor == normalized_vendor]
        rows.sort(key=lambda m: (m.confidence, m.count), reverse=True)
        return rows[:limit]

    def atomic_upsert(self, normalized_vendor: str, category: str, apply_fn: ApplyFn) -> VendorMapping:
        """Apply an update to one row while holding that row's lock"""
        key = (normalized_vendor, category)
        with self._lock_for(key):
            updated = apply_fn(self._rows.get(key))
            self._rows[key] = updated
            return updated

    def decay_siblings(self, normalized_vendor: str, winning_category: str, factor: float) -> int:
        """Decay all other categories of a vendor in one step"""
        updated = 0
        with self._bulk_lock:
            for vendor, category in list(self._rows):
                if vendor != normalized_vendor or category == winning_category:
                    continue
                with self._lock_for((vendor, category)):
                    current = self._rows[(vendor, category)]
                    self._rows[(vendor, category)] = current.model_copy(
                        update={"confidence": current.confidence * factor}
                    )
                updated += 1
        return updated

    def list_all(self) -> list[VendorMapping]:
        return list(self._rows.values())
