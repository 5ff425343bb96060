"""
SQLite-based vendor mapping repository.

Persists learned vendor → category mappings. Upserts run inside a
``BEGIN IMMEDIATE`` transaction so concurrent writers serialize on the
database write lock; decay is a single UPDATE statement.
"""

import sqlite3
from datetime import datetime

from loguru import logger

from ...core.errors import LearningEngineFailure
from ..invoice_types import AmountRange, VendorMapping
from .vendor_mapping_base import ApplyFn, VendorMappingRepositoryBase


class SQLiteVendorMappingRepository(VendorMappingRepositoryBase):
    """
    SQLite-backed vendor mapping repository.

    Features:
    - Persistent storage across application restarts
    - One row per (normalized_vendor, category), enforced by the primary key
    - Atomic read-modify-write per row
    - Storage errors surface as LearningEngineFailure
    """

    def __init__(self, db_path: str = "vendor_mappings.db", timeout: float = 30.0):
        """
        Initialize repository with database path.

        Args:
            db_path: Path to SQLite database file (default: vendor_mappings.db)
            timeout: Seconds to wait for the database write lock
        """
        self.db_path = db_path
        self.timeout = timeout
        self._init_database()

    def _init_database(self):
        """Create vendor_mappings table if it doesn't exist"""
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout)
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS vendor_mappings (
                    normalized_vendor TEXT NOT NULL,
                    category TEXT NOT NULL,
                    vendor TEXT NOT NULL,
                    count INTEGER NOT NULL DEFAULT 1,
                    confidence REAL NOT NULL DEFAULT 50,
                    last_used TEXT NOT NULL,
                    average_amount REAL NOT NULL DEFAULT 0,
                    amount_min REAL NOT NULL DEFAULT 0,
                    amount_max REAL NOT NULL DEFAULT 0,
                    user_corrections INTEGER NOT NULL DEFAULT 0,
                    auto_assigned INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (normalized_vendor, category),
                    CHECK (confidence >= 0 AND confidence <= 100)
                )
            """)

            # Prediction reads rows per vendor ordered by confidence
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_vendor_confidence
                ON vendor_mappings(normalized_vendor, confidence DESC, count DESC)
            """)

            conn.commit()
            conn.close()
        except sqlite3.Error as e:
            raise LearningEngineFailure(f"Could not initialize vendor mapping store: {e}") from e

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection with row factory and manual transactions"""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @staticmethod
    def _row_to_mapping(row: sqlite3.Row) -> VendorMapping:
        return VendorMapping(
            vendor=row["vendor"],
            normalized_vendor=row["normalized_vendor"],
            category=row["category"],
            count=row["count"],
            confidence=row["confidence"],
            last_used=datetime.fromisoformat(row["last_used"]),
            average_amount=row["average_amount"],
            amount_range=AmountRange(min=row["amount_min"], max=row["amount_max"]),
            user_corrections=row["user_corrections"],
            auto_assigned=bool(row["auto_assigned"]),
        )

    def find_by_vendor(self, normalized_vendor: str, limit: int = 5) -> list[VendorMapping]:
        """
        Get the mappings for a vendor.

        Args:
            normalized_vendor: Vendor name as produced by normalize_vendor()
            limit: Maximum number of rows to return

        Returns:
            Mappings ordered by confidence (desc), then count (desc)
        """
        try:
            conn = self._get_connection()
            try:
                rows = conn.execute("""
                    SELECT * FROM vendor_mappings
                    WHERE normalized_vendor = ?
                    ORDER BY confidence DESC, count DESC
                    LIMIT ?
                """, (normalized_vendor, limit)).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise LearningEngineFailure(f"Could not read vendor mappings: {e}") from e

        return [self._row_to_mapping(row) for row in rows]

    def atomic_upsert(self, normalized_vendor: str, category: str, apply_fn: ApplyFn) -> VendorMapping:
        """
        Read-modify-write one mapping row inside a write transaction.

        Args:
            normalized_vendor: Vendor name as produced by normalize_vendor()
            category: Category code of the row
            apply_fn: Receives the current row (or None) and returns the new row

        Returns:
            The stored row
        """
        try:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute("""
                    SELECT * FROM vendor_mappings
                    WHERE normalized_vendor = ? AND category = ?
                """, (normalized_vendor, category)).fetchone()

                updated = apply_fn(self._row_to_mapping(row) if row else None)

                conn.execute("""
                    INSERT OR REPLACE INTO vendor_mappings (
                        normalized_vendor, category, vendor, count, confidence, last_used,
                        average_amount, amount_min, amount_max, user_corrections, auto_assigned
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    normalized_vendor,
                    category,
                    updated.vendor,
                    updated.count,
                    updated.confidence,
                    updated.last_used.isoformat(),
                    updated.average_amount,
                    updated.amount_range.min,
                    updated.amount_range.max,
                    updated.user_corrections,
                    int(updated.auto_assigned),
                ))
                conn.execute("COMMIT")
            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise LearningEngineFailure(f"Could not update vendor mapping: {e}") from e

        return updated

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
        try:
            conn = self._get_connection()
            try:
                cursor = conn.execute("""
                    UPDATE vendor_mappings
                    SET confidence = confidence * ?
                    WHERE normalized_vendor = ? AND category != ?
                """, (factor, normalized_vendor, winning_category))
                rows_affected = cursor.rowcount
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise LearningEngineFailure(f"Could not decay vendor mappings: {e}") from e

        if rows_affected:
            logger.debug(
                "Decayed sibling categories",
                normalized_vendor=normalized_vendor,
                winning_category=winning_category,
                rows=rows_affected,
            )
        return rows_affected

    def list_all(self) -> list[VendorMapping]:
        """
        List all mappings (most recently used first).

        Returns:
            List of every stored VendorMapping
        """
        try:
            conn = self._get_connection()
            try:
                rows = conn.execute("""
                    SELECT * FROM vendor_mappings
                    ORDER BY last_used DESC
                """).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise LearningEngineFailure(f"Could not list vendor mappings: {e}") from e

        return [self._row_to_mapping(row) for row in rows]
