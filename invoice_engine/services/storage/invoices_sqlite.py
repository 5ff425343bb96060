"""
SQLite-based store of previously processed invoices.

Only what duplicate detection and learning bootstrap need is kept: vendor,
amount, date, category and the duplicate flag.
"""

import sqlite3
import uuid
from datetime import date, datetime, timedelta, UTC
from typing import Optional

from ...core.errors import DuplicateScanFailure
from ..invoice_types import StoredInvoice


class SQLiteInvoiceStore:
    """
    SQLite-backed invoice store.

    Features:
    - Persistent storage across application restarts
    - Indexed window queries on amount and date for duplicate scans
    - Storage errors surface as DuplicateScanFailure
    """

    def __init__(self, db_path: str = "invoices.db"):
        """
        Initialize store with database path.

        Args:
            db_path: Path to SQLite database file (default: invoices.db)
        """
        self.db_path = db_path
        self._init_database()

    def _init_database(self):
        """Create invoices table if it doesn't exist"""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS invoices (
                id TEXT PRIMARY KEY,
                vendor TEXT NOT NULL,
                amount REAL NOT NULL,
                invoice_date TEXT NOT NULL,
                category TEXT,
                is_duplicate INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
        """)

        # Create indexes for duplicate window queries
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_invoice_date
            ON invoices(invoice_date)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_amount
            ON invoices(amount)
        """)

        conn.commit()
        conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection with row factory"""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @staticmethod
    def _row_to_invoice(row: sqlite3.Row) -> StoredInvoice:
        return StoredInvoice(
            invoice_id=row["id"],
            vendor=row["vendor"],
            amount=row["amount"],
            date=date.fromisoformat(row["invoice_date"]),
            category=row["category"],
            is_duplicate=bool(row["is_duplicate"]),
        )

    def save(
        self,
        vendor: str,
        amount: float,
        invoice_date: date,
        category: Optional[str] = None,
        is_duplicate: bool = False,
        invoice_id: Optional[str] = None,
    ) -> str:
        """
        Store an invoice and return its ID.

        Args:
            vendor: Vendor name as parsed
            amount: Invoice total
            invoice_date: Invoice date
            category: Assigned category code, if any
            is_duplicate: Whether the invoice was flagged as a duplicate
            invoice_id: ID to store under (a UUID is generated when omitted)

        Returns:
            Invoice ID
        """
        invoice_id = invoice_id or str(uuid.uuid4())
        created_at = datetime.now(UTC).isoformat()

        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("""
            INSERT OR REPLACE INTO invoices (id, vendor, amount, invoice_date, category, is_duplicate, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (invoice_id, vendor, amount, invoice_date.isoformat(), category, int(is_duplicate), created_at))

        conn.commit()
        conn.close()

        return invoice_id

    def get(self, invoice_id: str) -> Optional[StoredInvoice]:
        """
        Get an invoice by ID.

        Args:
            invoice_id: Unique invoice identifier

        Returns:
            StoredInvoice or None if not found
        """
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("""
            SELECT id, vendor, amount, invoice_date, category, is_duplicate
            FROM invoices
            WHERE id = ?
        """, (invoice_id,))

        row = cursor.fetchone()
        conn.close()

        if row is None:
            return None

        return self._row_to_invoice(row)

    def find_potential_duplicates(self, vendor: str, amount: float, invoice_date: date) -> list[StoredInvoice]:
        """
        Prior, non-duplicate invoices with a similar vendor, an amount within 5%
        and a date within one day.

        Raises:
            DuplicateScanFailure: If the store cannot be queried
        """
        try:
            conn = self._get_connection()
            try:
                rows = conn.execute("""
                    SELECT id, vendor, amount, invoice_date, category, is_duplicate
                    FROM invoices
                    WHERE is_duplicate = 0
                      AND amount BETWEEN ? AND ?
                      AND invoice_date BETWEEN ? AND ?
                """, (
                    amount * 0.95,
                    amount * 1.05,
                    (invoice_date - timedelta(days=1)).isoformat(),
                    (invoice_date + timedelta(days=1)).isoformat(),
                )).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise DuplicateScanFailure(f"Could not query prior invoices: {e}") from e

        needle = vendor.lower()
        return [
            self._row_to_invoice(row)
            for row in rows
            if needle in row["vendor"].lower() or row["vendor"].lower() in needle
        ]

    def list_all(self) -> list[StoredInvoice]:
        """
        List all invoices (ordered by creation time, oldest first).

        Returns:
            List of StoredInvoice
        """
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("""
            SELECT id, vendor, amount, invoice_date, category, is_duplicate
            FROM invoices
            ORDER BY created_at ASC
        """)

        rows = cursor.fetchall()
        conn.close()

        return [self._row_to_invoice(row) for row in rows]
