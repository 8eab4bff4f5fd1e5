"""
Repository pattern for data access.

Handles persistence of billing customers and invoice records.
"""

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Set

from .db import DEFAULT_DB_PATH, get_connection
from .models import BillingCustomer, InvoiceRecord, InvoiceStatus

# Allowed status changes; paid and cancelled invoices are final.
INVOICE_TRANSITIONS: Dict[InvoiceStatus, Set[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: {InvoiceStatus.SENT, InvoiceStatus.CANCELLED},
    InvoiceStatus.SENT: {InvoiceStatus.PAID, InvoiceStatus.OVERDUE, InvoiceStatus.CANCELLED},
    InvoiceStatus.OVERDUE: {InvoiceStatus.PAID, InvoiceStatus.CANCELLED},
    InvoiceStatus.PAID: set(),
    InvoiceStatus.CANCELLED: set(),
}

_CUSTOMER_COLUMNS = (
    "id, name, email, markup_percentage, retell_agent_ids, "
    "phone_number, notes, created_at"
)

_INVOICE_COLUMNS = (
    "id, customer_id, period_start, period_end, total_chats, total_calls, "
    "total_sms_segments, total_call_minutes, twilio_sms_cost_cad, "
    "twilio_voice_cost_cad, retell_chat_cost_cad, retell_voice_cost_cad, "
    "subtotal_cad, markup_amount_cad, total_cad, status, due_date, "
    "created_at, sent_at, paid_at"
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the customer and invoice tables if they don't exist.

    Money is stored as TEXT so Decimal values round-trip exactly.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS billing_customer (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT NOT NULL,
                markup_percentage TEXT NOT NULL DEFAULT '0',
                retell_agent_ids TEXT NOT NULL DEFAULT '[]',
                phone_number TEXT,
                notes TEXT,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS invoice_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                customer_id TEXT NOT NULL REFERENCES billing_customer(id),
                period_start TEXT NOT NULL,
                period_end TEXT NOT NULL,
                total_chats INTEGER NOT NULL,
                total_calls INTEGER NOT NULL,
                total_sms_segments INTEGER NOT NULL,
                total_call_minutes INTEGER NOT NULL,
                twilio_sms_cost_cad TEXT NOT NULL,
                twilio_voice_cost_cad TEXT NOT NULL,
                retell_chat_cost_cad TEXT NOT NULL,
                retell_voice_cost_cad TEXT NOT NULL,
                subtotal_cad TEXT NOT NULL,
                markup_amount_cad TEXT NOT NULL,
                total_cad TEXT NOT NULL,
                status TEXT NOT NULL,
                due_date TEXT,
                created_at TEXT NOT NULL,
                sent_at TEXT,
                paid_at TEXT
            )
        """)
        conn.commit()
    finally:
        conn.close()


def _optional_iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _row_to_customer(row) -> BillingCustomer:
    return BillingCustomer(
        id=row[0],
        name=row[1],
        email=row[2],
        markup_percentage=Decimal(row[3]),
        retell_agent_ids=tuple(json.loads(row[4])),
        phone_number=row[5],
        notes=row[6],
        created_at=datetime.fromisoformat(row[7]),
    )


def _row_to_invoice(row) -> InvoiceRecord:
    return InvoiceRecord(
        id=row[0],
        customer_id=row[1],
        period_start=date.fromisoformat(row[2]),
        period_end=date.fromisoformat(row[3]),
        total_chats=row[4],
        total_calls=row[5],
        total_sms_segments=row[6],
        total_call_minutes=row[7],
        twilio_sms_cost_cad=Decimal(row[8]),
        twilio_voice_cost_cad=Decimal(row[9]),
        retell_chat_cost_cad=Decimal(row[10]),
        retell_voice_cost_cad=Decimal(row[11]),
        subtotal_cad=Decimal(row[12]),
        markup_amount_cad=Decimal(row[13]),
        total_cad=Decimal(row[14]),
        status=InvoiceStatus(row[15]),
        due_date=date.fromisoformat(row[16]) if row[16] else None,
        created_at=datetime.fromisoformat(row[17]),
        sent_at=datetime.fromisoformat(row[18]) if row[18] else None,
        paid_at=datetime.fromisoformat(row[19]) if row[19] else None,
    )


class CustomerRepository:
    """Repository for the billed customer register."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def add_customer(self, customer: BillingCustomer) -> None:
        """Insert a new customer.

        Raises:
            sqlite3.IntegrityError: If a customer with the same id exists
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"INSERT INTO billing_customer ({_CUSTOMER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    customer.id,
                    customer.name,
                    customer.email,
                    str(customer.markup_percentage),
                    json.dumps(list(customer.retell_agent_ids)),
                    customer.phone_number,
                    customer.notes,
                    customer.created_at.isoformat(),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def update_customer(self, customer: BillingCustomer) -> None:
        """Replace a customer's editable fields.

        Raises:
            KeyError: If the customer doesn't exist
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                UPDATE billing_customer
                SET name = ?, email = ?, markup_percentage = ?,
                    retell_agent_ids = ?, phone_number = ?, notes = ?
                WHERE id = ?
                """,
                (
                    customer.name,
                    customer.email,
                    str(customer.markup_percentage),
                    json.dumps(list(customer.retell_agent_ids)),
                    customer.phone_number,
                    customer.notes,
                    customer.id,
                ),
            )
            if cursor.rowcount == 0:
                raise KeyError(f"Customer not found: {customer.id}")
            conn.commit()
        finally:
            conn.close()

    def get_customer(self, customer_id: str) -> BillingCustomer:
        """Fetch a customer by id.

        Raises:
            KeyError: If the customer doesn't exist
        """
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_CUSTOMER_COLUMNS} FROM billing_customer WHERE id = ?",
                (customer_id,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            raise KeyError(f"Customer not found: {customer_id}")
        return _row_to_customer(row)

    def list_customers(self) -> List[BillingCustomer]:
        """All customers ordered by name."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"SELECT {_CUSTOMER_COLUMNS} FROM billing_customer ORDER BY name ASC"
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_customer(row) for row in rows]

    def delete_customer(self, customer_id: str) -> None:
        """Delete a customer that has no invoices.

        Raises:
            KeyError: If the customer doesn't exist
            sqlite3.IntegrityError: If invoices still reference the customer
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("DELETE FROM billing_customer WHERE id = ?", (customer_id,))
            if cursor.rowcount == 0:
                raise KeyError(f"Customer not found: {customer_id}")
            conn.commit()
        finally:
            conn.close()


class InvoiceRepository:
    """Repository for the invoice ledger."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def insert_invoice(self, invoice: InvoiceRecord) -> int:
        """Insert an invoice record and return its id."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"""
                INSERT INTO invoice_record ({_INVOICE_COLUMNS})
                VALUES (NULL, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    invoice.customer_id,
                    invoice.period_start.isoformat(),
                    invoice.period_end.isoformat(),
                    invoice.total_chats,
                    invoice.total_calls,
                    invoice.total_sms_segments,
                    invoice.total_call_minutes,
                    str(invoice.twilio_sms_cost_cad),
                    str(invoice.twilio_voice_cost_cad),
                    str(invoice.retell_chat_cost_cad),
                    str(invoice.retell_voice_cost_cad),
                    str(invoice.subtotal_cad),
                    str(invoice.markup_amount_cad),
                    str(invoice.total_cad),
                    invoice.status.value,
                    _optional_iso(invoice.due_date),
                    invoice.created_at.isoformat(),
                    _optional_iso(invoice.sent_at),
                    _optional_iso(invoice.paid_at),
                ),
            )
            conn.commit()
            return cursor.lastrowid
        finally:
            conn.close()

    def get_invoice(self, invoice_id: int) -> InvoiceRecord:
        """Fetch an invoice by id.

        Raises:
            KeyError: If the invoice doesn't exist
        """
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_INVOICE_COLUMNS} FROM invoice_record WHERE id = ?",
                (invoice_id,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            raise KeyError(f"Invoice not found: {invoice_id}")
        return _row_to_invoice(row)

    def list_invoices(
        self,
        customer_id: Optional[str] = None,
        status: Optional[InvoiceStatus] = None,
        limit: int = 100,
    ) -> List[InvoiceRecord]:
        """List invoices, newest first, optionally filtered."""
        query = f"SELECT {_INVOICE_COLUMNS} FROM invoice_record"
        params = []
        conditions = []

        if customer_id:
            conditions.append("customer_id = ?")
            params.append(customer_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [_row_to_invoice(row) for row in rows]

    def update_status(
        self,
        invoice_id: int,
        status: InvoiceStatus,
        now: Optional[datetime] = None,
    ) -> InvoiceRecord:
        """Move an invoice to a new status.

        Sets sent_at on SENT and paid_at on PAID.

        Raises:
            KeyError: If the invoice doesn't exist
            ValueError: If the transition is not allowed
        """
        current = self.get_invoice(invoice_id)
        if status not in INVOICE_TRANSITIONS[current.status]:
            raise ValueError(
                f"Cannot change invoice {invoice_id} from {current.status.value} to {status.value}"
            )

        now = now or datetime.now()
        sent_at = now if status == InvoiceStatus.SENT else current.sent_at
        paid_at = now if status == InvoiceStatus.PAID else current.paid_at

        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "UPDATE invoice_record SET status = ?, sent_at = ?, paid_at = ? WHERE id = ?",
                (status.value, _optional_iso(sent_at), _optional_iso(paid_at), invoice_id),
            )
            conn.commit()
        finally:
            conn.close()
        return self.get_invoice(invoice_id)
