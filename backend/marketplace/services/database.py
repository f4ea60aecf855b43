import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from threading import Lock
from typing import Any, Iterator, Optional
from uuid import uuid4

from marketplace.services.errors import MarketplaceConflictError

logger = logging.getLogger(__name__)


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS admin_settings (
        id TEXT PRIMARY KEY,
        version INTEGER NOT NULL UNIQUE,
        settings_json TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_by TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_admin_settings_active
    ON admin_settings (is_active) WHERE is_active = 1
    """,
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        client_id TEXT NOT NULL,
        assigned_provider_id TEXT NOT NULL,
        provider_type TEXT NOT NULL DEFAULT 'provider',
        title TEXT NOT NULL,
        description TEXT NOT NULL,
        location TEXT NOT NULL,
        region TEXT NOT NULL,
        required_services_json TEXT NOT NULL DEFAULT '[]',
        estimated_total TEXT NOT NULL,
        urgency_level TEXT NOT NULL DEFAULT 'medium',
        status TEXT NOT NULL DEFAULT 'open',
        payment_status TEXT NOT NULL DEFAULT 'unpaid',
        payment_amount TEXT,
        paid_at TEXT,
        final_quotation_id TEXT,
        preferred_start_date TEXT,
        actual_start_date TEXT,
        expected_completion_date TEXT,
        actual_completion_date TEXT,
        client_rating INTEGER,
        client_review TEXT,
        rating_submitted_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_jobs_client ON jobs (client_id, status)",
    "CREATE INDEX IF NOT EXISTS ix_jobs_assignee ON jobs (assigned_provider_id, status)",
    """
    CREATE TABLE IF NOT EXISTS quotations (
        id TEXT PRIMARY KEY,
        job_id TEXT NOT NULL REFERENCES jobs (id) ON DELETE CASCADE,
        provider_id TEXT NOT NULL,
        quoted_amount TEXT NOT NULL,
        currency TEXT NOT NULL DEFAULT 'USD',
        quotation_details TEXT NOT NULL DEFAULT '',
        valid_until TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        client_response_message TEXT,
        client_responded_at TEXT,
        client_responded_by TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_quotations_job ON quotations (job_id, created_at)",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_quotations_accepted
    ON quotations (job_id) WHERE status = 'accepted'
    """,
    """
    CREATE TABLE IF NOT EXISTS negotiations (
        id TEXT PRIMARY KEY,
        quotation_id TEXT NOT NULL REFERENCES quotations (id) ON DELETE CASCADE,
        sequence INTEGER NOT NULL,
        message TEXT NOT NULL,
        proposed_amount TEXT,
        counter_offer TEXT,
        from_client INTEGER NOT NULL,
        created_by TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (quotation_id, sequence)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS job_notes (
        id TEXT PRIMARY KEY,
        job_id TEXT NOT NULL REFERENCES jobs (id) ON DELETE CASCADE,
        note TEXT NOT NULL,
        note_type TEXT NOT NULL DEFAULT 'general',
        added_by TEXT NOT NULL,
        added_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS job_attachments (
        id TEXT PRIMARY KEY,
        job_id TEXT NOT NULL REFERENCES jobs (id) ON DELETE CASCADE,
        file_name TEXT NOT NULL,
        original_file_name TEXT NOT NULL,
        file_url TEXT NOT NULL,
        file_type TEXT NOT NULL,
        file_size INTEGER NOT NULL,
        category TEXT NOT NULL DEFAULT 'other',
        uploaded_by TEXT NOT NULL,
        uploaded_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        id TEXT PRIMARY KEY,
        job_id TEXT NOT NULL REFERENCES jobs (id),
        client_id TEXT NOT NULL,
        gateway_intent_id TEXT NOT NULL UNIQUE,
        currency TEXT NOT NULL,
        amount_minor_units INTEGER NOT NULL,
        base_amount TEXT NOT NULL,
        platform_fee TEXT NOT NULL,
        processing_fee TEXT NOT NULL,
        total_amount TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        refund_required INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_payments_active
    ON payments (job_id) WHERE status IN ('pending', 'succeeded')
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_events (
        event_id TEXT PRIMARY KEY,
        event_type TEXT NOT NULL,
        received_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS provider_balances (
        owner_id TEXT PRIMARY KEY,
        total_earnings TEXT NOT NULL DEFAULT '0',
        available_balance TEXT NOT NULL DEFAULT '0',
        pending_balance TEXT NOT NULL DEFAULT '0',
        total_withdrawn TEXT NOT NULL DEFAULT '0',
        last_updated TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS balance_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        owner_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        reference_id TEXT,
        amount TEXT NOT NULL DEFAULT '0',
        total_earnings TEXT NOT NULL,
        available_balance TEXT NOT NULL,
        pending_balance TEXT NOT NULL,
        total_withdrawn TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_balance_events_owner ON balance_events (owner_id, id)",
    """
    CREATE TABLE IF NOT EXISTS withdrawals (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        amount TEXT NOT NULL,
        withdrawal_method TEXT NOT NULL,
        details_json TEXT NOT NULL DEFAULT '{}',
        status TEXT NOT NULL DEFAULT 'pending',
        processing_fee TEXT NOT NULL DEFAULT '0',
        net_amount TEXT NOT NULL,
        currency TEXT NOT NULL DEFAULT 'USD',
        transaction_id TEXT,
        metadata_json TEXT NOT NULL DEFAULT '{}',
        requested_at TEXT NOT NULL,
        processed_at TEXT,
        completed_at TEXT,
        rejected_at TEXT,
        cancelled_at TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_withdrawals_owner ON withdrawals (owner_id, status)",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_withdrawals_open
    ON withdrawals (owner_id) WHERE status IN ('pending', 'processing')
    """,
    """
    CREATE TABLE IF NOT EXISTS withdrawal_notes (
        id TEXT PRIMARY KEY,
        withdrawal_id TEXT NOT NULL REFERENCES withdrawals (id) ON DELETE CASCADE,
        note TEXT NOT NULL,
        added_by TEXT NOT NULL,
        added_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS status_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_type TEXT NOT NULL,
        subject_type TEXT NOT NULL,
        subject_id TEXT NOT NULL,
        job_id TEXT,
        status TEXT,
        recipient_ids_json TEXT NOT NULL DEFAULT '[]',
        actor_id TEXT,
        payload_json TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_status_events_subject ON status_events (subject_type, id)",
)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


def to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def decimal_or_none(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return to_decimal(value)


@dataclass
class Database:
    """SQLite file shared by every marketplace store.

    Each ``transaction()`` holds the process-wide lock and an IMMEDIATE
    transaction, so one unit of work sees and writes a consistent snapshot.
    """

    db_path: str

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self) -> None:
        with self._lock:
            conn = self._connect()
            try:
                for statement in SCHEMA:
                    conn.execute(statement)
            finally:
                conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.execute("COMMIT")
            except sqlite3.IntegrityError as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                logger.warning("Rejected write on integrity constraint: %s", exc)
                raise MarketplaceConflictError("Conflicting update; the record changed concurrently") from exc
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()


default_db = str(Path(__file__).resolve().parents[2] / "data" / "marketplace.sqlite3")
database = Database(db_path=os.getenv("MARKETPLACE_DB_PATH", default_db))
