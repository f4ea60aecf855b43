"""Status change feed for an external scheduler or mailer.

The marketplace does not send email or push messages. Stores append a row
here inside the transaction that made the change, so the feed only ever shows
committed changes; a consumer polls ``list_events`` with the last id it saw.
Quotations about to lapse are exposed the same way through
``expiring_quotations``.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, List, Optional

from marketplace.models import ExpiringQuotation, Principal, StatusEvent, StatusEventPage
from marketplace.services.database import Database, database, now_iso, to_decimal
from marketplace.services.errors import (
    MarketplaceAuthorizationError,
    MarketplaceNotFoundError,
    MarketplaceValidationError,
)

logger = logging.getLogger(__name__)

FEED_LIMIT = 100
SUBJECT_TYPES = ("job", "quotation", "payment", "withdrawal")
MAX_EXPIRY_WINDOW_HOURS = 24 * 30


def record(
    conn: sqlite3.Connection,
    event_type: str,
    subject_type: str,
    subject_id: str,
    *,
    job_id: Optional[str] = None,
    status: Optional[str] = None,
    recipients: Iterable[Optional[str]] = (),
    actor_id: Optional[str] = None,
    **payload: Any,
) -> None:
    """Append one event on ``conn``; it commits or rolls back with the caller."""
    recipient_ids = [r for r in dict.fromkeys(recipients) if r and r != actor_id]
    conn.execute(
        """
        INSERT INTO status_events (
            event_type, subject_type, subject_id, job_id, status, recipient_ids_json, actor_id, payload_json, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            event_type,
            subject_type,
            subject_id,
            job_id,
            status,
            json.dumps(recipient_ids),
            actor_id,
            json.dumps(payload, default=str),
            now_iso(),
        ),
    )


def _parse_moment(value: str) -> Optional[datetime]:
    try:
        moment = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _require_admin(principal: Principal) -> None:
    if principal.role != "admin":
        raise MarketplaceAuthorizationError("Only admins can read the status feed")


@dataclass
class StatusEventFeed:
    db: Database

    def _event_from_row(self, row: sqlite3.Row) -> StatusEvent:
        return StatusEvent(
            id=int(row["id"]),
            event_type=row["event_type"],
            subject_type=row["subject_type"],
            subject_id=row["subject_id"],
            job_id=row["job_id"],
            status=row["status"],
            recipient_ids=json.loads(row["recipient_ids_json"] or "[]"),
            actor_id=row["actor_id"],
            payload=json.loads(row["payload_json"] or "{}"),
            created_at=row["created_at"],
        )

    def list_events(
        self,
        principal: Principal,
        after_id: int = 0,
        limit: int = 50,
        subject_type: Optional[str] = None,
    ) -> StatusEventPage:
        _require_admin(principal)
        if after_id < 0:
            raise MarketplaceValidationError("after_id must be zero or greater")
        if limit < 1 or limit > FEED_LIMIT:
            raise MarketplaceValidationError(f"limit must be between 1 and {FEED_LIMIT}")
        if subject_type is not None and subject_type not in SUBJECT_TYPES:
            raise MarketplaceValidationError(f"Invalid subject_type: {subject_type}")

        where, params = "id > ?", [after_id]
        if subject_type:
            where += " AND subject_type = ?"
            params.append(subject_type)
        with self.db.transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM status_events WHERE {where} ORDER BY id ASC LIMIT ?",
                (*params, limit),
            ).fetchall()
        items = [self._event_from_row(row) for row in rows]
        return StatusEventPage(items=items, next_after_id=items[-1].id if items else after_id)

    def get_event(self, principal: Principal, event_id: int) -> StatusEvent:
        _require_admin(principal)
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM status_events WHERE id = ?", (event_id,)).fetchone()
        if not row:
            raise MarketplaceNotFoundError("Status event not found")
        return self._event_from_row(row)

    def expiring_quotations(
        self,
        principal: Principal,
        within_hours: int = 72,
        now: Optional[datetime] = None,
    ) -> List[ExpiringQuotation]:
        """Open quotations whose ``valid_until`` falls inside the next ``within_hours``."""
        _require_admin(principal)
        if within_hours < 1 or within_hours > MAX_EXPIRY_WINDOW_HOURS:
            raise MarketplaceValidationError(f"within_hours must be between 1 and {MAX_EXPIRY_WINDOW_HOURS}")
        start = now or datetime.now(timezone.utc)
        end = start + timedelta(hours=within_hours)
        with self.db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT q.*, j.title AS job_title, j.client_id AS client_id
                FROM quotations q JOIN jobs j ON j.id = q.job_id
                WHERE q.status IN ('pending', 'negotiating')
                  AND q.valid_until IS NOT NULL
                  AND j.status NOT IN ('completed', 'delivered', 'closed', 'cancelled')
                ORDER BY q.valid_until ASC
                """
            ).fetchall()
        expiring = []
        for row in rows:
            moment = _parse_moment(row["valid_until"])
            if moment is None:
                logger.warning("Quotation %s has an unreadable valid_until %r", row["id"], row["valid_until"])
                continue
            if start <= moment <= end:
                expiring.append(
                    ExpiringQuotation(
                        quotation_id=row["id"],
                        job_id=row["job_id"],
                        job_title=row["job_title"],
                        client_id=row["client_id"],
                        provider_id=row["provider_id"],
                        quoted_amount=to_decimal(row["quoted_amount"]),
                        currency=row["currency"],
                        status=row["status"],
                        valid_until=row["valid_until"],
                    )
                )
        return expiring


status_event_feed = StatusEventFeed(db=database)
