"""Provider balance ledger and the withdrawal workflow.

Balances are never adjusted in place. Every operation mutates its source
records (paid jobs, withdrawals) and then recomputes the owner's snapshot from
them inside the same transaction, writing an audit row whenever the snapshot
changes.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from marketplace.models import (
    AdminNote,
    BalanceEvent,
    BankDetails,
    CryptoDetails,
    EarningRecord,
    EarningsPage,
    PaypalDetails,
    Principal,
    ProviderBalance,
    Withdrawal,
    WithdrawalCreateRequest,
    WithdrawalPage,
    WithdrawalStatusUpdateRequest,
)
from marketplace.services import fees, status_events
from marketplace.services.database import Database, database, new_id, now_iso, to_decimal
from marketplace.services.errors import (
    MarketplaceAuthorizationError,
    MarketplaceConflictError,
    MarketplaceNotFoundError,
    MarketplaceValidationError,
)
from marketplace.services.pagination import build_pagination, check_paging
from marketplace.services.settings_store import SettingsStore, settings_store

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

WITHDRAWAL_METHODS = ("bank_transfer", "paypal", "stripe", "crypto")

OPEN_WITHDRAWAL_STATUSES = ("pending", "processing")

WITHDRAWAL_TRANSITIONS: Dict[str, frozenset[str]] = {
    "pending": frozenset({"processing", "completed", "rejected", "cancelled"}),
    "processing": frozenset({"completed", "rejected", "cancelled"}),
}

STATUS_EVENTS = {
    "processing": "withdrawal_processing",
    "completed": "withdrawal_completed",
    "rejected": "withdrawal_reversed",
    "cancelled": "withdrawal_reversed",
}

STATUS_STAMPS = {
    "processing": "processed_at",
    "completed": "completed_at",
    "rejected": "rejected_at",
    "cancelled": "cancelled_at",
}

REQUIRED_DETAILS = {
    "bank_transfer": ("bank_details", ("account_number", "routing_number", "bank_name", "account_holder_name")),
    "paypal": ("paypal_details", ("email",)),
    "crypto": ("crypto_details", ("wallet_address", "currency")),
}


def _method_details(request: WithdrawalCreateRequest) -> Dict[str, Any]:
    requirement = REQUIRED_DETAILS.get(request.withdrawal_method)
    if requirement is None:
        return {}
    attribute, fields = requirement
    details = getattr(request, attribute)
    label = attribute.replace("_", " ").capitalize()
    if details is None:
        raise MarketplaceValidationError(f"{label} are required for {request.withdrawal_method} withdrawals")
    missing = [name for name in fields if not str(getattr(details, name) or "").strip()]
    if missing:
        raise MarketplaceValidationError(f"{label} missing: {', '.join(missing)}")
    return {attribute: details.model_dump()}


def _is_provider(principal: Principal) -> bool:
    return principal.role in {"provider", "inspector"}


@dataclass
class BalanceLedger:
    db: Database
    settings: SettingsStore

    def _balance_from_row(self, row: sqlite3.Row) -> ProviderBalance:
        return ProviderBalance(
            owner_id=row["owner_id"],
            total_earnings=to_decimal(row["total_earnings"]),
            available_balance=to_decimal(row["available_balance"]),
            pending_balance=to_decimal(row["pending_balance"]),
            total_withdrawn=to_decimal(row["total_withdrawn"]),
            last_updated=row["last_updated"],
        )

    def _withdrawal_from_row(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Withdrawal:
        details = json.loads(row["details_json"] or "{}")
        notes = conn.execute(
            "SELECT * FROM withdrawal_notes WHERE withdrawal_id = ? ORDER BY added_at ASC, rowid ASC",
            (row["id"],),
        ).fetchall()
        return Withdrawal(
            id=row["id"],
            owner_id=row["owner_id"],
            amount=to_decimal(row["amount"]),
            withdrawal_method=row["withdrawal_method"],
            bank_details=BankDetails(**details["bank_details"]) if "bank_details" in details else None,
            paypal_details=PaypalDetails(**details["paypal_details"]) if "paypal_details" in details else None,
            crypto_details=CryptoDetails(**details["crypto_details"]) if "crypto_details" in details else None,
            status=row["status"],
            processing_fee=to_decimal(row["processing_fee"]),
            net_amount=to_decimal(row["net_amount"]),
            currency=row["currency"],
            transaction_id=row["transaction_id"],
            metadata=json.loads(row["metadata_json"] or "{}"),
            requested_at=row["requested_at"],
            processed_at=row["processed_at"],
            completed_at=row["completed_at"],
            rejected_at=row["rejected_at"],
            cancelled_at=row["cancelled_at"],
            admin_notes=[AdminNote(note=n["note"], added_by=n["added_by"], added_at=n["added_at"]) for n in notes],
        )

    def _earning_rows(self, conn: sqlite3.Connection, owner_id: str) -> List[sqlite3.Row]:
        return conn.execute(
            """
            SELECT id, title, client_id, provider_type, payment_amount, paid_at
            FROM jobs
            WHERE assigned_provider_id = ? AND status = 'closed' AND payment_status = 'paid'
            ORDER BY paid_at DESC, rowid DESC
            """,
            (owner_id,),
        ).fetchall()

    def recompute(
        self,
        conn: sqlite3.Connection,
        owner_id: str,
        event_type: str = "recomputed",
        reference_id: Optional[str] = None,
        amount: Decimal = ZERO,
    ) -> ProviderBalance:
        """Rebuild the owner's snapshot from source records inside ``conn``."""
        settings = self.settings.active_snapshot(conn)
        total_earnings = ZERO
        for row in self._earning_rows(conn, owner_id):
            payment_amount = to_decimal(row["payment_amount"])
            total_earnings += fees.earnings(settings, payment_amount, row["provider_type"]).earnings

        total_withdrawn = ZERO
        pending = ZERO
        for row in conn.execute(
            "SELECT amount, status FROM withdrawals WHERE owner_id = ? AND status IN ('pending', 'processing', 'completed')",
            (owner_id,),
        ).fetchall():
            if row["status"] == "completed":
                total_withdrawn += to_decimal(row["amount"])
            else:
                pending += to_decimal(row["amount"])
        available = max(ZERO, total_earnings - total_withdrawn - pending)

        previous = conn.execute("SELECT * FROM provider_balances WHERE owner_id = ?", (owner_id,)).fetchone()
        snapshot = (total_earnings, available, pending, total_withdrawn)
        unchanged = previous is not None and snapshot == (
            to_decimal(previous["total_earnings"]),
            to_decimal(previous["available_balance"]),
            to_decimal(previous["pending_balance"]),
            to_decimal(previous["total_withdrawn"]),
        )
        if unchanged and event_type == "recomputed":
            return self._balance_from_row(previous)

        now = now_iso()
        conn.execute(
            """
            INSERT INTO provider_balances (
                owner_id, total_earnings, available_balance, pending_balance, total_withdrawn, last_updated
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (owner_id) DO UPDATE SET
                total_earnings = excluded.total_earnings,
                available_balance = excluded.available_balance,
                pending_balance = excluded.pending_balance,
                total_withdrawn = excluded.total_withdrawn,
                last_updated = excluded.last_updated
            """,
            (owner_id, *(str(value) for value in snapshot), now),
        )
        conn.execute(
            """
            INSERT INTO balance_events (
                owner_id, event_type, reference_id, amount,
                total_earnings, available_balance, pending_balance, total_withdrawn, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (owner_id, event_type, reference_id, str(amount), *(str(value) for value in snapshot), now),
        )
        row = conn.execute("SELECT * FROM provider_balances WHERE owner_id = ?", (owner_id,)).fetchone()
        return self._balance_from_row(row)

    def _resolve_owner(self, principal: Principal, owner_id: Optional[str]) -> str:
        if _is_provider(principal):
            if owner_id and owner_id != principal.id:
                raise MarketplaceAuthorizationError("Providers can only access their own balance")
            return principal.id
        if principal.role == "admin":
            if not owner_id:
                raise MarketplaceValidationError("owner_id is required")
            return owner_id
        raise MarketplaceAuthorizationError("Only providers, inspectors and admins have balances")

    def get_balance(self, principal: Principal, owner_id: Optional[str] = None) -> ProviderBalance:
        owner = self._resolve_owner(principal, owner_id)
        with self.db.transaction() as conn:
            return self.recompute(conn, owner)

    def earnings_history(
        self,
        principal: Principal,
        owner_id: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> EarningsPage:
        owner = self._resolve_owner(principal, owner_id)
        offset = check_paging(page, limit)
        with self.db.transaction() as conn:
            settings = self.settings.active_snapshot(conn)
            rows = self._earning_rows(conn, owner)
        records = []
        for row in rows[offset : offset + limit]:
            breakdown = fees.earnings(settings, to_decimal(row["payment_amount"]), row["provider_type"])
            records.append(
                EarningRecord(
                    job_id=row["id"],
                    job_title=row["title"],
                    client_id=row["client_id"],
                    payment_amount=breakdown.payment_amount,
                    commission_percentage=breakdown.commission_percentage,
                    earnings=breakdown.earnings,
                    paid_at=row["paid_at"],
                )
            )
        return EarningsPage(items=records, pagination=build_pagination(len(rows), page, limit))

    def balance_events(self, principal: Principal, owner_id: Optional[str] = None, limit: int = 50) -> List[BalanceEvent]:
        owner = self._resolve_owner(principal, owner_id)
        check_paging(1, limit)
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM balance_events WHERE owner_id = ? ORDER BY id DESC LIMIT ?",
                (owner, limit),
            ).fetchall()
        return [
            BalanceEvent(
                id=int(row["id"]),
                owner_id=row["owner_id"],
                event_type=row["event_type"],
                reference_id=row["reference_id"],
                amount=to_decimal(row["amount"]),
                total_earnings=to_decimal(row["total_earnings"]),
                available_balance=to_decimal(row["available_balance"]),
                pending_balance=to_decimal(row["pending_balance"]),
                total_withdrawn=to_decimal(row["total_withdrawn"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def request_withdrawal(self, principal: Principal, request: WithdrawalCreateRequest) -> Withdrawal:
        if not _is_provider(principal):
            raise MarketplaceAuthorizationError("Only providers and inspectors can request withdrawals")
        if request.withdrawal_method not in WITHDRAWAL_METHODS:
            raise MarketplaceValidationError(f"Invalid withdrawal method: {request.withdrawal_method}")
        amount = request.amount
        if not amount.is_finite() or amount <= 0:
            raise MarketplaceValidationError("Withdrawal amount must be greater than zero")
        details = _method_details(request)

        with self.db.transaction() as conn:
            settings = self.settings.active_snapshot(conn)
            if amount < settings.minimum_withdrawal_amount:
                raise MarketplaceValidationError(
                    f"Minimum withdrawal amount is {settings.minimum_withdrawal_amount}"
                )
            open_row = conn.execute(
                "SELECT id FROM withdrawals WHERE owner_id = ? AND status IN ('pending', 'processing')",
                (principal.id,),
            ).fetchone()
            if open_row:
                raise MarketplaceConflictError("You already have a pending withdrawal request")
            balance = self.recompute(conn, principal.id)
            if balance.available_balance < amount:
                raise MarketplaceValidationError("Insufficient available balance")

            fee = fees.withdrawal_fee(settings, amount, request.withdrawal_method)
            withdrawal_id = new_id("wd")
            now = now_iso()
            conn.execute(
                """
                INSERT INTO withdrawals (
                    id, owner_id, amount, withdrawal_method, details_json, status, processing_fee, net_amount,
                    currency, metadata_json, requested_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, 'USD', ?, ?, ?)
                """,
                (
                    withdrawal_id,
                    principal.id,
                    str(amount),
                    request.withdrawal_method,
                    json.dumps(details),
                    str(fee),
                    str(amount - fee),
                    json.dumps(request.metadata, default=str),
                    now,
                    now,
                ),
            )
            self.recompute(conn, principal.id, "withdrawal_requested", withdrawal_id, amount)
            status_events.record(
                conn,
                "withdrawal.requested",
                "withdrawal",
                withdrawal_id,
                status="pending",
                actor_id=principal.id,
                owner_id=principal.id,
                amount=amount,
                withdrawal_method=request.withdrawal_method,
            )
            row = conn.execute("SELECT * FROM withdrawals WHERE id = ?", (withdrawal_id,)).fetchone()
            withdrawal = self._withdrawal_from_row(conn, row)
        logger.info(
            "Withdrawal %s requested by %s: %s via %s",
            withdrawal_id,
            principal.id,
            amount,
            request.withdrawal_method,
        )
        return withdrawal

    def update_withdrawal_status(
        self,
        principal: Principal,
        withdrawal_id: str,
        update: WithdrawalStatusUpdateRequest,
    ) -> Withdrawal:
        if principal.role != "admin":
            raise MarketplaceAuthorizationError("Only admins can update withdrawal status")
        target = update.status
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM withdrawals WHERE id = ?", (withdrawal_id,)).fetchone()
            if not row:
                raise MarketplaceNotFoundError("Withdrawal not found")
            current = row["status"]
            if target not in WITHDRAWAL_TRANSITIONS.get(current, frozenset()):
                raise MarketplaceConflictError(f"Cannot move withdrawal from {current} to {target}")

            now = now_iso()
            stamp = STATUS_STAMPS[target]
            transaction_id = (update.transaction_id or "").strip() or row["transaction_id"]
            conn.execute(
                f"UPDATE withdrawals SET status = ?, {stamp} = ?, transaction_id = ?, updated_at = ? WHERE id = ?",
                (target, now, transaction_id, now, withdrawal_id),
            )
            note = update.admin_note.strip()
            if note:
                conn.execute(
                    "INSERT INTO withdrawal_notes (id, withdrawal_id, note, added_by, added_at) VALUES (?, ?, ?, ?, ?)",
                    (new_id("wdn"), withdrawal_id, note, principal.id, now),
                )
            self.recompute(conn, row["owner_id"], STATUS_EVENTS[target], withdrawal_id, to_decimal(row["amount"]))
            status_events.record(
                conn,
                "withdrawal.status_changed",
                "withdrawal",
                withdrawal_id,
                status=target,
                recipients=[row["owner_id"]],
                actor_id=principal.id,
                previous_status=current,
                amount=row["amount"],
            )
            updated = conn.execute("SELECT * FROM withdrawals WHERE id = ?", (withdrawal_id,)).fetchone()
            withdrawal = self._withdrawal_from_row(conn, updated)
        logger.info("Withdrawal %s %s -> %s by %s", withdrawal_id, current, target, principal.id)
        return withdrawal

    def list_withdrawals(
        self,
        principal: Principal,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> WithdrawalPage:
        offset = check_paging(page, limit)
        filters: List[str] = []
        params: List[Any] = []
        if _is_provider(principal):
            filters.append("owner_id = ?")
            params.append(principal.id)
        elif principal.role != "admin":
            raise MarketplaceAuthorizationError("Not authorized to view withdrawals")
        if status:
            filters.append("status = ?")
            params.append(status)
        where = " AND ".join(filters) if filters else "1 = 1"
        with self.db.transaction() as conn:
            total = conn.execute(f"SELECT COUNT(*) AS n FROM withdrawals WHERE {where}", tuple(params)).fetchone()["n"]
            rows = conn.execute(
                f"SELECT * FROM withdrawals WHERE {where} ORDER BY requested_at DESC, rowid DESC LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()
            items = [self._withdrawal_from_row(conn, row) for row in rows]
        return WithdrawalPage(items=items, pagination=build_pagination(int(total), page, limit))


balance_ledger = BalanceLedger(db=database, settings=settings_store)
