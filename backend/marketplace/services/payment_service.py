import logging
import os
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Optional

from marketplace.models import (
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    Payment,
    PaymentIntentRequest,
    PaymentIntentResponse,
    PaymentPage,
    Principal,
    WebhookResult,
)
from marketplace.services import fees, status_events
from marketplace.services.database import Database, database, new_id, now_iso, to_decimal
from marketplace.services.errors import (
    MarketplaceAuthorizationError,
    MarketplaceConflictError,
    MarketplaceNotFoundError,
    MarketplaceValidationError,
)
from marketplace.services.job_store import JobStore, job_store
from marketplace.services.ledger import BalanceLedger, balance_ledger
from marketplace.services.pagination import build_pagination, check_paging
from marketplace.services.payment_gateway import stripe_gateway
from marketplace.services.settings_store import SettingsStore, settings_store

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "usd").strip().lower() or "usd"

SETTLEABLE_STATUSES = {"pending"}

ABANDONED_STATUSES = {"failed", "cancelled"}


def _require_client(principal: Principal) -> None:
    if principal.role != "client":
        raise MarketplaceAuthorizationError("Only the job owner can pay for a job")


@dataclass
class PaymentService:
    """Charges clients for closed jobs and settles them from gateway confirmation or webhooks."""

    db: Database
    settings: SettingsStore
    jobs: JobStore
    ledger: BalanceLedger
    gateway: Any
    default_currency: str = DEFAULT_CURRENCY

    def _payment_from_row(self, row: sqlite3.Row) -> Payment:
        return Payment(
            id=row["id"],
            job_id=row["job_id"],
            client_id=row["client_id"],
            gateway_intent_id=row["gateway_intent_id"],
            currency=row["currency"],
            amount_minor_units=int(row["amount_minor_units"]),
            base_amount=to_decimal(row["base_amount"]),
            platform_fee=to_decimal(row["platform_fee"]),
            processing_fee=to_decimal(row["processing_fee"]),
            total_amount=to_decimal(row["total_amount"]),
            status=row["status"],
            refund_required=bool(row["refund_required"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _check_payable(self, conn: sqlite3.Connection, principal: Principal, job_id: str):
        job = self.jobs.load_job(conn, job_id)
        if job.client_id != principal.id:
            raise MarketplaceAuthorizationError("Only the job owner can pay for a job")
        if job.status != "closed":
            raise MarketplaceConflictError("Payment is only available for closed jobs")
        active = conn.execute(
            "SELECT id FROM payments WHERE job_id = ? AND status IN ('pending', 'succeeded')",
            (job_id,),
        ).fetchone()
        if active:
            raise MarketplaceConflictError("A payment already exists for this job")
        return job

    def _settle(self, conn: sqlite3.Connection, row: sqlite3.Row) -> bool:
        """Mark the payment succeeded and the job paid; returns False when already settled."""
        if row["status"] == "succeeded":
            return False
        if row["status"] not in SETTLEABLE_STATUSES:
            raise MarketplaceConflictError(f"Cannot settle a {row['status']} payment")
        now = now_iso()
        conn.execute(
            "UPDATE payments SET status = 'succeeded', updated_at = ? WHERE id = ?",
            (now, row["id"]),
        )
        conn.execute(
            """
            UPDATE jobs SET payment_status = 'paid', paid_at = ?, payment_amount = ?, updated_at = ?
            WHERE id = ?
            """,
            (now, row["total_amount"], now, row["job_id"]),
        )
        job = self.jobs.load_job(conn, row["job_id"])
        settings = self.settings.active_snapshot(conn)
        earned = fees.earnings(settings, to_decimal(row["total_amount"]), job.provider_type).earnings
        self.ledger.recompute(conn, job.assigned_provider_id, "job_settled", row["id"], earned)
        status_events.record(
            conn,
            "payment.succeeded",
            "payment",
            row["id"],
            job_id=row["job_id"],
            status="succeeded",
            recipients=[job.client_id, job.assigned_provider_id],
            total_amount=row["total_amount"],
            currency=row["currency"],
        )
        logger.info("Payment %s settled for job %s: %s", row["id"], row["job_id"], row["total_amount"])
        return True

    def create_intent(self, principal: Principal, request: PaymentIntentRequest) -> PaymentIntentResponse:
        _require_client(principal)
        currency = (request.currency or self.default_currency).strip().lower()
        if len(currency) != 3 or not currency.isalpha():
            raise MarketplaceValidationError("currency must be a three-letter ISO code")

        with self.db.transaction() as conn:
            job = self._check_payable(conn, principal, request.job_id)
            settings = self.settings.active_snapshot(conn)
            failed = conn.execute(
                "SELECT id, gateway_intent_id FROM payments WHERE job_id = ? AND status = 'failed'",
                (request.job_id,),
            ).fetchall()
        breakdown = fees.payment_breakdown(settings, job.estimated_total)
        amount_minor_units = fees.to_minor_units(breakdown.total_amount)
        if amount_minor_units <= 0:
            raise MarketplaceValidationError("Payment amount must be greater than zero")

        metadata: Dict[str, str] = {
            "job_id": job.id,
            "client_id": principal.id,
            "provider_id": job.assigned_provider_id,
            "base_amount": str(breakdown.base_amount),
            "platform_fee": str(breakdown.platform_fee),
            "processing_fee": str(breakdown.processing_fee),
            "settings_version": str(settings.version),
        }
        # A failed intent can still be paid by the customer; close it before offering a new one.
        for previous in failed:
            self.gateway.cancel_intent(previous["gateway_intent_id"])
            logger.info("Cancelled failed payment intent %s for job %s", previous["gateway_intent_id"], job.id)
        intent = self.gateway.create_intent(
            amount_minor_units=amount_minor_units,
            currency=currency,
            metadata=metadata,
            description=request.description or f"Payment for job: {job.title}",
        )

        payment_id = new_id("pay")
        now = now_iso()
        try:
            with self.db.transaction() as conn:
                self._check_payable(conn, principal, request.job_id)
                for previous in failed:
                    conn.execute(
                        "UPDATE payments SET status = 'cancelled', updated_at = ? WHERE id = ? AND status = 'failed'",
                        (now, previous["id"]),
                    )
                conn.execute(
                    """
                    INSERT INTO payments (
                        id, job_id, client_id, gateway_intent_id, currency, amount_minor_units,
                        base_amount, platform_fee, processing_fee, total_amount, status, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?)
                    """,
                    (
                        payment_id,
                        job.id,
                        principal.id,
                        intent.id,
                        currency,
                        amount_minor_units,
                        str(breakdown.base_amount),
                        str(breakdown.platform_fee),
                        str(breakdown.processing_fee),
                        str(breakdown.total_amount),
                        now,
                        now,
                    ),
                )
        except MarketplaceConflictError:
            logger.warning("Orphaned payment intent %s for job %s after a concurrent payment", intent.id, job.id)
            raise

        logger.info("Payment intent %s created for job %s (%s minor units)", intent.id, job.id, amount_minor_units)
        return PaymentIntentResponse(
            client_secret=intent.client_secret,
            payment_intent_id=intent.id,
            payment_id=payment_id,
            amount=breakdown.total_amount,
            amount_minor_units=amount_minor_units,
            breakdown=breakdown,
        )

    def _find_payment(self, conn: sqlite3.Connection, principal: Principal, job_id: str, intent_id: str) -> sqlite3.Row:
        row = conn.execute(
            "SELECT * FROM payments WHERE job_id = ? AND gateway_intent_id = ?",
            (job_id, intent_id),
        ).fetchone()
        if not row:
            raise MarketplaceNotFoundError("Payment not found")
        if row["client_id"] != principal.id:
            raise MarketplaceAuthorizationError("Not authorized to confirm this payment")
        return row

    def confirm_payment(self, principal: Principal, request: ConfirmPaymentRequest) -> ConfirmPaymentResponse:
        _require_client(principal)
        with self.db.transaction() as conn:
            row = self._find_payment(conn, principal, request.job_id, request.payment_intent_id)
            if row["status"] == "succeeded":
                return ConfirmPaymentResponse(
                    payment=self._payment_from_row(row),
                    job=self.jobs.load_job(conn, request.job_id),
                )
            if row["status"] not in SETTLEABLE_STATUSES:
                raise MarketplaceConflictError(f"Payment is {row['status']}")

        intent = self.gateway.retrieve_intent(request.payment_intent_id)
        if intent.status != "succeeded":
            raise MarketplaceValidationError(f"Payment not completed (status: {intent.status})")

        with self.db.transaction() as conn:
            row = self._find_payment(conn, principal, request.job_id, request.payment_intent_id)
            self._settle(conn, row)
            settled = conn.execute("SELECT * FROM payments WHERE id = ?", (row["id"],)).fetchone()
            return ConfirmPaymentResponse(
                payment=self._payment_from_row(settled),
                job=self.jobs.load_job(conn, request.job_id),
            )

    def _flag_refund(self, conn: sqlite3.Connection, row: sqlite3.Row, event_id: str) -> None:
        if row["refund_required"]:
            logger.info("Payment %s already flagged for refund", row["id"])
            return
        conn.execute(
            "UPDATE payments SET refund_required = 1, updated_at = ? WHERE id = ?",
            (now_iso(), row["id"]),
        )
        status_events.record(
            conn,
            "payment.refund_required",
            "payment",
            row["id"],
            job_id=row["job_id"],
            status=row["status"],
            gateway_intent_id=row["gateway_intent_id"],
            gateway_event_id=event_id,
            total_amount=row["total_amount"],
        )
        logger.error(
            "Payment %s for job %s captured after it was %s; refund required (intent %s, event %s)",
            row["id"],
            row["job_id"],
            row["status"],
            row["gateway_intent_id"],
            event_id,
        )

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        event = self.gateway.verify_webhook(payload, signature)

        with self.db.transaction() as conn:
            if event.id:
                seen = conn.execute("SELECT 1 FROM webhook_events WHERE event_id = ?", (event.id,)).fetchone()
                if seen:
                    logger.info("Webhook event %s already processed", event.id)
                    return WebhookResult(event_type=event.type, action="duplicate")
                conn.execute(
                    "INSERT INTO webhook_events (event_id, event_type, received_at) VALUES (?, ?, ?)",
                    (event.id, event.type, now_iso()),
                )

            row = None
            if event.object_id:
                row = conn.execute("SELECT * FROM payments WHERE gateway_intent_id = ?", (event.object_id,)).fetchone()

            if event.type == "payment_intent.succeeded":
                if row is None:
                    logger.warning("Webhook %s for unknown payment intent %s", event.id, event.object_id)
                    return WebhookResult(event_type=event.type, action="ignored")
                if row["status"] in ABANDONED_STATUSES:
                    self._flag_refund(conn, row, event.id)
                    return WebhookResult(event_type=event.type, action="ignored")
                settled = self._settle(conn, row)
                return WebhookResult(event_type=event.type, action="settled" if settled else "duplicate")

            if event.type == "payment_intent.payment_failed":
                if row is None or row["status"] != "pending":
                    return WebhookResult(event_type=event.type, action="ignored")
                conn.execute(
                    "UPDATE payments SET status = 'failed', updated_at = ? WHERE id = ?",
                    (now_iso(), row["id"]),
                )
                status_events.record(
                    conn,
                    "payment.failed",
                    "payment",
                    row["id"],
                    job_id=row["job_id"],
                    status="failed",
                    recipients=[row["client_id"]],
                    total_amount=row["total_amount"],
                )
                logger.info("Payment %s failed for job %s", row["id"], row["job_id"])
                return WebhookResult(event_type=event.type, action="failed")

        logger.info("Unhandled webhook event type %s", event.type)
        return WebhookResult(event_type=event.type, action="ignored")

    def payment_history(self, principal: Principal, page: int = 1, limit: int = 10) -> PaymentPage:
        offset = check_paging(page, limit)
        if principal.role == "client":
            where, params = "client_id = ?", [principal.id]
        elif principal.role == "admin":
            where, params = "1 = 1", []
        else:
            raise MarketplaceAuthorizationError("Only clients and admins can view payment history")
        with self.db.transaction() as conn:
            total = conn.execute(f"SELECT COUNT(*) AS n FROM payments WHERE {where}", tuple(params)).fetchone()["n"]
            rows = conn.execute(
                f"SELECT * FROM payments WHERE {where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()
        return PaymentPage(
            items=[self._payment_from_row(row) for row in rows],
            pagination=build_pagination(int(total), page, limit),
        )


payment_service = PaymentService(
    db=database,
    settings=settings_store,
    jobs=job_store,
    ledger=balance_ledger,
    gateway=stripe_gateway,
)
