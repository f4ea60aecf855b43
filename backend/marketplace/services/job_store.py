import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from marketplace.models import (
    Attachment,
    AttachmentCreateRequest,
    ClientRating,
    ClientResponse,
    InternalNote,
    JobRequest,
    JobRequestCreate,
    JobRequestDetails,
    JobRequestPage,
    JobRequestUpdate,
    JobStats,
    JobStatusUpdateRequest,
    Negotiation,
    NegotiationCreateRequest,
    NoteCreateRequest,
    Principal,
    Quotation,
    QuotationCreateRequest,
    QuotationStatusUpdateRequest,
    RatingRequest,
)
from marketplace.services import job_policy, status_events
from marketplace.services.database import (
    Database,
    database,
    decimal_or_none,
    new_id,
    now_iso,
    to_decimal,
)
from marketplace.services.errors import (
    MarketplaceAuthorizationError,
    MarketplaceConflictError,
    MarketplaceNotFoundError,
    MarketplaceValidationError,
)
from marketplace.services.pagination import build_pagination, check_paging

logger = logging.getLogger(__name__)

NOTE_MAX_LENGTH = 1000
TEXT_FIELDS = ("title", "description", "location", "region")


def _positive_amount(value: Optional[Decimal], field: str, *, allow_zero: bool = False) -> Decimal:
    if value is None:
        raise MarketplaceValidationError(f"{field} is required")
    if not value.is_finite() or value < 0 or (value == 0 and not allow_zero):
        qualifier = "zero or greater" if allow_zero else "greater than zero"
        raise MarketplaceValidationError(f"{field} must be {qualifier}")
    return value


def _iso_date_or_none(value: Optional[str], field: str) -> Optional[str]:
    if value is None or not value.strip():
        return None
    try:
        datetime.fromisoformat(value.strip())
    except ValueError as exc:
        raise MarketplaceValidationError(f"Invalid {field}; expected an ISO-8601 date") from exc
    return value.strip()


@dataclass
class JobStore:
    db: Database

    # Row mapping

    def _job_from_row(self, row: sqlite3.Row) -> JobRequest:
        rating = None
        if row["client_rating"] is not None:
            rating = ClientRating(
                rating=int(row["client_rating"]),
                review=row["client_review"] or "",
                submitted_at=row["rating_submitted_at"],
            )
        return JobRequest(
            id=row["id"],
            client_id=row["client_id"],
            assigned_provider_id=row["assigned_provider_id"],
            provider_type=row["provider_type"],
            title=row["title"],
            description=row["description"],
            location=row["location"],
            region=row["region"],
            required_services=json.loads(row["required_services_json"] or "[]"),
            estimated_total=to_decimal(row["estimated_total"]),
            urgency_level=row["urgency_level"],
            status=row["status"],
            payment_status=row["payment_status"],
            payment_amount=decimal_or_none(row["payment_amount"]),
            paid_at=row["paid_at"],
            final_quotation_id=row["final_quotation_id"],
            preferred_start_date=row["preferred_start_date"],
            actual_start_date=row["actual_start_date"],
            expected_completion_date=row["expected_completion_date"],
            actual_completion_date=row["actual_completion_date"],
            client_rating=rating,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _negotiation_from_row(self, row: sqlite3.Row) -> Negotiation:
        return Negotiation(
            id=row["id"],
            quotation_id=row["quotation_id"],
            sequence=int(row["sequence"]),
            message=row["message"],
            proposed_amount=decimal_or_none(row["proposed_amount"]),
            counter_offer=row["counter_offer"],
            from_client=bool(row["from_client"]),
            created_by=row["created_by"],
            created_at=row["created_at"],
        )

    def _quotation_from_row(self, row: sqlite3.Row, negotiations: List[Negotiation]) -> Quotation:
        response = None
        if row["client_responded_at"]:
            response = ClientResponse(
                message=row["client_response_message"] or "",
                responded_at=row["client_responded_at"],
                responded_by=row["client_responded_by"],
            )
        return Quotation(
            id=row["id"],
            job_id=row["job_id"],
            provider_id=row["provider_id"],
            quoted_amount=to_decimal(row["quoted_amount"]),
            currency=row["currency"],
            quotation_details=row["quotation_details"] or "",
            valid_until=row["valid_until"],
            status=row["status"],
            client_response=response,
            negotiations=negotiations,
            created_at=row["created_at"],
        )

    # Loaders

    def _load_job(self, conn: sqlite3.Connection, job_id: str) -> JobRequest:
        row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if not row:
            raise MarketplaceNotFoundError("Job request not found")
        return self._job_from_row(row)

    def load_job(self, conn: sqlite3.Connection, job_id: str) -> JobRequest:
        return self._load_job(conn, job_id)

    def _load_quotation_row(self, conn: sqlite3.Connection, job_id: str, quotation_id: str) -> sqlite3.Row:
        row = conn.execute(
            "SELECT * FROM quotations WHERE id = ? AND job_id = ?",
            (quotation_id, job_id),
        ).fetchone()
        if not row:
            raise MarketplaceNotFoundError("Quotation not found")
        return row

    def _quotation(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Quotation:
        negotiation_rows = conn.execute(
            "SELECT * FROM negotiations WHERE quotation_id = ? ORDER BY sequence ASC",
            (row["id"],),
        ).fetchall()
        return self._quotation_from_row(row, [self._negotiation_from_row(n) for n in negotiation_rows])

    def _quotations_for_job(self, conn: sqlite3.Connection, job_id: str) -> List[Quotation]:
        rows = conn.execute(
            "SELECT * FROM quotations WHERE job_id = ? ORDER BY created_at ASC, rowid ASC",
            (job_id,),
        ).fetchall()
        return [self._quotation(conn, row) for row in rows]

    def _notes_for_job(self, conn: sqlite3.Connection, job_id: str) -> List[InternalNote]:
        rows = conn.execute(
            "SELECT * FROM job_notes WHERE job_id = ? ORDER BY added_at ASC, rowid ASC",
            (job_id,),
        ).fetchall()
        return [
            InternalNote(
                id=row["id"],
                job_id=row["job_id"],
                note=row["note"],
                note_type=row["note_type"],
                added_by=row["added_by"],
                added_at=row["added_at"],
            )
            for row in rows
        ]

    def _attachments_for_job(self, conn: sqlite3.Connection, job_id: str) -> List[Attachment]:
        rows = conn.execute(
            "SELECT * FROM job_attachments WHERE job_id = ? ORDER BY uploaded_at ASC, rowid ASC",
            (job_id,),
        ).fetchall()
        return [
            Attachment(
                id=row["id"],
                job_id=row["job_id"],
                file_name=row["file_name"],
                original_file_name=row["original_file_name"],
                file_url=row["file_url"],
                file_type=row["file_type"],
                file_size=int(row["file_size"]),
                category=row["category"],
                uploaded_by=row["uploaded_by"],
                uploaded_at=row["uploaded_at"],
            )
            for row in rows
        ]

    def _details(self, conn: sqlite3.Connection, job_id: str) -> JobRequestDetails:
        return JobRequestDetails(
            job=self._load_job(conn, job_id),
            quotations=self._quotations_for_job(conn, job_id),
            notes=self._notes_for_job(conn, job_id),
            attachments=self._attachments_for_job(conn, job_id),
        )

    # Writers

    def _apply(self, conn: sqlite3.Connection, job_id: str, assignments: Dict[str, Any]) -> None:
        columns = ", ".join(f"{column} = ?" for column in assignments)
        conn.execute(f"UPDATE jobs SET {columns} WHERE id = ?", (*assignments.values(), job_id))

    def _append_note(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        note: str,
        added_by: str,
        note_type: str = "general",
    ) -> None:
        conn.execute(
            """
            INSERT INTO job_notes (id, job_id, note, note_type, added_by, added_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (new_id("note"), job_id, note[:NOTE_MAX_LENGTH], note_type, added_by, now_iso()),
        )

    def _accept_quotation(self, conn: sqlite3.Connection, job_id: str, quotation_id: str) -> sqlite3.Row:
        row = self._load_quotation_row(conn, job_id, quotation_id)
        other = conn.execute(
            "SELECT id FROM quotations WHERE job_id = ? AND status = 'accepted' AND id != ?",
            (job_id, quotation_id),
        ).fetchone()
        if other:
            raise MarketplaceConflictError("Another quotation is already accepted for this job")
        if row["status"] != "accepted":
            conn.execute("UPDATE quotations SET status = 'accepted' WHERE id = ?", (quotation_id,))
        return row

    def _bind_provider_type(self, conn: sqlite3.Connection, job: JobRequest, principal: Principal) -> None:
        """The commission type follows the authenticated assignee, not the client's guess."""
        if not job_policy.is_assignee(principal, job) or job.provider_type == principal.role:
            return
        self._apply(conn, job.id, {"provider_type": principal.role})
        logger.info("Job %s provider type %s -> %s from assignee", job.id, job.provider_type, principal.role)

    def _record_job_status(self, conn: sqlite3.Connection, job: JobRequest, status: str, actor: Principal) -> None:
        status_events.record(
            conn,
            "job.status_changed",
            "job",
            job.id,
            job_id=job.id,
            status=status,
            recipients=[job.client_id, job.assigned_provider_id],
            actor_id=actor.id,
            title=job.title,
            previous_status=job.status,
        )

    def _scope_clause(self, principal: Principal) -> tuple[str, List[Any]]:
        if principal.role == "client":
            return "client_id = ?", [principal.id]
        if principal.role in {"provider", "inspector"}:
            return "assigned_provider_id = ?", [principal.id]
        return "1 = 1", []

    # Job CRUD

    def create_job(self, principal: Principal, request: JobRequestCreate) -> JobRequest:
        if principal.role == "client":
            client_id = principal.id
        elif principal.role == "admin":
            client_id = (request.client_id or "").strip()
            if not client_id:
                raise MarketplaceValidationError("client_id is required when an admin creates a job")
        else:
            raise MarketplaceAuthorizationError("Only clients can create job requests")

        values = {field: getattr(request, field).strip() for field in TEXT_FIELDS}
        missing = [field for field, value in values.items() if not value]
        if missing:
            raise MarketplaceValidationError(f"Missing required fields: {', '.join(missing)}")
        assigned_provider_id = request.assigned_provider_id.strip()
        if not assigned_provider_id:
            raise MarketplaceValidationError("assigned_provider_id is required")
        if assigned_provider_id == client_id:
            raise MarketplaceValidationError("A client cannot assign a job to themselves")
        services = [service.strip() for service in request.required_services if service.strip()]
        if not services:
            raise MarketplaceValidationError("At least one required service is needed")
        estimated_total = _positive_amount(request.estimated_total, "estimated_total", allow_zero=True)
        preferred_start = _iso_date_or_none(request.preferred_start_date, "preferred_start_date")
        expected_completion = _iso_date_or_none(request.expected_completion_date, "expected_completion_date")

        job_id = new_id("job")
        now = now_iso()
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO jobs (
                    id, client_id, assigned_provider_id, provider_type, title, description, location, region,
                    required_services_json, estimated_total, urgency_level, status, payment_status,
                    preferred_start_date, expected_completion_date, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'open', 'unpaid', ?, ?, ?, ?)
                """,
                (
                    job_id,
                    client_id,
                    assigned_provider_id,
                    request.provider_type,
                    values["title"],
                    values["description"],
                    values["location"],
                    values["region"],
                    json.dumps(services),
                    str(estimated_total),
                    request.urgency_level,
                    preferred_start,
                    expected_completion,
                    now,
                    now,
                ),
            )
            job = self._load_job(conn, job_id)
            status_events.record(
                conn,
                "job.created",
                "job",
                job_id,
                job_id=job_id,
                status="open",
                recipients=[assigned_provider_id],
                actor_id=principal.id,
                title=job.title,
                region=job.region,
            )
        logger.info("Job %s created by %s for provider %s", job_id, principal.id, assigned_provider_id)
        return job

    def list_jobs(
        self,
        principal: Principal,
        *,
        status: Optional[str] = None,
        region: Optional[str] = None,
        urgency_level: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> JobRequestPage:
        offset = check_paging(page, limit)
        if status and status not in job_policy.JOB_STATUSES:
            raise MarketplaceValidationError(f"Invalid status filter: {status}")

        clause, params = self._scope_clause(principal)
        filters = [clause]
        if status:
            filters.append("status = ?")
            params.append(status)
        if region:
            filters.append("region = ?")
            params.append(region)
        if urgency_level:
            filters.append("urgency_level = ?")
            params.append(urgency_level)
        if search and search.strip():
            filters.append("(title LIKE ? OR description LIKE ?)")
            pattern = f"%{search.strip()}%"
            params.extend([pattern, pattern])
        where = " AND ".join(filters)

        with self.db.transaction() as conn:
            total = conn.execute(f"SELECT COUNT(*) AS n FROM jobs WHERE {where}", tuple(params)).fetchone()["n"]
            rows = conn.execute(
                f"SELECT * FROM jobs WHERE {where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()
        return JobRequestPage(
            items=[self._job_from_row(row) for row in rows],
            pagination=build_pagination(int(total), page, limit),
        )

    def get_job(self, principal: Principal, job_id: str) -> JobRequestDetails:
        with self.db.transaction() as conn:
            job = self._load_job(conn, job_id)
            if not job_policy.is_participant(principal, job):
                raise MarketplaceAuthorizationError("Not authorized to view this job request")
            return self._details(conn, job_id)

    def update_job(self, principal: Principal, job_id: str, update: JobRequestUpdate) -> JobRequest:
        changes = update.model_dump(exclude_unset=True)
        assignments: Dict[str, Any] = {}
        for field in TEXT_FIELDS:
            if changes.get(field) is not None:
                value = changes[field].strip()
                if not value:
                    raise MarketplaceValidationError(f"{field} cannot be empty")
                assignments[field] = value
        if changes.get("required_services") is not None:
            services = [service.strip() for service in changes["required_services"] if service.strip()]
            if not services:
                raise MarketplaceValidationError("At least one required service is needed")
            assignments["required_services_json"] = json.dumps(services)
        if changes.get("estimated_total") is not None:
            amount = _positive_amount(changes["estimated_total"], "estimated_total", allow_zero=True)
            assignments["estimated_total"] = str(amount)
        if changes.get("urgency_level") is not None:
            assignments["urgency_level"] = changes["urgency_level"]
        for field in ("preferred_start_date", "expected_completion_date"):
            if field in changes:
                assignments[field] = _iso_date_or_none(changes[field], field)

        with self.db.transaction() as conn:
            job = self._load_job(conn, job_id)
            if not job_policy.can_manage(principal, job):
                raise MarketplaceAuthorizationError("Not authorized to update this job request")
            if job.status in job_policy.NON_EDITABLE_STATUSES:
                raise MarketplaceConflictError(f"Cannot update job request in {job.status} status")
            if assignments:
                assignments["updated_at"] = now_iso()
                self._apply(conn, job_id, assignments)
            return self._load_job(conn, job_id)

    def delete_job(self, principal: Principal, job_id: str) -> None:
        with self.db.transaction() as conn:
            job = self._load_job(conn, job_id)
            if not job_policy.can_manage(principal, job):
                raise MarketplaceAuthorizationError("Not authorized to delete this job request")
            if job.status in job_policy.NON_DELETABLE_STATUSES:
                raise MarketplaceConflictError(f"Cannot delete job request in {job.status} status")
            conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
        logger.info("Job %s deleted by %s", job_id, principal.id)

    # State machine

    def update_status(self, principal: Principal, job_id: str, update: JobStatusUpdateRequest) -> JobRequest:
        target = update.status
        with self.db.transaction() as conn:
            job = self._load_job(conn, job_id)
            if not job_policy.can_set_status(principal, job, target):
                raise MarketplaceAuthorizationError(f"Not authorized to set job status to {target}")

            now = now_iso()
            assignments: Dict[str, Any] = {"status": target, "updated_at": now}
            if target == "in_progress" and not job.actual_start_date:
                assignments["actual_start_date"] = now
            if target == "completed" and not job.actual_completion_date:
                assignments["actual_completion_date"] = now
            if target == "accepted":
                final_quotation_id = update.final_quotation_id or job.final_quotation_id
                if final_quotation_id:
                    self._accept_quotation(conn, job_id, final_quotation_id)
                    assignments["final_quotation_id"] = final_quotation_id
            self._apply(conn, job_id, assignments)
            self._bind_provider_type(conn, job, principal)

            reason = (update.reason or "").strip()
            if reason:
                self._append_note(conn, job_id, f"Status changed to {target}. Reason: {reason}", principal.id)
            if target != job.status:
                self._record_job_status(conn, job, target, principal)
            updated = self._load_job(conn, job_id)
        logger.info("Job %s status %s -> %s by %s (%s)", job_id, job.status, target, principal.id, principal.role)
        return updated

    # Quotations

    def add_quotation(self, principal: Principal, job_id: str, request: QuotationCreateRequest) -> Quotation:
        amount = _positive_amount(request.quoted_amount, "quoted_amount")
        valid_until = _iso_date_or_none(request.valid_until, "valid_until")
        with self.db.transaction() as conn:
            job = self._load_job(conn, job_id)
            if not job_policy.is_assignee(principal, job):
                raise MarketplaceAuthorizationError("Only the assigned provider can add a quotation")
            if job.status not in job_policy.QUOTABLE_STATUSES:
                raise MarketplaceConflictError(f"Cannot add quotation to job in {job.status} status")

            quotation_id = new_id("quo")
            now = now_iso()
            conn.execute(
                """
                INSERT INTO quotations (
                    id, job_id, provider_id, quoted_amount, currency, quotation_details, valid_until, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?)
                """,
                (
                    quotation_id,
                    job_id,
                    principal.id,
                    str(amount),
                    (request.currency or "USD").upper(),
                    request.quotation_details.strip()[:2000],
                    valid_until,
                    now,
                ),
            )
            self._apply(conn, job_id, {"status": "quoted", "updated_at": now})
            self._bind_provider_type(conn, job, principal)
            status_events.record(
                conn,
                "quotation.created",
                "quotation",
                quotation_id,
                job_id=job_id,
                status="pending",
                recipients=[job.client_id],
                actor_id=principal.id,
                quoted_amount=amount,
                valid_until=valid_until,
            )
            return self._quotation(conn, self._load_quotation_row(conn, job_id, quotation_id))

    def list_quotations(self, principal: Principal, job_id: str) -> List[Quotation]:
        with self.db.transaction() as conn:
            job = self._load_job(conn, job_id)
            if not job_policy.is_participant(principal, job):
                raise MarketplaceAuthorizationError("Not authorized to view quotations")
            return self._quotations_for_job(conn, job_id)

    def update_quotation_status(
        self,
        principal: Principal,
        job_id: str,
        quotation_id: str,
        update: QuotationStatusUpdateRequest,
    ) -> JobRequestDetails:
        with self.db.transaction() as conn:
            job = self._load_job(conn, job_id)
            if not job_policy.is_owner(principal, job):
                raise MarketplaceAuthorizationError("Only the job owner can respond to quotations")
            if job.status in job_policy.NON_EDITABLE_STATUSES:
                raise MarketplaceConflictError(f"Cannot change quotations on a job in {job.status} status")
            row = self._load_quotation_row(conn, job_id, quotation_id)
            if row["status"] == "accepted" and update.status != "accepted":
                raise MarketplaceConflictError("An accepted quotation cannot be changed")

            now = now_iso()
            if update.status == "accepted":
                self._accept_quotation(conn, job_id, quotation_id)
                self._apply(
                    conn,
                    job_id,
                    {
                        "status": "accepted",
                        "final_quotation_id": quotation_id,
                        "estimated_total": row["quoted_amount"],
                        "updated_at": now,
                    },
                )
            else:
                conn.execute("UPDATE quotations SET status = ? WHERE id = ?", (update.status, quotation_id))
                if update.status == "negotiating":
                    self._apply(conn, job_id, {"status": "negotiating", "updated_at": now})
            conn.execute(
                """
                UPDATE quotations
                SET client_response_message = ?, client_responded_at = ?, client_responded_by = ?
                WHERE id = ?
                """,
                (update.client_message.strip(), now, principal.id, quotation_id),
            )
            status_events.record(
                conn,
                "quotation.status_changed",
                "quotation",
                quotation_id,
                job_id=job_id,
                status=update.status,
                recipients=[row["provider_id"]],
                actor_id=principal.id,
                previous_status=row["status"],
            )
            details = self._details(conn, job_id)
        logger.info("Quotation %s on job %s set to %s by %s", quotation_id, job_id, update.status, principal.id)
        return details

    def add_negotiation_message(
        self,
        principal: Principal,
        job_id: str,
        quotation_id: str,
        request: NegotiationCreateRequest,
    ) -> Quotation:
        message = request.message.strip()
        if not message:
            raise MarketplaceValidationError("Message is required for negotiation")
        proposed_amount = None
        if request.proposed_amount is not None:
            proposed_amount = _positive_amount(request.proposed_amount, "proposed_amount")

        with self.db.transaction() as conn:
            job = self._load_job(conn, job_id)
            row = self._load_quotation_row(conn, job_id, quotation_id)
            from_client = job_policy.is_owner(principal, job)
            is_quoting_provider = principal.role in {"provider", "inspector"} and row["provider_id"] == principal.id
            if not (from_client or is_quoting_provider):
                raise MarketplaceAuthorizationError("Only the job owner or the quoting provider can negotiate")
            if job.status in job_policy.NON_EDITABLE_STATUSES:
                raise MarketplaceConflictError(f"Cannot negotiate on a job in {job.status} status")
            if row["status"] not in {"pending", "negotiating"}:
                raise MarketplaceConflictError(f"Cannot negotiate on a {row['status']} quotation")

            sequence = conn.execute(
                "SELECT COALESCE(MAX(sequence), 0) + 1 AS next FROM negotiations WHERE quotation_id = ?",
                (quotation_id,),
            ).fetchone()["next"]
            now = now_iso()
            conn.execute(
                """
                INSERT INTO negotiations (
                    id, quotation_id, sequence, message, proposed_amount, counter_offer, from_client, created_by, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    new_id("neg"),
                    quotation_id,
                    int(sequence),
                    message,
                    str(proposed_amount) if proposed_amount is not None else None,
                    (request.counter_offer or "").strip() or None,
                    1 if from_client else 0,
                    principal.id,
                    now,
                ),
            )
            conn.execute("UPDATE quotations SET status = 'negotiating' WHERE id = ?", (quotation_id,))
            self._apply(conn, job_id, {"status": "negotiating", "updated_at": now})
            status_events.record(
                conn,
                "quotation.negotiation",
                "quotation",
                quotation_id,
                job_id=job_id,
                status="negotiating",
                recipients=[job.client_id, row["provider_id"]],
                actor_id=principal.id,
                sequence=int(sequence),
                proposed_amount=proposed_amount,
            )
            return self._quotation(conn, self._load_quotation_row(conn, job_id, quotation_id))

    # Notes, attachments, rating

    def add_note(self, principal: Principal, job_id: str, request: NoteCreateRequest) -> List[InternalNote]:
        note = request.note.strip()
        if not note:
            raise MarketplaceValidationError("Note content is required")
        if len(note) > NOTE_MAX_LENGTH:
            raise MarketplaceValidationError(f"Note must be at most {NOTE_MAX_LENGTH} characters")
        with self.db.transaction() as conn:
            job = self._load_job(conn, job_id)
            if not job_policy.is_participant(principal, job):
                raise MarketplaceAuthorizationError("Not authorized to add notes")
            self._append_note(conn, job_id, note, principal.id, note_type=request.note_type)
            return self._notes_for_job(conn, job_id)

    def add_attachment(self, principal: Principal, job_id: str, request: AttachmentCreateRequest) -> List[Attachment]:
        if not request.file_url.strip() or not request.file_name.strip():
            raise MarketplaceValidationError("file_name and file_url are required")
        with self.db.transaction() as conn:
            job = self._load_job(conn, job_id)
            if not job_policy.is_participant(principal, job):
                raise MarketplaceAuthorizationError("Not authorized to add attachments")
            conn.execute(
                """
                INSERT INTO job_attachments (
                    id, job_id, file_name, original_file_name, file_url, file_type, file_size, category, uploaded_by, uploaded_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    new_id("att"),
                    job_id,
                    request.file_name.strip(),
                    request.original_file_name.strip() or request.file_name.strip(),
                    request.file_url.strip(),
                    request.file_type.strip(),
                    request.file_size,
                    request.category,
                    principal.id,
                    now_iso(),
                ),
            )
            return self._attachments_for_job(conn, job_id)

    def submit_rating(self, principal: Principal, job_id: str, request: RatingRequest) -> JobRequest:
        with self.db.transaction() as conn:
            job = self._load_job(conn, job_id)
            if not job_policy.is_owner(principal, job):
                raise MarketplaceAuthorizationError("Only the job owner can rate this job")
            if job.status != "closed":
                raise MarketplaceConflictError("Only closed jobs can be rated")
            if job.client_rating is not None:
                raise MarketplaceConflictError("This job has already been rated")
            now = now_iso()
            self._apply(
                conn,
                job_id,
                {
                    "client_rating": request.rating,
                    "client_review": request.review.strip(),
                    "rating_submitted_at": now,
                    "updated_at": now,
                },
            )
            return self._load_job(conn, job_id)

    def job_stats(self, principal: Principal) -> JobStats:
        clause, params = self._scope_clause(principal)
        with self.db.transaction() as conn:
            rows = conn.execute(
                f"SELECT status, estimated_total FROM jobs WHERE {clause}",
                tuple(params),
            ).fetchall()
        breakdown: Dict[str, int] = {}
        total_value = Decimal("0")
        for row in rows:
            breakdown[row["status"]] = breakdown.get(row["status"], 0) + 1
            total_value += to_decimal(row["estimated_total"])
        average = total_value / len(rows) if rows else Decimal("0")
        return JobStats(
            total_jobs=len(rows),
            status_breakdown=breakdown,
            total_value=total_value,
            average_value=average,
        )


job_store = JobStore(db=database)
