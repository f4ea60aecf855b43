import os
import sqlite3
import sys
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from conftest import job_payload
from marketplace.models import (
    AttachmentCreateRequest,
    JobRequestUpdate,
    JobStatusUpdateRequest,
    NegotiationCreateRequest,
    NoteCreateRequest,
    Principal,
    QuotationCreateRequest,
    QuotationStatusUpdateRequest,
    RatingRequest,
)
from marketplace.services.errors import (
    MarketplaceAuthorizationError,
    MarketplaceConflictError,
    MarketplaceNotFoundError,
    MarketplaceValidationError,
)


def test_create_job_starts_open_and_unpaid(stores, client_user, provider_user):
    job = stores.jobs.create_job(client_user, job_payload(provider_user.id))
    assert job.status == "open"
    assert job.payment_status == "unpaid"
    assert job.client_id == client_user.id
    assert job.required_services == ["ultrasonic testing"]


def test_create_job_rejects_missing_fields_and_bad_roles(stores, client_user, provider_user):
    with pytest.raises(MarketplaceValidationError):
        stores.jobs.create_job(client_user, job_payload(provider_user.id, title="  "))
    with pytest.raises(MarketplaceValidationError):
        stores.jobs.create_job(client_user, job_payload(provider_user.id, required_services=[]))
    with pytest.raises(MarketplaceValidationError):
        stores.jobs.create_job(client_user, job_payload(provider_user.id, estimated_total=Decimal("-1")))
    with pytest.raises(MarketplaceAuthorizationError):
        stores.jobs.create_job(provider_user, job_payload(provider_user.id))


def test_admin_creates_job_on_behalf_of_client(stores, admin_user, provider_user):
    with pytest.raises(MarketplaceValidationError):
        stores.jobs.create_job(admin_user, job_payload(provider_user.id))
    job = stores.jobs.create_job(admin_user, job_payload(provider_user.id, client_id="client_x"))
    assert job.client_id == "client_x"


def test_list_jobs_is_scoped_by_role(stores, client_user, provider_user, admin_user):
    other_client = Principal(id="client_other", role="client")
    stores.jobs.create_job(client_user, job_payload(provider_user.id, title="Boiler check"))
    stores.jobs.create_job(other_client, job_payload("provider_other"))

    assert stores.jobs.list_jobs(client_user).pagination.total == 1
    assert stores.jobs.list_jobs(provider_user).pagination.total == 1
    assert stores.jobs.list_jobs(admin_user).pagination.total == 2

    found = stores.jobs.list_jobs(admin_user, search="Boiler")
    assert [job.title for job in found.items] == ["Boiler check"]


def test_list_jobs_paginates(stores, client_user, provider_user):
    for index in range(3):
        stores.jobs.create_job(client_user, job_payload(provider_user.id, title=f"Job {index}"))
    page = stores.jobs.list_jobs(client_user, page=2, limit=2)
    assert len(page.items) == 1
    assert page.pagination.total_pages == 2
    assert page.pagination.has_prev_page
    assert not page.pagination.has_next_page
    with pytest.raises(MarketplaceValidationError):
        stores.jobs.list_jobs(client_user, limit=101)


def test_get_job_requires_participant(stores, client_user, provider_user):
    job = stores.jobs.create_job(client_user, job_payload(provider_user.id))
    with pytest.raises(MarketplaceAuthorizationError):
        stores.jobs.get_job(Principal(id="someone", role="client"), job.id)
    with pytest.raises(MarketplaceNotFoundError):
        stores.jobs.get_job(client_user, "job_missing")
    assert stores.jobs.get_job(provider_user, job.id).job.id == job.id


def test_update_and_delete_respect_status(stores, client_user, provider_user):
    job = stores.jobs.create_job(client_user, job_payload(provider_user.id))
    updated = stores.jobs.update_job(client_user, job.id, JobRequestUpdate(title="Updated title"))
    assert updated.title == "Updated title"

    stores.jobs.update_status(provider_user, job.id, JobStatusUpdateRequest(status="in_progress"))
    with pytest.raises(MarketplaceConflictError):
        stores.jobs.delete_job(client_user, job.id)

    stores.jobs.update_status(provider_user, job.id, JobStatusUpdateRequest(status="completed"))
    with pytest.raises(MarketplaceConflictError):
        stores.jobs.update_job(client_user, job.id, JobRequestUpdate(title="Too late"))


def test_delete_open_job(stores, client_user, provider_user):
    job = stores.jobs.create_job(client_user, job_payload(provider_user.id))
    with pytest.raises(MarketplaceAuthorizationError):
        stores.jobs.delete_job(provider_user, job.id)
    stores.jobs.delete_job(client_user, job.id)
    with pytest.raises(MarketplaceNotFoundError):
        stores.jobs.get_job(client_user, job.id)


def test_status_update_stamps_dates_and_records_reason(stores, client_user, provider_user):
    job = stores.jobs.create_job(client_user, job_payload(provider_user.id))
    started = stores.jobs.update_status(provider_user, job.id, JobStatusUpdateRequest(status="in_progress"))
    assert started.actual_start_date is not None

    done = stores.jobs.update_status(
        provider_user, job.id, JobStatusUpdateRequest(status="completed", reason="All welds passed")
    )
    assert done.actual_completion_date is not None
    notes = stores.jobs.get_job(client_user, job.id).notes
    assert any("All welds passed" in note.note for note in notes)


def test_status_update_unauthorized_changes_nothing(stores, client_user, provider_user):
    job = stores.jobs.create_job(client_user, job_payload(provider_user.id))
    with pytest.raises(MarketplaceAuthorizationError):
        stores.jobs.update_status(client_user, job.id, JobStatusUpdateRequest(status="in_progress"))
    assert stores.jobs.get_job(client_user, job.id).job.status == "open"


def test_quotation_flow_accepts_one_quotation(stores, client_user, provider_user):
    job = stores.jobs.create_job(client_user, job_payload(provider_user.id))
    first = stores.jobs.add_quotation(provider_user, job.id, QuotationCreateRequest(quoted_amount=Decimal("120")))
    assert stores.jobs.get_job(client_user, job.id).job.status == "quoted"

    stores.jobs.update_status(provider_user, job.id, JobStatusUpdateRequest(status="negotiating"))
    second = stores.jobs.add_quotation(provider_user, job.id, QuotationCreateRequest(quoted_amount=Decimal("110")))

    details = stores.jobs.update_quotation_status(
        client_user, job.id, first.id, QuotationStatusUpdateRequest(status="accepted", client_message="Go ahead")
    )
    assert details.job.status == "accepted"
    assert details.job.final_quotation_id == first.id
    assert details.job.estimated_total == Decimal("120")
    accepted = [q for q in details.quotations if q.id == first.id][0]
    assert accepted.client_response is not None
    assert accepted.client_response.message == "Go ahead"

    with pytest.raises(MarketplaceConflictError):
        stores.jobs.update_quotation_status(
            client_user, job.id, second.id, QuotationStatusUpdateRequest(status="accepted")
        )
    with pytest.raises(MarketplaceConflictError):
        stores.jobs.update_quotation_status(
            client_user, job.id, first.id, QuotationStatusUpdateRequest(status="rejected")
        )


def test_add_quotation_guards(stores, client_user, provider_user):
    job = stores.jobs.create_job(client_user, job_payload(provider_user.id))
    with pytest.raises(MarketplaceValidationError):
        stores.jobs.add_quotation(provider_user, job.id, QuotationCreateRequest())
    with pytest.raises(MarketplaceAuthorizationError):
        stores.jobs.add_quotation(
            Principal(id="provider_other", role="provider"), job.id, QuotationCreateRequest(quoted_amount=Decimal("5"))
        )
    stores.jobs.add_quotation(provider_user, job.id, QuotationCreateRequest(quoted_amount=Decimal("5")))
    with pytest.raises(MarketplaceConflictError):
        stores.jobs.add_quotation(provider_user, job.id, QuotationCreateRequest(quoted_amount=Decimal("6")))


def test_quoting_assignee_fixes_provider_type(stores, client_user):
    inspector = Principal(id="inspector_q", role="inspector")
    job = stores.jobs.create_job(client_user, job_payload(inspector.id, provider_type="provider"))
    assert job.provider_type == "provider"
    stores.jobs.add_quotation(inspector, job.id, QuotationCreateRequest(quoted_amount=Decimal("90")))
    assert stores.jobs.get_job(client_user, job.id).job.provider_type == "inspector"


def test_negotiation_moves_quotation_and_job_to_negotiating(stores, client_user, provider_user):
    job = stores.jobs.create_job(client_user, job_payload(provider_user.id))
    quotation = stores.jobs.add_quotation(provider_user, job.id, QuotationCreateRequest(quoted_amount=Decimal("150")))

    updated = stores.jobs.add_negotiation_message(
        client_user, job.id, quotation.id, NegotiationCreateRequest(message="Can you do 130?", proposed_amount=Decimal("130"))
    )
    reply = stores.jobs.add_negotiation_message(
        provider_user, job.id, quotation.id, NegotiationCreateRequest(message="140 is my best")
    )
    assert updated.status == "negotiating"
    assert [n.sequence for n in reply.negotiations] == [1, 2]
    assert reply.negotiations[0].from_client is True
    assert reply.negotiations[1].from_client is False
    assert stores.jobs.get_job(client_user, job.id).job.status == "negotiating"

    with pytest.raises(MarketplaceValidationError):
        stores.jobs.add_negotiation_message(client_user, job.id, quotation.id, NegotiationCreateRequest(message=" "))


def test_negotiation_refused_on_accepted_quotation(stores, client_user, provider_user):
    job = stores.jobs.create_job(client_user, job_payload(provider_user.id))
    quotation = stores.jobs.add_quotation(provider_user, job.id, QuotationCreateRequest(quoted_amount=Decimal("150")))
    stores.jobs.update_quotation_status(client_user, job.id, quotation.id, QuotationStatusUpdateRequest(status="accepted"))
    with pytest.raises(MarketplaceConflictError):
        stores.jobs.add_negotiation_message(
            client_user, job.id, quotation.id, NegotiationCreateRequest(message="Actually...")
        )


def test_status_patch_to_accepted_flips_final_quotation(stores, client_user, provider_user):
    job = stores.jobs.create_job(client_user, job_payload(provider_user.id))
    quotation = stores.jobs.add_quotation(provider_user, job.id, QuotationCreateRequest(quoted_amount=Decimal("90")))
    with pytest.raises(MarketplaceNotFoundError):
        stores.jobs.update_status(
            client_user, job.id, JobStatusUpdateRequest(status="accepted", final_quotation_id="quo_missing")
        )
    stores.jobs.update_status(
        client_user, job.id, JobStatusUpdateRequest(status="accepted", final_quotation_id=quotation.id)
    )
    quotations = stores.jobs.list_quotations(client_user, job.id)
    assert quotations[0].status == "accepted"


def test_single_accepted_quotation_enforced_by_index(stores, client_user, provider_user):
    job = stores.jobs.create_job(client_user, job_payload(provider_user.id))
    first = stores.jobs.add_quotation(provider_user, job.id, QuotationCreateRequest(quoted_amount=Decimal("90")))
    stores.jobs.update_status(provider_user, job.id, JobStatusUpdateRequest(status="negotiating"))
    second = stores.jobs.add_quotation(provider_user, job.id, QuotationCreateRequest(quoted_amount=Decimal("95")))
    with stores.db.transaction() as conn:
        conn.execute("UPDATE quotations SET status = 'accepted' WHERE id = ?", (first.id,))
    with pytest.raises(MarketplaceConflictError):
        with stores.db.transaction() as conn:
            conn.execute("UPDATE quotations SET status = 'accepted' WHERE id = ?", (second.id,))


def test_notes_attachments_and_rating(stores, client_user, provider_user):
    job = stores.jobs.create_job(client_user, job_payload(provider_user.id))
    notes = stores.jobs.add_note(provider_user, job.id, NoteCreateRequest(note="Site access from gate B", note_type="logistics"))
    assert notes[-1].note_type == "logistics"
    with pytest.raises(MarketplaceValidationError):
        stores.jobs.add_note(provider_user, job.id, NoteCreateRequest(note="x" * 1001))

    attachments = stores.jobs.add_attachment(
        provider_user,
        job.id,
        AttachmentCreateRequest(
            file_name="report.pdf",
            original_file_name="Weld report.pdf",
            file_url="https://files.example.com/report.pdf",
            file_type="application/pdf",
            file_size=2048,
            category="report",
        ),
    )
    assert attachments[0].category == "report"

    with pytest.raises(MarketplaceConflictError):
        stores.jobs.submit_rating(client_user, job.id, RatingRequest(rating=5))
    stores.jobs.update_status(provider_user, job.id, JobStatusUpdateRequest(status="closed"))
    rated = stores.jobs.submit_rating(client_user, job.id, RatingRequest(rating=4, review="Thorough"))
    assert rated.client_rating is not None
    assert rated.client_rating.rating == 4
    with pytest.raises(MarketplaceConflictError):
        stores.jobs.submit_rating(client_user, job.id, RatingRequest(rating=5))


def test_job_stats(stores, client_user, provider_user):
    stores.jobs.create_job(client_user, job_payload(provider_user.id, estimated_total=Decimal("100")))
    job = stores.jobs.create_job(client_user, job_payload(provider_user.id, estimated_total=Decimal("300")))
    stores.jobs.update_status(provider_user, job.id, JobStatusUpdateRequest(status="in_progress"))
    stats = stores.jobs.job_stats(client_user)
    assert stats.total_jobs == 2
    assert stats.status_breakdown == {"open": 1, "in_progress": 1}
    assert stats.total_value == Decimal("400")
    assert stats.average_value == Decimal("200")


def test_records_survive_reopening_the_database(stores, client_user, provider_user):
    job = stores.jobs.create_job(client_user, job_payload(provider_user.id))
    with sqlite3.connect(stores.db.db_path) as conn:
        row = conn.execute("SELECT status FROM jobs WHERE id = ?", (job.id,)).fetchone()
    assert row[0] == "open"
