import os
import sys
from decimal import Decimal

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from marketplace.models import JobRequest, Principal
from marketplace.services import job_policy


def _job(**overrides) -> JobRequest:
    data = {
        "id": "job_1",
        "client_id": "client_1",
        "assigned_provider_id": "provider_1",
        "title": "Tank inspection",
        "description": "Annual tank check",
        "location": "Depot",
        "region": "south",
        "estimated_total": Decimal("100"),
        "status": "open",
        "created_at": "2026-01-01T00:00:00+00:00",
        "updated_at": "2026-01-01T00:00:00+00:00",
    }
    data.update(overrides)
    return JobRequest(**data)


def test_admin_can_set_every_status():
    admin = Principal(id="admin_1", role="admin")
    for target in job_policy.JOB_STATUSES:
        assert job_policy.can_set_status(admin, _job(), target)


def test_client_targets_limited_to_owned_jobs():
    owner = Principal(id="client_1", role="client")
    stranger = Principal(id="client_2", role="client")
    assert job_policy.can_set_status(owner, _job(), "cancelled")
    assert job_policy.can_set_status(owner, _job(), "closed")
    assert not job_policy.can_set_status(owner, _job(), "in_progress")
    assert not job_policy.can_set_status(owner, _job(), "open")
    assert not job_policy.can_set_status(stranger, _job(), "cancelled")


def test_provider_targets_limited_to_assigned_jobs():
    provider = Principal(id="provider_1", role="provider")
    other = Principal(id="provider_2", role="inspector")
    assert job_policy.can_set_status(provider, _job(), "in_progress")
    assert job_policy.can_set_status(provider, _job(), "delivered")
    assert not job_policy.can_set_status(provider, _job(), "cancelled")
    assert not job_policy.can_set_status(provider, _job(), "open")
    assert not job_policy.can_set_status(other, _job(), "in_progress")


def test_closed_job_can_still_be_disputed():
    owner = Principal(id="client_1", role="client")
    assert job_policy.can_set_status(owner, _job(status="closed"), "disputed")


def test_policy_table_covers_every_role_and_status():
    roles = {"admin", "client", "provider", "inspector"}
    assert set(job_policy.TRANSITION_POLICY) == {(r, s) for r in roles for s in job_policy.JOB_STATUSES}
