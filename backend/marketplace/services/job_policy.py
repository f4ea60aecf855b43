"""Who may move a job request into which status.

The table is keyed by ``(role, target status)``; admins may set anything,
clients act only on jobs they own and providers/inspectors only on jobs
assigned to them. There is no from-status graph, so a closed job can still
be disputed.
"""

from typing import FrozenSet, Mapping

from marketplace.models import JobRequest, Principal

JOB_STATUSES: FrozenSet[str] = frozenset(
    {
        "open",
        "quoted",
        "negotiating",
        "accepted",
        "in_progress",
        "completed",
        "delivered",
        "closed",
        "cancelled",
        "rejected",
        "disputed",
        "on_hold",
    }
)

NON_EDITABLE_STATUSES: FrozenSet[str] = frozenset({"completed", "delivered", "closed", "cancelled"})

NON_DELETABLE_STATUSES: FrozenSet[str] = NON_EDITABLE_STATUSES | {"in_progress"}

QUOTABLE_STATUSES: FrozenSet[str] = frozenset({"open", "negotiating"})

_ASSIGNEE_TARGETS = frozenset(
    {
        "quoted",
        "rejected",
        "negotiating",
        "in_progress",
        "completed",
        "delivered",
        "disputed",
        "on_hold",
        "closed",
        "accepted",
    }
)

ROLE_TARGETS: Mapping[str, FrozenSet[str]] = {
    "admin": JOB_STATUSES,
    "client": frozenset({"cancelled", "accepted", "disputed", "on_hold", "closed"}),
    "provider": _ASSIGNEE_TARGETS,
    "inspector": _ASSIGNEE_TARGETS,
}

TRANSITION_POLICY: Mapping[tuple[str, str], bool] = {
    (role, status): status in targets for role, targets in ROLE_TARGETS.items() for status in JOB_STATUSES
}


def is_owner(principal: Principal, job: JobRequest) -> bool:
    return principal.role == "client" and job.client_id == principal.id


def is_assignee(principal: Principal, job: JobRequest) -> bool:
    return principal.role in {"provider", "inspector"} and job.assigned_provider_id == principal.id


def is_participant(principal: Principal, job: JobRequest) -> bool:
    return principal.role == "admin" or is_owner(principal, job) or is_assignee(principal, job)


def can_manage(principal: Principal, job: JobRequest) -> bool:
    """Edit and delete rights: the owning client or an admin."""
    return principal.role == "admin" or is_owner(principal, job)


def can_set_status(principal: Principal, job: JobRequest, target: str) -> bool:
    if not TRANSITION_POLICY.get((principal.role, target), False):
        return False
    if principal.role == "admin":
        return True
    if principal.role == "client":
        return is_owner(principal, job)
    return is_assignee(principal, job)
