from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status

from marketplace.auth import require_principal
from marketplace.models import (
    Attachment,
    AttachmentCreateRequest,
    InternalNote,
    JobRequest,
    JobRequestCreate,
    JobRequestDetails,
    JobRequestPage,
    JobRequestUpdate,
    JobStats,
    JobStatusUpdateRequest,
    NegotiationCreateRequest,
    NoteCreateRequest,
    Principal,
    Quotation,
    QuotationCreateRequest,
    QuotationStatusUpdateRequest,
    RatingRequest,
)
from marketplace.services.job_store import job_store

router = APIRouter(prefix="/job-requests", tags=["job-requests"])


@router.post("", response_model=JobRequest, status_code=status.HTTP_201_CREATED)
def create_job_request(request: JobRequestCreate, principal: Principal = Depends(require_principal)):
    return job_store.create_job(principal, request)


@router.get("", response_model=JobRequestPage)
def list_job_requests(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    region: Optional[str] = Query(default=None),
    urgency_level: Optional[str] = Query(default=None),
    search: Optional[str] = Query(default=None),
    page: int = Query(default=1),
    limit: int = Query(default=10),
    principal: Principal = Depends(require_principal),
):
    return job_store.list_jobs(
        principal,
        status=status_filter,
        region=region,
        urgency_level=urgency_level,
        search=search,
        page=page,
        limit=limit,
    )


@router.get("/stats", response_model=JobStats)
def job_request_stats(principal: Principal = Depends(require_principal)):
    return job_store.job_stats(principal)


@router.get("/{job_id}", response_model=JobRequestDetails)
def get_job_request(job_id: str, principal: Principal = Depends(require_principal)):
    return job_store.get_job(principal, job_id)


@router.put("/{job_id}", response_model=JobRequest)
def update_job_request(job_id: str, request: JobRequestUpdate, principal: Principal = Depends(require_principal)):
    return job_store.update_job(principal, job_id, request)


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_job_request(job_id: str, principal: Principal = Depends(require_principal)):
    job_store.delete_job(principal, job_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch("/{job_id}/status", response_model=JobRequest)
def update_job_status(job_id: str, request: JobStatusUpdateRequest, principal: Principal = Depends(require_principal)):
    return job_store.update_status(principal, job_id, request)


@router.post("/{job_id}/quotations", response_model=Quotation, status_code=status.HTTP_201_CREATED)
def add_quotation(job_id: str, request: QuotationCreateRequest, principal: Principal = Depends(require_principal)):
    return job_store.add_quotation(principal, job_id, request)


@router.get("/{job_id}/quotations", response_model=list[Quotation])
def list_quotations(job_id: str, principal: Principal = Depends(require_principal)):
    return job_store.list_quotations(principal, job_id)


@router.patch("/{job_id}/quotations/{quotation_id}", response_model=JobRequestDetails)
def update_quotation_status(
    job_id: str,
    quotation_id: str,
    request: QuotationStatusUpdateRequest,
    principal: Principal = Depends(require_principal),
):
    return job_store.update_quotation_status(principal, job_id, quotation_id, request)


@router.post("/{job_id}/quotations/{quotation_id}/negotiate", response_model=Quotation)
def negotiate_quotation(
    job_id: str,
    quotation_id: str,
    request: NegotiationCreateRequest,
    principal: Principal = Depends(require_principal),
):
    return job_store.add_negotiation_message(principal, job_id, quotation_id, request)


@router.post("/{job_id}/notes", response_model=list[InternalNote], status_code=status.HTTP_201_CREATED)
def add_note(job_id: str, request: NoteCreateRequest, principal: Principal = Depends(require_principal)):
    return job_store.add_note(principal, job_id, request)


@router.post("/{job_id}/attachments", response_model=list[Attachment], status_code=status.HTTP_201_CREATED)
def add_attachment(job_id: str, request: AttachmentCreateRequest, principal: Principal = Depends(require_principal)):
    return job_store.add_attachment(principal, job_id, request)


@router.post("/{job_id}/rating", response_model=JobRequest)
def submit_rating(job_id: str, request: RatingRequest, principal: Principal = Depends(require_principal)):
    return job_store.submit_rating(principal, job_id, request)
