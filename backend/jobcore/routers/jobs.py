"""Jobs router: thin HTTP layer over the job orchestration service.

Domain exceptions raised by the service are translated to HTTP responses by
the handlers registered in `main.py`.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, status

from ..deps import get_actor, get_job_service
from ..models import (
    Actor,
    ApprovalRequest,
    ChecklistProgressRequest,
    Job,
    JobDraftRequest,
    JobSaveRequest,
    PaymentRequest,
    PhotoRequest,
    PortalView,
    StatusTransitionRequest,
    VisualQuoteRequest,
)
from ..services.orchestration.job_service import JobOrchestrationService

router = APIRouter(tags=["jobs"])


@router.post("/jobs/draft", response_model=Job, status_code=status.HTTP_201_CREATED)
async def create_draft(
    body: JobDraftRequest,
    actor: Actor = Depends(get_actor),
    job_service: JobOrchestrationService = Depends(get_job_service),
) -> Job:
    """Create an empty estimate for a customer and vehicle."""
    return await job_service.create_draft(body.customerId, body.vehicleId, actor=actor)


@router.post("/jobs", response_model=Job)
async def save_job(
    body: JobSaveRequest,
    actor: Actor = Depends(get_actor),
    job_service: JobOrchestrationService = Depends(get_job_service),
) -> Job:
    """Create (no `id`) or replace a job. Totals are computed server-side."""
    return await job_service.save_job(body, actor=actor)


@router.get("/jobs/{job_id}", response_model=Job)
async def get_job(
    job_id: str,
    actor: Actor = Depends(get_actor),
    job_service: JobOrchestrationService = Depends(get_job_service),
) -> Job:
    return await job_service.get_job(job_id)


@router.delete("/jobs/{job_id}")
async def delete_job(
    job_id: str,
    actor: Actor = Depends(get_actor),
    job_service: JobOrchestrationService = Depends(get_job_service),
) -> dict:
    deleted = await job_service.remove_job(job_id)
    return {"jobId": job_id, "deleted": deleted}


@router.post("/jobs/{job_id}/work-order", response_model=Job)
async def convert_to_work_order(
    job_id: str,
    actor: Actor = Depends(get_actor),
    job_service: JobOrchestrationService = Depends(get_job_service),
) -> Job:
    return await job_service.convert_to_work_order(job_id)


@router.post("/jobs/{job_id}/invoice", response_model=Job)
async def generate_invoice(
    job_id: str,
    actor: Actor = Depends(get_actor),
    job_service: JobOrchestrationService = Depends(get_job_service),
) -> Job:
    return await job_service.generate_invoice(job_id)


@router.post("/jobs/{job_id}/cancel", response_model=Job)
async def cancel_job(
    job_id: str,
    actor: Actor = Depends(get_actor),
    job_service: JobOrchestrationService = Depends(get_job_service),
) -> Job:
    return await job_service.cancel_job(job_id)


@router.post("/jobs/{job_id}/status", response_model=Job)
async def transition_status(
    job_id: str,
    body: StatusTransitionRequest,
    actor: Actor = Depends(get_actor),
    job_service: JobOrchestrationService = Depends(get_job_service),
) -> Job:
    """Move a job to another status; 409 when the state machine forbids it."""
    return await job_service.transition_status(job_id, body.status)


@router.post("/jobs/{job_id}/payments", response_model=Job)
async def apply_payment(
    job_id: str,
    body: PaymentRequest,
    actor: Actor = Depends(get_actor),
    job_service: JobOrchestrationService = Depends(get_job_service),
) -> Job:
    return await job_service.apply_payment(
        job_id,
        body.amount,
        payment_date=body.paymentDate,
        method=body.method,
        notes=body.notes,
    )


@router.post("/jobs/{job_id}/approve")
async def approve_job(
    job_id: str,
    body: ApprovalRequest,
    actor: Actor = Depends(get_actor),
    job_service: JobOrchestrationService = Depends(get_job_service),
) -> dict:
    job = await job_service.approve_job(job_id, body.signatureStorageId)
    return {"jobId": job_id, "updated": job is not None}


@router.post("/jobs/{job_id}/photos", response_model=Job)
async def add_photo(
    job_id: str,
    body: PhotoRequest,
    actor: Actor = Depends(get_actor),
    job_service: JobOrchestrationService = Depends(get_job_service),
) -> Job:
    return await job_service.add_photo(job_id, body.storageId, body.type)


@router.put("/jobs/{job_id}/items/{item_id}/checklist")
async def update_checklist_progress(
    job_id: str,
    item_id: str,
    body: ChecklistProgressRequest,
    actor: Actor = Depends(get_actor),
    job_service: JobOrchestrationService = Depends(get_job_service),
) -> dict:
    job = await job_service.update_checklist_progress(job_id, item_id, body.completedTasks)
    return {"jobId": job_id, "itemId": item_id, "updated": job is not None}


@router.post("/jobs/{job_id}/visual-quote", response_model=Job, status_code=status.HTTP_202_ACCEPTED)
async def initiate_visual_quote(
    job_id: str,
    body: VisualQuoteRequest,
    actor: Actor = Depends(get_actor),
    job_service: JobOrchestrationService = Depends(get_job_service),
) -> Job:
    """Start AI analysis of vehicle photos; the job returns with `visualQuoteStatus=pending`."""
    return await job_service.initiate_visual_quote(job_id, body.storageIds, actor)


@router.get("/portal/{public_link_key}", response_model=PortalView)
async def get_portal_view(
    public_link_key: str,
    job_service: JobOrchestrationService = Depends(get_job_service),
) -> PortalView:
    """Customer-facing view of a job, addressed by its public link key (no actor required)."""
    return await job_service.get_portal_view(public_link_key)
