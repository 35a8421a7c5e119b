from __future__ import annotations

import asyncio
import logging
import math
import secrets
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from ...config import Settings, get_settings
from ...exceptions import (
    ExternalServiceError,
    InvalidAmountError,
    InvalidTransitionError,
    NotFoundError,
    ValidationFailedError,
)
from ...models import (
    Actor,
    Catalog,
    Job,
    JobItem,
    JobSaveRequest,
    JobStatus,
    Payment,
    PaymentMethod,
    Photo,
    PhotoType,
    PortalView,
    Promotion,
)
from ...pipeline.lifecycle import (
    TERMINAL_STATUSES,
    apply_transition,
    derive_payment_status,
    ensure_transition,
    stamp_status_date,
)
from ...pipeline.pricing import compute_job_totals, price_items
from ..rate_limit import RateLimiterService
from ..repository import JobRepository, get_repository
from ..tasks import CloudTasksService, TasksConfig
from .task_pipeline import TaskPipelineService

logger = logging.getLogger(__name__)

PUBLIC_KEY_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
PUBLIC_KEY_LENGTH = 10

# Strong references to in-process emulated tasks until they finish
_BACKGROUND: Set[asyncio.Task] = set()


def new_public_link_key() -> str:
    return "".join(secrets.choice(PUBLIC_KEY_ALPHABET) for _ in range(PUBLIC_KEY_LENGTH))


def claim_inventory_debit(job: Job, smart_inventory: bool) -> Job:
    """Flip `inventoryDebited` for a completed job of an opted-in business.

    Runs inside the job mutation so concurrent saves cannot both claim it.
    """
    if smart_inventory and job.status == "completed" and not job.inventoryDebited:
        job.inventoryDebited = True
    return job


def _newly_claimed(old: Optional[Job], new: Optional[Job]) -> bool:
    return bool(new and new.inventoryDebited and not (old and old.inventoryDebited))


def supersede_visual_quote(job: Job) -> Job:
    """Drop an in-flight visual quote so its result is ignored on arrival."""
    if job.visualQuoteStatus == "pending":
        job.visualQuoteStatus = "none"
        job.visualQuoteGeneration += 1
    return job


class JobOrchestrationService:
    """Job-mutating entry points: each is one `mutate_job` unit of work.

    Pricing, transition rules and payment status come from the pure pipeline
    modules; this layer loads collaborator data, builds the mutation, and
    schedules background tasks after the commit.
    """

    def __init__(
        self,
        store: Optional[JobRepository] = None,
        tasks: Optional[CloudTasksService] = None,
        limiter: Optional[RateLimiterService] = None,
        settings: Optional[Settings] = None,
        pipeline_factory: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._store = store or get_repository()
        self._tasks = tasks or CloudTasksService(
            TasksConfig(
                project=self.settings.GCP_PROJECT,
                region=self.settings.REGION,
                queue=self.settings.TASKS_QUEUE,
                target_url=self.settings.TASKS_TARGET_URL,
                service_account_email=self.settings.TASKS_SERVICE_ACCOUNT_EMAIL,
                emulate=self.settings.TASKS_EMULATE,
            )
        )
        self._limiter = limiter or RateLimiterService(self.settings)
        self._pipeline_factory = pipeline_factory

    # --- Helpers ---
    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _pipeline(self):
        if self._pipeline_factory is not None:
            return self._pipeline_factory()
        return TaskPipelineService(store=self._store, settings=self.settings)

    def _run_in_background(self, coro) -> None:
        task = asyncio.create_task(coro)
        _BACKGROUND.add(task)
        task.add_done_callback(_BACKGROUND.discard)

    def _require_party(self, customer_id: str, vehicle_id: str) -> None:
        if self._store.get_customer(customer_id) is None:
            raise NotFoundError(f"Customer {customer_id} not found")
        if self._store.get_vehicle(vehicle_id) is None:
            raise NotFoundError(f"Vehicle {vehicle_id} not found")

    def _build_items(self, req: JobSaveRequest, catalog: Catalog) -> List[JobItem]:
        services = catalog.service_map()
        items: List[JobItem] = []
        for line in req.jobItems:
            service = services.get(line.serviceId)
            if service is None:
                raise NotFoundError(f"Service {line.serviceId} not found")
            items.append(
                JobItem(
                    id=line.id or str(uuid.uuid4()),
                    serviceId=line.serviceId,
                    quantity=line.quantity,
                    unitPrice=service.basePrice if line.unitPrice is None else line.unitPrice,
                    appliedPricingRuleIds=list(line.appliedPricingRuleIds),
                    addedUpchargeIds=list(line.addedUpchargeIds),
                )
            )
        ids = [item.id for item in items]
        if len(set(ids)) != len(ids):
            raise ValidationFailedError("Job item ids must be unique")
        return price_items(items, catalog.rule_map(), catalog.upcharge_map())

    def _resolve_promotion(self, code: Optional[str]) -> Optional[Promotion]:
        if not code or not code.strip():
            return None
        promotion = self._store.find_promotion(code)
        if promotion is None:
            raise NotFoundError(f"Promotion code {code!r} not found")
        return promotion

    def _after_commit(self, old: Optional[Job], new: Optional[Job]) -> None:
        if _newly_claimed(old, new):
            self._schedule_inventory_debit(new.id)

    def _schedule_inventory_debit(self, job_id: str) -> None:
        # The flag is already committed; a lost trigger is the inventory side's to reconcile
        try:
            self._tasks.enqueue_inventory_debit(job_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("[%s] inventory debit enqueue failed: %s", job_id, exc)
            return
        if self._tasks.emulated and self.settings.TASKS_EMULATE:
            self._run_in_background(self._pipeline().process_inventory_debit(job_id))

    # --- Creation and full saves ---
    async def create_draft(self, customer_id: str, vehicle_id: str, actor: Optional[Actor] = None) -> Job:
        self._require_party(customer_id, vehicle_id)
        now = self._now()
        job = Job(
            id=str(uuid.uuid4()),
            customerId=customer_id,
            vehicleId=vehicle_id,
            status="estimate",
            createdAt=now,
            estimateDate=now,
            customerApprovalStatus="pending",
            publicLinkKey=new_public_link_key(),
            assignedTechnicianIds=[actor.id] if actor and actor.role == "technician" else [],
        )
        _, created = self._store.mutate_job(job.id, lambda old: job.model_copy(deep=True))
        logger.info("[%s] draft created for customer %s", job.id, customer_id)
        return created

    async def save_job(self, req: JobSaveRequest, actor: Optional[Actor] = None) -> Job:
        """Create or replace a job from its full desired state.

        Item totals and job totals are always recomputed here; checklist
        progress is carried over for items whose id survives the edit.
        """
        self._require_party(req.customerId, req.vehicleId)
        catalog = self._store.get_catalog()
        items = self._build_items(req, catalog)
        totals = compute_job_totals(items, self._resolve_promotion(req.promotionCode))
        smart_inventory = self._store.get_company().enableSmartInventory
        now = self._now()
        job_id = req.id or str(uuid.uuid4())
        public_key = new_public_link_key()

        def mutation(old: Optional[Job]) -> Job:
            if old is None:
                if req.id is not None:
                    raise NotFoundError(f"Job {req.id} not found")
                techs = list(dict.fromkeys(req.assignedTechnicianIds or []))
                if actor is not None and actor.role == "technician" and actor.id not in techs:
                    techs.append(actor.id)
                job = Job(
                    id=job_id,
                    customerId=req.customerId,
                    vehicleId=req.vehicleId,
                    status=req.status,
                    createdAt=now,
                    estimateDate=now,
                    publicLinkKey=public_key,
                    customerApprovalStatus="pending" if req.status == "estimate" else None,
                    assignedTechnicianIds=techs,
                )
                new_items = items
            else:
                ensure_transition(old.status, req.status)
                job = supersede_visual_quote(old)
                job.customerId = req.customerId
                job.vehicleId = req.vehicleId
                job.status = req.status
                if req.assignedTechnicianIds is not None:
                    job.assignedTechnicianIds = list(dict.fromkeys(req.assignedTechnicianIds))
                previous = {item.id: item for item in old.jobItems}
                new_items = [
                    item.model_copy(update={"checklistCompletedItems": previous[item.id].checklistCompletedItems})
                    if item.id in previous else item
                    for item in items
                ]

            job.notes = req.notes
            job.jobItems = [item.model_copy(deep=True) for item in new_items]
            job.discountAmount = totals.discountAmount
            job.totalAmount = totals.totalAmount
            job.appliedPromotionId = totals.appliedPromotionId
            job.paymentStatus = derive_payment_status(job.paymentReceived, job.totalAmount)
            stamp_status_date(job, now)
            return claim_inventory_debit(job, smart_inventory)

        old, new = self._store.mutate_job(job_id, mutation)
        self._after_commit(old, new)
        logger.info("[%s] saved (status=%s total=%.2f)", job_id, new.status, new.totalAmount)
        return new

    # --- Status transitions ---
    async def transition_status(self, job_id: str, target: JobStatus) -> Job:
        smart_inventory = self._store.get_company().enableSmartInventory
        now = self._now()

        def mutation(old: Optional[Job]) -> Job:
            if old is None:
                raise NotFoundError(f"Job {job_id} not found")
            previous = old.status
            job = apply_transition(old, target, now)
            if job.status != previous:
                supersede_visual_quote(job)
            return claim_inventory_debit(job, smart_inventory)

        old, new = self._store.mutate_job(job_id, mutation)
        self._after_commit(old, new)
        if old.status != new.status:
            logger.info("[%s] status %s -> %s", job_id, old.status, new.status)
        return new

    async def convert_to_work_order(self, job_id: str) -> Job:
        return await self.transition_status(job_id, "workOrder")

    async def generate_invoice(self, job_id: str) -> Job:
        return await self.transition_status(job_id, "invoice")

    async def cancel_job(self, job_id: str) -> Job:
        return await self.transition_status(job_id, "cancelled")

    # --- Payments ---
    async def apply_payment(
        self,
        job_id: str,
        amount: float,
        payment_date: Optional[datetime] = None,
        method: PaymentMethod = "Cash",
        notes: Optional[str] = None,
    ) -> Job:
        """Record a payment; a fully paid job is escalated to completed."""
        if amount is None or not math.isfinite(amount) or amount <= 0:
            raise InvalidAmountError("Payment amount must be a positive number")
        smart_inventory = self._store.get_company().enableSmartInventory
        now = self._now()
        payment = Payment(
            id=str(uuid.uuid4()),
            amount=amount,
            paymentDate=payment_date or now,
            method=method,
            notes=notes,
        )

        def mutation(old: Optional[Job]) -> Job:
            if old is None:
                raise NotFoundError(f"Job {job_id} not found")
            if old.status == "cancelled":
                raise InvalidTransitionError("Cannot record a payment on a cancelled job")
            job = old
            job.payments.append(payment.model_copy())
            job.paymentReceived = sum(p.amount for p in job.payments)
            job.paymentStatus = derive_payment_status(job.paymentReceived, job.totalAmount)
            if job.paymentStatus == "paid" and job.status != "completed":
                apply_transition(job, "completed", now)
                supersede_visual_quote(job)
            return claim_inventory_debit(job, smart_inventory)

        old, new = self._store.mutate_job(job_id, mutation)
        self._after_commit(old, new)
        logger.info(
            "[%s] payment %.2f via %s (received=%.2f status=%s)",
            job_id, amount, method, new.paymentReceived, new.paymentStatus,
        )
        return new

    # --- Narrow mutations ---
    async def approve_job(self, job_id: str, signature_storage_id: str) -> Optional[Job]:
        now = self._now()

        def mutation(old: Optional[Job]) -> Optional[Job]:
            if old is None:
                return None
            old.customerApprovalStatus = "approved"
            old.customerSignatureStorageId = signature_storage_id
            old.approvalTimestamp = now
            return old

        _, new = self._store.mutate_job(job_id, mutation)
        return new

    async def add_photo(self, job_id: str, storage_id: str, photo_type: PhotoType) -> Job:
        photo = Photo(id=str(uuid.uuid4()), storageId=storage_id, type=photo_type, timestamp=self._now())

        def mutation(old: Optional[Job]) -> Job:
            if old is None:
                raise NotFoundError(f"Job {job_id} not found")
            old.photos.append(photo.model_copy())
            return old

        _, new = self._store.mutate_job(job_id, mutation)
        return new

    async def update_checklist_progress(self, job_id: str, item_id: str, completed_tasks: Sequence[str]) -> Optional[Job]:
        """Replace the completion marks of one item. Unknown job or item is a no-op."""

        def mutation(old: Optional[Job]) -> Optional[Job]:
            if old is None:
                return None
            for item in old.jobItems:
                if item.id == item_id:
                    item.checklistCompletedItems = list(completed_tasks)
                    break
            return old

        _, new = self._store.mutate_job(job_id, mutation)
        return new

    async def remove_job(self, job_id: str) -> bool:
        old, _ = self._store.mutate_job(job_id, lambda old: None)
        if old is not None:
            logger.info("[%s] removed", job_id)
        return old is not None

    # --- Visual quote ---
    async def initiate_visual_quote(self, job_id: str, storage_ids: Sequence[str], actor: Actor) -> Job:
        """Clear the job's items, mark the quote pending, and schedule image analysis.

        Each call bumps `visualQuoteGeneration`; results of older runs are ignored.
        """
        refs = [ref for ref in storage_ids if ref]
        if not refs:
            raise ValidationFailedError("At least one image is required")
        if len(refs) > self.settings.MAX_IMAGES:
            raise ValidationFailedError(f"At most {self.settings.MAX_IMAGES} images per visual quote")
        current = self._store.get_job(job_id)
        if current is None:
            raise NotFoundError(f"Job {job_id} not found")
        if current.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(f"Cannot quote a {current.status} job")

        self._limiter.enforce_heavy_ai(actor.id)

        def mutation(old: Optional[Job]) -> Job:
            if old is None:
                raise NotFoundError(f"Job {job_id} not found")
            if old.status in TERMINAL_STATUSES:
                raise InvalidTransitionError(f"Cannot quote a {old.status} job")
            old.jobItems = []
            old.totalAmount = 0.0
            old.discountAmount = 0.0
            old.appliedPromotionId = None
            old.paymentStatus = derive_payment_status(old.paymentReceived, old.totalAmount)
            old.visualQuoteStatus = "pending"
            old.visualQuoteStorageIds = list(refs)
            old.visualQuoteGeneration += 1
            return old

        try:
            _, new = self._store.mutate_job(job_id, mutation)
        except (NotFoundError, InvalidTransitionError):
            self._limiter.refund_heavy_ai(actor.id)
            raise
        generation = new.visualQuoteGeneration
        logger.info("[%s] visual quote %d requested with %d image(s)", job_id, generation, len(refs))

        try:
            self._tasks.enqueue_visual_quote(job_id, generation)
        except Exception as exc:  # noqa: BLE001
            logger.error("[%s] Cloud Tasks enqueue failed for visual quote %d: %s", job_id, generation, exc)
            await self._pipeline().mark_visual_quote_failed(job_id, generation)
            raise ExternalServiceError("Task queue error while scheduling visual quote") from exc

        # Local emulation: process in-process without Cloud Tasks
        if self._tasks.emulated and self.settings.TASKS_EMULATE:
            self._run_in_background(self._pipeline().process_visual_quote(job_id, generation))
        return new

    # --- Reads ---
    async def get_job(self, job_id: str) -> Job:
        job = self._store.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    async def get_portal_view(self, public_link_key: str) -> PortalView:
        job = self._store.find_job_by_public_key(public_link_key)
        if job is None:
            raise NotFoundError("Job not found")
        service_ids: Dict[str, None] = dict.fromkeys(item.serviceId for item in job.jobItems)
        services = [s for s in self._store.get_catalog().services if s.id in service_ids]
        return PortalView(
            job=job,
            customer=self._store.get_customer(job.customerId),
            vehicle=self._store.get_vehicle(job.vehicleId),
            services=services,
        )
