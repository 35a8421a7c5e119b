from __future__ import annotations

import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from ...config import Settings, get_settings
from ...exceptions import ExternalServiceError, RetryExhaustedError
from ...models import Catalog, ImagePart, Job, JobItem, QuoteSuggestion, Service, Upcharge
from ...pipeline.lifecycle import derive_payment_status
from ...pipeline.pricing import compute_job_totals, price_items
from ..repository import JobRepository, get_repository
from ..retry import bounded_retry

logger = logging.getLogger(__name__)

Analyzer = Callable[[Sequence[ImagePart], Sequence[Service], Sequence[Upcharge]], Awaitable[QuoteSuggestion]]
ImageLoader = Callable[[str], ImagePart]


def quote_items(suggestion: QuoteSuggestion, catalog: Catalog) -> List[JobItem]:
    """One item per known suggested service at its base price.

    All suggested upcharges go on the first item only. Unknown service ids
    are dropped.
    """
    services = catalog.service_map()
    items: List[JobItem] = []
    for service_id in suggestion.suggestedServiceIds:
        service = services.get(service_id)
        if service is None:
            logger.debug("suggested unknown service %s; skipping", service_id)
            continue
        items.append(
            JobItem(id=str(uuid.uuid4()), serviceId=service_id, quantity=1, unitPrice=service.basePrice)
        )
    if items and suggestion.suggestedUpchargeIds:
        items[0].addedUpchargeIds = list(suggestion.suggestedUpchargeIds)
    return price_items(items, catalog.rule_map(), catalog.upcharge_map())


def _is_current(job: Optional[Job], generation: int) -> bool:
    return job is not None and job.visualQuoteGeneration == generation and job.visualQuoteStatus == "pending"


class TaskPipelineService:
    """Owns the execution of background work for a single job.

    Visual quote write-backs only apply to the generation that scheduled
    them; a deleted job or a newer generation turns them into no-ops.
    """

    def __init__(
        self,
        store: Optional[JobRepository] = None,
        settings: Optional[Settings] = None,
        analyzer: Optional[Analyzer] = None,
        image_loader: Optional[ImageLoader] = None,
        inventory: Optional[Any] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store or get_repository()
        self._analyzer = analyzer
        self._image_loader = image_loader
        self._inventory = inventory

    # Collaborators are built on first use so tests and the emulated path
    # never touch GCP clients they do not need.
    @property
    def analyzer(self) -> Analyzer:
        if self._analyzer is None:
            from ..llm import LLMService

            self._analyzer = LLMService().suggest_quote_async
        return self._analyzer

    @property
    def image_loader(self) -> ImageLoader:
        if self._image_loader is None:
            from ..gcs import GCSService

            self._image_loader = GCSService(self.settings.GCS_BUCKET).download_image
        return self._image_loader

    @property
    def inventory(self):
        if self._inventory is None:
            from ..inventory import InventoryService

            self._inventory = InventoryService(self.settings)
        return self._inventory

    # --- Visual quote ---
    async def _analyze(self, refs: Sequence[str], catalog: Catalog) -> QuoteSuggestion:
        images = [self.image_loader(ref) for ref in refs]
        return await self.analyzer(images, catalog.services, catalog.upcharges)

    async def process_visual_quote(self, job_id: str, generation: int) -> Dict[str, Any]:
        job = self.store.get_job(job_id)
        if not _is_current(job, generation):
            logger.info("[%s] visual quote %d is stale or job is gone; skipping", job_id, generation)
            return {"ok": True, "jobId": job_id, "note": "stale"}

        catalog = self.store.get_catalog()
        analyze = bounded_retry(
            max_attempts=self.settings.VQ_MAX_ATTEMPTS,
            initial_backoff=self.settings.VQ_INITIAL_BACKOFF_MS / 1000.0,
            max_backoff=self.settings.VQ_MAX_BACKOFF_MS / 1000.0,
            on_exhausted=lambda exc: self.mark_visual_quote_failed(job_id, generation),
        )(self._analyze)

        try:
            suggestion = await analyze(job.visualQuoteStorageIds, catalog)
        except RetryExhaustedError as exc:
            logger.error("[%s] visual quote %d failed: %s", job_id, generation, exc.last_error)
            return {"ok": False, "jobId": job_id, "status": "failed", "attempts": exc.attempts}

        applied = self.apply_visual_quote(job_id, generation, suggestion, catalog)
        status = "complete" if applied else "stale"
        logger.info("[%s] visual quote %d %s", job_id, generation, status)
        return {"ok": True, "jobId": job_id, "status": status}

    def apply_visual_quote(self, job_id: str, generation: int, suggestion: QuoteSuggestion, catalog: Catalog) -> bool:
        """Write the suggested items back. Returns False when the run is stale."""
        items = quote_items(suggestion, catalog)
        totals = compute_job_totals(items)

        def mutation(old: Optional[Job]) -> Optional[Job]:
            if not _is_current(old, generation):
                return old
            old.jobItems = [item.model_copy(deep=True) for item in items]
            old.discountAmount = totals.discountAmount
            old.totalAmount = totals.totalAmount
            old.appliedPromotionId = None
            old.paymentStatus = derive_payment_status(old.paymentReceived, old.totalAmount)
            old.visualQuoteStatus = "complete"
            return old

        old, new = self.store.mutate_job(job_id, mutation)
        return _is_current(old, generation) and new is not None and new.visualQuoteStatus == "complete"

    async def mark_visual_quote_failed(self, job_id: str, generation: int) -> bool:
        def mutation(old: Optional[Job]) -> Optional[Job]:
            if not _is_current(old, generation):
                return old
            old.visualQuoteStatus = "failed"
            old.jobItems = []
            return old

        old, _ = self.store.mutate_job(job_id, mutation)
        marked = _is_current(old, generation)
        if marked:
            logger.warning("[%s] visual quote %d marked failed", job_id, generation)
        return marked

    # --- Inventory ---
    async def process_inventory_debit(self, job_id: str) -> Dict[str, Any]:
        job = self.store.get_job(job_id)
        if job is None:
            logger.info("[%s] inventory debit: job is gone; skipping", job_id)
            return {"ok": True, "jobId": job_id, "note": "job not found"}
        if not job.inventoryDebited:
            logger.warning("[%s] inventory debit requested but never claimed; skipping", job_id)
            return {"ok": True, "jobId": job_id, "note": "not claimed"}
        try:
            sent = await self.inventory.debit_for_job(job_id)
        except ExternalServiceError as exc:
            # Delivery retries belong to the inventory collaborator
            logger.error("[%s] inventory debit failed: %s", job_id, exc)
            return {"ok": False, "jobId": job_id, "error": "inventory collaborator error"}
        return {"ok": True, "jobId": job_id, "status": "debited" if sent else "skipped"}
