"""Client for the inventory collaborator's debit endpoint."""
from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..config import Settings, get_settings
from ..exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


class InventoryService:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    async def debit_for_job(self, job_id: str) -> bool:
        """Ask the inventory collaborator to deduct the products used by a job.

        Returns False when no collaborator URL is configured. Retrying a
        failed debit is the collaborator's concern, not ours.
        """
        url = self.settings.INVENTORY_DEBIT_URL
        if not url:
            logger.info("[%s] INVENTORY_DEBIT_URL not set; skipping inventory debit", job_id)
            return False
        t = httpx.Timeout(30.0, connect=5.0)
        async with httpx.AsyncClient(timeout=t) as client:
            try:
                resp = await client.post(url, json={"jobId": job_id})
                resp.raise_for_status()
            except httpx.HTTPError as e:
                raise ExternalServiceError(f"Inventory debit failed for job {job_id}: {e}") from e
        logger.info("[%s] inventory debit accepted (%s)", job_id, resp.status_code)
        return True
