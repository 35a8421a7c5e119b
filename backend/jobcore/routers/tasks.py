"""Tasks worker endpoints (thin HTTP layer).

Cloud Tasks calls these with an OIDC token. Both handlers always answer 200
for stale or already-handled work so the queue does not retry it.
"""
from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends

from ..deps import get_task_pipeline, verify_oidc_token
from ..models import InventoryDebitTaskPayload, VisualQuoteTaskPayload
from ..services.orchestration.task_pipeline import TaskPipelineService

router = APIRouter(prefix="/tasks", tags=["tasks"])  # mounted under /api
logger = logging.getLogger(__name__)


@router.post("/visual-quote")
async def process_visual_quote(
    payload: VisualQuoteTaskPayload,
    decoded_token: dict = Depends(verify_oidc_token),
    pipeline: TaskPipelineService = Depends(get_task_pipeline),
) -> Dict[str, Any]:
    """Run image analysis for one visual quote generation: expects JSON { jobId, generation }."""
    return await pipeline.process_visual_quote(payload.jobId, payload.generation)


@router.post("/inventory-debit")
async def process_inventory_debit(
    payload: InventoryDebitTaskPayload,
    decoded_token: dict = Depends(verify_oidc_token),
    pipeline: TaskPipelineService = Depends(get_task_pipeline),
) -> Dict[str, Any]:
    """Forward a claimed inventory debit to the inventory collaborator: expects JSON { jobId }."""
    return await pipeline.process_inventory_debit(payload.jobId)
