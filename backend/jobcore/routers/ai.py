"""AI helper endpoints gated by the general-AI rate limit."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from ..deps import get_actor, get_llm_service, get_rate_limiter
from ..models import Actor, ServiceDescriptionRequest
from ..services.llm import LLMService
from ..services.rate_limit import RateLimiterService

router = APIRouter(prefix="/ai", tags=["ai"])
logger = logging.getLogger(__name__)


@router.post("/service-description")
async def generate_service_description(
    body: ServiceDescriptionRequest,
    actor: Actor = Depends(get_actor),
    limiter: RateLimiterService = Depends(get_rate_limiter),
    llm: LLMService = Depends(get_llm_service),
) -> dict:
    """Draft a customer-facing description for a service name."""
    limiter.enforce_general_ai(actor.id)
    description = await llm.generate_service_description_async(body.serviceName)
    logger.info("service description generated for actor %s", actor.id)
    return {"serviceName": body.serviceName, "description": description}
