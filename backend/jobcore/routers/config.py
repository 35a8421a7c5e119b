"""Runtime config endpoint for frontend consumption."""
from __future__ import annotations

from fastapi import APIRouter

from ..config import get_settings

router = APIRouter(tags=["config"])


@router.get("/config")
async def get_config() -> dict:
    """Expose non-sensitive runtime limits."""
    settings = get_settings()
    return {
        "maxImages": settings.MAX_IMAGES,
        "visualQuoteMaxAttempts": settings.VQ_MAX_ATTEMPTS,
        "heavyAiPerHour": settings.RL_HEAVY_AI_PER_HOUR,
        "generalAiPerMinute": settings.RL_GENERAL_AI_PER_MIN,
        "actorHeaders": {"id": settings.ACTOR_ID_HEADER, "role": settings.ACTOR_ROLE_HEADER},
    }
