"""Reports router: revenue, service performance and technician leaderboard."""
from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query

from ..deps import get_actor, get_report_service
from ..models import Actor, ReportsData
from ..services.reports import ALL_TECHNICIANS, ReportService

router = APIRouter(tags=["reports"])


@router.get("/reports", response_model=ReportsData)
async def get_reports(
    start: datetime = Query(description="Inclusive range start (ISO 8601; naive means UTC)"),
    end: datetime = Query(description="Inclusive range end (ISO 8601; naive means UTC)"),
    technician_id: str = Query(default=ALL_TECHNICIANS, alias="technicianId"),
    actor: Actor = Depends(get_actor),
    reports: ReportService = Depends(get_report_service),
) -> ReportsData:
    return reports.get_reports_data(start, end, technician_id=technician_id, actor=actor)
