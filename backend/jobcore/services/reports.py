"""Reporting queries answered from the maintained aggregate indexes.

Every figure comes from bounded range scans over jobStats,
servicePerformance and technicianPerformance; jobs are never scanned.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Optional

from ..exceptions import ValidationFailedError
from ..models import (
    Actor,
    ReportsData,
    RevenueSeries,
    ServicePerformanceRow,
    TechnicianPerformanceRow,
)
from ..pipeline.aggregation import JOB_STATS, SERVICE_PERFORMANCE, TECHNICIAN_PERFORMANCE
from .repository import JobRepository

logger = logging.getLogger(__name__)

ALL_TECHNICIANS = "all"


def _as_utc(value: datetime) -> datetime:
    # Naive datetimes are taken to be UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ReportService:
    def __init__(self, store: JobRepository) -> None:
        self.store = store

    def _range_count_sum(self, index: str, ns: str, start: datetime, end: datetime):
        count = 0
        total = 0.0
        for _, value in self.store.scan_aggregate(index, ns, start, end):
            count += 1
            total += value
        return count, total

    def get_reports_data(
        self,
        start: datetime,
        end: datetime,
        technician_id: str = ALL_TECHNICIANS,
        actor: Optional[Actor] = None,
    ) -> ReportsData:
        """Revenue by day, service performance and technician leaderboard for [start, end].

        A technician-role actor only ever sees their own leaderboard row.
        """
        start, end = _as_utc(start), _as_utc(end)
        if start > end:
            raise ValidationFailedError("start must not be after end")
        if actor is not None and actor.role == "technician":
            technician_id = actor.id

        # Revenue over time: completed slice of jobStats, bucketed by UTC day
        daily: "OrderedDict[str, float]" = OrderedDict()
        for key, value in self.store.scan_aggregate(JOB_STATS, "completed", start, end):
            day = _as_utc(key.ts).date().isoformat()
            daily[day] = daily.get(day, 0.0) + value
        revenue = RevenueSeries(labels=list(daily.keys()), data=list(daily.values()))

        catalog = self.store.get_catalog()

        services = []
        for service in catalog.services:
            count, total = self._range_count_sum(SERVICE_PERFORMANCE, service.id, start, end)
            if count:
                services.append(ServicePerformanceRow(service=service, count=count, revenue=total))
        services.sort(key=lambda row: row.revenue, reverse=True)

        leaderboard = []
        for tech in catalog.technicians:
            if technician_id != ALL_TECHNICIANS and tech.id != technician_id:
                continue
            count, total = self._range_count_sum(TECHNICIAN_PERFORMANCE, tech.id, start, end)
            leaderboard.append(
                TechnicianPerformanceRow(
                    technician=tech,
                    completedJobs=count,
                    revenue=total,
                    averageJobValue=total / count if count else 0.0,
                )
            )
        leaderboard.sort(key=lambda row: row.revenue, reverse=True)

        logger.debug(
            "reports %s..%s: %d day(s), %d service(s), %d technician(s)",
            start.isoformat(), end.isoformat(), len(daily), len(services), len(leaderboard),
        )
        return ReportsData(
            revenueOverTime=revenue,
            servicePerformance=services,
            technicianLeaderboard=leaderboard,
            technicians=catalog.technicians,
        )
