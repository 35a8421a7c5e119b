"""Aggregate entries derived from a job snapshot, and the diff between two snapshots.

Three indexes are maintained:

- jobStats: one entry per job keyed by (status, completionDate or createdAt).
  Value is totalAmount for completed jobs, 0 otherwise.
- servicePerformance: one entry per item of a completed job keyed by
  (serviceId, completionDate). Value is the item total.
- technicianPerformance: one entry per assigned technician of a completed job
  keyed by (technicianId, completionDate). Value is an even split of totalAmount.

Every key embeds the owning job id in `entryId`, so a job's mutation only ever
touches its own entries.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, NamedTuple, Optional

from ..models import Job

JOB_STATS = "jobStats"
SERVICE_PERFORMANCE = "servicePerformance"
TECHNICIAN_PERFORMANCE = "technicianPerformance"
AGGREGATE_INDEXES = (JOB_STATS, SERVICE_PERFORMANCE, TECHNICIAN_PERFORMANCE)


class AggregateKey(NamedTuple):
    index: str
    ns: str
    ts: datetime
    entryId: str

    @property
    def sort_key(self):
        """Position inside its index: (ns, ts, entryId)."""
        return (self.ns, self.ts, self.entryId)

    def doc_id(self) -> str:
        return f"{self.index}|{self.ns}|{self.ts.isoformat()}|{self.entryId}"


@dataclass
class AggregateDiff:
    deletes: List[AggregateKey] = field(default_factory=list)
    upserts: Dict[AggregateKey, float] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return not self.deletes and not self.upserts


def stats_time(job: Job) -> datetime:
    return job.completionDate or job.createdAt


def aggregate_entries(job: Optional[Job]) -> Dict[AggregateKey, float]:
    """All aggregate entries a job contributes, as a full re-scan would produce them."""
    if job is None:
        return {}
    completed = job.status == "completed"
    entries: Dict[AggregateKey, float] = {
        AggregateKey(JOB_STATS, job.status, stats_time(job), job.id): job.totalAmount if completed else 0.0
    }
    if not completed:
        return entries

    ts = stats_time(job)
    for item in job.jobItems:
        key = AggregateKey(SERVICE_PERFORMANCE, item.serviceId, ts, f"{job.id}:{item.id}")
        entries[key] = item.total

    techs = list(dict.fromkeys(job.assignedTechnicianIds))
    share = job.totalAmount / max(1, len(techs))
    for tech_id in techs:
        entries[AggregateKey(TECHNICIAN_PERFORMANCE, tech_id, ts, f"{job.id}:{tech_id}")] = share
    return entries


def plan_aggregate_sync(old: Optional[Job], new: Optional[Job]) -> AggregateDiff:
    """Entries to delete and to insert/replace when a job goes from `old` to `new`.

    Keys present in both snapshots with the same value are left untouched;
    a changed value on the same key is a replace.
    """
    before = aggregate_entries(old)
    after = aggregate_entries(new)
    diff = AggregateDiff()
    for key in before:
        if key not in after:
            diff.deletes.append(key)
    for key, value in after.items():
        if key not in before or before[key] != value:
            diff.upserts[key] = value
    return diff
