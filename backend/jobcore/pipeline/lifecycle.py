"""Job status state machine and derived payment status.

Statuses advance along estimate -> workOrder -> invoice -> completed (skipping
forward is allowed). `cancelled` is reachable from any non-terminal status.
Nothing leaves `completed` or `cancelled`.
"""

from datetime import datetime
from typing import Dict

from ..exceptions import InvalidTransitionError
from ..models import Job, JobStatus, PaymentStatus

STATUS_RANK: Dict[str, int] = {
    "estimate": 0,
    "workOrder": 1,
    "invoice": 2,
    "completed": 3,
}
TERMINAL_STATUSES = frozenset({"completed", "cancelled"})

# Timestamp field set the first time a job enters each status
STATUS_DATE_FIELDS: Dict[str, str] = {
    "estimate": "estimateDate",
    "workOrder": "workOrderDate",
    "invoice": "invoiceDate",
    "completed": "completionDate",
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    if current == target:
        return True
    if current in TERMINAL_STATUSES:
        return False
    if target == "cancelled":
        return True
    return STATUS_RANK[target] > STATUS_RANK[current]


def ensure_transition(current: JobStatus, target: JobStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(f"Cannot move job from {current} to {target}")


def stamp_status_date(job: Job, now: datetime) -> Job:
    """Set the timestamp of the job's current status if it was never set."""
    field = STATUS_DATE_FIELDS.get(job.status)
    if field and getattr(job, field) is None:
        setattr(job, field, now)
    return job


def apply_transition(job: Job, target: JobStatus, now: datetime) -> Job:
    ensure_transition(job.status, target)
    job.status = target
    return stamp_status_date(job, now)


def derive_payment_status(payment_received: float, total_amount: float) -> PaymentStatus:
    if payment_received <= 0:
        return "unpaid"
    if payment_received >= total_amount:
        return "paid"
    return "partial"
