"""In-process JobRepository for local development (STORE_BACKEND=memory) and tests.

Mutations are serialized by a re-entrant lock. Aggregate writes are recorded
in an undo log so a failed sync can be rolled back before the job write
happens; a mismatch between stored entries and the old snapshot triggers a
compensating re-sync of that job's entries.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ..exceptions import AggregateSyncError
from ..models import Catalog, CompanyProfile, Job, Promotion
from ..pipeline.aggregation import (
    AGGREGATE_INDEXES,
    AggregateDiff,
    AggregateKey,
    aggregate_entries,
    plan_aggregate_sync,
)
from .repository import JobMutation, JobRepository
from .sorted_index import SortedIndex

logger = logging.getLogger(__name__)


class MemoryStoreService(JobRepository):
    def __init__(self, catalog: Optional[Catalog] = None, company: Optional[CompanyProfile] = None) -> None:
        self._lock = threading.RLock()
        self._jobs: Dict[str, Job] = {}
        self._public_keys: Dict[str, str] = {}
        self._indexes: Dict[str, SortedIndex] = {name: SortedIndex() for name in AGGREGATE_INDEXES}
        self._entries_by_job: Dict[str, Set[AggregateKey]] = {}

        self._catalog = catalog or Catalog()
        self._company = company or CompanyProfile()
        self._promotions: Dict[str, Promotion] = {}
        self._customers: Dict[str, Dict[str, Any]] = {}
        self._vehicles: Dict[str, Dict[str, Any]] = {}

    # --- Seeding collaborator data ---
    def put_catalog(self, catalog: Catalog) -> None:
        self._catalog = catalog

    def set_company(self, company: CompanyProfile) -> None:
        self._company = company

    def put_promotion(self, promotion: Promotion) -> None:
        self._promotions[promotion.code.lower()] = promotion

    def put_customer(self, customer_id: str, data: Optional[Dict[str, Any]] = None) -> None:
        self._customers[customer_id] = {"id": customer_id, **(data or {})}

    def put_vehicle(self, vehicle_id: str, data: Optional[Dict[str, Any]] = None) -> None:
        self._vehicles[vehicle_id] = {"id": vehicle_id, **(data or {})}

    # --- Jobs ---
    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def find_job_by_public_key(self, key: str) -> Optional[Job]:
        with self._lock:
            job_id = self._public_keys.get(key)
            return self.get_job(job_id) if job_id else None

    def list_jobs(self) -> List[Job]:
        with self._lock:
            return [job.model_copy(deep=True) for job in self._jobs.values()]

    def mutate_job(self, job_id: str, fn: JobMutation) -> Tuple[Optional[Job], Optional[Job]]:
        with self._lock:
            current = self._jobs.get(job_id)
            old = current.model_copy(deep=True) if current else None
            new = fn(current.model_copy(deep=True) if current else None)
            if new is not None and new.id != job_id:
                raise ValueError(f"mutation changed job id {job_id} -> {new.id}")
            if new == old:
                return old, new

            diff = plan_aggregate_sync(old, new)
            undo: List[Callable[[], None]] = []
            try:
                self._apply_diff(job_id, diff, undo)
            except AggregateSyncError as exc:
                self._rollback(undo)
                logger.warning("[%s] aggregate entries out of sync, re-syncing: %s", job_id, exc)
                self._resync_job_entries(job_id, new)
            except Exception:
                self._rollback(undo)
                raise

            self._write_job(job_id, old, new)
            return old, new.model_copy(deep=True) if new else None

    def _write_job(self, job_id: str, old: Optional[Job], new: Optional[Job]) -> None:
        if old is not None:
            self._public_keys.pop(old.publicLinkKey, None)
        if new is None:
            self._jobs.pop(job_id, None)
            return
        self._jobs[job_id] = new.model_copy(deep=True)
        self._public_keys[new.publicLinkKey] = job_id

    # --- Aggregate maintenance ---
    def _put_entry(self, job_id: str, key: AggregateKey, value: float) -> Callable[[], None]:
        index = self._indexes[key.index]
        owned = self._entries_by_job.setdefault(job_id, set())
        if key.sort_key in index:
            previous = index.replace(key.sort_key, value)
            owned.add(key)
            return lambda: index.replace(key.sort_key, previous)
        index.insert(key.sort_key, value)
        owned.add(key)

        def _undo() -> None:
            index.delete(key.sort_key)
            owned.discard(key)

        return _undo

    def _drop_entry(self, job_id: str, key: AggregateKey) -> Callable[[], None]:
        index = self._indexes[key.index]
        owned = self._entries_by_job.setdefault(job_id, set())
        if key.sort_key not in index:
            raise AggregateSyncError(f"missing {key.index} entry {key.sort_key!r}")
        previous = index.delete(key.sort_key)
        owned.discard(key)

        def _undo() -> None:
            index.insert(key.sort_key, previous)
            owned.add(key)

        return _undo

    def _apply_diff(self, job_id: str, diff: AggregateDiff, undo: List[Callable[[], None]]) -> None:
        for key in diff.deletes:
            undo.append(self._drop_entry(job_id, key))
        for key, value in diff.upserts.items():
            undo.append(self._put_entry(job_id, key, value))

    @staticmethod
    def _rollback(undo: List[Callable[[], None]]) -> None:
        for action in reversed(undo):
            action()
        undo.clear()

    def _resync_job_entries(self, job_id: str, job: Optional[Job]) -> None:
        for key in list(self._entries_by_job.get(job_id, ())):
            index = self._indexes[key.index]
            if key.sort_key in index:
                index.delete(key.sort_key)
        self._entries_by_job.pop(job_id, None)
        for key, value in aggregate_entries(job).items():
            self._put_entry(job_id, key, value)

    def scan_aggregate(self, index: str, ns: str, start: datetime, end: datetime) -> List[Tuple[AggregateKey, float]]:
        with self._lock:
            return [
                (AggregateKey(index, *key), value)
                for key, value in self._indexes[index].scan((ns, start), (ns, end))
            ]

    def rebuild_aggregates(self) -> int:
        with self._lock:
            self._indexes = {name: SortedIndex() for name in AGGREGATE_INDEXES}
            self._entries_by_job = {}
            written = 0
            for job_id, job in self._jobs.items():
                for key, value in aggregate_entries(job).items():
                    self._put_entry(job_id, key, value)
                    written += 1
            return written

    # --- Collaborator lookups ---
    def get_catalog(self) -> Catalog:
        return self._catalog.model_copy(deep=True)

    def find_promotion(self, code: str) -> Optional[Promotion]:
        promo = self._promotions.get((code or "").strip().lower())
        return promo.model_copy() if promo else None

    def get_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        return self._customers.get(customer_id)

    def get_vehicle(self, vehicle_id: str) -> Optional[Dict[str, Any]]:
        return self._vehicles.get(vehicle_id)

    def get_company(self) -> CompanyProfile:
        return self._company.model_copy()
