"""Persistence contract shared by the Firestore and in-memory backends."""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import get_settings
from ..models import Catalog, CompanyProfile, Job, Promotion
from ..pipeline.aggregation import AggregateKey

# fn(old_snapshot) -> new_snapshot; None on either side means "no job"
JobMutation = Callable[[Optional[Job]], Optional[Job]]


class JobRepository(ABC):
    """Job records, their aggregate indexes, and read-only collaborator lookups.

    `mutate_job` is the unit of work: the job write and the aggregate writes
    derived from (old, new) commit together or not at all. `fn` receives a
    private copy of the old snapshot and may be called more than once when the
    backend retries a contended transaction, so it must not have side effects.
    """

    # --- Jobs ---
    @abstractmethod
    def get_job(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    def find_job_by_public_key(self, key: str) -> Optional[Job]:
        ...

    @abstractmethod
    def list_jobs(self) -> List[Job]:
        """Full scan. For maintenance and verification only, never for reporting."""

    @abstractmethod
    def mutate_job(self, job_id: str, fn: JobMutation) -> Tuple[Optional[Job], Optional[Job]]:
        """Apply `fn` atomically; returns the (old, new) snapshots."""

    # --- Aggregates ---
    @abstractmethod
    def scan_aggregate(self, index: str, ns: str, start: datetime, end: datetime) -> List[Tuple[AggregateKey, float]]:
        """Entries of `index` with namespace `ns` and start <= ts <= end, in key order."""

    @abstractmethod
    def rebuild_aggregates(self) -> int:
        """Recompute every aggregate entry from a full job scan. Returns entries written."""

    # --- Collaborator lookups ---
    @abstractmethod
    def get_catalog(self) -> Catalog:
        ...

    @abstractmethod
    def find_promotion(self, code: str) -> Optional[Promotion]:
        ...

    @abstractmethod
    def get_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def get_vehicle(self, vehicle_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def get_company(self) -> CompanyProfile:
        ...


@lru_cache(maxsize=1)
def get_repository() -> JobRepository:
    """Return the configured backend (STORE_BACKEND=firestore|memory)."""
    backend = get_settings().STORE_BACKEND
    if backend == "memory":
        from .memory_store import MemoryStoreService

        return MemoryStoreService()
    from .firestore import FirestoreService

    return FirestoreService()
