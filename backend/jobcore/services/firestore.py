"""Firestore-backed JobRepository: jobs, aggregate entries, and catalog lookups."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from google.cloud import firestore

from ..config import get_settings
from ..exceptions import AggregateSyncError
from ..models import Catalog, CompanyProfile, Job, PricingMatrix, Promotion, Service, Technician, Upcharge
from ..pipeline.aggregation import AggregateDiff, AggregateKey, aggregate_entries, plan_aggregate_sync
from .repository import JobMutation, JobRepository

logger = logging.getLogger(__name__)

_BATCH_LIMIT = 400


class FirestoreService(JobRepository):
    """Thin wrapper around the Firestore client for job operations.

    Aggregate entries live in the `aggregates` collection, one document per
    entry, with `index`, `ns`, `ts`, `entryId`, `jobId` and `value` fields.
    Range reports need a composite index on (index, ns, ts).
    """

    def __init__(self) -> None:
        settings = get_settings()
        # Use explicit database if provided in env, else default
        if settings.FIRESTORE_DATABASE_ID:
            self.client = firestore.Client(
                project=settings.GCP_PROJECT or None,
                database=settings.FIRESTORE_DATABASE_ID,
            )
        else:
            self.client = firestore.Client()
        self._jobs = self.client.collection("jobs")
        self._aggregates = self.client.collection("aggregates")

    # --- Serialization ---
    @staticmethod
    def _to_job(data: Optional[Dict[str, Any]]) -> Optional[Job]:
        return Job.model_validate(data) if data else None

    @staticmethod
    def _entry_doc(key: AggregateKey, job_id: str, value: float) -> Dict[str, Any]:
        return {
            "index": key.index,
            "ns": key.ns,
            "ts": key.ts,
            "entryId": key.entryId,
            "jobId": job_id,
            "value": float(value),
        }

    # --- Jobs ---
    def get_job(self, job_id: str) -> Optional[Job]:
        doc = self._jobs.document(job_id).get()
        return self._to_job(doc.to_dict()) if doc.exists else None

    def find_job_by_public_key(self, key: str) -> Optional[Job]:
        q = self._jobs.where("publicLinkKey", "==", key).limit(1)
        for doc in q.stream():
            return self._to_job(doc.to_dict())
        return None

    def list_jobs(self) -> List[Job]:
        return [self._to_job(doc.to_dict()) for doc in self._jobs.stream()]

    def mutate_job(self, job_id: str, fn: JobMutation) -> Tuple[Optional[Job], Optional[Job]]:
        ref = self._jobs.document(job_id)
        owned = self._aggregates.where("jobId", "==", job_id)

        @firestore.transactional
        def txn_fn(tx: firestore.Transaction) -> Tuple[Optional[Job], Optional[Job]]:
            # All reads happen before any write
            snap = ref.get(transaction=tx)
            old = self._to_job(snap.to_dict()) if snap.exists else None
            stored = {doc.id: doc.reference for doc in owned.stream(transaction=tx)}

            new = fn(old.model_copy(deep=True) if old else None)
            if new is not None and new.id != job_id:
                raise ValueError(f"mutation changed job id {job_id} -> {new.id}")
            if new == old:
                return old, new

            diff = plan_aggregate_sync(old, new)
            try:
                self._check_diff(diff, stored)
                deletes = [key.doc_id() for key in diff.deletes]
                upserts = diff.upserts
            except AggregateSyncError as exc:
                logger.warning("[%s] aggregate entries out of sync, re-syncing: %s", job_id, exc)
                upserts = aggregate_entries(new)
                keep = {key.doc_id() for key in upserts}
                deletes = [doc_id for doc_id in stored if doc_id not in keep]

            for doc_id in deletes:
                tx.delete(self._aggregates.document(doc_id))
            for key, value in upserts.items():
                tx.set(self._aggregates.document(key.doc_id()), self._entry_doc(key, job_id, value))

            if new is None:
                tx.delete(ref)
            else:
                tx.set(ref, new.model_dump(mode="python"))
            return old, new

        tx = self.client.transaction()
        return txn_fn(tx)

    @staticmethod
    def _check_diff(diff: AggregateDiff, stored: Dict[str, Any]) -> None:
        for key in diff.deletes:
            if key.doc_id() not in stored:
                raise AggregateSyncError(f"missing {key.index} entry {key.doc_id()}")

    # --- Aggregates ---
    def scan_aggregate(self, index: str, ns: str, start: datetime, end: datetime) -> List[Tuple[AggregateKey, float]]:
        q = (
            self._aggregates.where("index", "==", index)
            .where("ns", "==", ns)
            .where("ts", ">=", start)
            .where("ts", "<=", end)
            .order_by("ts")
        )
        rows: List[Tuple[AggregateKey, float]] = []
        for doc in q.stream():
            d = doc.to_dict() or {}
            key = AggregateKey(d.get("index", index), d.get("ns", ns), d["ts"], d.get("entryId", ""))
            rows.append((key, float(d.get("value", 0.0))))
        rows.sort(key=lambda row: row[0].sort_key)
        return rows

    def rebuild_aggregates(self) -> int:
        """Delete every aggregate document and rewrite them from the jobs collection."""
        batch = self.client.batch()
        pending = 0
        for doc in self._aggregates.stream():
            batch.delete(doc.reference)
            pending += 1
            if pending >= _BATCH_LIMIT:
                batch.commit()
                batch = self.client.batch()
                pending = 0

        written = 0
        for job in self.list_jobs():
            if job is None:
                continue
            for key, value in aggregate_entries(job).items():
                batch.set(self._aggregates.document(key.doc_id()), self._entry_doc(key, job.id, value))
                pending += 1
                written += 1
                if pending >= _BATCH_LIMIT:
                    batch.commit()
                    batch = self.client.batch()
                    pending = 0
        if pending:
            batch.commit()
        return written

    # --- Collaborator lookups ---
    def _collect(self, name: str) -> List[Dict[str, Any]]:
        return [{**(doc.to_dict() or {}), "id": doc.id} for doc in self.client.collection(name).stream()]

    def get_catalog(self) -> Catalog:
        technicians = [
            {**(doc.to_dict() or {}), "id": doc.id}
            for doc in self.client.collection("users").where("role", "==", "technician").stream()
        ]
        return Catalog(
            services=[Service.model_validate(d) for d in self._collect("services")],
            pricingMatrices=[PricingMatrix.model_validate(d) for d in self._collect("pricingMatrices")],
            upcharges=[Upcharge.model_validate(d) for d in self._collect("upcharges")],
            technicians=[Technician.model_validate(d) for d in technicians],
        )

    def find_promotion(self, code: str) -> Optional[Promotion]:
        wanted = (code or "").strip().lower()
        for d in self._collect("promotions"):
            if str(d.get("code", "")).lower() == wanted:
                return Promotion.model_validate(d)
        return None

    def get_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        doc = self.client.collection("customers").document(customer_id).get()
        return {**(doc.to_dict() or {}), "id": doc.id} if doc.exists else None

    def get_vehicle(self, vehicle_id: str) -> Optional[Dict[str, Any]]:
        doc = self.client.collection("vehicles").document(vehicle_id).get()
        return {**(doc.to_dict() or {}), "id": doc.id} if doc.exists else None

    def get_company(self) -> CompanyProfile:
        for doc in self.client.collection("company").limit(1).stream():
            return CompanyProfile.model_validate(doc.to_dict() or {})
        return CompanyProfile()
