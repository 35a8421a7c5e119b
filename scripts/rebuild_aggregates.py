#!/usr/bin/env python3
"""
Verify or rebuild the reporting aggregates stored in Firestore.

What it does
- Streams every job in the `jobs` collection and derives the aggregate
  entries each one contributes (jobStats, servicePerformance,
  technicianPerformance)
- --verify: compares them with the `aggregates` collection and prints
  missing, unexpected and wrong-valued entries per index
- --rebuild: deletes every aggregate document and rewrites them from the jobs

Operational recovery only; reports never scan jobs.

Requirements
- google-cloud-firestore and the backend package installed (pip install -e .)
- A service account or ADC with read/write access to the Firestore database

Usage examples (PowerShell)
# Auth
$env:GOOGLE_APPLICATION_CREDENTIALS = "C:\path\to\sa.json"

python scripts/rebuild_aggregates.py --verify
python scripts/rebuild_aggregates.py --rebuild --project my-project --database "(default)"
"""
from __future__ import annotations

import argparse
import os
from collections import Counter
from typing import Dict, Tuple

parser = argparse.ArgumentParser(description="Verify or rebuild reporting aggregates in Firestore")
mode = parser.add_mutually_exclusive_group(required=True)
mode.add_argument("--verify", action="store_true", help="Report drift between jobs and stored aggregates")
mode.add_argument("--rebuild", action="store_true", help="Delete and recompute all aggregate entries")
parser.add_argument("--project", type=str, default=os.getenv("GCP_PROJECT", os.getenv("GOOGLE_CLOUD_PROJECT", "")))
parser.add_argument("--database", type=str, default=os.getenv("FIRESTORE_DATABASE_ID", "(default)"))


def expected_entries(store) -> Dict[str, Tuple[str, float]]:
    from jobcore.pipeline.aggregation import aggregate_entries

    expected: Dict[str, Tuple[str, float]] = {}
    for job in store.list_jobs():
        for key, value in aggregate_entries(job).items():
            expected[key.doc_id()] = (key.index, value)
    return expected


def stored_entries(store) -> Dict[str, Tuple[str, float]]:
    stored: Dict[str, Tuple[str, float]] = {}
    for doc in store.client.collection("aggregates").stream():
        d = doc.to_dict() or {}
        stored[doc.id] = (d.get("index", "?"), float(d.get("value", 0.0)))
    return stored


def verify(store) -> int:
    expected = expected_entries(store)
    stored = stored_entries(store)
    missing = Counter(idx for doc_id, (idx, _) in expected.items() if doc_id not in stored)
    unexpected = Counter(idx for doc_id, (idx, _) in stored.items() if doc_id not in expected)
    wrong = Counter(
        idx for doc_id, (idx, value) in expected.items()
        if doc_id in stored and abs(stored[doc_id][1] - value) > 1e-9
    )
    print("Expected entries:", len(expected))
    print("Stored entries:  ", len(stored))
    for name, counts in (("missing", missing), ("unexpected", unexpected), ("wrong value", wrong)):
        for idx, n in sorted(counts.items()):
            print(f"  {name:<11} {idx}: {n}")
    return sum(missing.values()) + sum(unexpected.values()) + sum(wrong.values())


def main() -> None:
    args = parser.parse_args()
    if args.project:
        os.environ["GCP_PROJECT"] = args.project
    os.environ["FIRESTORE_DATABASE_ID"] = args.database
    os.environ["STORE_BACKEND"] = "firestore"

    from jobcore.services.firestore import FirestoreService

    store = FirestoreService()
    if args.verify:
        drift = verify(store)
        print("OK" if drift == 0 else f"Drift: {drift} entr(y/ies); run with --rebuild")
        raise SystemExit(1 if drift else 0)

    written = store.rebuild_aggregates()
    print("Rebuilt aggregate entries:", written)


if __name__ == "__main__":
    main()
