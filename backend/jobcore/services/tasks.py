"""Cloud Tasks helper service for enqueuing background work on jobs."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from google.api_core.exceptions import AlreadyExists
from google.cloud import tasks_v2

logger = logging.getLogger(__name__)


@dataclass
class TasksConfig:
    project: str
    region: str
    queue: str
    target_url: str  # worker base URL, e.g. https://<run-url>/api/tasks
    service_account_email: str
    emulate: bool = True


def visual_quote_task_id(job_id: str, generation: int) -> str:
    return f"vq-{job_id}-{generation}"


def inventory_debit_task_id(job_id: str) -> str:
    return f"inv-{job_id}"


class CloudTasksService:
    """Wrapper for creating named HTTP tasks that call the worker endpoints.

    Task names double as idempotency keys: Cloud Tasks rejects a second task
    with the same name, so a duplicate enqueue is logged and ignored.
    """

    def __init__(self, cfg: TasksConfig) -> None:
        self.cfg = cfg
        self._client = None if self.emulated else tasks_v2.CloudTasksClient()

    @property
    def emulated(self) -> bool:
        return self.cfg.emulate or not all([
            self.cfg.project, self.cfg.region, self.cfg.queue,
            self.cfg.target_url, self.cfg.service_account_email,
        ])

    def enqueue_visual_quote(self, job_id: str, generation: int) -> Optional[str]:
        return self._enqueue(
            visual_quote_task_id(job_id, generation),
            "/visual-quote",
            {"jobId": job_id, "generation": generation},
        )

    def enqueue_inventory_debit(self, job_id: str) -> Optional[str]:
        return self._enqueue(inventory_debit_task_id(job_id), "/inventory-debit", {"jobId": job_id})

    def _enqueue(self, task_id: str, path: str, payload: Dict[str, Any]) -> Optional[str]:
        """Create a task to call the worker endpoint with OIDC.

        Returns the task name on success, or None if emulated or a duplicate.
        Raises on irrecoverable API errors.
        """
        if self.emulated:
            logger.info("Tasks emulation/no-op: skipping enqueue of %s", task_id)
            return None

        parent = self._client.queue_path(self.cfg.project, self.cfg.region, self.cfg.queue)
        url = self.cfg.target_url.rstrip("/") + path
        task = {
            "name": self._client.task_path(self.cfg.project, self.cfg.region, self.cfg.queue, task_id),
            "http_request": {
                "http_method": tasks_v2.HttpMethod.POST,
                "url": url,
                "headers": {"Content-Type": "application/json"},
                "body": json.dumps(payload).encode(),
                "oidc_token": {
                    "service_account_email": self.cfg.service_account_email,
                    "audience": self.cfg.target_url,
                },
            },
        }
        try:
            response = self._client.create_task(request={"parent": parent, "task": task})
        except AlreadyExists:
            logger.info("Task %s already enqueued; ignoring duplicate", task_id)
            return None
        logger.info("Created task %s", response.name)
        return response.name
