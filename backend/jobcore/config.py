"""Application settings and configuration helpers."""
from __future__ import annotations

import os
from functools import lru_cache
from typing import List
from dotenv import load_dotenv, find_dotenv


class Settings:
    """Runtime configuration loaded from environment variables.

    Defaults are suitable for local development. Production should set
    explicit values via environment variables and Secret Manager.
    """

    APP_NAME: str = "Service Jobs API"
    API_PREFIX: str = "/api"

    # CORS
    CORS_ORIGINS: List[str]

    # Storage backend
    STORE_BACKEND: str  # "firestore" or "memory"

    # GCP
    GCS_BUCKET: str
    REGION: str
    FIRESTORE_DATABASE_ID: str

    # Cloud Tasks
    GCP_PROJECT: str
    TASKS_QUEUE: str
    TASKS_TARGET_URL: str
    TASKS_SERVICE_ACCOUNT_EMAIL: str
    TASKS_EMULATE: bool

    # LLM
    GEMINI_API_KEY: str
    GEMINI_MODEL: str
    OPENROUTER_API_KEY: str
    OPENROUTER_MODEL: str
    LLM_PROMPT_VERSION: str

    # Visual quote
    VQ_MAX_ATTEMPTS: int
    VQ_INITIAL_BACKOFF_MS: int
    VQ_MAX_BACKOFF_MS: int
    MAX_IMAGES: int

    # Inventory collaborator
    INVENTORY_DEBIT_URL: str

    # Rate limiting / quotas
    RL_ENABLED: bool
    RL_HEAVY_AI_PER_HOUR: int
    RL_HEAVY_AI_CAPACITY: int
    RL_GENERAL_AI_PER_MIN: int
    RL_GENERAL_AI_CAPACITY: int
    RL_DAILY_PER_ACTOR: int
    RL_TZ_OFFSET_MINUTES: int

    # Identity headers
    ACTOR_ID_HEADER: str
    ACTOR_ROLE_HEADER: str

    def __init__(self) -> None:
        # Load .env once (supports parent directories)
        load_dotenv(find_dotenv(), override=False)
        self.CORS_ORIGINS = self._get_list("CORS_ORIGINS", default="*")
        self.STORE_BACKEND = os.getenv("STORE_BACKEND", "firestore").strip().lower()

        self.GCS_BUCKET = os.getenv("GCS_BUCKET", "service_jobs_storage")
        self.REGION = os.getenv("REGION", "europe-west4")
        self.FIRESTORE_DATABASE_ID = os.getenv("FIRESTORE_DATABASE_ID", "(default)")

        # Cloud Tasks / GCP project configuration
        self.GCP_PROJECT = os.getenv("GCP_PROJECT", os.getenv("GOOGLE_CLOUD_PROJECT", ""))
        self.TASKS_QUEUE = os.getenv("TASKS_QUEUE", "service-jobs-queue")
        self.TASKS_TARGET_URL = os.getenv("TASKS_TARGET_URL", "")  # e.g., https://<run-url>/api/tasks
        self.TASKS_SERVICE_ACCOUNT_EMAIL = os.getenv("TASKS_SERVICE_ACCOUNT_EMAIL", "")
        self.TASKS_EMULATE = os.getenv("TASKS_EMULATE", "true").lower() == "true"

        # LLM
        self.GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
        self.GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
        self.OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY", "")
        self.OPENROUTER_MODEL = os.getenv("OPENROUTER_MODEL", "meta-llama/llama-3.2-11b-vision-instruct:free")
        self.LLM_PROMPT_VERSION = os.getenv("LLM_PROMPT_VERSION", "v1")

        # Visual quote retry budget
        self.VQ_MAX_ATTEMPTS = int(os.getenv("VQ_MAX_ATTEMPTS", "3"))
        self.VQ_INITIAL_BACKOFF_MS = int(os.getenv("VQ_INITIAL_BACKOFF_MS", "500"))
        self.VQ_MAX_BACKOFF_MS = int(os.getenv("VQ_MAX_BACKOFF_MS", "10000"))
        self.MAX_IMAGES = int(os.getenv("MAX_IMAGES", "10"))

        # Empty URL means debits are logged and skipped
        self.INVENTORY_DEBIT_URL = os.getenv("INVENTORY_DEBIT_URL", "")

        # Rate limiting / quotas (defaults are conservative; override in env)
        self.RL_ENABLED = os.getenv("RL_ENABLED", "true").lower() == "true"
        self.RL_HEAVY_AI_PER_HOUR = int(os.getenv("RL_HEAVY_AI_PER_HOUR", "5"))
        self.RL_HEAVY_AI_CAPACITY = int(os.getenv("RL_HEAVY_AI_CAPACITY", "1"))
        self.RL_GENERAL_AI_PER_MIN = int(os.getenv("RL_GENERAL_AI_PER_MIN", "30"))
        self.RL_GENERAL_AI_CAPACITY = int(os.getenv("RL_GENERAL_AI_CAPACITY", "5"))
        self.RL_DAILY_PER_ACTOR = int(os.getenv("RL_DAILY_PER_ACTOR", "50"))
        self.RL_TZ_OFFSET_MINUTES = int(os.getenv("RL_TZ_OFFSET_MINUTES", "0"))

        self.ACTOR_ID_HEADER = os.getenv("ACTOR_ID_HEADER", "X-Actor-Id")
        self.ACTOR_ROLE_HEADER = os.getenv("ACTOR_ROLE_HEADER", "X-Actor-Role")

    @staticmethod
    def _get_list(name: str, default: str = "") -> List[str]:
        raw = os.getenv(name, default)
        return [item.strip() for item in raw.split(",") if item.strip()] or ["*"]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""
    return Settings()
