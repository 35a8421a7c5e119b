import os

os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("TASKS_EMULATE", "true")

from datetime import datetime, timezone  # noqa: E402
from typing import Dict, List, Tuple  # noqa: E402

import pytest  # noqa: E402

from jobcore.config import Settings  # noqa: E402
from jobcore.models import (  # noqa: E402
    Actor,
    Catalog,
    CompanyProfile,
    ImagePart,
    PricingMatrix,
    PricingRule,
    Promotion,
    QuoteSuggestion,
    Service,
    Technician,
    Upcharge,
)
from jobcore.pipeline.aggregation import aggregate_entries  # noqa: E402
from jobcore.services.memory_store import MemoryStoreService  # noqa: E402
from jobcore.services.orchestration.job_service import JobOrchestrationService  # noqa: E402
from jobcore.services.orchestration.task_pipeline import TaskPipelineService  # noqa: E402
from jobcore.services.rate_limit import RateLimiterService  # noqa: E402

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
FAR_FUTURE = datetime(2100, 1, 1, tzinfo=timezone.utc)


class FakeTasks:
    """Records enqueued tasks instead of calling Cloud Tasks."""

    emulated = False

    def __init__(self) -> None:
        self.visual_quotes: List[Tuple[str, int]] = []
        self.inventory_debits: List[str] = []
        self.fail_visual_quote = False

    def enqueue_visual_quote(self, job_id: str, generation: int):
        if self.fail_visual_quote:
            raise RuntimeError("queue unavailable")
        self.visual_quotes.append((job_id, generation))
        return f"vq-{job_id}-{generation}"

    def enqueue_inventory_debit(self, job_id: str):
        self.inventory_debits.append(job_id)
        return f"inv-{job_id}"


class FakeAnalyzer:
    """Plays back scripted outcomes: an exception instance is raised, anything else returned."""

    def __init__(self) -> None:
        self.outcomes: List = []
        self.calls = 0
        self.default = QuoteSuggestion()

    async def __call__(self, images, services, upcharges):
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeInventory:
    def __init__(self) -> None:
        self.debited: List[str] = []

    async def debit_for_job(self, job_id: str) -> bool:
        self.debited.append(job_id)
        return True


def build_catalog() -> Catalog:
    return Catalog(
        services=[
            Service(id="s-wash", name="Exterior Wash", basePrice=100),
            Service(id="s-polish", name="Paint Polish", basePrice=200),
            Service(id="s-interior", name="Interior Detail", basePrice=50),
        ],
        pricingMatrices=[
            PricingMatrix(
                id="m-size",
                name="Vehicle size",
                appliesToServiceIds=["s-wash", "s-polish"],
                rules=[
                    PricingRule(id="r-suv", factor="SUV", adjustmentType="fixedAmount", adjustmentValue=25),
                    PricingRule(id="r-van", factor="Van", adjustmentType="percentage", adjustmentValue=10),
                ],
            ),
        ],
        upcharges=[
            Upcharge(id="u-pet", name="Excessive Pet Hair", defaultAmount=10, isPercentage=True),
            Upcharge(id="u-stain", name="Heavy Stains", defaultAmount=30, isPercentage=False),
        ],
        technicians=[
            Technician(id="t1", name="Ana"),
            Technician(id="t2", name="Ben"),
            Technician(id="t3", name="Cy"),
        ],
    )


def full_scan_entries(store: MemoryStoreService) -> Dict:
    """Aggregate entries a full re-scan of the current jobs would produce."""
    expected: Dict = {}
    for job in store.list_jobs():
        for key, value in aggregate_entries(job).items():
            expected[(key.index,) + key.sort_key] = value
    return expected


def stored_entries(store: MemoryStoreService) -> Dict:
    stored: Dict = {}
    for index_name, index in store._indexes.items():
        for key, value in index.items():
            stored[(index_name,) + key] = value
    return stored


@pytest.fixture
def settings(monkeypatch) -> Settings:
    monkeypatch.setenv("STORE_BACKEND", "memory")
    monkeypatch.setenv("TASKS_EMULATE", "false")
    monkeypatch.setenv("VQ_INITIAL_BACKOFF_MS", "0")
    monkeypatch.setenv("VQ_MAX_BACKOFF_MS", "0")
    monkeypatch.setenv("RL_ENABLED", "false")
    return Settings()


@pytest.fixture
def catalog() -> Catalog:
    return build_catalog()


@pytest.fixture
def store(catalog) -> MemoryStoreService:
    s = MemoryStoreService(catalog=catalog, company=CompanyProfile(name="Shine Co", enableSmartInventory=True))
    s.put_customer("c1", {"name": "Dana"})
    s.put_vehicle("v1", {"make": "Volvo", "model": "V70"})
    s.put_promotion(Promotion(id="p-half", code="HALF", type="percentage", value=50))
    s.put_promotion(Promotion(id="p-double", code="DOUBLE", type="percentage", value=200))
    s.put_promotion(Promotion(id="p-off20", code="OFF20", type="fixedAmount", value=20))
    s.put_promotion(Promotion(id="p-old", code="OLD", type="fixedAmount", value=20, isActive=False))
    return s


@pytest.fixture
def fake_tasks() -> FakeTasks:
    return FakeTasks()


@pytest.fixture
def analyzer() -> FakeAnalyzer:
    return FakeAnalyzer()


@pytest.fixture
def inventory() -> FakeInventory:
    return FakeInventory()


@pytest.fixture
def limiter(settings) -> RateLimiterService:
    return RateLimiterService(settings)


@pytest.fixture
def pipeline(store, settings, analyzer, inventory) -> TaskPipelineService:
    return TaskPipelineService(
        store=store,
        settings=settings,
        analyzer=analyzer,
        image_loader=lambda ref: ImagePart(data=ref.encode(), mimeType="image/png"),
        inventory=inventory,
    )


@pytest.fixture
def service(store, fake_tasks, limiter, settings, pipeline) -> JobOrchestrationService:
    return JobOrchestrationService(
        store=store,
        tasks=fake_tasks,
        limiter=limiter,
        settings=settings,
        pipeline_factory=lambda: pipeline,
    )


@pytest.fixture
def admin() -> Actor:
    return Actor(id="admin-1", role="admin")


@pytest.fixture
def technician() -> Actor:
    return Actor(id="t1", role="technician")
