import asyncio

import pytest

from conftest import T0, FakeInventory
from jobcore.config import Settings
from jobcore.exceptions import (
    AnalysisFailedError,
    ExternalServiceError,
    InvalidTransitionError,
    NotFoundError,
    RateLimitError,
    ValidationFailedError,
)
from jobcore.models import JobItemInput, JobSaveRequest, QuoteSuggestion
from jobcore.services.orchestration.job_service import JobOrchestrationService
from jobcore.services.orchestration.task_pipeline import quote_items
from jobcore.services.rate_limit import RateLimiterService

IMAGES = ["gs://bucket/front.jpg", "gs://bucket/side.jpg"]


@pytest.fixture
def job(service, admin, monkeypatch):
    monkeypatch.setattr(service, "_now", lambda: T0)
    req = JobSaveRequest(
        customerId="c1",
        vehicleId="v1",
        promotionCode="HALF",
        jobItems=[JobItemInput(serviceId="s-interior")],
    )
    return asyncio.run(service.save_job(req, actor=admin))


def _initiate(service, job_id, actor, images=IMAGES):
    return asyncio.run(service.initiate_visual_quote(job_id, images, actor))


def _process(pipeline, job_id, generation):
    return asyncio.run(pipeline.process_visual_quote(job_id, generation))


def test_initiate_clears_job_and_enqueues(service, job, admin, fake_tasks):
    pending = _initiate(service, job.id, admin)
    assert pending.visualQuoteStatus == "pending"
    assert pending.visualQuoteGeneration == 1
    assert pending.visualQuoteStorageIds == IMAGES
    assert pending.jobItems == []
    assert pending.totalAmount == 0
    assert pending.appliedPromotionId is None
    assert fake_tasks.visual_quotes == [(job.id, 1)]


def test_retries_until_analysis_succeeds(service, pipeline, store, job, admin, analyzer):
    _initiate(service, job.id, admin)
    analyzer.outcomes = [
        AnalysisFailedError("unreadable"),
        AnalysisFailedError("unreadable"),
        QuoteSuggestion(suggestedServiceIds=["s-wash", "s-unknown", "s-polish"], suggestedUpchargeIds=["u-stain"]),
    ]
    result = _process(pipeline, job.id, 1)

    assert result == {"ok": True, "jobId": job.id, "status": "complete"}
    assert analyzer.calls == 3
    quoted = store.get_job(job.id)
    assert quoted.visualQuoteStatus == "complete"
    assert [(i.serviceId, i.addedUpchargeIds, i.total) for i in quoted.jobItems] == [
        ("s-wash", ["u-stain"], 130),
        ("s-polish", [], 200),
    ]
    assert quoted.totalAmount == 330
    assert quoted.discountAmount == 0


def test_exhausted_attempts_mark_failed_then_reinitiate(service, pipeline, store, job, admin, analyzer, fake_tasks):
    _initiate(service, job.id, admin)
    analyzer.outcomes = [AnalysisFailedError("down")] * 3
    result = _process(pipeline, job.id, 1)

    assert result["ok"] is False
    assert result["status"] == "failed"
    assert result["attempts"] == 3
    failed = store.get_job(job.id)
    assert failed.visualQuoteStatus == "failed"
    assert failed.jobItems == []

    again = _initiate(service, job.id, admin)
    assert again.visualQuoteStatus == "pending"
    assert again.visualQuoteGeneration == 2
    assert fake_tasks.visual_quotes == [(job.id, 1), (job.id, 2)]

    analyzer.outcomes = [QuoteSuggestion(suggestedServiceIds=["s-wash"])]
    assert _process(pipeline, job.id, 2)["status"] == "complete"
    assert store.get_job(job.id).totalAmount == 100


def test_superseded_generation_is_ignored(service, pipeline, store, job, admin, analyzer, catalog):
    _initiate(service, job.id, admin)
    _initiate(service, job.id, admin)

    assert _process(pipeline, job.id, 1) == {"ok": True, "jobId": job.id, "note": "stale"}
    assert analyzer.calls == 0
    stale = QuoteSuggestion(suggestedServiceIds=["s-polish"])
    assert pipeline.apply_visual_quote(job.id, 1, stale, catalog) is False
    assert asyncio.run(pipeline.mark_visual_quote_failed(job.id, 1)) is False
    current = store.get_job(job.id)
    assert current.visualQuoteStatus == "pending"
    assert current.jobItems == []


def test_reinitiate_during_analysis_discards_old_result(service, pipeline, store, job, admin):
    async def analyzer(images, services, upcharges):
        await service.initiate_visual_quote(job.id, IMAGES[:1], admin)
        return QuoteSuggestion(suggestedServiceIds=["s-polish"])

    pipeline._analyzer = analyzer
    _initiate(service, job.id, admin)
    assert _process(pipeline, job.id, 1)["status"] == "stale"
    current = store.get_job(job.id)
    assert current.visualQuoteGeneration == 2
    assert current.visualQuoteStatus == "pending"
    assert current.jobItems == []


def test_manual_save_while_pending_wins(service, pipeline, store, job, admin, analyzer):
    _initiate(service, job.id, admin)
    req = JobSaveRequest(
        id=job.id,
        customerId="c1",
        vehicleId="v1",
        jobItems=[JobItemInput(id="manual", serviceId="s-interior")],
    )
    saved = asyncio.run(service.save_job(req, actor=admin))
    assert saved.visualQuoteStatus == "none"
    assert saved.visualQuoteGeneration == 2

    analyzer.outcomes = [QuoteSuggestion(suggestedServiceIds=["s-polish"])]
    assert _process(pipeline, job.id, 1)["note"] == "stale"
    current = store.get_job(job.id)
    assert [i.id for i in current.jobItems] == ["manual"]
    assert current.totalAmount == 50


def test_manual_save_during_analysis_discards_result(service, pipeline, store, job, admin):
    async def analyzer(images, services, upcharges):
        req = JobSaveRequest(
            id=job.id,
            customerId="c1",
            vehicleId="v1",
            jobItems=[JobItemInput(id="manual", serviceId="s-wash")],
        )
        await service.save_job(req, actor=admin)
        return QuoteSuggestion(suggestedServiceIds=["s-polish"])

    pipeline._analyzer = analyzer
    _initiate(service, job.id, admin)
    assert _process(pipeline, job.id, 1)["status"] == "stale"
    current = store.get_job(job.id)
    assert [i.id for i in current.jobItems] == ["manual"]
    assert current.totalAmount == 100
    assert current.visualQuoteStatus == "none"


def test_cancel_while_pending_discards_result(service, pipeline, store, job, admin, analyzer):
    _initiate(service, job.id, admin)
    asyncio.run(service.cancel_job(job.id))
    analyzer.outcomes = [QuoteSuggestion(suggestedServiceIds=["s-polish"])]
    assert _process(pipeline, job.id, 1)["note"] == "stale"
    cancelled = store.get_job(job.id)
    assert cancelled.status == "cancelled"
    assert cancelled.jobItems == []


def test_narrow_edits_keep_quote_pending(service, store, job, admin):
    _initiate(service, job.id, admin)
    asyncio.run(service.add_photo(job.id, "gs://bucket/after.jpg", "after"))
    asyncio.run(service.approve_job(job.id, "sig"))
    current = store.get_job(job.id)
    assert current.visualQuoteStatus == "pending"
    assert current.visualQuoteGeneration == 1


def test_deleted_job_is_a_no_op(service, pipeline, store, job, admin, analyzer):
    _initiate(service, job.id, admin)
    asyncio.run(service.remove_job(job.id))
    assert _process(pipeline, job.id, 1)["note"] == "stale"
    assert analyzer.calls == 0
    assert store.get_job(job.id) is None


def test_images_are_loaded_for_analysis(service, pipeline, job, admin):
    seen = []

    async def analyzer(images, services, upcharges):
        seen.extend(img.data for img in images)
        return QuoteSuggestion()

    pipeline._analyzer = analyzer
    _initiate(service, job.id, admin)
    _process(pipeline, job.id, 1)
    assert seen == [ref.encode() for ref in IMAGES]


@pytest.mark.parametrize("images", [[], ["gs://bucket/x.jpg"] * 11])
def test_image_count_is_validated(service, job, admin, images):
    with pytest.raises(ValidationFailedError):
        _initiate(service, job.id, admin, images)


def test_terminal_job_cannot_be_quoted(service, job, admin):
    asyncio.run(service.cancel_job(job.id))
    with pytest.raises(InvalidTransitionError):
        _initiate(service, job.id, admin)


def test_unknown_job(service, admin):
    with pytest.raises(NotFoundError):
        _initiate(service, "missing", admin)


def test_enqueue_failure_marks_failed(service, store, job, admin, fake_tasks):
    fake_tasks.fail_visual_quote = True
    with pytest.raises(ExternalServiceError):
        _initiate(service, job.id, admin)
    failed = store.get_job(job.id)
    assert failed.visualQuoteStatus == "failed"
    assert failed.visualQuoteGeneration == 1


def test_heavy_ai_limit_applies_per_actor(store, fake_tasks, pipeline, job, admin, technician, monkeypatch):
    monkeypatch.setenv("RL_ENABLED", "true")
    limited = JobOrchestrationService(
        store=store,
        tasks=fake_tasks,
        limiter=RateLimiterService(Settings()),
        settings=Settings(),
        pipeline_factory=lambda: pipeline,
    )
    _initiate(limited, job.id, admin)
    with pytest.raises(RateLimitError) as info:
        _initiate(limited, job.id, admin)
    assert info.value.retry_after == pytest.approx(720, abs=1)
    assert store.get_job(job.id).visualQuoteGeneration == 1
    _initiate(limited, job.id, technician)


def test_heavy_ai_token_returned_when_job_changes_under_request(
    store, fake_tasks, pipeline, service, job, admin, monkeypatch
):
    monkeypatch.setenv("RL_ENABLED", "true")
    limited = JobOrchestrationService(
        store=store,
        tasks=fake_tasks,
        limiter=RateLimiterService(Settings()),
        settings=Settings(),
        pipeline_factory=lambda: pipeline,
    )
    before_cancel = store.get_job(job.id)
    asyncio.run(service.cancel_job(job.id))
    with monkeypatch.context() as m:
        m.setattr(store, "get_job", lambda job_id: before_cancel.model_copy(deep=True))
        with pytest.raises(InvalidTransitionError):
            _initiate(limited, job.id, admin)

    other = asyncio.run(service.create_draft("c1", "v1", actor=admin))
    assert _initiate(limited, other.id, admin).visualQuoteStatus == "pending"


def test_quote_items_puts_upcharges_on_first_item(catalog):
    items = quote_items(QuoteSuggestion(suggestedServiceIds=["s-polish", "s-wash"], suggestedUpchargeIds=["u-pet"]), catalog)
    assert [i.addedUpchargeIds for i in items] == [["u-pet"], []]
    assert items[0].total == pytest.approx(220)
    assert all(i.quantity == 1 and i.appliedPricingRuleIds == [] for i in items)


def test_quote_items_without_known_services(catalog):
    assert quote_items(QuoteSuggestion(suggestedServiceIds=["nope"], suggestedUpchargeIds=["u-pet"]), catalog) == []


# --- Inventory debit task ---


def test_inventory_debit_task(service, pipeline, store, admin, inventory, monkeypatch):
    monkeypatch.setattr(service, "_now", lambda: T0)
    req = JobSaveRequest(customerId="c1", vehicleId="v1", status="completed", jobItems=[JobItemInput(serviceId="s-wash")])
    done = asyncio.run(service.save_job(req, actor=admin))
    open_job = asyncio.run(service.create_draft("c1", "v1", actor=admin))

    assert asyncio.run(pipeline.process_inventory_debit(done.id))["status"] == "debited"
    assert asyncio.run(pipeline.process_inventory_debit(open_job.id))["note"] == "not claimed"
    assert asyncio.run(pipeline.process_inventory_debit("missing"))["note"] == "job not found"
    assert inventory.debited == [done.id]


def test_inventory_collaborator_error(service, pipeline, admin, monkeypatch):
    class BrokenInventory(FakeInventory):
        async def debit_for_job(self, job_id):
            raise ExternalServiceError("inventory down")

    pipeline._inventory = BrokenInventory()
    monkeypatch.setattr(service, "_now", lambda: T0)
    req = JobSaveRequest(customerId="c1", vehicleId="v1", status="completed", jobItems=[JobItemInput(serviceId="s-wash")])
    done = asyncio.run(service.save_job(req, actor=admin))
    result = asyncio.run(pipeline.process_inventory_debit(done.id))
    assert result["ok"] is False
