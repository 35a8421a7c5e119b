import asyncio
import re

import pytest

from conftest import T0
from jobcore.exceptions import InvalidTransitionError, NotFoundError, ValidationFailedError
from jobcore.models import CompanyProfile, JobItemInput, JobSaveRequest


def _save(service, actor=None, **kw):
    kw.setdefault("customerId", "c1")
    kw.setdefault("vehicleId", "v1")
    return asyncio.run(service.save_job(JobSaveRequest(**kw), actor=actor))


def _wash(**kw):
    return JobItemInput(serviceId="s-wash", **kw)


@pytest.fixture(autouse=True)
def frozen_clock(service, monkeypatch):
    monkeypatch.setattr(service, "_now", lambda: T0)


# --- Drafts ---


def test_draft_defaults(service, admin):
    job = asyncio.run(service.create_draft("c1", "v1", actor=admin))
    assert re.fullmatch(r"[0-9A-Z]{10}", job.publicLinkKey)
    assert job.status == "estimate"
    assert job.customerApprovalStatus == "pending"
    assert job.createdAt == job.estimateDate == T0
    assert job.totalAmount == 0 and job.jobItems == []
    assert job.assignedTechnicianIds == []


def test_draft_by_technician_assigns_them(service, technician):
    job = asyncio.run(service.create_draft("c1", "v1", actor=technician))
    assert job.assignedTechnicianIds == ["t1"]


def test_drafts_get_distinct_public_keys(service, admin):
    keys = {asyncio.run(service.create_draft("c1", "v1", actor=admin)).publicLinkKey for _ in range(20)}
    assert len(keys) == 20


@pytest.mark.parametrize("customer_id,vehicle_id", [("ghost", "v1"), ("c1", "ghost")])
def test_draft_requires_known_customer_and_vehicle(service, admin, customer_id, vehicle_id):
    with pytest.raises(NotFoundError):
        asyncio.run(service.create_draft(customer_id, vehicle_id, actor=admin))


# --- Saves ---


def test_save_computes_item_and_job_totals(service, admin):
    job = _save(
        service,
        admin,
        promotionCode="half",
        jobItems=[
            _wash(appliedPricingRuleIds=["r-suv"], addedUpchargeIds=["u-pet"]),
            JobItemInput(serviceId="s-interior", quantity=2),
        ],
    )
    assert [item.total for item in job.jobItems] == [pytest.approx(137.5), 100]
    assert job.discountAmount == pytest.approx(118.75)
    assert job.totalAmount == pytest.approx(118.75)
    assert job.appliedPromotionId == "p-half"
    assert job.paymentStatus == "unpaid"


def test_client_unit_price_overrides_base_price(service, admin):
    job = _save(service, admin, jobItems=[_wash(unitPrice=80)])
    assert job.jobItems[0].unitPrice == 80
    assert job.totalAmount == 80


def test_oversized_discount_is_capped(service, admin):
    job = _save(service, admin, promotionCode="DOUBLE", jobItems=[_wash()])
    assert job.discountAmount == 100
    assert job.totalAmount == 0


def test_inactive_promotion_gives_no_discount(service, admin):
    job = _save(service, admin, promotionCode="OLD", jobItems=[_wash()])
    assert job.discountAmount == 0
    assert job.totalAmount == 100
    assert job.appliedPromotionId is None


def test_unknown_promotion_code(service, admin):
    with pytest.raises(NotFoundError):
        _save(service, admin, promotionCode="NOPE", jobItems=[_wash()])


def test_unknown_service(service, admin):
    with pytest.raises(NotFoundError):
        _save(service, admin, jobItems=[JobItemInput(serviceId="s-missing")])


def test_duplicate_item_ids(service, admin):
    with pytest.raises(ValidationFailedError):
        _save(service, admin, jobItems=[_wash(id="i1"), _wash(id="i1")])


def test_save_with_unknown_id(service, admin):
    with pytest.raises(NotFoundError):
        _save(service, admin, id="missing", jobItems=[_wash()])


def test_new_save_by_technician_adds_them(service, technician):
    job = _save(service, technician, assignedTechnicianIds=["t2"], jobItems=[_wash()])
    assert job.assignedTechnicianIds == ["t2", "t1"]


def test_resave_keeps_checklist_progress_of_surviving_items(service, admin):
    job = _save(service, admin, jobItems=[_wash(id="i1")])
    asyncio.run(service.update_checklist_progress(job.id, "i1", ["rinse", "dry"]))
    job = _save(service, admin, id=job.id, jobItems=[_wash(id="i1"), JobItemInput(id="i2", serviceId="s-polish")])
    progress = {item.id: item.checklistCompletedItems for item in job.jobItems}
    assert progress == {"i1": ["rinse", "dry"], "i2": None}


def test_resave_cannot_move_status_backwards(service, admin):
    job = _save(service, admin, status="invoice", jobItems=[_wash()])
    with pytest.raises(InvalidTransitionError):
        _save(service, admin, id=job.id, status="estimate", jobItems=[_wash()])
    assert asyncio.run(service.get_job(job.id)).status == "invoice"


def test_resave_keeps_payments_and_rederives_status(service, admin):
    job = _save(service, admin, jobItems=[_wash()])
    asyncio.run(service.apply_payment(job.id, 40))
    job = _save(service, admin, id=job.id, jobItems=[_wash(), _wash()])
    assert job.paymentReceived == 40
    assert job.totalAmount == 200
    assert job.paymentStatus == "partial"


def test_saving_completed_claims_inventory_once(service, admin, fake_tasks):
    job = _save(service, admin, status="invoice", jobItems=[_wash()])
    assert fake_tasks.inventory_debits == []
    job = _save(service, admin, id=job.id, status="completed", jobItems=[_wash()])
    assert job.inventoryDebited is True
    assert job.completionDate == T0
    _save(service, admin, id=job.id, status="completed", notes="waxed too", jobItems=[_wash()])
    assert fake_tasks.inventory_debits == [job.id]


def test_no_inventory_claim_when_business_opted_out(service, store, admin, fake_tasks):
    store.set_company(CompanyProfile(name="Shine Co", enableSmartInventory=False))
    job = _save(service, admin, status="completed", jobItems=[_wash()])
    assert job.inventoryDebited is False
    assert fake_tasks.inventory_debits == []


def test_inventory_enqueue_failure_does_not_fail_the_save(service, admin, fake_tasks, monkeypatch):
    def boom(job_id):
        raise RuntimeError("queue down")

    monkeypatch.setattr(fake_tasks, "enqueue_inventory_debit", boom)
    job = _save(service, admin, status="completed", jobItems=[_wash()])
    assert job.inventoryDebited is True


# --- Transitions ---


def test_transition_helpers(service, admin):
    job = asyncio.run(service.create_draft("c1", "v1", actor=admin))
    job = asyncio.run(service.convert_to_work_order(job.id))
    assert job.status == "workOrder" and job.workOrderDate == T0
    job = asyncio.run(service.generate_invoice(job.id))
    assert job.status == "invoice" and job.invoiceDate == T0
    job = asyncio.run(service.cancel_job(job.id))
    assert job.status == "cancelled"
    with pytest.raises(InvalidTransitionError):
        asyncio.run(service.generate_invoice(job.id))


def test_transition_on_missing_job(service):
    with pytest.raises(NotFoundError):
        asyncio.run(service.convert_to_work_order("missing"))


def test_completing_by_transition_claims_inventory(service, admin, fake_tasks):
    job = _save(service, admin, status="invoice", jobItems=[_wash()])
    asyncio.run(service.transition_status(job.id, "completed"))
    assert fake_tasks.inventory_debits == [job.id]


# --- Narrow mutations ---


def test_approve(service, admin):
    job = asyncio.run(service.create_draft("c1", "v1", actor=admin))
    job = asyncio.run(service.approve_job(job.id, "sig-1"))
    assert job.customerApprovalStatus == "approved"
    assert job.customerSignatureStorageId == "sig-1"
    assert job.approvalTimestamp == T0


def test_approve_and_checklist_on_missing_job_are_no_ops(service, store):
    assert asyncio.run(service.approve_job("missing", "sig")) is None
    assert asyncio.run(service.update_checklist_progress("missing", "i1", ["a"])) is None
    assert store.list_jobs() == []


def test_checklist_on_unknown_item_changes_nothing(service, admin):
    job = _save(service, admin, jobItems=[_wash(id="i1")])
    after = asyncio.run(service.update_checklist_progress(job.id, "zzz", ["a"]))
    assert after == job


def test_add_photo(service, admin):
    job = asyncio.run(service.create_draft("c1", "v1", actor=admin))
    job = asyncio.run(service.add_photo(job.id, "gs://bucket/before.jpg", "before"))
    [photo] = job.photos
    assert (photo.storageId, photo.type, photo.timestamp) == ("gs://bucket/before.jpg", "before", T0)
    with pytest.raises(NotFoundError):
        asyncio.run(service.add_photo("missing", "x", "after"))


def test_remove(service, admin):
    job = asyncio.run(service.create_draft("c1", "v1", actor=admin))
    assert asyncio.run(service.remove_job(job.id)) is True
    assert asyncio.run(service.remove_job(job.id)) is False
    with pytest.raises(NotFoundError):
        asyncio.run(service.get_job(job.id))
    with pytest.raises(NotFoundError):
        asyncio.run(service.get_portal_view(job.publicLinkKey))


# --- Portal ---


def test_portal_view(service, admin):
    job = _save(service, admin, jobItems=[_wash(), _wash(), JobItemInput(serviceId="s-interior")])
    view = asyncio.run(service.get_portal_view(job.publicLinkKey))
    assert view.job.id == job.id
    assert view.customer == {"id": "c1", "name": "Dana"}
    assert view.vehicle["make"] == "Volvo"
    assert [s.id for s in view.services] == ["s-wash", "s-interior"]


def test_portal_unknown_key(service):
    with pytest.raises(NotFoundError):
        asyncio.run(service.get_portal_view("ZZZZZZZZZZ"))
