from __future__ import annotations

from typing import Iterable, List, Mapping, Optional, Sequence

from ..models import JobItem, JobTotals, PricingRule, Promotion, Upcharge


def _adjust(running: float, is_percentage: bool, value: float) -> float:
    if is_percentage:
        # Percentages compound on the running total, not the base price
        return running + running * (value / 100)
    return running + value


def compute_item_total(
    unit_price: float,
    quantity: float,
    applied_rule_ids: Sequence[str],
    applied_upcharge_ids: Sequence[str],
    rule_catalog: Mapping[str, PricingRule],
    upcharge_catalog: Mapping[str, Upcharge],
) -> float:
    """Compute a job item's total.

    Order is fixed: base (unit price x quantity), then pricing rules in the
    order stored on the item, then upcharges in stored order. Ids missing from
    the catalogs are skipped.
    """
    running = unit_price * quantity
    for rule_id in applied_rule_ids:
        rule = rule_catalog.get(rule_id)
        if rule is None:
            continue
        running = _adjust(running, rule.adjustmentType == "percentage", rule.adjustmentValue)
    for upcharge_id in applied_upcharge_ids:
        upcharge = upcharge_catalog.get(upcharge_id)
        if upcharge is None:
            continue
        running = _adjust(running, upcharge.isPercentage, upcharge.defaultAmount)
    return running


def price_items(
    items: Iterable[JobItem],
    rule_catalog: Mapping[str, PricingRule],
    upcharge_catalog: Mapping[str, Upcharge],
) -> List[JobItem]:
    """Return copies of `items` with `total` recomputed."""
    priced: List[JobItem] = []
    for item in items:
        total = compute_item_total(
            item.unitPrice,
            item.quantity,
            item.appliedPricingRuleIds,
            item.addedUpchargeIds,
            rule_catalog,
            upcharge_catalog,
        )
        priced.append(item.model_copy(update={"total": total}))
    return priced


def compute_job_totals(items: Sequence[JobItem], promotion: Optional[Promotion] = None) -> JobTotals:
    """Subtotal of item totals minus an optional promotion discount.

    Inactive promotions are ignored. The discount never exceeds the subtotal.
    """
    subtotal = 0.0
    for item in items:
        subtotal += item.total

    discount = 0.0
    promotion_id: Optional[str] = None
    if promotion is not None and promotion.isActive:
        if promotion.type == "percentage":
            discount = subtotal * (promotion.value / 100)
        else:
            discount = promotion.value
        discount = min(discount, subtotal)
        promotion_id = promotion.id

    return JobTotals(
        subtotal=subtotal,
        discountAmount=discount,
        totalAmount=subtotal - discount,
        appliedPromotionId=promotion_id,
    )
