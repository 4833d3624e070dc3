# hm_lab/billing/allocation.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

from django.db import transaction
from django.db.models import Sum
from django.utils import timezone
from rest_framework.exceptions import NotFound

from hm_lab.billing.models import LabPayment, PaymentAllocation, PaymentStatus
from hm_lab.billing.targets import PaymentTarget
from hm_lab.billing.threshold import ThresholdPolicy
from hm_lab.common.api.exceptions import AlreadyProcessedError
from hm_lab.lab.items import DirectOrderItem, load_item
from hm_lab.orders.models import LabOrder, LabOrderItem, PAYABLE_STATUSES
from hm_lab.prescriptions.models import Prescription

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")
CENT = Decimal("0.01")


@dataclass(frozen=True)
class OrderTotals:
    order_id: int
    order_total: Decimal
    order_paid: Decimal
    order_due: Decimal
    sample_allowed: bool
    threshold: Decimal


@dataclass
class AllocationResult:
    remaining_amount: Decimal
    allocations: list[PaymentAllocation] = field(default_factory=list)

    @property
    def allocated_amount(self) -> Decimal:
        return sum((a.amount for a in self.allocations), ZERO)


def _to_cents(value: Decimal) -> int:
    return int((Decimal(value) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def split_evenly(amount: Decimal, caps: list[Decimal]) -> list[Decimal]:
    """
    Splits `amount` evenly across slots, never exceeding a slot's cap.

    Works in whole cents: odd cents go to the first slots, and whatever a
    capped slot cannot take is re-split evenly among the slots still open.
    The result sums to min(amount, sum(caps)).

        split_evenly(500, [300, 700]) -> [250, 250]
        split_evenly(500, [50, 450])  -> [50, 450]
    """
    caps_c = [max(0, _to_cents(c)) for c in caps]
    shares = [0] * len(caps_c)
    remaining = min(max(0, _to_cents(amount)), sum(caps_c))

    open_slots = [i for i, c in enumerate(caps_c) if c > 0]
    while remaining > 0 and open_slots:
        per, extra = divmod(remaining, len(open_slots))
        still_open = []
        for pos, i in enumerate(open_slots):
            want = per + (1 if pos < extra else 0)
            give = min(want, caps_c[i] - shares[i])
            shares[i] += give
            remaining -= give
            if shares[i] < caps_c[i]:
                still_open.append(i)
        open_slots = still_open

    return [(Decimal(s) / 100).quantize(CENT) for s in shares]


class AllocationService:
    @staticmethod
    def _paid_by_item(order_id: int) -> dict[int, Decimal]:
        rows = (
            PaymentAllocation.objects.filter(order_item__order_id=order_id)
            .values("order_item_id")
            .annotate(total=Sum("amount"))
        )
        return {r["order_item_id"]: Decimal(r["total"] or ZERO) for r in rows}

    @staticmethod
    @transaction.atomic
    def recalculate_order_totals(*, order_id: int) -> OrderTotals:
        """
        Recomputes order aggregates from the selected items and the allocation
        ledger, and mirrors `sample_allowed` onto every selected item.
        """
        try:
            order = LabOrder.objects.select_for_update().get(id=order_id)
        except LabOrder.DoesNotExist:
            raise NotFound("Lab order not found.")

        total = (
            LabOrderItem.objects.filter(order_id=order.id, is_selected=True).aggregate(s=Sum("unit_price"))["s"]
            or ZERO
        )
        paid = (
            PaymentAllocation.objects.filter(order_item__order_id=order.id).aggregate(s=Sum("amount"))["s"]
            or ZERO
        )
        total = Decimal(total).quantize(CENT)
        paid = Decimal(paid).quantize(CENT)
        due = max(ZERO, total - paid)

        threshold = ThresholdPolicy.resolve(order.id, order_threshold=order.payment_threshold)
        sample_allowed = (
            paid > ZERO and total > ZERO and paid >= ThresholdPolicy.required_amount(total, threshold)
        )

        order.order_total = total
        order.order_paid = paid
        order.order_due = due
        order.sample_allowed = sample_allowed
        order.save(update_fields=["order_total", "order_paid", "order_due", "sample_allowed", "updated_at"])

        LabOrderItem.objects.filter(order_id=order.id, is_selected=True).exclude(
            sample_allowed=sample_allowed
        ).update(sample_allowed=sample_allowed, updated_at=timezone.now())

        return OrderTotals(
            order_id=order.id,
            order_total=total,
            order_paid=paid,
            order_due=due,
            sample_allowed=sample_allowed,
            threshold=threshold,
        )

    @staticmethod
    def _allocate_to_order(*, payment: LabPayment, order_id: int, remaining: Decimal) -> list[PaymentAllocation]:
        try:
            order = LabOrder.objects.select_for_update().get(id=order_id)
        except LabOrder.DoesNotExist:
            logger.warning("Payment %s targets missing order %s; skipped", payment.reference, order_id)
            return []
        if order.patient_id != payment.patient_id:
            logger.warning(
                "Payment %s targets order %s of another patient; skipped", payment.reference, order_id
            )
            return []

        totals = AllocationService.recalculate_order_totals(order_id=order.id)
        if totals.order_due <= ZERO:
            return []

        paid_by_item = AllocationService._paid_by_item(order.id)
        eligible = []
        for item in LabOrderItem.objects.filter(
            order_id=order.id, is_selected=True, status__in=PAYABLE_STATUSES
        ).order_by("id"):
            outstanding = max(ZERO, item.unit_price - paid_by_item.get(item.id, ZERO))
            if outstanding > ZERO:
                eligible.append((item, outstanding))
        if not eligible:
            return []

        amount = min(remaining, totals.order_due, sum((o for _, o in eligible), ZERO))
        shares = split_evenly(amount, [o for _, o in eligible])

        allocations = []
        for (item, _), share in zip(eligible, shares):
            if share <= ZERO:
                continue
            allocations.append(
                DirectOrderItem(item, order).record_allocation(payment=payment, amount=share)
            )

        AllocationService.recalculate_order_totals(order_id=order.id)
        return allocations

    @staticmethod
    def _allocate_to_item(*, payment: LabPayment, ref, remaining: Decimal) -> PaymentAllocation | None:
        try:
            item = load_item(ref, for_update=True)
        except NotFound:
            logger.warning("Payment %s targets missing item %s; skipped", payment.reference, ref.token)
            return None

        if item.patient_id != payment.patient_id:
            logger.warning("Payment %s targets item %s of another patient; skipped", payment.reference, ref.token)
            return None
        if not item.is_payable():
            logger.info("Payment %s: item %s is not payable (%s); skipped", payment.reference, ref.token, item.status)
            return None

        outstanding = item.outstanding()
        if outstanding <= ZERO:
            return None

        share = min(remaining, outstanding)
        allocation = item.record_allocation(payment=payment, amount=share)
        item.save()

        if isinstance(item, DirectOrderItem):
            AllocationService.recalculate_order_totals(order_id=item.order_id)
        return allocation

    @staticmethod
    @transaction.atomic
    def process_payment_allocation(*, payment_id: int, transaction_id: str | None = None) -> AllocationResult:
        """
        Completes a pending payment and distributes its amount:
        target orders first (even split over eligible items), then target items.
        Stops once the amount is used up; the unused remainder is returned.
        """
        try:
            payment = LabPayment.objects.select_for_update().get(id=payment_id)
        except LabPayment.DoesNotExist:
            raise NotFound("Payment not found.")

        if payment.status != PaymentStatus.PENDING:
            raise AlreadyProcessedError(f"Payment {payment.reference} is already {payment.status}.")

        payment.status = PaymentStatus.COMPLETED
        payment.completed_at = timezone.now()
        if transaction_id:
            payment.transaction_id = transaction_id
        payment.save(update_fields=["status", "completed_at", "transaction_id", "updated_at"])

        target = PaymentTarget.from_payload(payment.target)
        remaining = Decimal(payment.amount).quantize(CENT)
        result = AllocationResult(remaining_amount=remaining)

        for order_id in target.order_ids:
            if remaining <= ZERO:
                break
            allocations = AllocationService._allocate_to_order(
                payment=payment, order_id=order_id, remaining=remaining
            )
            remaining -= sum((a.amount for a in allocations), ZERO)
            result.allocations.extend(allocations)

        for ref in target.item_refs:
            if remaining <= ZERO:
                break
            allocation = AllocationService._allocate_to_item(payment=payment, ref=ref, remaining=remaining)
            if allocation is not None:
                remaining -= allocation.amount
                result.allocations.append(allocation)

        result.remaining_amount = remaining
        logger.info(
            "Payment %s allocated: amount=%s allocated=%s remaining=%s rows=%s",
            payment.reference,
            payment.amount,
            result.allocated_amount,
            remaining,
            len(result.allocations),
        )
        return result

    @staticmethod
    @transaction.atomic
    def reverse_payment_allocation(*, payment: LabPayment) -> Decimal:
        """
        Drops every ledger row of `payment`, removes its entries from prescription
        tests and recomputes the affected orders. Item statuses are left alone.
        Returns the amount released.
        """
        rows = list(PaymentAllocation.objects.filter(payment_id=payment.id).select_related("order_item"))
        order_ids = sorted({r.order_item.order_id for r in rows if r.order_item_id})
        prescription_ids = {r.prescription_id for r in rows if r.prescription_id}

        for prescription in Prescription.objects.select_for_update().filter(id__in=prescription_ids):
            tests = prescription.get_tests()
            for t in tests:
                if isinstance(t, dict) and t.get("payments"):
                    t["payments"] = [p for p in t["payments"] if p.get("paymentId") != payment.id]
            prescription.set_tests(tests)
            prescription.save(update_fields=["tests", "updated_at"])

        released = sum((r.amount for r in rows), ZERO)
        PaymentAllocation.objects.filter(payment_id=payment.id).delete()

        for order_id in order_ids:
            AllocationService.recalculate_order_totals(order_id=order_id)

        logger.info(
            "Payment %s allocations reversed: released=%s rows=%s orders=%s",
            payment.reference,
            released,
            len(rows),
            order_ids,
        )
        return released
