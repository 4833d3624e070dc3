# hm_lab/lab/items.py
"""
Uniform view over the two kinds of orderable lab test:

- DirectOrderItem: a LabOrderItem row inside a LabOrder
- PrescriptionTestItem: an entry of Prescription.tests (JSON)

Callers address items with a tagged reference (DirectItemRef |
PrescriptionItemRef) parsed once at the API edge from
"order-item-{id}" or "prescription-{id}:{test name}".
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Union

from django.db.models import Sum
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from hm_lab.billing.models import PaymentAllocation
from hm_lab.billing.threshold import ThresholdPolicy
from hm_lab.catalog.pricing import get_price_cache
from hm_lab.lab.models import LabReport
from hm_lab.orders.models import ItemStatus, LabOrder, LabOrderItem, PAYABLE_STATUSES
from hm_lab.prescriptions.models import Prescription

ZERO = Decimal("0.00")


# -------------------------------------------------------------------
# References
# -------------------------------------------------------------------

@dataclass(frozen=True)
class DirectItemRef:
    item_id: int
    order_id: int | None = None

    kind = "direct"

    @property
    def token(self) -> str:
        return f"order-item-{self.item_id}"

    def to_payload(self) -> dict:
        return {"kind": self.kind, "item_id": self.item_id}


@dataclass(frozen=True)
class PrescriptionItemRef:
    prescription_id: int
    test_name: str

    kind = "prescription"

    @property
    def token(self) -> str:
        return f"prescription-{self.prescription_id}:{self.test_name}"

    def to_payload(self) -> dict:
        return {"kind": self.kind, "prescription_id": self.prescription_id, "test_name": self.test_name}


ItemRef = Union[DirectItemRef, PrescriptionItemRef]

_DIRECT_RE = re.compile(r"^order-item-(\d+)$")
_PRESCRIPTION_RE = re.compile(r"^prescription-(\d+):(.+)$", re.DOTALL)


def parse_item_ref_token(token: str) -> ItemRef:
    token = (token or "").strip()

    m = _DIRECT_RE.match(token)
    if m:
        return DirectItemRef(item_id=int(m.group(1)))

    m = _PRESCRIPTION_RE.match(token)
    if m and m.group(2).strip():
        return PrescriptionItemRef(prescription_id=int(m.group(1)), test_name=m.group(2).strip())

    raise ValidationError({"item": f"Invalid item reference: {token!r}"})


def parse_item_ref(raw) -> ItemRef:
    """
    Accepts an ItemRef, a wire token, a bare int (direct item id) or a dict
    ({"kind": "direct", "item_id": 5} / {"kind": "prescription", "prescription_id": 7, "test_name": "CBC"}).
    """
    if isinstance(raw, (DirectItemRef, PrescriptionItemRef)):
        return raw
    if isinstance(raw, bool):
        raise ValidationError({"item": f"Invalid item reference: {raw!r}"})
    if isinstance(raw, int):
        return DirectItemRef(item_id=raw)
    if isinstance(raw, str):
        return parse_item_ref_token(raw)
    if isinstance(raw, dict):
        kind = raw.get("kind") or ("prescription" if "prescription_id" in raw else "direct")
        try:
            if kind == "direct":
                return DirectItemRef(item_id=int(raw["item_id"]))
            if kind == "prescription":
                name = str(raw["test_name"]).strip()
                if name:
                    return PrescriptionItemRef(prescription_id=int(raw["prescription_id"]), test_name=name)
        except (KeyError, TypeError, ValueError):
            pass
    raise ValidationError({"item": f"Invalid item reference: {raw!r}"})


# -------------------------------------------------------------------
# Adapters
# -------------------------------------------------------------------

@dataclass(frozen=True)
class PaymentPosition:
    """Money view used by the sample-processing gate."""
    total: Decimal
    paid: Decimal
    threshold: Decimal

    @property
    def due(self) -> Decimal:
        return max(ZERO, self.total - self.paid)

    @property
    def required(self) -> Decimal:
        return ThresholdPolicy.required_amount(self.total, self.threshold)


class LabItem(ABC):
    ref: ItemRef

    @property
    @abstractmethod
    def patient_id(self) -> int: ...

    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def unit_price(self) -> Decimal: ...

    @property
    @abstractmethod
    def status(self) -> str: ...

    @property
    @abstractmethod
    def is_selected(self) -> bool: ...

    @property
    @abstractmethod
    def sample_id(self) -> str | None: ...

    @abstractmethod
    def allocated(self) -> Decimal:
        """Sum of ledger allocations applied to this item."""

    @abstractmethod
    def payment_position(self) -> PaymentPosition: ...

    @abstractmethod
    def set_status(self, status: str) -> None: ...

    @abstractmethod
    def set_selected(self, is_selected: bool) -> None: ...

    @abstractmethod
    def assign_sample_id(self, sample_id: str) -> None: ...

    @abstractmethod
    def reports(self) -> list[dict]: ...

    @abstractmethod
    def add_reports(self, files: list[dict], *, uploaded_by_user_id: int | None = None, notes: str = "") -> None: ...

    @abstractmethod
    def remove_report(self, index: int) -> dict: ...

    @abstractmethod
    def record_allocation(self, *, payment, amount: Decimal) -> PaymentAllocation: ...

    @abstractmethod
    def save(self) -> None: ...

    def outstanding(self) -> Decimal:
        return max(ZERO, self.unit_price - self.allocated())

    def is_payable(self) -> bool:
        return self.is_selected and self.status in PAYABLE_STATUSES

    def snapshot(self) -> dict:
        return {
            "ref": self.ref.token,
            "name": self.name,
            "unit_price": str(self.unit_price),
            "status": self.status,
            "is_selected": self.is_selected,
            "sample_id": self.sample_id,
            "paid": str(self.allocated()),
            "reports": self.reports(),
        }


class DirectOrderItem(LabItem):
    def __init__(self, item: LabOrderItem, order: LabOrder):
        self.item = item
        self.order = order
        self.ref = DirectItemRef(item_id=item.id, order_id=order.id)

    @property
    def patient_id(self) -> int:
        return self.order.patient_id

    @property
    def order_id(self) -> int:
        return self.order.id

    @property
    def name(self) -> str:
        return self.item.test_name

    @property
    def unit_price(self) -> Decimal:
        return self.item.unit_price

    @property
    def status(self) -> str:
        return self.item.status

    @property
    def is_selected(self) -> bool:
        return self.item.is_selected

    @property
    def sample_id(self) -> str | None:
        return self.item.sample_id

    def allocated(self) -> Decimal:
        total = PaymentAllocation.objects.filter(order_item_id=self.item.id).aggregate(s=Sum("amount"))["s"]
        return Decimal(total or ZERO)

    def payment_position(self) -> PaymentPosition:
        # order aggregates are refreshed by the caller (AllocationService) before gating
        return PaymentPosition(
            total=self.order.order_total,
            paid=self.order.order_paid,
            threshold=ThresholdPolicy.resolve(self.order.id, order_threshold=self.order.payment_threshold),
        )

    def set_status(self, status: str) -> None:
        self.item.status = status

    def set_selected(self, is_selected: bool) -> None:
        self.item.is_selected = is_selected

    def assign_sample_id(self, sample_id: str) -> None:
        self.item.sample_id = sample_id

    def _report_rows(self) -> list[LabReport]:
        return list(LabReport.objects.filter(order_item_id=self.item.id).order_by("uploaded_at", "id"))

    def reports(self) -> list[dict]:
        return [r.as_dict() for r in self._report_rows()]

    def add_reports(self, files: list[dict], *, uploaded_by_user_id: int | None = None, notes: str = "") -> None:
        now = timezone.now()
        LabReport.objects.bulk_create(
            [
                LabReport(
                    order_item=self.item,
                    filename=f["filename"],
                    original_name=f["originalName"],
                    path=f["path"],
                    size=f.get("size") or 0,
                    content_type=f.get("contentType") or "",
                    notes=notes or "",
                    uploaded_by_user_id=uploaded_by_user_id,
                    uploaded_at=now,
                )
                for f in files
            ]
        )

    def remove_report(self, index: int) -> dict:
        rows = self._report_rows()
        if index < 0 or index >= len(rows):
            raise NotFound("Report not found.")
        row = rows[index]
        removed = row.as_dict()
        row.delete()
        return removed

    def record_allocation(self, *, payment, amount: Decimal) -> PaymentAllocation:
        return PaymentAllocation.objects.create(
            payment=payment,
            order_item=self.item,
            test_name=self.item.test_name,
            amount=amount,
        )

    def save(self) -> None:
        self.item.save()


class PrescriptionTestItem(LabItem):
    """
    One entry of Prescription.tests. Payments and reports live inside the entry
    (`payments`, `testReports`); allocations are mirrored into the ledger.
    The threshold is the global one: prescriptions carry no override.
    """

    def __init__(self, prescription: Prescription, test_name: str):
        found = prescription.find_test(test_name)
        if found is None:
            raise NotFound(f"Test {test_name!r} not found in prescription {prescription.id}.")

        self.prescription = prescription
        self._tests = prescription.get_tests()
        self._index = found[0]
        self.ref = PrescriptionItemRef(prescription_id=prescription.id, test_name=test_name)

    @property
    def entry(self) -> dict:
        return self._tests[self._index]

    @property
    def patient_id(self) -> int:
        return self.prescription.patient_id

    @property
    def name(self) -> str:
        return self.entry["name"]

    @property
    def unit_price(self) -> Decimal:
        raw = self.entry.get("price")
        if raw not in (None, ""):
            try:
                return Decimal(str(raw)).quantize(Decimal("0.01"))
            except InvalidOperation:
                pass
        return get_price_cache().get(self.name) or ZERO

    def pin_price(self) -> bool:
        """Writes the catalog price onto an entry that has none; True when the entry changed."""
        if self.entry.get("price") not in (None, ""):
            return False
        price = get_price_cache().get(self.name)
        if price is None:
            return False
        self.entry["price"] = str(Decimal(price).quantize(Decimal("0.01")))
        return True

    @property
    def status(self) -> str:
        return self.entry.get("status") or ItemStatus.ORDERED

    @property
    def is_selected(self) -> bool:
        return bool(self.entry.get("isSelected", True))

    @property
    def sample_id(self) -> str | None:
        return self.entry.get("sampleId")

    def allocated(self) -> Decimal:
        total = ZERO
        for p in self.entry.get("payments") or []:
            try:
                total += Decimal(str(p.get("amount", "0")))
            except InvalidOperation:
                continue
        return total.quantize(Decimal("0.01"))

    def payment_position(self) -> PaymentPosition:
        return PaymentPosition(
            total=self.unit_price,
            paid=self.allocated(),
            threshold=ThresholdPolicy.resolve(),
        )

    def set_status(self, status: str) -> None:
        self.entry["status"] = str(status)

    def set_selected(self, is_selected: bool) -> None:
        self.entry["isSelected"] = bool(is_selected)

    def assign_sample_id(self, sample_id: str) -> None:
        self.entry["sampleId"] = sample_id

    def reports(self) -> list[dict]:
        return list(self.entry.get("testReports") or [])

    def add_reports(self, files: list[dict], *, uploaded_by_user_id: int | None = None, notes: str = "") -> None:
        uploaded_at = timezone.now().isoformat()
        existing = self.reports()
        for f in files:
            existing.append(
                {
                    **f,
                    "notes": notes or "",
                    "uploadedBy": uploaded_by_user_id,
                    "uploadedAt": uploaded_at,
                }
            )
        self.entry["testReports"] = existing

    def remove_report(self, index: int) -> dict:
        existing = self.reports()
        if index < 0 or index >= len(existing):
            raise NotFound("Report not found.")
        removed = existing.pop(index)
        self.entry["testReports"] = existing
        return removed

    def record_allocation(self, *, payment, amount: Decimal) -> PaymentAllocation:
        payments = list(self.entry.get("payments") or [])
        payments.append(
            {
                "amount": str(amount),
                "paymentId": payment.id,
                "reference": payment.reference,
                "method": payment.method,
                "paidAt": timezone.now().isoformat(),
            }
        )
        self.entry["payments"] = payments
        return PaymentAllocation.objects.create(
            payment=payment,
            prescription=self.prescription,
            test_name=self.name,
            amount=amount,
        )

    def save(self) -> None:
        self.prescription.set_tests(self._tests)
        self.prescription.save(update_fields=["tests", "updated_at"])


def load_item(ref: ItemRef, *, for_update: bool = False) -> LabItem:
    """
    Loads the adapter for a reference. With for_update=True the owning row
    (LabOrder or Prescription) is locked first, then the item.
    """
    if isinstance(ref, DirectItemRef):
        try:
            order_id = ref.order_id or LabOrderItem.objects.values_list("order_id", flat=True).get(id=ref.item_id)
        except LabOrderItem.DoesNotExist:
            raise NotFound("Lab order item not found.")

        orders = LabOrder.objects.select_for_update() if for_update else LabOrder.objects
        items = LabOrderItem.objects.select_for_update() if for_update else LabOrderItem.objects
        try:
            order = orders.get(id=order_id)
            item = items.get(id=ref.item_id, order_id=order.id)
        except (LabOrder.DoesNotExist, LabOrderItem.DoesNotExist):
            raise NotFound("Lab order item not found.")
        return DirectOrderItem(item, order)

    prescriptions = Prescription.objects.select_for_update() if for_update else Prescription.objects
    try:
        prescription = prescriptions.get(id=ref.prescription_id)
    except Prescription.DoesNotExist:
        raise NotFound("Prescription not found.")
    item = PrescriptionTestItem(prescription, ref.test_name)
    # rows written before prices were pinned get theirs fixed on the first locked load
    if for_update and item.pin_price():
        item.save()
    return item
