# hm_lab/orders/models.py
from __future__ import annotations

from decimal import Decimal

from django.db import models
from django.utils import timezone

from hm_lab.catalog.models import LabTest
from hm_lab.common.models import TimeStampedModel
from hm_lab.patients.models import Patient
from hm_lab.prescriptions.models import Appointment


class ItemStatus(models.TextChoices):
    ORDERED = "ordered", "Ordered"
    APPROVED = "approved", "Approved"
    SAMPLE_PROCESSING = "sample_processing", "Sample Processing"
    SAMPLE_TAKEN = "sample_taken", "Sample Taken"
    REPORTED = "reported", "Reported"
    CONFIRMED = "confirmed", "Confirmed"
    CANCELLED_BY_PATIENT = "cancelled_by_patient", "Cancelled by Patient"
    CANCELLED_BY_ADMIN = "cancelled_by_admin", "Cancelled by Admin"


# Statuses in which an item still accepts money.
PAYABLE_STATUSES = frozenset(
    {
        ItemStatus.ORDERED,
        ItemStatus.APPROVED,
        ItemStatus.SAMPLE_PROCESSING,
        ItemStatus.SAMPLE_TAKEN,
    }
)

CANCELLED_STATUSES = frozenset({ItemStatus.CANCELLED_BY_PATIENT, ItemStatus.CANCELLED_BY_ADMIN})

# Statuses from which an item may still be cancelled.
CANCELLABLE_STATUSES = frozenset({ItemStatus.ORDERED, ItemStatus.APPROVED})


class LabOrder(TimeStampedModel):
    """
    A patient's direct lab order. Aggregates are maintained by
    AllocationService.recalculate_order_totals and never written elsewhere:

      order_total = sum(unit_price of selected items)
      order_due   = max(0, order_total - order_paid)
      sample_allowed = order_paid > 0 and order_paid >= threshold * order_total
    """
    patient = models.ForeignKey(Patient, on_delete=models.PROTECT, related_name="lab_orders")
    doctor_id = models.IntegerField(null=True, blank=True)
    appointment = models.ForeignKey(
        Appointment,
        on_delete=models.SET_NULL,
        related_name="lab_orders",
        null=True,
        blank=True,
    )

    ordered_at = models.DateTimeField(default=timezone.now)
    notes = models.TextField(blank=True)

    order_total = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    order_paid = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    order_due = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    sample_allowed = models.BooleanField(default=False)

    # Per-order override of the global payment threshold (fraction in (0, 1]).
    payment_threshold = models.DecimalField(max_digits=4, decimal_places=3, null=True, blank=True)

    class Meta:
        db_table = "orders_lab_order"
        indexes = [
            models.Index(fields=["patient", "created_at"]),
        ]

    def __str__(self) -> str:
        return f"LabOrder #{self.pk} ({self.patient_id})"


class LabOrderItem(TimeStampedModel):
    order = models.ForeignKey(LabOrder, on_delete=models.CASCADE, related_name="items")
    lab_test = models.ForeignKey(LabTest, on_delete=models.PROTECT, related_name="order_items")

    # snapshots taken at order time
    test_name = models.CharField(max_length=255)
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)

    is_selected = models.BooleanField(default=True)
    status = models.CharField(max_length=32, choices=ItemStatus.choices, default=ItemStatus.ORDERED, db_index=True)
    sample_allowed = models.BooleanField(default=False)
    sample_id = models.CharField(max_length=64, unique=True, null=True, blank=True)

    class Meta:
        db_table = "orders_lab_order_item"
        ordering = ["id"]
        indexes = [
            models.Index(fields=["order", "status"]),
        ]

    def __str__(self) -> str:
        return f"{self.test_name} [{self.status}]"
