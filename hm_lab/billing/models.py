# hm_lab/billing/models.py
from __future__ import annotations

from decimal import Decimal

from django.db import models

from hm_lab.common.models import TimeStampedModel
from hm_lab.orders.models import LabOrderItem
from hm_lab.patients.models import Patient
from hm_lab.prescriptions.models import Prescription


class PaymentMethod(models.TextChoices):
    BKASH = "bkash", "bKash"
    BANK_TRANSFER = "bank_transfer", "Bank Transfer"
    OFFLINE_CASH = "offline_cash", "Cash"
    OFFLINE_CARD = "offline_card", "Card"
    MIXED = "mixed", "Mixed"


class PaymentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    REFUNDED = "refunded", "Refunded"


class LabPayment(TimeStampedModel):
    """
    One batch payment from a patient, targeted at orders and/or individual items.

    `reference` is the client's idempotency key: at most one row per reference.
    Money is allocated exactly once, on the pending -> completed transition,
    and released again only by a completed -> refunded transition.

    target: {"orders": [<order_id>, ...],
             "items": [{"kind": "direct", "item_id": 5},
                       {"kind": "prescription", "prescription_id": 7, "test_name": "CBC"}]}
    """
    reference = models.CharField(max_length=128, unique=True)
    patient = models.ForeignKey(Patient, on_delete=models.PROTECT, related_name="lab_payments")

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    target = models.JSONField(default=dict)

    method = models.CharField(max_length=32, choices=PaymentMethod.choices, default=PaymentMethod.BKASH)
    status = models.CharField(
        max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.PENDING, db_index=True
    )

    gateway_payment_id = models.CharField(max_length=128, blank=True, db_index=True)
    transaction_id = models.CharField(max_length=128, blank=True)

    created_by_user_id = models.IntegerField(null=True, blank=True)
    notes = models.TextField(blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    # full refunds only; the allocations are removed when the refund is recorded
    refunded_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    refund_transaction_id = models.CharField(max_length=128, blank=True)
    refund_reason = models.CharField(max_length=255, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "billing_lab_payment"
        indexes = [
            models.Index(fields=["patient", "created_at"]),
        ]

    def __str__(self) -> str:
        return f"{self.reference} {self.amount} [{self.status}]"


class PaymentAllocation(TimeStampedModel):
    """
    Ledger row: part of a payment applied to one item.
    Exactly one of order_item / prescription (+ test_name) is set.
    """
    payment = models.ForeignKey(LabPayment, on_delete=models.CASCADE, related_name="allocations")

    order_item = models.ForeignKey(
        LabOrderItem,
        on_delete=models.PROTECT,
        related_name="allocations",
        null=True,
        blank=True,
    )
    prescription = models.ForeignKey(
        Prescription,
        on_delete=models.PROTECT,
        related_name="lab_allocations",
        null=True,
        blank=True,
    )
    test_name = models.CharField(max_length=255)

    amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))

    class Meta:
        db_table = "billing_payment_allocation"
        ordering = ["id"]
        constraints = [
            models.CheckConstraint(
                condition=(
                    models.Q(order_item__isnull=False, prescription__isnull=True)
                    | models.Q(order_item__isnull=True, prescription__isnull=False)
                ),
                name="ck_allocation_single_target",
            )
        ]
        indexes = [
            models.Index(fields=["prescription", "test_name"]),
        ]
