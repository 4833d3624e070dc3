# hm_lab/orders/services.py
from __future__ import annotations

import logging
from decimal import Decimal

from django.db import transaction
from rest_framework.exceptions import NotFound, ValidationError

from hm_lab.billing.allocation import AllocationService
from hm_lab.catalog.models import LabTest
from hm_lab.orders.models import ItemStatus, LabOrder, LabOrderItem
from hm_lab.patients.models import Patient
from hm_lab.prescriptions.models import Appointment

logger = logging.getLogger(__name__)


class OrderService:
    """
    Write-model operations for direct lab orders.
    - Creates LabOrder + LabOrderItems atomically with price snapshots
    - Leaves aggregates to AllocationService
    """

    @staticmethod
    @transaction.atomic
    def create_order(
        *,
        patient_id: int,
        test_ids: list[int],
        doctor_id: int | None = None,
        appointment_id: int | None = None,
        notes: str = "",
        payment_threshold: Decimal | None = None,
    ) -> LabOrder:
        if not test_ids:
            raise ValidationError({"test_ids": "At least one lab test is required."})
        if len(set(test_ids)) != len(test_ids):
            raise ValidationError({"test_ids": "Duplicate lab tests in order."})

        if payment_threshold is not None:
            payment_threshold = Decimal(str(payment_threshold))
            if not (Decimal("0") < payment_threshold <= Decimal("1")):
                raise ValidationError({"payment_threshold": "Must be in (0, 1]."})

        try:
            patient = Patient.objects.get(id=patient_id)
        except Patient.DoesNotExist:
            raise NotFound("Patient not found.")

        appointment = None
        if appointment_id:
            try:
                appointment = Appointment.objects.get(id=appointment_id, patient=patient)
            except Appointment.DoesNotExist:
                raise NotFound("Appointment not found for this patient.")

        tests = {t.id: t for t in LabTest.objects.filter(id__in=test_ids, is_active=True)}
        missing = [tid for tid in test_ids if tid not in tests]
        if missing:
            raise ValidationError({"test_ids": f"Lab tests not available: {missing}"})

        order = LabOrder.objects.create(
            patient=patient,
            doctor_id=doctor_id,
            appointment=appointment,
            notes=notes or "",
            payment_threshold=payment_threshold,
        )

        for tid in test_ids:
            test = tests[tid]
            LabOrderItem.objects.create(
                order=order,
                lab_test=test,
                test_name=test.name,
                unit_price=test.price,
                is_selected=True,
                status=ItemStatus.ORDERED,
            )

        AllocationService.recalculate_order_totals(order_id=order.id)
        order.refresh_from_db()

        logger.info(
            "Lab order created: id=%s patient=%s items=%s total=%s",
            order.id,
            patient.id,
            len(test_ids),
            order.order_total,
        )
        return order
