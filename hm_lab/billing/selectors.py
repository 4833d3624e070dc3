# hm_lab/billing/selectors.py
from __future__ import annotations

from django.db.models import QuerySet
from rest_framework.exceptions import NotFound

from hm_lab.billing.models import LabPayment


def payments_qs() -> QuerySet[LabPayment]:
    return LabPayment.objects.prefetch_related("allocations").order_by("-created_at", "-id")


def payments_for_patient(*, patient_id: int, status: str | None = None) -> QuerySet[LabPayment]:
    qs = payments_qs().filter(patient_id=patient_id)
    if status:
        qs = qs.filter(status=status)
    return qs


def get_payment(*, payment_id) -> LabPayment:
    try:
        return payments_qs().get(id=payment_id)
    except LabPayment.DoesNotExist:
        raise NotFound("Payment not found.")
