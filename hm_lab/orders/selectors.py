# hm_lab/orders/selectors.py
from __future__ import annotations

from django.db.models import Exists, OuterRef, Prefetch, QuerySet
from rest_framework.exceptions import NotFound

from hm_lab.orders.models import ItemStatus, LabOrder, LabOrderItem, PAYABLE_STATUSES


def _orders_base() -> QuerySet[LabOrder]:
    return (
        LabOrder.objects.select_related("patient")
        .prefetch_related(Prefetch("items", queryset=LabOrderItem.objects.order_by("id")))
        .order_by("-created_at", "-id")
    )


class OrderSelector:
    @staticmethod
    def get_order(*, order_id) -> LabOrder:
        try:
            return _orders_base().get(id=order_id)
        except LabOrder.DoesNotExist:
            raise NotFound("Lab order not found.")

    @staticmethod
    def list_orders(*, patient_id=None) -> QuerySet[LabOrder]:
        qs = _orders_base()
        if patient_id:
            qs = qs.filter(patient_id=patient_id)
        return qs

    @staticmethod
    def pending_payment_orders(*, patient_id) -> QuerySet[LabOrder]:
        """
        Orders with money still due and at least one selected, payable item.
        """
        live_items = LabOrderItem.objects.filter(
            order=OuterRef("pk"),
            is_selected=True,
            status__in=PAYABLE_STATUSES,
        )
        return (
            OrderSelector.list_orders(patient_id=patient_id)
            .filter(order_due__gt=0)
            .filter(Exists(live_items))
        )

    @staticmethod
    def pending_approval_orders() -> QuerySet[LabOrder]:
        """
        Orders holding selected items that still wait for admin approval, oldest first.
        """
        waiting = LabOrderItem.objects.filter(
            order=OuterRef("pk"),
            is_selected=True,
            status=ItemStatus.ORDERED,
        )
        return _orders_base().filter(Exists(waiting)).order_by("created_at", "id")
