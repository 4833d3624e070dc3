# hm_lab/orders/api/views.py
from __future__ import annotations

from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError as DRFValidationError
from rest_framework.response import Response

from hm_lab.common.api.pagination import paginate
from hm_lab.common.idempotency import load_response, save_response
from hm_lab.common.permissions import LabOrderPermission, ROLE_PATIENT, is_admin, user_roles
from hm_lab.lab.items import DirectItemRef
from hm_lab.lab.services import CancelledBy, FulfillmentService
from hm_lab.orders.api.serializers import (
    ApproveItemsSerializer,
    ItemSelectionSerializer,
    LabOrderCreateSerializer,
    LabOrderSerializer,
)
from hm_lab.orders.models import LabOrder
from hm_lab.orders.selectors import OrderSelector
from hm_lab.orders.services import OrderService
from hm_lab.patients.models import Patient
from hm_lab.patients.selectors import patient_for_request


def _int_or_none(value: str | None, field_name: str) -> int | None:
    if not value:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise DRFValidationError({field_name: "Must be an integer."})


def _patient_only(user) -> bool:
    roles = user_roles(user)
    return bool(roles) and roles <= {ROLE_PATIENT}


class LabOrderViewSet(viewsets.GenericViewSet):
    """
    Thin API layer over OrderService / FulfillmentService:
    - list/retrieve, pending-approval queue
    - create (Idempotency-Key response caching)
    - approve items, toggle selection, cancel item
    """
    serializer_class = LabOrderSerializer
    queryset = LabOrder.objects.none()
    permission_classes = [LabOrderPermission]
    lookup_value_regex = r"\d+"

    def _order_for_request(self, request, pk) -> LabOrder:
        order = OrderSelector.get_order(order_id=pk)
        patient_for_request(user=request.user, patient_id=order.patient_id)
        return order

    @extend_schema(
        tags=["Lab Orders"],
        responses={200: LabOrderSerializer(many=True)},
        parameters=[
            OpenApiParameter(name="patient", type=OpenApiTypes.INT, location=OpenApiParameter.QUERY, required=False),
        ],
    )
    def list(self, request):
        patient_id = _int_or_none(request.query_params.get("patient"), "patient")

        if _patient_only(request.user):
            own = Patient.objects.filter(user_id=request.user.id).values_list("id", flat=True).first()
            if patient_id and patient_id != own:
                patient_for_request(user=request.user, patient_id=patient_id)
            patient_id = own or -1

        qs = OrderSelector.list_orders(patient_id=patient_id)
        return paginate(request, qs, LabOrderSerializer)

    @extend_schema(tags=["Lab Orders"], responses={200: LabOrderSerializer})
    def retrieve(self, request, pk=None):
        order = self._order_for_request(request, pk)
        return Response(LabOrderSerializer(order).data, status=status.HTTP_200_OK)

    @extend_schema(tags=["Lab Orders"], request=LabOrderCreateSerializer, responses={201: LabOrderSerializer})
    def create(self, request):
        cached = load_response(request)
        if cached is not None:
            return Response(cached.data, status=cached.status_code)

        ser = LabOrderCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data

        patient_for_request(user=request.user, patient_id=data["patient_id"])

        order = OrderService.create_order(
            patient_id=data["patient_id"],
            test_ids=data["test_ids"],
            doctor_id=data.get("doctor_id"),
            appointment_id=data.get("appointment_id"),
            notes=data.get("notes", ""),
            payment_threshold=data.get("payment_threshold"),
        )

        out = LabOrderSerializer(OrderSelector.get_order(order_id=order.id)).data

        save_response(request, out, status_code=status.HTTP_201_CREATED)
        return Response(out, status=status.HTTP_201_CREATED)

    @extend_schema(tags=["Lab Orders"], responses={200: LabOrderSerializer(many=True)})
    @action(detail=False, methods=["get"], url_path="pending-approval")
    def pending_approval(self, request):
        return paginate(request, OrderSelector.pending_approval_orders(), LabOrderSerializer)

    @extend_schema(tags=["Lab Orders"], request=ApproveItemsSerializer, responses={200: OpenApiTypes.OBJECT})
    @action(detail=True, methods=["post"], url_path="approve")
    def approve(self, request, pk=None):
        ser = ApproveItemsSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        result = FulfillmentService.approve_items(order_id=int(pk), item_ids=ser.validated_data["item_ids"])
        order = OrderSelector.get_order(order_id=pk)
        return Response(
            {
                "approved": result.approved,
                "skipped": result.skipped,
                "order": LabOrderSerializer(order).data,
            },
            status=status.HTTP_200_OK,
        )

    @extend_schema(tags=["Lab Orders"], request=ItemSelectionSerializer, responses={200: LabOrderSerializer})
    @action(detail=True, methods=["post"], url_path=r"items/(?P<item_id>\d+)/selection")
    def selection(self, request, pk=None, item_id=None):
        self._order_for_request(request, pk)

        ser = ItemSelectionSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        FulfillmentService.set_item_selection(
            ref=DirectItemRef(item_id=int(item_id), order_id=int(pk)),
            is_selected=ser.validated_data["is_selected"],
        )
        return Response(LabOrderSerializer(OrderSelector.get_order(order_id=pk)).data, status=status.HTTP_200_OK)

    @extend_schema(tags=["Lab Orders"], request=None, responses={200: LabOrderSerializer})
    @action(detail=True, methods=["post"], url_path=r"items/(?P<item_id>\d+)/cancel")
    def cancel(self, request, pk=None, item_id=None):
        self._order_for_request(request, pk)

        FulfillmentService.cancel_item(
            ref=DirectItemRef(item_id=int(item_id), order_id=int(pk)),
            cancelled_by=CancelledBy.ADMIN if is_admin(request.user) else CancelledBy.PATIENT,
        )
        return Response(LabOrderSerializer(OrderSelector.get_order(order_id=pk)).data, status=status.HTTP_200_OK)
