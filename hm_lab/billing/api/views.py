# hm_lab/billing/api/views.py
from __future__ import annotations

from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError as DRFValidationError
from rest_framework.response import Response
from rest_framework.views import APIView

from hm_lab.billing.api.serializers import (
    AdminPaymentCreateSerializer,
    BatchPaymentCreateSerializer,
    GatewayInitiateSerializer,
    LabPaymentSerializer,
    MultiPatientPaymentSerializer,
    PaymentCompleteSerializer,
    PaymentRefundSerializer,
)
from hm_lab.billing.models import LabPayment
from hm_lab.billing.selectors import get_payment, payments_for_patient
from hm_lab.billing.services import BatchPaymentResult, PaymentService
from hm_lab.common.api.pagination import paginate
from hm_lab.common.idempotency import get_key
from hm_lab.common.permissions import LabAdminPaymentPermission, LabPaymentPermission
from hm_lab.orders.api.serializers import LabOrderSerializer
from hm_lab.orders.selectors import OrderSelector
from hm_lab.patients.selectors import patient_for_request


def _idempotency_key(request, data) -> str:
    key = get_key(request) or data.get("idempotency_key") or ""
    if not key:
        raise DRFValidationError({"idempotency_key": "Provide an Idempotency-Key header or idempotency_key."})
    return key


def _payment_response(result: BatchPaymentResult, *, http_status: int, **extra) -> Response:
    payment = get_payment(payment_id=result.payment.id)
    body = {"payment": LabPaymentSerializer(payment).data, **extra}
    if result.allocation is not None:
        body["allocated_amount"] = str(result.allocation.allocated_amount)
        body["remaining_amount"] = str(result.allocation.remaining_amount)
    return Response(body, status=http_status)


class PendingPaymentsView(APIView):
    """
    Orders of a patient that still have money due on live items.
    """
    permission_classes = [LabPaymentPermission]

    @extend_schema(tags=["Lab Payments"], responses={200: LabOrderSerializer(many=True)})
    def get(self, request, patient_id: int):
        patient = patient_for_request(user=request.user, patient_id=patient_id)
        qs = OrderSelector.pending_payment_orders(patient_id=patient.id)
        return paginate(request, qs, LabOrderSerializer)


class PatientPaymentsView(APIView):
    """
    GET: payment history of a patient.
    POST: create a pending batch payment (completed later through the gateway).
    """
    permission_classes = [LabPaymentPermission]

    @extend_schema(
        tags=["Lab Payments"],
        responses={200: LabPaymentSerializer(many=True)},
        parameters=[
            OpenApiParameter(name="status", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False),
        ],
    )
    def get(self, request, patient_id: int):
        patient = patient_for_request(user=request.user, patient_id=patient_id)
        qs = payments_for_patient(patient_id=patient.id, status=request.query_params.get("status"))
        return paginate(request, qs, LabPaymentSerializer)

    @extend_schema(
        tags=["Lab Payments"],
        request=BatchPaymentCreateSerializer,
        responses={201: OpenApiTypes.OBJECT, 409: OpenApiTypes.OBJECT},
    )
    def post(self, request, patient_id: int):
        patient = patient_for_request(user=request.user, patient_id=patient_id)

        ser = BatchPaymentCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data

        result = PaymentService.create_batch_payment(
            patient_id=patient.id,
            amount=data["amount"],
            target=data["target"],
            idempotency_key=_idempotency_key(request, data),
            method=data["method"],
            created_by_user_id=request.user.id,
            notes=data.get("notes", ""),
        )
        return _payment_response(result, http_status=status.HTTP_201_CREATED)


class AdminPaymentView(APIView):
    """
    Counter payment taken by staff: recorded and allocated immediately.
    """
    permission_classes = [LabAdminPaymentPermission]

    @extend_schema(
        tags=["Lab Payments"],
        request=AdminPaymentCreateSerializer,
        responses={201: OpenApiTypes.OBJECT, 409: OpenApiTypes.OBJECT},
    )
    def post(self, request, patient_id: int):
        patient = patient_for_request(user=request.user, patient_id=patient_id)

        ser = AdminPaymentCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data

        result = PaymentService.create_batch_payment(
            patient_id=patient.id,
            amount=data["amount"],
            target=data["target"],
            idempotency_key=_idempotency_key(request, data),
            method=data["method"],
            created_by_user_id=request.user.id,
            notes=data.get("notes", ""),
            complete=True,
        )
        return _payment_response(result, http_status=status.HTTP_201_CREATED)


class LabPaymentViewSet(viewsets.GenericViewSet):
    """
    - retrieve
    - gateway: initiate a gateway (bKash) payment
    - execute: settle a gateway payment after the payer approved it
    - query: re-read the gateway status (settles a pending payment)
    - complete: manual reconciliation of a pending payment (staff)
    - refund: full refund of a completed gateway payment (admin)
    - admin-batch: one counter payment over items of several patients (staff)
    """
    serializer_class = LabPaymentSerializer
    queryset = LabPayment.objects.none()
    permission_classes = [LabPaymentPermission]
    lookup_value_regex = r"\d+"

    @extend_schema(tags=["Lab Payments"], responses={200: LabPaymentSerializer})
    def retrieve(self, request, pk=None):
        payment = get_payment(payment_id=pk)
        patient_for_request(user=request.user, patient_id=payment.patient_id)
        return Response(LabPaymentSerializer(payment).data, status=status.HTTP_200_OK)

    @extend_schema(
        tags=["Lab Payments"],
        request=GatewayInitiateSerializer,
        responses={201: OpenApiTypes.OBJECT, 502: OpenApiTypes.OBJECT},
    )
    @action(detail=False, methods=["post"], url_path="gateway")
    def gateway(self, request):
        ser = GatewayInitiateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data

        patient = patient_for_request(user=request.user, patient_id=data["patient_id"])

        initiation = PaymentService.initiate_gateway_payment(
            patient_id=patient.id,
            amount=data["amount"],
            target=data["target"],
            idempotency_key=_idempotency_key(request, data),
            created_by_user_id=request.user.id,
        )
        payment = get_payment(payment_id=initiation.payment.id)
        return Response(
            {"payment": LabPaymentSerializer(payment).data, "redirect_url": initiation.redirect_url},
            status=status.HTTP_201_CREATED,
        )

    @extend_schema(
        tags=["Lab Payments"],
        request=None,
        responses={200: OpenApiTypes.OBJECT, 409: OpenApiTypes.OBJECT, 502: OpenApiTypes.OBJECT},
    )
    @action(detail=True, methods=["post"], url_path="execute")
    def execute(self, request, pk=None):
        payment = get_payment(payment_id=pk)
        patient_for_request(user=request.user, patient_id=payment.patient_id)

        result = PaymentService.execute_gateway_payment(payment_id=payment.id)
        return _payment_response(result, http_status=status.HTTP_200_OK)

    @extend_schema(
        tags=["Lab Payments"],
        responses={200: OpenApiTypes.OBJECT, 502: OpenApiTypes.OBJECT},
    )
    @action(detail=True, methods=["get"], url_path="query")
    def query(self, request, pk=None):
        payment = get_payment(payment_id=pk)
        patient_for_request(user=request.user, patient_id=payment.patient_id)

        gw_status = PaymentService.query_gateway_payment(payment_id=payment.id)
        return _payment_response(
            gw_status.result,
            http_status=status.HTTP_200_OK,
            transaction_status=gw_status.transaction_status,
        )

    @extend_schema(
        tags=["Lab Payments"],
        request=PaymentCompleteSerializer,
        responses={200: OpenApiTypes.OBJECT, 409: OpenApiTypes.OBJECT},
    )
    @action(detail=True, methods=["post"], url_path="complete")
    def complete(self, request, pk=None):
        payment = get_payment(payment_id=pk)

        ser = PaymentCompleteSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        allocation = PaymentService.complete_payment(
            payment_id=payment.id,
            transaction_id=ser.validated_data.get("transaction_id") or None,
        )
        return _payment_response(
            BatchPaymentResult(payment=payment, allocation=allocation), http_status=status.HTTP_200_OK
        )

    @extend_schema(
        tags=["Lab Payments"],
        request=PaymentRefundSerializer,
        responses={200: LabPaymentSerializer, 409: OpenApiTypes.OBJECT, 502: OpenApiTypes.OBJECT},
    )
    @action(detail=True, methods=["post"], url_path="refund")
    def refund(self, request, pk=None):
        ser = PaymentRefundSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        payment = PaymentService.refund_gateway_payment(
            payment_id=get_payment(payment_id=pk).id,
            reason=ser.validated_data.get("reason", ""),
        )
        return Response(LabPaymentSerializer(get_payment(payment_id=payment.id)).data, status=status.HTTP_200_OK)

    @extend_schema(
        tags=["Lab Payments"],
        request=MultiPatientPaymentSerializer,
        responses={201: OpenApiTypes.OBJECT, 409: OpenApiTypes.OBJECT},
    )
    @action(detail=False, methods=["post"], url_path="admin-batch")
    def admin_batch(self, request):
        ser = MultiPatientPaymentSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data

        result = PaymentService.create_multi_patient_payment(
            items=data["items"],
            amount=data.get("amount"),
            idempotency_key=_idempotency_key(request, data),
            method=data["method"],
            created_by_user_id=request.user.id,
            notes=data.get("notes", ""),
        )
        payments = [get_payment(payment_id=r.payment.id) for r in result.payments]
        return Response(
            {
                "reference": result.reference,
                "allocated_amount": str(result.allocated_amount),
                "payments": LabPaymentSerializer(payments, many=True).data,
            },
            status=status.HTTP_201_CREATED,
        )
