# hm_lab/lab/api/views.py
from __future__ import annotations

from drf_spectacular.utils import extend_schema
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.parsers import FormParser, JSONParser, MultiPartParser
from rest_framework.response import Response

from hm_lab.common.permissions import LabFulfillmentPermission, is_admin
from hm_lab.lab.api.serializers import LabItemSerializer, ReportUploadSerializer
from hm_lab.lab.items import load_item, parse_item_ref_token
from hm_lab.lab.services import CancelledBy, FulfillmentService
from hm_lab.orders.api.serializers import ItemSelectionSerializer
from hm_lab.patients.selectors import patient_for_request


def _ok(item) -> Response:
    return Response(LabItemSerializer(item).data, status=status.HTTP_200_OK)


def _owned_ref(request, token: str):
    """Parses the ref and checks that a PATIENT caller owns the item."""
    ref = parse_item_ref_token(token)
    patient_for_request(user=request.user, patient_id=load_item(ref).patient_id)
    return ref


class LabItemViewSet(viewsets.GenericViewSet):
    """
    Fulfillment of a single lab item, addressed by ref:
      order-item-{id} | prescription-{id}:{test name}
    """
    serializer_class = LabItemSerializer
    permission_classes = [LabFulfillmentPermission]
    parser_classes = [JSONParser, FormParser, MultiPartParser]
    lookup_field = "ref"
    lookup_value_regex = r"[^/]+"

    @extend_schema(tags=["Lab Fulfillment"], responses={200: LabItemSerializer})
    def retrieve(self, request, ref=None):
        return _ok(load_item(parse_item_ref_token(ref)))

    @extend_schema(tags=["Lab Fulfillment"], request=None, responses={200: LabItemSerializer})
    @action(detail=True, methods=["post"], url_path="approve")
    def approve(self, request, ref=None):
        return _ok(FulfillmentService.approve_item(ref=parse_item_ref_token(ref)))

    @extend_schema(tags=["Lab Fulfillment"], request=None, responses={200: LabItemSerializer})
    @action(detail=True, methods=["post"], url_path="sample-processing")
    def sample_processing(self, request, ref=None):
        return _ok(FulfillmentService.start_sample_processing(ref=parse_item_ref_token(ref)))

    @extend_schema(tags=["Lab Fulfillment"], request=None, responses={200: LabItemSerializer})
    @action(detail=True, methods=["post"], url_path="sample-taken")
    def sample_taken(self, request, ref=None):
        return _ok(FulfillmentService.mark_sample_taken(ref=parse_item_ref_token(ref)))

    @extend_schema(tags=["Lab Fulfillment"], request=ReportUploadSerializer, responses={200: LabItemSerializer})
    @action(detail=True, methods=["post"], url_path="reports")
    def reports(self, request, ref=None):
        item_ref = parse_item_ref_token(ref)

        ser = ReportUploadSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        item = FulfillmentService.upload_reports(
            ref=item_ref,
            files=request.FILES.getlist("files"),
            uploaded_by_user_id=request.user.id,
            notes=ser.validated_data.get("notes", ""),
        )
        return _ok(item)

    @extend_schema(tags=["Lab Fulfillment"], request=None, responses={200: LabItemSerializer})
    @action(detail=True, methods=["delete"], url_path=r"reports/(?P<index>\d+)")
    def remove_report(self, request, ref=None, index=None):
        return _ok(FulfillmentService.remove_report(ref=parse_item_ref_token(ref), index=int(index)))

    @extend_schema(tags=["Lab Fulfillment"], request=None, responses={200: LabItemSerializer})
    @action(detail=True, methods=["post"], url_path="confirm")
    def confirm(self, request, ref=None):
        return _ok(FulfillmentService.confirm_reports(ref=parse_item_ref_token(ref)))

    @extend_schema(tags=["Lab Fulfillment"], request=None, responses={200: LabItemSerializer})
    @action(detail=True, methods=["post"], url_path="revert")
    def revert(self, request, ref=None):
        return _ok(FulfillmentService.revert_reports(ref=parse_item_ref_token(ref)))

    @extend_schema(tags=["Lab Fulfillment"], request=ItemSelectionSerializer, responses={200: LabItemSerializer})
    @action(detail=True, methods=["post"], url_path="selection")
    def selection(self, request, ref=None):
        item_ref = _owned_ref(request, ref)

        ser = ItemSelectionSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        return _ok(FulfillmentService.set_item_selection(ref=item_ref, is_selected=ser.validated_data["is_selected"]))

    @extend_schema(tags=["Lab Fulfillment"], request=None, responses={200: LabItemSerializer})
    @action(detail=True, methods=["post"], url_path="cancel")
    def cancel(self, request, ref=None):
        item = FulfillmentService.cancel_item(
            ref=_owned_ref(request, ref),
            cancelled_by=CancelledBy.ADMIN if is_admin(request.user) else CancelledBy.PATIENT,
        )
        return _ok(item)
