# hm_lab/catalog/api/views.py
from __future__ import annotations

from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import extend_schema
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from hm_lab.catalog.api.serializers import LabTestSerializer, LabTestWriteSerializer
from hm_lab.catalog.filters import LabTestFilter
from hm_lab.catalog.selectors import categories, get_lab_test, lab_tests_qs
from hm_lab.catalog.services import LabTestService
from hm_lab.common.api.pagination import paginate
from hm_lab.common.permissions import LabTestCatalogPermission, is_admin


class LabTestViewSet(viewsets.GenericViewSet):
    """
    Lab test catalog:
    - list/retrieve (active tests; admins may pass ?include_inactive=1)
    - categories
    - admin create / partial update / delete-or-deactivate
    """
    serializer_class = LabTestSerializer
    queryset = lab_tests_qs()
    permission_classes = [LabTestCatalogPermission]
    filterset_class = LabTestFilter
    ordering_fields = ["name", "price", "category"]
    lookup_value_regex = r"\d+"

    def get_queryset(self):
        include_inactive = (
            self.request.query_params.get("include_inactive") in ("1", "true")
            and is_admin(self.request.user)
        )
        return lab_tests_qs(include_inactive=include_inactive)

    @extend_schema(tags=["Lab Catalog"], responses={200: LabTestSerializer(many=True)})
    def list(self, request):
        qs = self.filter_queryset(self.get_queryset())
        return paginate(request, qs, LabTestSerializer)

    @extend_schema(tags=["Lab Catalog"], responses={200: LabTestSerializer})
    def retrieve(self, request, pk=None):
        return Response(LabTestSerializer(get_lab_test(test_id=pk)).data, status=status.HTTP_200_OK)

    @extend_schema(tags=["Lab Catalog"], responses={200: OpenApiTypes.OBJECT})
    @action(detail=False, methods=["get"], url_path="categories")
    def categories(self, request):
        return Response({"categories": categories()}, status=status.HTTP_200_OK)

    @extend_schema(tags=["Lab Catalog"], request=LabTestWriteSerializer, responses={201: LabTestSerializer})
    def create(self, request):
        ser = LabTestWriteSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        test = LabTestService.create(**ser.validated_data)
        return Response(LabTestSerializer(test).data, status=status.HTTP_201_CREATED)

    @extend_schema(tags=["Lab Catalog"], request=LabTestWriteSerializer, responses={200: LabTestSerializer})
    def partial_update(self, request, pk=None):
        ser = LabTestWriteSerializer(data=request.data, partial=True)
        ser.is_valid(raise_exception=True)
        test = LabTestService.update(test_id=pk, **ser.validated_data)
        return Response(LabTestSerializer(test).data, status=status.HTTP_200_OK)

    @extend_schema(tags=["Lab Catalog"], responses={200: OpenApiTypes.OBJECT})
    def destroy(self, request, pk=None):
        outcome = LabTestService.delete_or_deactivate(test_id=pk)
        return Response({"id": int(pk), "result": outcome}, status=status.HTTP_200_OK)
