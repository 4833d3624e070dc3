# hm_lab/orders/api/serializers.py
from __future__ import annotations

from rest_framework import serializers

from hm_lab.orders.models import LabOrder, LabOrderItem


class LabOrderItemSerializer(serializers.ModelSerializer):
    ref = serializers.SerializerMethodField()

    class Meta:
        model = LabOrderItem
        fields = [
            "id",
            "ref",
            "lab_test",
            "test_name",
            "unit_price",
            "is_selected",
            "status",
            "sample_allowed",
            "sample_id",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_ref(self, obj) -> str:
        return f"order-item-{obj.id}"


class LabOrderSerializer(serializers.ModelSerializer):
    items = LabOrderItemSerializer(many=True, read_only=True)

    class Meta:
        model = LabOrder
        fields = [
            "id",
            "patient",
            "doctor_id",
            "appointment",
            "ordered_at",
            "notes",
            "order_total",
            "order_paid",
            "order_due",
            "sample_allowed",
            "payment_threshold",
            "items",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class LabOrderCreateSerializer(serializers.Serializer):
    patient_id = serializers.IntegerField()
    test_ids = serializers.ListField(child=serializers.IntegerField(), allow_empty=False)
    doctor_id = serializers.IntegerField(required=False, allow_null=True)
    appointment_id = serializers.IntegerField(required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    payment_threshold = serializers.DecimalField(
        max_digits=4, decimal_places=3, required=False, allow_null=True
    )


class ApproveItemsSerializer(serializers.Serializer):
    item_ids = serializers.ListField(child=serializers.IntegerField(), allow_empty=True)


class ItemSelectionSerializer(serializers.Serializer):
    is_selected = serializers.BooleanField()
