# hm_lab/catalog/api/serializers.py
from __future__ import annotations

from rest_framework import serializers

from hm_lab.catalog.models import LabTest, SampleType


class LabTestSerializer(serializers.ModelSerializer):
    class Meta:
        model = LabTest
        fields = [
            "id",
            "name",
            "description",
            "category",
            "price",
            "sample_type",
            "report_delivery_hours",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class LabTestWriteSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255)
    price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)
    description = serializers.CharField(required=False, allow_blank=True, default="")
    category = serializers.CharField(required=False, allow_blank=True, default="", max_length=100)
    sample_type = serializers.ChoiceField(choices=SampleType.choices, required=False)
    report_delivery_hours = serializers.IntegerField(required=False, min_value=0, default=24)
    is_active = serializers.BooleanField(required=False, default=True)
