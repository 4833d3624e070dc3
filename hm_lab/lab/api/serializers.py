# hm_lab/lab/api/serializers.py
from __future__ import annotations

from rest_framework import serializers

from hm_lab.lab.items import LabItem


class ReportUploadSerializer(serializers.Serializer):
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class LabItemSerializer(serializers.Serializer):
    """Read-only rendering of a LabItem adapter (direct or prescription test)."""

    ref = serializers.CharField()
    kind = serializers.CharField()
    patient_id = serializers.IntegerField()
    name = serializers.CharField()
    unit_price = serializers.DecimalField(max_digits=12, decimal_places=2)
    status = serializers.CharField()
    is_selected = serializers.BooleanField()
    sample_id = serializers.CharField(allow_null=True)
    paid = serializers.DecimalField(max_digits=12, decimal_places=2)
    total = serializers.DecimalField(max_digits=12, decimal_places=2)
    total_paid = serializers.DecimalField(max_digits=12, decimal_places=2)
    due = serializers.DecimalField(max_digits=12, decimal_places=2)
    required = serializers.DecimalField(max_digits=12, decimal_places=2)
    reports = serializers.ListField(child=serializers.DictField())

    def to_representation(self, item: LabItem):
        pos = item.payment_position()
        return super().to_representation(
            {
                "ref": item.ref.token,
                "kind": item.ref.kind,
                "patient_id": item.patient_id,
                "name": item.name,
                "unit_price": item.unit_price,
                "status": item.status,
                "is_selected": item.is_selected,
                "sample_id": item.sample_id,
                "paid": item.allocated(),
                "total": pos.total,
                "total_paid": pos.paid,
                "due": pos.due,
                "required": pos.required,
                "reports": item.reports(),
            }
        )
