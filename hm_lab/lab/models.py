# hm_lab/lab/models.py
from __future__ import annotations

from django.db import models
from django.utils import timezone

from hm_lab.common.models import TimeStampedModel
from hm_lab.orders.models import LabOrderItem


class LabReport(TimeStampedModel):
    """
    Metadata for one uploaded report file of a direct order item.
    Prescription tests keep the same fields inside their `testReports` list.
    """
    order_item = models.ForeignKey(LabOrderItem, on_delete=models.CASCADE, related_name="reports")

    filename = models.CharField(max_length=255)
    original_name = models.CharField(max_length=255)
    path = models.CharField(max_length=512)
    size = models.PositiveIntegerField(default=0)
    content_type = models.CharField(max_length=128, blank=True)
    notes = models.TextField(blank=True)

    uploaded_by_user_id = models.IntegerField(null=True, blank=True)
    uploaded_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "lab_report"
        ordering = ["uploaded_at", "id"]

    def as_dict(self) -> dict:
        return {
            "filename": self.filename,
            "originalName": self.original_name,
            "path": self.path,
            "size": self.size,
            "contentType": self.content_type,
            "notes": self.notes,
            "uploadedBy": self.uploaded_by_user_id,
            "uploadedAt": self.uploaded_at.isoformat(),
        }
