# hm_lab/catalog/models.py
from __future__ import annotations

from decimal import Decimal

from django.db import models

from hm_lab.common.models import TimeStampedModel


class SampleType(models.TextChoices):
    BLOOD = "blood", "Blood"
    URINE = "urine", "Urine"
    STOOL = "stool", "Stool"
    SWAB = "swab", "Swab"
    IMAGING = "imaging", "Imaging"
    OTHER = "other", "Other"


class LabTest(TimeStampedModel):
    """
    Catalog entry. `price` is the current list price; order items snapshot it
    at order time, so edits here never change existing orders.
    """
    name = models.CharField(max_length=255, unique=True)
    description = models.TextField(blank=True)
    category = models.CharField(max_length=100, blank=True, db_index=True)

    price = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    sample_type = models.CharField(max_length=16, choices=SampleType.choices, default=SampleType.BLOOD)
    report_delivery_hours = models.PositiveIntegerField(default=24)

    is_active = models.BooleanField(default=True, db_index=True)

    class Meta:
        db_table = "catalog_lab_test"
        ordering = ["name"]

    def __str__(self) -> str:
        return self.name
