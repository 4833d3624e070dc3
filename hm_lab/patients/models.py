# hm_lab/patients/models.py
from django.db import models

from hm_lab.common.models import TimeStampedModel


class Patient(TimeStampedModel):
    """
    Minimal patient record consumed by the lab workflow.
    `user_id` links the portal login (if any) to the record.
    """
    user_id = models.IntegerField(null=True, blank=True, db_index=True)

    full_name = models.CharField(max_length=255)
    phone = models.CharField(max_length=32, blank=True)
    email = models.EmailField(blank=True)

    # medical record number
    mrn = models.CharField(max_length=64, unique=True)

    class Meta:
        db_table = "patients_patient"
        indexes = [
            models.Index(fields=["full_name"]),
            models.Index(fields=["phone"]),
        ]

    def __str__(self) -> str:
        return f"{self.full_name} ({self.mrn})"
