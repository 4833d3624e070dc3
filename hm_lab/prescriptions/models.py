# hm_lab/prescriptions/models.py
from __future__ import annotations

import json
from decimal import Decimal

from django.db import models
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from hm_lab.catalog.pricing import get_price_cache
from hm_lab.common.models import TimeStampedModel
from hm_lab.patients.models import Patient


class AppointmentStatus(models.TextChoices):
    SCHEDULED = "scheduled", "Scheduled"
    COMPLETED = "completed", "Completed"
    CANCELLED = "cancelled", "Cancelled"


class Appointment(TimeStampedModel):
    patient = models.ForeignKey(Patient, on_delete=models.CASCADE, related_name="appointments")
    doctor_id = models.IntegerField(null=True, blank=True)
    scheduled_at = models.DateTimeField(default=timezone.now)
    status = models.CharField(
        max_length=16, choices=AppointmentStatus.choices, default=AppointmentStatus.SCHEDULED
    )

    class Meta:
        db_table = "prescriptions_appointment"


class Prescription(TimeStampedModel):
    """
    Doctor's prescription. Lab tests are embedded in `tests` as a JSON list:

        [{"name": "CBC", "price": "300.00", "status": "ordered",
          "sampleId": "SMP-20250101-0001", "payments": [...], "testReports": [...]}]

    Older rows stored the list as a JSON-encoded string; `get_tests()` reads both.
    """
    appointment = models.ForeignKey(
        Appointment,
        on_delete=models.SET_NULL,
        related_name="prescriptions",
        null=True,
        blank=True,
    )
    patient = models.ForeignKey(Patient, on_delete=models.CASCADE, related_name="prescriptions")
    doctor_id = models.IntegerField(null=True, blank=True)
    diagnosis = models.TextField(blank=True)

    tests = models.JSONField(default=list, blank=True)

    class Meta:
        db_table = "prescriptions_prescription"

    def get_tests(self) -> list[dict]:
        raw = self.tests
        if raw in (None, ""):
            return []
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except ValueError:
                raise ValidationError({"tests": "Invalid test data format"})
        if not isinstance(raw, list):
            raise ValidationError({"tests": "Invalid test data format"})
        return raw

    def set_tests(self, tests: list[dict]) -> None:
        self.tests = tests

    def find_test(self, name: str) -> tuple[int, dict] | None:
        for idx, t in enumerate(self.get_tests()):
            if isinstance(t, dict) and t.get("name") == name:
                return idx, t
        return None

    def pin_test_prices(self) -> bool:
        """
        Copies the active catalog price onto entries that carry none, so later
        catalog edits never reprice a prescribed test. Returns True when any
        entry changed.
        """
        tests = self.get_tests()
        changed = False
        for t in tests:
            if not isinstance(t, dict) or t.get("price") not in (None, ""):
                continue
            price = get_price_cache().get(t.get("name"))
            if price is None:
                continue
            t["price"] = str(Decimal(price).quantize(Decimal("0.01")))
            changed = True
        if changed:
            self.set_tests(tests)
        return changed

    def save(self, *args, **kwargs):
        # legacy string payloads are stored as given
        if self._state.adding and isinstance(self.tests, list):
            self.pin_test_prices()
        super().save(*args, **kwargs)
