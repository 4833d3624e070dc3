# hm_lab/prescriptions/apps.py
from __future__ import annotations

from django.apps import AppConfig


class PrescriptionsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "hm_lab.prescriptions"
    label = "prescriptions"
