# hm_lab/patients/apps.py
from __future__ import annotations

from django.apps import AppConfig


class PatientsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "hm_lab.patients"
    label = "patients"
