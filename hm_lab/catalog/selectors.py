# hm_lab/catalog/selectors.py
from __future__ import annotations

from django.db.models import QuerySet
from rest_framework.exceptions import NotFound

from hm_lab.catalog.models import LabTest


def lab_tests_qs(*, include_inactive: bool = False) -> QuerySet[LabTest]:
    qs = LabTest.objects.all().order_by("name")
    if not include_inactive:
        qs = qs.filter(is_active=True)
    return qs


def get_lab_test(*, test_id: int) -> LabTest:
    try:
        return LabTest.objects.get(id=test_id)
    except LabTest.DoesNotExist:
        raise NotFound("Lab test not found.")


def categories() -> list[str]:
    return list(
        LabTest.objects.filter(is_active=True)
        .exclude(category="")
        .order_by("category")
        .values_list("category", flat=True)
        .distinct()
    )
