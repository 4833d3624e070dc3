# hm_lab/lab/sample_ids.py
from __future__ import annotations

import logging
import secrets
import time
from datetime import date

from django.db import DatabaseError
from django.db.models import TextField
from django.db.models.functions import Cast
from django.utils import timezone

from hm_lab.orders.models import LabOrderItem
from hm_lab.prescriptions.models import Prescription

logger = logging.getLogger(__name__)

SAMPLE_ID_PREFIX = "SMP"


def _issued_today(prefix: str) -> int:
    direct = LabOrderItem.objects.filter(sample_id__startswith=prefix).count()

    # prescription tests keep their sampleId inside the JSON list
    candidates = (
        Prescription.objects.annotate(tests_text=Cast("tests", TextField()))
        .filter(tests_text__contains=prefix)
        .only("id", "tests")
    )
    embedded = 0
    for prescription in candidates:
        for test in prescription.get_tests():
            if isinstance(test, dict) and str(test.get("sampleId") or "").startswith(prefix):
                embedded += 1

    return direct + embedded


def generate_sample_id(*, today: date | None = None) -> str:
    """
    SMP-YYYYMMDD-NNNN, where NNNN is one more than the number of sample ids
    already issued that day across direct items and prescription tests.

    Must run inside the transaction that stores the id; the unique constraint
    on LabOrderItem.sample_id rejects a concurrent duplicate.
    Falls back to SMP-{epoch ms}-{random} only if the counting query fails.
    """
    day = today or timezone.localdate()
    prefix = f"{SAMPLE_ID_PREFIX}-{day:%Y%m%d}-"
    try:
        serial = _issued_today(prefix) + 1
    except DatabaseError:
        logger.exception("Sample id counting failed; using fallback id")
        return f"{SAMPLE_ID_PREFIX}-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"
    return f"{prefix}{serial:04d}"
