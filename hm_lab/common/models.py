# hm_lab/common/models.py
from __future__ import annotations

from django.db import models


class TimeStampedModel(models.Model):
    """
    Standard timestamps for all entities.
    """
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class IdempotencyRecord(TimeStampedModel):
    """
    Stores idempotent API responses durably.

    Keyed by:
      (user_id, method, path, idempotency_key)

    Survives restarts and is shared between workers, unlike the in-memory store.
    """
    user_id = models.BigIntegerField(db_index=True)
    method = models.CharField(max_length=16)
    path = models.CharField(max_length=255)
    idempotency_key = models.CharField(max_length=255, db_index=True)

    status_code = models.PositiveIntegerField(default=200)
    response_data = models.JSONField(default=dict)

    class Meta:
        db_table = "common_idempotency_record"
        constraints = [
            models.UniqueConstraint(
                fields=["user_id", "method", "path", "idempotency_key"],
                name="uq_idempo_user_method_path_key",
            )
        ]

    def __str__(self) -> str:
        return f"{self.method} {self.path} {self.idempotency_key}"


class SystemSetting(TimeStampedModel):
    """
    Key/value settings editable by administrators at runtime
    (e.g. `lab_payment_threshold_default`).
    """
    setting_key = models.CharField(max_length=100, unique=True)
    setting_value = models.TextField()
    description = models.CharField(max_length=255, blank=True)

    class Meta:
        db_table = "common_system_setting"

    def __str__(self) -> str:
        return f"{self.setting_key}={self.setting_value}"
