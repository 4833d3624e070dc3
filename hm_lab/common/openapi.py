# hm_lab/common/openapi.py
from __future__ import annotations

from drf_spectacular.openapi import AutoSchema
from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter


class LabAutoSchema(AutoSchema):
    """
    Adds the optional Idempotency-Key header to every write operation.
    """

    IDEMPOTENCY_HEADER = OpenApiParameter(
        name="Idempotency-Key",
        type=OpenApiTypes.STR,
        location=OpenApiParameter.HEADER,
        required=False,
        description=(
            "Idempotency key for safely retrying POST requests. "
            "Payments use it as the ledger reference."
        ),
    )

    def get_override_parameters(self):
        params = list(super().get_override_parameters() or [])

        if self.method not in ("POST", "PUT", "PATCH"):
            return params

        if not any(p.name.lower() == "idempotency-key" for p in params):
            params.append(self.IDEMPOTENCY_HEADER)
        return params
