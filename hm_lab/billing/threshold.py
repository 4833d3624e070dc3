# hm_lab/billing/threshold.py
"""
Minimum paid fraction of an order's total before sample processing may start.

Resolution order:
  1. LabOrder.payment_threshold (per-order override)
  2. SystemSetting `lab_payment_threshold_default`
  3. settings.LAB_PAYMENT_THRESHOLD_DEFAULT
  4. 0.5

Unreadable or out-of-range values fall through to the next source.
"""
from __future__ import annotations

import logging
from decimal import ROUND_CEILING, Decimal, InvalidOperation

from django.conf import settings
from django.db import DatabaseError

from hm_lab.common.models import SystemSetting

logger = logging.getLogger(__name__)

THRESHOLD_SETTING_KEY = "lab_payment_threshold_default"
FALLBACK_THRESHOLD = Decimal("0.5")


def _coerce(raw, *, source: str) -> Decimal | None:
    if raw is None or raw == "":
        return None
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        logger.warning("Ignoring unreadable payment threshold from %s: %r", source, raw)
        return None
    if not value.is_finite() or value <= 0 or value > 1:
        logger.warning("Ignoring out-of-range payment threshold from %s: %s", source, value)
        return None
    return value


class ThresholdPolicy:
    @staticmethod
    def global_default() -> Decimal:
        try:
            raw = (
                SystemSetting.objects.filter(setting_key=THRESHOLD_SETTING_KEY)
                .values_list("setting_value", flat=True)
                .first()
            )
        except DatabaseError:
            logger.warning("Could not read %s setting; using configured default", THRESHOLD_SETTING_KEY)
            raw = None

        value = _coerce(raw, source=f"setting {THRESHOLD_SETTING_KEY}")
        if value is not None:
            return value

        value = _coerce(
            getattr(settings, "LAB_PAYMENT_THRESHOLD_DEFAULT", None),
            source="settings.LAB_PAYMENT_THRESHOLD_DEFAULT",
        )
        return value if value is not None else FALLBACK_THRESHOLD

    @staticmethod
    def resolve(order_id: int | None = None, *, order_threshold=None) -> Decimal:
        """
        Returns the threshold for an order (or the global one when no order is given).
        Pass `order_threshold` when the order row is already loaded.
        Never raises.
        """
        if order_threshold is None and order_id is not None:
            from hm_lab.orders.models import LabOrder

            try:
                order_threshold = (
                    LabOrder.objects.filter(id=order_id).values_list("payment_threshold", flat=True).first()
                )
            except DatabaseError:
                logger.warning("Could not read threshold override for order %s", order_id)
                order_threshold = None

        value = _coerce(order_threshold, source=f"order {order_id}")
        if value is not None:
            return value
        return ThresholdPolicy.global_default()

    @staticmethod
    def required_amount(total: Decimal, threshold: Decimal) -> Decimal:
        # rounded up: a payment a fraction of a cent short never opens the gate
        return (Decimal(total) * Decimal(threshold)).quantize(Decimal("0.01"), rounding=ROUND_CEILING)
