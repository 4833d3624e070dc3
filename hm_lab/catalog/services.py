# hm_lab/catalog/services.py
from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from django.db import IntegrityError, transaction
from rest_framework.exceptions import ValidationError

from hm_lab.catalog.models import LabTest
from hm_lab.catalog.pricing import get_price_cache
from hm_lab.catalog.selectors import get_lab_test

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = (
    "name",
    "description",
    "category",
    "price",
    "sample_type",
    "report_delivery_hours",
    "is_active",
)


class LabTestService:
    @staticmethod
    def _to_price(value) -> Decimal:
        if isinstance(value, Decimal):
            price = value
        else:
            try:
                price = Decimal(str(value))
            except (InvalidOperation, ValueError, TypeError):
                raise ValidationError({"price": "Invalid decimal value."})
        price = price.quantize(Decimal("0.01"))
        if price < Decimal("0.00"):
            raise ValidationError({"price": "Must be >= 0"})
        return price

    @staticmethod
    def _invalidate_prices() -> None:
        transaction.on_commit(get_price_cache().invalidate)

    @staticmethod
    @transaction.atomic
    def create(
        *,
        name: str,
        price,
        description: str = "",
        category: str = "",
        sample_type: str | None = None,
        report_delivery_hours: int = 24,
        is_active: bool = True,
    ) -> LabTest:
        name = (name or "").strip()
        if not name:
            raise ValidationError({"name": "This field is required."})
        if LabTest.objects.filter(name=name).exists():
            raise ValidationError({"name": "A lab test with this name already exists."})

        fields = {
            "name": name,
            "price": LabTestService._to_price(price),
            "description": description or "",
            "category": category or "",
            "report_delivery_hours": report_delivery_hours,
            "is_active": is_active,
        }
        if sample_type:
            fields["sample_type"] = sample_type

        try:
            test = LabTest.objects.create(**fields)
        except IntegrityError:
            raise ValidationError({"name": "A lab test with this name already exists."})

        LabTestService._invalidate_prices()
        logger.info("Lab test created: id=%s name=%s price=%s", test.id, test.name, test.price)
        return test

    @staticmethod
    @transaction.atomic
    def update(*, test_id: int, **changes) -> LabTest:
        """
        Partial update. Price changes apply to future orders only.
        """
        test = get_lab_test(test_id=test_id)

        unknown = set(changes) - set(_EDITABLE_FIELDS)
        if unknown:
            raise ValidationError({f: "Field is not editable." for f in sorted(unknown)})

        if "name" in changes:
            name = (changes["name"] or "").strip()
            if not name:
                raise ValidationError({"name": "This field may not be blank."})
            if LabTest.objects.filter(name=name).exclude(id=test.id).exists():
                raise ValidationError({"name": "A lab test with this name already exists."})
            changes["name"] = name

        if "price" in changes:
            changes["price"] = LabTestService._to_price(changes["price"])

        for field, value in changes.items():
            setattr(test, field, value)
        test.save()

        LabTestService._invalidate_prices()
        return test

    @staticmethod
    @transaction.atomic
    def delete_or_deactivate(*, test_id: int) -> str:
        """
        Tests referenced by any order item are only deactivated so that
        historical orders keep their foreign key. Returns "deactivated" or "deleted".
        """
        test = get_lab_test(test_id=test_id)

        if test.order_items.exists():
            test.is_active = False
            test.save(update_fields=["is_active", "updated_at"])
            outcome = "deactivated"
        else:
            test.delete()
            outcome = "deleted"

        LabTestService._invalidate_prices()
        logger.info("Lab test %s: id=%s", outcome, test_id)
        return outcome
