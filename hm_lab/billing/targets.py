# hm_lab/billing/targets.py
from __future__ import annotations

from dataclasses import dataclass

from rest_framework.exceptions import ValidationError

from hm_lab.lab.items import ItemRef, parse_item_ref


@dataclass(frozen=True)
class PaymentTarget:
    """
    What a batch payment pays for, processed in this order:
    whole orders first, then individual items.
    """
    order_ids: tuple[int, ...] = ()
    item_refs: tuple[ItemRef, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.order_ids and not self.item_refs

    @classmethod
    def from_payload(cls, data) -> "PaymentTarget":
        """
        {"orders": [1, 2], "items": ["order-item-5", "prescription-7:CBC", {"kind": "direct", "item_id": 6}]}
        """
        if data in (None, ""):
            return cls()
        if not isinstance(data, dict):
            raise ValidationError({"target": "Must be an object with 'orders' and/or 'items'."})

        orders_raw = data.get("orders") or []
        items_raw = data.get("items") or []
        if not isinstance(orders_raw, (list, tuple)) or not isinstance(items_raw, (list, tuple)):
            raise ValidationError({"target": "'orders' and 'items' must be lists."})

        order_ids: list[int] = []
        for raw in orders_raw:
            try:
                oid = int(raw)
            except (TypeError, ValueError):
                raise ValidationError({"target": f"Invalid order id: {raw!r}"})
            if isinstance(raw, bool) or oid <= 0:
                raise ValidationError({"target": f"Invalid order id: {raw!r}"})
            if oid not in order_ids:
                order_ids.append(oid)

        item_refs: list[ItemRef] = []
        for raw in items_raw:
            ref = parse_item_ref(raw)
            if ref not in item_refs:
                item_refs.append(ref)

        return cls(order_ids=tuple(order_ids), item_refs=tuple(item_refs))

    def to_payload(self) -> dict:
        return {
            "orders": list(self.order_ids),
            "items": [ref.to_payload() for ref in self.item_refs],
        }
