# hm_lab/lab/services.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from functools import partial

from django.conf import settings
from django.db import IntegrityError, transaction
from rest_framework.exceptions import NotFound, ValidationError

from hm_lab.billing.allocation import AllocationService
from hm_lab.common.api.exceptions import InsufficientPaymentError, InvalidStateError, SampleIdConflictError
from hm_lab.lab.items import DirectOrderItem, ItemRef, LabItem, PaymentPosition, load_item
from hm_lab.lab.sample_ids import generate_sample_id
from hm_lab.lab.storage import delete_report_file, save_report_file
from hm_lab.orders.models import CANCELLABLE_STATUSES, ItemStatus, LabOrder, LabOrderItem

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class CancelledBy:
    PATIENT = "patient"
    ADMIN = "admin"

    STATUS = {
        PATIENT: ItemStatus.CANCELLED_BY_PATIENT,
        ADMIN: ItemStatus.CANCELLED_BY_ADMIN,
    }


@dataclass
class ApprovalResult:
    order_id: int
    approved: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)


def _require_status(item: LabItem, *allowed: str, action: str) -> None:
    if item.status not in allowed:
        raise InvalidStateError(
            f"Cannot {action}: item is '{item.status}', expected {' or '.join(allowed)}.",
            current_status=item.status,
            expected=allowed,
        )


def _refresh_order_totals(item: LabItem) -> None:
    # prescription tests have no order aggregates
    if isinstance(item, DirectOrderItem):
        AllocationService.recalculate_order_totals(order_id=item.order_id)
        item.order.refresh_from_db()


def _fresh_position(item: LabItem) -> PaymentPosition:
    """Payment position with order aggregates recomputed for direct items."""
    _refresh_order_totals(item)
    return item.payment_position()


def _transition(item: LabItem, status: str) -> None:
    previous = item.status
    item.set_status(status)
    item.save()
    logger.info("Lab item %s: %s -> %s", item.ref.token, previous, status)


class FulfillmentService:
    """
    Item lifecycle:
      ordered -> approved -> sample_processing -> sample_taken -> reported <-> confirmed
      ordered|approved -> cancelled_by_patient|cancelled_by_admin
    Payment gates: sample processing needs the threshold share of the total,
    report upload needs the full amount.
    """

    @staticmethod
    @transaction.atomic
    def approve_items(*, order_id: int, item_ids: list[int]) -> ApprovalResult:
        """
        Batch approval. Only selected items still in `ordered` move; the rest are skipped.
        """
        if not item_ids:
            raise ValidationError({"item_ids": "No items to approve."})

        order = LabOrder.objects.select_for_update().filter(id=order_id).first()
        if order is None:
            raise NotFound("Lab order not found.")

        result = ApprovalResult(order_id=order.id)
        items = {
            i.id: i
            for i in LabOrderItem.objects.select_for_update().filter(order_id=order.id, id__in=item_ids)
        }
        for item_id in item_ids:
            item = items.get(item_id)
            if item is None or not item.is_selected or item.status != ItemStatus.ORDERED:
                result.skipped.append(item_id)
                continue
            item.status = ItemStatus.APPROVED
            item.save(update_fields=["status", "updated_at"])
            result.approved.append(item_id)

        logger.info(
            "Order %s approval: approved=%s skipped=%s", order.id, result.approved, result.skipped
        )
        return result

    @staticmethod
    @transaction.atomic
    def approve_item(*, ref: ItemRef) -> LabItem:
        item = load_item(ref, for_update=True)
        _require_status(item, ItemStatus.ORDERED, action="approve")
        if not item.is_selected:
            raise InvalidStateError("Cannot approve a deselected item.", current_status=item.status)
        _transition(item, ItemStatus.APPROVED)
        return item

    @staticmethod
    @transaction.atomic
    def start_sample_processing(*, ref: ItemRef) -> LabItem:
        item = load_item(ref, for_update=True)
        _require_status(item, ItemStatus.APPROVED, action="start sample processing")

        pos = _fresh_position(item)
        if pos.total > ZERO and (pos.paid <= ZERO or pos.paid < pos.required):
            pct = (pos.threshold * 100).normalize()
            raise InsufficientPaymentError(
                f"Minimum {pct:f}% payment required to start sample processing. "
                f"Current payment: {pos.paid}, Required: {pos.required}",
                paid=pos.paid,
                required=pos.required,
            )

        if not item.sample_id:
            item.assign_sample_id(generate_sample_id())
        try:
            with transaction.atomic():
                _transition(item, ItemStatus.SAMPLE_PROCESSING)
        except IntegrityError:
            # a concurrent start took the same serial
            logger.warning("Sample id %s already taken; %s left approved", item.sample_id, item.ref.token)
            raise SampleIdConflictError(f"Sample id {item.sample_id} is already in use. Retry the request.")
        return item

    @staticmethod
    @transaction.atomic
    def mark_sample_taken(*, ref: ItemRef) -> LabItem:
        item = load_item(ref, for_update=True)
        _require_status(item, ItemStatus.SAMPLE_PROCESSING, action="mark sample taken")
        _transition(item, ItemStatus.SAMPLE_TAKEN)
        return item

    @staticmethod
    @transaction.atomic
    def upload_reports(
        *,
        ref: ItemRef,
        files: list,
        uploaded_by_user_id: int | None = None,
        notes: str = "",
    ) -> LabItem:
        if not files:
            raise ValidationError({"files": "At least one report file is required."})
        max_files = getattr(settings, "LAB_REPORT_MAX_FILES", 10)
        if len(files) > max_files:
            raise ValidationError({"files": f"At most {max_files} files per upload."})

        item = load_item(ref, for_update=True)
        _require_status(item, ItemStatus.SAMPLE_TAKEN, ItemStatus.REPORTED, action="upload reports")

        pos = _fresh_position(item)
        if pos.due > ZERO:
            raise InsufficientPaymentError(
                f"Full payment required before uploading reports. Due: {pos.due}",
                paid=pos.paid,
                required=pos.total,
            )

        stored = [save_report_file(f) for f in files]
        item.add_reports(stored, uploaded_by_user_id=uploaded_by_user_id, notes=notes)
        _transition(item, ItemStatus.REPORTED)
        return item

    @staticmethod
    @transaction.atomic
    def remove_report(*, ref: ItemRef, index: int) -> LabItem:
        item = load_item(ref, for_update=True)
        _require_status(item, ItemStatus.REPORTED, action="remove a report")

        removed = item.remove_report(index)
        transaction.on_commit(partial(delete_report_file, removed.get("path", "")))

        if item.reports():
            item.save()
            logger.info("Lab item %s: report %s removed", item.ref.token, index)
        else:
            _transition(item, ItemStatus.SAMPLE_TAKEN)
        return item

    @staticmethod
    @transaction.atomic
    def confirm_reports(*, ref: ItemRef) -> LabItem:
        item = load_item(ref, for_update=True)
        _require_status(item, ItemStatus.REPORTED, action="confirm reports")
        if not item.reports():
            raise InvalidStateError("Cannot confirm: no reports uploaded.", current_status=item.status)
        _transition(item, ItemStatus.CONFIRMED)
        return item

    @staticmethod
    @transaction.atomic
    def revert_reports(*, ref: ItemRef) -> LabItem:
        item = load_item(ref, for_update=True)
        _require_status(item, ItemStatus.CONFIRMED, action="revert reports")
        _transition(item, ItemStatus.REPORTED)
        return item

    @staticmethod
    @transaction.atomic
    def set_item_selection(*, ref: ItemRef, is_selected: bool) -> LabItem:
        item = load_item(ref, for_update=True)
        _require_status(item, ItemStatus.ORDERED, action="change selection")

        item.set_selected(is_selected)
        item.save()
        _refresh_order_totals(item)
        logger.info("Lab item %s: selected=%s", item.ref.token, is_selected)
        return item

    @staticmethod
    @transaction.atomic
    def cancel_item(*, ref: ItemRef, cancelled_by: str) -> LabItem:
        status = CancelledBy.STATUS.get(cancelled_by)
        if status is None:
            raise ValidationError({"cancelled_by": "Must be 'patient' or 'admin'."})

        item = load_item(ref, for_update=True)
        _require_status(item, *sorted(CANCELLABLE_STATUSES), action="cancel")

        item.set_selected(False)
        _transition(item, status)
        _refresh_order_totals(item)
        return item
