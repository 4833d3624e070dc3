# hm_lab/billing/services.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import requests
from django.db import IntegrityError, transaction
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from hm_lab.billing import gateway as gateway_module
from hm_lab.billing.allocation import AllocationResult, AllocationService, split_evenly
from hm_lab.billing.gateway import GatewayError, GatewayExecution, map_gateway_status
from hm_lab.billing.models import LabPayment, PaymentMethod, PaymentStatus
from hm_lab.billing.targets import PaymentTarget
from hm_lab.common.api.exceptions import (
    AlreadyProcessedError,
    DuplicatePaymentError,
    ExternalServiceError,
    InvalidStateError,
)
from hm_lab.lab.items import LabItem, load_item, parse_item_ref
from hm_lab.orders.models import LabOrder
from hm_lab.patients.models import Patient

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

# LabPayment.reference length
MAX_REFERENCE_LENGTH = 128


@dataclass
class BatchPaymentResult:
    payment: LabPayment
    allocation: AllocationResult | None = None


@dataclass
class GatewayInitiation:
    payment: LabPayment
    redirect_url: str


@dataclass
class GatewayStatus:
    result: BatchPaymentResult
    transaction_status: str


@dataclass
class MultiPatientPaymentResult:
    reference: str
    payments: list[BatchPaymentResult]

    @property
    def allocated_amount(self) -> Decimal:
        return sum((r.allocation.allocated_amount for r in self.payments if r.allocation), ZERO)


class PaymentService:
    @staticmethod
    def _to_amount(value) -> Decimal:
        try:
            amount = Decimal(str(value)).quantize(Decimal("0.01"))
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError({"amount": "Invalid decimal value."})
        if not amount.is_finite() or amount <= ZERO:
            raise ValidationError({"amount": "Amount must be > 0."})
        return amount

    @staticmethod
    def _existing(reference: str) -> LabPayment | None:
        return LabPayment.objects.filter(reference=reference).first()

    @staticmethod
    def _validate_target(*, patient_id: int, target: PaymentTarget) -> None:
        """
        Every targeted order and item must exist and belong to the paying patient.
        """
        if target.is_empty:
            raise ValidationError({"target": "Select at least one order or item to pay for."})

        owners = dict(LabOrder.objects.filter(id__in=target.order_ids).values_list("id", "patient_id"))
        for oid in target.order_ids:
            if oid not in owners:
                raise ValidationError({"target": f"Lab order {oid} not found."})
            if owners[oid] != patient_id:
                raise ValidationError({"target": f"Lab order {oid} does not belong to this patient."})

        for ref in target.item_refs:
            try:
                item = load_item(ref)
            except NotFound:
                raise ValidationError({"target": f"Item {ref.token} not found."})
            if item.patient_id != patient_id:
                raise ValidationError({"target": f"Item {ref.token} does not belong to this patient."})

    @staticmethod
    def _prepare(*, patient_id: int, amount, target, idempotency_key: str, method: str):
        if not idempotency_key:
            raise ValidationError({"idempotency_key": "An idempotency key is required."})
        if len(idempotency_key) > MAX_REFERENCE_LENGTH:
            raise ValidationError({"idempotency_key": f"At most {MAX_REFERENCE_LENGTH} characters."})
        if method not in PaymentMethod.values:
            raise ValidationError({"method": f"Unsupported payment method: {method!r}"})

        if not Patient.objects.filter(id=patient_id).exists():
            raise NotFound("Patient not found.")

        amount = PaymentService._to_amount(amount)
        if not isinstance(target, PaymentTarget):
            target = PaymentTarget.from_payload(target)
        PaymentService._validate_target(patient_id=patient_id, target=target)
        return amount, target

    @staticmethod
    def _raise_duplicate(existing: LabPayment, *, patient_id: int):
        logger.info("Duplicate payment reference %s (payment %s)", existing.reference, existing.id)
        # a key reused against another patient's payment reveals nothing about it
        raise DuplicatePaymentError(payment=existing if existing.patient_id == patient_id else None)

    @staticmethod
    def create_batch_payment(
        *,
        patient_id: int,
        amount,
        target,
        idempotency_key: str,
        method: str = PaymentMethod.BKASH,
        created_by_user_id: int | None = None,
        notes: str = "",
        complete: bool = False,
        gateway_payment_id: str = "",
    ) -> BatchPaymentResult:
        """
        Records a batch payment keyed by `idempotency_key`.

        - Same key again: DuplicatePaymentError carrying the existing payment.
        - complete=False: a pending payment, allocated later on completion.
        - complete=True (admin/cash): created and allocated in one transaction.
        """
        existing = PaymentService._existing(idempotency_key)
        if existing is not None:
            PaymentService._raise_duplicate(existing, patient_id=patient_id)

        amount, target = PaymentService._prepare(
            patient_id=patient_id,
            amount=amount,
            target=target,
            idempotency_key=idempotency_key,
            method=method,
        )

        try:
            with transaction.atomic():
                payment = LabPayment.objects.create(
                    reference=idempotency_key,
                    patient_id=patient_id,
                    amount=amount,
                    target=target.to_payload(),
                    method=method,
                    status=PaymentStatus.PENDING,
                    gateway_payment_id=gateway_payment_id or "",
                    created_by_user_id=created_by_user_id,
                    notes=notes or "",
                )
                allocation = None
                if complete:
                    allocation = AllocationService.process_payment_allocation(payment_id=payment.id)
                    payment.refresh_from_db()
        except IntegrityError:
            # concurrent request with the same key won the insert
            existing = PaymentService._existing(idempotency_key)
            if existing is None:
                raise
            PaymentService._raise_duplicate(existing, patient_id=patient_id)

        logger.info(
            "Lab payment recorded: id=%s reference=%s patient=%s amount=%s method=%s status=%s",
            payment.id,
            payment.reference,
            patient_id,
            amount,
            method,
            payment.status,
        )
        return BatchPaymentResult(payment=payment, allocation=allocation)

    @staticmethod
    def complete_payment(*, payment_id: int, transaction_id: str | None = None) -> AllocationResult:
        """
        Manual reconciliation of a pending payment (bank transfer, offline or a
        gateway payment confirmed out of band): completes and allocates it once.
        """
        return AllocationService.process_payment_allocation(payment_id=payment_id, transaction_id=transaction_id)

    # -------------------------------------------------------------------
    # Gateway flow
    # -------------------------------------------------------------------

    @staticmethod
    def initiate_gateway_payment(
        *,
        patient_id: int,
        amount,
        target,
        idempotency_key: str,
        created_by_user_id: int | None = None,
    ) -> GatewayInitiation:
        """
        Creates the payment at the gateway, then persists it as pending.
        The gateway call happens outside any database transaction.
        """
        existing = PaymentService._existing(idempotency_key)
        if existing is not None:
            PaymentService._raise_duplicate(existing, patient_id=patient_id)

        amount, target = PaymentService._prepare(
            patient_id=patient_id,
            amount=amount,
            target=target,
            idempotency_key=idempotency_key,
            method=PaymentMethod.BKASH,
        )

        try:
            created = gateway_module.get_gateway().create_payment(
                amount=amount, reference=idempotency_key, payer_reference=str(patient_id)
            )
        except (requests.RequestException, GatewayError) as e:
            logger.exception("Gateway create failed for reference %s", idempotency_key)
            raise ExternalServiceError(f"Payment gateway unavailable: {e}")

        result = PaymentService.create_batch_payment(
            patient_id=patient_id,
            amount=amount,
            target=target,
            idempotency_key=idempotency_key,
            method=PaymentMethod.BKASH,
            created_by_user_id=created_by_user_id,
            gateway_payment_id=created.gateway_payment_id,
        )
        return GatewayInitiation(payment=result.payment, redirect_url=created.redirect_url)

    @staticmethod
    def _gateway_payment(payment_id: int) -> LabPayment:
        try:
            payment = LabPayment.objects.get(id=payment_id)
        except LabPayment.DoesNotExist:
            raise NotFound("Payment not found.")
        if not payment.gateway_payment_id:
            raise ValidationError({"payment": "Payment was not initiated through the gateway."})
        return payment

    @staticmethod
    def _apply_gateway_outcome(payment: LabPayment, execution: GatewayExecution) -> BatchPaymentResult:
        """
        Completed -> allocate, Failed -> mark failed, anything else -> stays pending.
        """
        outcome = map_gateway_status(execution.transaction_status)

        if outcome == PaymentStatus.COMPLETED:
            allocation = AllocationService.process_payment_allocation(
                payment_id=payment.id, transaction_id=execution.transaction_id or None
            )
            payment.refresh_from_db()
            return BatchPaymentResult(payment=payment, allocation=allocation)

        if outcome == PaymentStatus.FAILED:
            with transaction.atomic():
                locked = LabPayment.objects.select_for_update().get(id=payment.id)
                if locked.status != PaymentStatus.PENDING:
                    raise AlreadyProcessedError(f"Payment {locked.reference} is already {locked.status}.")
                locked.status = PaymentStatus.FAILED
                locked.transaction_id = execution.transaction_id or locked.transaction_id
                locked.save(update_fields=["status", "transaction_id", "updated_at"])
            logger.info("Gateway reported failure for payment %s", payment.reference)
            return BatchPaymentResult(payment=locked)

        logger.info(
            "Gateway status %r for payment %s; left pending", execution.transaction_status, payment.reference
        )
        return BatchPaymentResult(payment=payment)

    @staticmethod
    def execute_gateway_payment(*, payment_id: int) -> BatchPaymentResult:
        """
        Asks the gateway to execute the approved payment and applies the outcome.
        A gateway error leaves the payment pending and raises ExternalServiceError.
        """
        payment = PaymentService._gateway_payment(payment_id)
        if payment.status != PaymentStatus.PENDING:
            raise AlreadyProcessedError(f"Payment {payment.reference} is already {payment.status}.")

        try:
            execution = gateway_module.get_gateway().execute_payment(
                gateway_payment_id=payment.gateway_payment_id
            )
        except (requests.RequestException, GatewayError) as e:
            logger.exception("Gateway execute failed for payment %s", payment.reference)
            raise ExternalServiceError(f"Payment gateway unavailable: {e}")

        return PaymentService._apply_gateway_outcome(payment, execution)

    @staticmethod
    def query_gateway_payment(*, payment_id: int) -> GatewayStatus:
        """
        Reads the transaction status from the gateway. A pending payment picks up
        the outcome (completed payments are allocated); settled payments are
        reported as they are.
        """
        payment = PaymentService._gateway_payment(payment_id)

        try:
            execution = gateway_module.get_gateway().query_payment(gateway_payment_id=payment.gateway_payment_id)
        except (requests.RequestException, GatewayError) as e:
            logger.exception("Gateway query failed for payment %s", payment.reference)
            raise ExternalServiceError(f"Payment gateway unavailable: {e}")

        if payment.status == PaymentStatus.PENDING:
            result = PaymentService._apply_gateway_outcome(payment, execution)
        else:
            result = BatchPaymentResult(payment=payment)
        return GatewayStatus(result=result, transaction_status=execution.transaction_status)

    @staticmethod
    def refund_gateway_payment(*, payment_id: int, reason: str = "") -> LabPayment:
        """
        Refunds a completed gateway payment in full and releases its allocations.
        The gateway is called outside the database transaction.
        """
        payment = PaymentService._gateway_payment(payment_id)

        if payment.status == PaymentStatus.REFUNDED:
            raise AlreadyProcessedError(f"Payment {payment.reference} is already refunded.")
        if payment.status != PaymentStatus.COMPLETED:
            raise InvalidStateError(
                "Only completed payments can be refunded.",
                current_status=payment.status,
                expected=[PaymentStatus.COMPLETED],
            )
        if not payment.transaction_id:
            raise ValidationError({"payment": "Payment has no gateway transaction id."})

        try:
            refund = gateway_module.get_gateway().refund_payment(
                gateway_payment_id=payment.gateway_payment_id,
                transaction_id=payment.transaction_id,
                amount=payment.amount,
                reason=reason,
            )
        except (requests.RequestException, GatewayError) as e:
            logger.exception("Gateway refund failed for payment %s", payment.reference)
            raise ExternalServiceError(f"Payment gateway unavailable: {e}")

        with transaction.atomic():
            locked = LabPayment.objects.select_for_update().get(id=payment.id)
            if locked.status != PaymentStatus.COMPLETED:
                logger.error(
                    "Payment %s refunded at the gateway (%s) but is now %s locally",
                    locked.reference,
                    refund.refund_transaction_id,
                    locked.status,
                )
                raise AlreadyProcessedError(f"Payment {locked.reference} is already {locked.status}.")

            released = AllocationService.reverse_payment_allocation(payment=locked)

            locked.status = PaymentStatus.REFUNDED
            locked.refunded_amount = locked.amount
            locked.refund_transaction_id = refund.refund_transaction_id
            locked.refund_reason = (reason or "")[:255]
            locked.refunded_at = timezone.now()
            locked.save(
                update_fields=[
                    "status",
                    "refunded_amount",
                    "refund_transaction_id",
                    "refund_reason",
                    "refunded_at",
                    "updated_at",
                ]
            )

        logger.info(
            "Lab payment refunded: id=%s reference=%s amount=%s released=%s refund=%s",
            locked.id,
            locked.reference,
            locked.amount,
            released,
            refund.refund_transaction_id,
        )
        return locked

    # -------------------------------------------------------------------
    # Counter payment covering several patients
    # -------------------------------------------------------------------

    @staticmethod
    def _group_by_patient(items) -> dict[int, list[LabItem]]:
        groups: dict[int, list[LabItem]] = {}
        seen = set()
        for raw in items or []:
            ref = parse_item_ref(raw)
            if ref.token in seen:
                continue
            seen.add(ref.token)
            try:
                item = load_item(ref)
            except NotFound:
                raise ValidationError({"items": f"Item {ref.token} not found."})
            groups.setdefault(item.patient_id, []).append(item)
        return groups

    @staticmethod
    def create_multi_patient_payment(
        *,
        items,
        idempotency_key: str,
        method: str = PaymentMethod.OFFLINE_CASH,
        amount=None,
        created_by_user_id: int | None = None,
        notes: str = "",
    ) -> MultiPatientPaymentResult:
        """
        One counter payment over items of several patients.

        Items are grouped per patient and each group becomes its own completed
        payment, referenced "{key}:patient-{id}". Without `amount` every group
        pays what is still due on its items; with `amount` (never more than the
        total due) the money is split evenly across the groups. All groups are
        recorded in one transaction.
        """
        if not idempotency_key:
            raise ValidationError({"idempotency_key": "An idempotency key is required."})
        if method == PaymentMethod.BKASH:
            raise ValidationError({"method": "Gateway payments cannot be recorded at the counter."})

        prefix = f"{idempotency_key}:patient-"
        existing = LabPayment.objects.filter(reference__startswith=prefix).order_by("id").first()
        if existing is not None:
            logger.info("Duplicate multi-patient payment reference %s", idempotency_key)
            raise DuplicatePaymentError(payment=existing)

        groups = PaymentService._group_by_patient(items)
        if not groups:
            raise ValidationError({"items": "Select at least one item to pay for."})

        due = [sum((i.outstanding() for i in group if i.is_payable()), ZERO) for group in groups.values()]
        total_due = sum(due, ZERO)
        if total_due <= ZERO:
            raise ValidationError({"items": "Nothing is due on the selected items."})

        if amount is None:
            shares = due
        else:
            amount = PaymentService._to_amount(amount)
            if amount > total_due:
                raise ValidationError({"amount": f"Amount cannot exceed the total due ({total_due})."})
            shares = split_evenly(amount, due)

        results = []
        with transaction.atomic():
            for (patient_id, group), share in zip(groups.items(), shares):
                if share <= ZERO:
                    continue
                results.append(
                    PaymentService.create_batch_payment(
                        patient_id=patient_id,
                        amount=share,
                        target={"items": [i.ref.to_payload() for i in group]},
                        idempotency_key=f"{prefix}{patient_id}",
                        method=method,
                        created_by_user_id=created_by_user_id,
                        notes=notes,
                        complete=True,
                    )
                )

        outcome = MultiPatientPaymentResult(reference=idempotency_key, payments=results)
        logger.info(
            "Multi-patient payment %s recorded: patients=%s allocated=%s",
            idempotency_key,
            [r.payment.patient_id for r in results],
            outcome.allocated_amount,
        )
        return outcome
