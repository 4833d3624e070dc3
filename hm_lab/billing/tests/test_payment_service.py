from decimal import Decimal

import pytest
import requests
from rest_framework.exceptions import ValidationError

from hm_lab.billing import gateway as gateway_module
from hm_lab.billing.gateway import GatewayExecution, GatewayPayment, GatewayRefund
from hm_lab.billing.models import LabPayment, PaymentAllocation, PaymentStatus
from hm_lab.billing.services import PaymentService
from hm_lab.common.api.exceptions import (
    AlreadyProcessedError,
    DuplicatePaymentError,
    ExternalServiceError,
    InvalidStateError,
)
from hm_lab.lab.items import PrescriptionItemRef, load_item
from hm_lab.orders.services import OrderService


class FakeGateway:
    def __init__(self, *, status="Completed", fail_on=None):
        self.status = status
        self.fail_on = fail_on
        self.created = []
        self.executed = []
        self.refunded = []

    def create_payment(self, *, amount, reference, payer_reference=""):
        if self.fail_on == "create":
            raise requests.ConnectionError("gateway down")
        self.created.append((reference, amount))
        return GatewayPayment(gateway_payment_id=f"GW-{reference}", redirect_url=f"https://pay.example/{reference}")

    def execute_payment(self, *, gateway_payment_id):
        if self.fail_on == "execute":
            raise requests.Timeout("gateway slow")
        self.executed.append(gateway_payment_id)
        return GatewayExecution(
            gateway_payment_id=gateway_payment_id,
            transaction_status=self.status,
            transaction_id="TRX-1",
        )

    def query_payment(self, *, gateway_payment_id):
        if self.fail_on == "query":
            raise requests.ConnectionError("gateway down")
        return GatewayExecution(
            gateway_payment_id=gateway_payment_id,
            transaction_status=self.status,
            transaction_id="TRX-Q",
        )

    def refund_payment(self, *, gateway_payment_id, transaction_id, amount, reason=""):
        if self.fail_on == "refund":
            raise requests.Timeout("gateway slow")
        self.refunded.append((gateway_payment_id, transaction_id, amount))
        return GatewayRefund(refund_transaction_id=f"RF-{transaction_id}", original_transaction_id=transaction_id)


@pytest.fixture
def fake_gateway(monkeypatch):
    def install(**kwargs):
        gw = FakeGateway(**kwargs)
        monkeypatch.setattr(gateway_module, "get_gateway", lambda: gw)
        return gw

    return install


@pytest.mark.django_db
def test_pending_payment_allocates_nothing_until_completed(patient, order):
    result = PaymentService.create_batch_payment(
        patient_id=patient.id,
        amount="500",
        target={"orders": [order.id]},
        idempotency_key="key-1",
    )

    assert result.payment.status == PaymentStatus.PENDING
    assert result.allocation is None
    assert not PaymentAllocation.objects.exists()

    allocation = PaymentService.complete_payment(payment_id=result.payment.id, transaction_id="TX-9")

    assert allocation.allocated_amount == Decimal("500.00")
    result.payment.refresh_from_db()
    assert result.payment.status == PaymentStatus.COMPLETED
    assert result.payment.transaction_id == "TX-9"
    assert result.payment.completed_at is not None


@pytest.mark.django_db
def test_duplicate_reference_returns_existing_payment(patient, order):
    first = PaymentService.create_batch_payment(
        patient_id=patient.id,
        amount="500",
        target={"orders": [order.id]},
        idempotency_key="key-dup",
        method="offline_cash",
        complete=True,
    )

    with pytest.raises(DuplicatePaymentError) as exc:
        PaymentService.create_batch_payment(
            patient_id=patient.id,
            amount="500",
            target={"orders": [order.id]},
            idempotency_key="key-dup",
            method="offline_cash",
            complete=True,
        )

    assert exc.value.payment.id == first.payment.id
    assert LabPayment.objects.count() == 1
    order.refresh_from_db()
    assert order.order_paid == Decimal("500.00")


@pytest.mark.django_db
@pytest.mark.parametrize("amount", ["0", "-5", "abc", "NaN"])
def test_invalid_amount_rejected(patient, order, amount):
    with pytest.raises(ValidationError):
        PaymentService.create_batch_payment(
            patient_id=patient.id, amount=amount, target={"orders": [order.id]}, idempotency_key="k"
        )
    assert not LabPayment.objects.exists()


@pytest.mark.django_db
def test_unknown_method_rejected(patient, order):
    with pytest.raises(ValidationError):
        PaymentService.create_batch_payment(
            patient_id=patient.id,
            amount="100",
            target={"orders": [order.id]},
            idempotency_key="k",
            method="cheque",
        )


@pytest.mark.django_db
def test_empty_target_rejected(patient):
    with pytest.raises(ValidationError):
        PaymentService.create_batch_payment(
            patient_id=patient.id, amount="100", target={"orders": [], "items": []}, idempotency_key="k"
        )


@pytest.mark.django_db
def test_foreign_order_target_rejected(patient, other_patient, cbc):
    foreign = OrderService.create_order(patient_id=other_patient.id, test_ids=[cbc.id])

    with pytest.raises(ValidationError):
        PaymentService.create_batch_payment(
            patient_id=patient.id, amount="100", target={"orders": [foreign.id]}, idempotency_key="k"
        )


@pytest.mark.django_db
def test_gateway_success_completes_and_allocates(patient, order, fake_gateway):
    gw = fake_gateway(status="Completed")

    initiation = PaymentService.initiate_gateway_payment(
        patient_id=patient.id, amount="500", target={"orders": [order.id]}, idempotency_key="gw-1"
    )

    assert initiation.redirect_url == "https://pay.example/gw-1"
    assert initiation.payment.status == PaymentStatus.PENDING
    assert initiation.payment.gateway_payment_id == "GW-gw-1"
    assert gw.created == [("gw-1", Decimal("500.00"))]

    result = PaymentService.execute_gateway_payment(payment_id=initiation.payment.id)

    assert result.payment.status == PaymentStatus.COMPLETED
    assert result.payment.transaction_id == "TRX-1"
    assert result.allocation.allocated_amount == Decimal("500.00")
    order.refresh_from_db()
    assert order.order_paid == Decimal("500.00")

    with pytest.raises(AlreadyProcessedError):
        PaymentService.execute_gateway_payment(payment_id=initiation.payment.id)


@pytest.mark.django_db
def test_gateway_failure_marks_payment_failed(patient, order, fake_gateway):
    fake_gateway(status="Failed")
    initiation = PaymentService.initiate_gateway_payment(
        patient_id=patient.id, amount="500", target={"orders": [order.id]}, idempotency_key="gw-2"
    )

    result = PaymentService.execute_gateway_payment(payment_id=initiation.payment.id)

    assert result.payment.status == PaymentStatus.FAILED
    assert not PaymentAllocation.objects.exists()
    order.refresh_from_db()
    assert order.order_paid == Decimal("0.00")


@pytest.mark.django_db
def test_gateway_unknown_status_leaves_payment_pending(patient, order, fake_gateway):
    fake_gateway(status="Initiated")
    initiation = PaymentService.initiate_gateway_payment(
        patient_id=patient.id, amount="500", target={"orders": [order.id]}, idempotency_key="gw-3"
    )

    result = PaymentService.execute_gateway_payment(payment_id=initiation.payment.id)

    assert result.payment.status == PaymentStatus.PENDING
    assert result.allocation is None


@pytest.mark.django_db
def test_gateway_execute_error_keeps_payment_pending(patient, order, fake_gateway):
    fake_gateway(fail_on="execute")
    initiation = PaymentService.initiate_gateway_payment(
        patient_id=patient.id, amount="500", target={"orders": [order.id]}, idempotency_key="gw-4"
    )

    with pytest.raises(ExternalServiceError):
        PaymentService.execute_gateway_payment(payment_id=initiation.payment.id)

    payment = LabPayment.objects.get(id=initiation.payment.id)
    assert payment.status == PaymentStatus.PENDING
    assert not PaymentAllocation.objects.exists()


@pytest.mark.django_db
def test_gateway_create_error_records_nothing(patient, order, fake_gateway):
    fake_gateway(fail_on="create")

    with pytest.raises(ExternalServiceError):
        PaymentService.initiate_gateway_payment(
            patient_id=patient.id, amount="500", target={"orders": [order.id]}, idempotency_key="gw-5"
        )

    assert not LabPayment.objects.exists()


@pytest.mark.django_db
def test_execute_requires_gateway_payment(patient, order):
    result = PaymentService.create_batch_payment(
        patient_id=patient.id, amount="100", target={"orders": [order.id]}, idempotency_key="plain"
    )

    with pytest.raises(ValidationError):
        PaymentService.execute_gateway_payment(payment_id=result.payment.id)


def _gateway_paid(patient, target, key):
    initiation = PaymentService.initiate_gateway_payment(
        patient_id=patient.id, amount="500", target=target, idempotency_key=key
    )
    return PaymentService.execute_gateway_payment(payment_id=initiation.payment.id).payment


@pytest.mark.django_db
def test_query_settles_a_pending_gateway_payment(patient, order, fake_gateway):
    fake_gateway(status="Completed")
    initiation = PaymentService.initiate_gateway_payment(
        patient_id=patient.id, amount="500", target={"orders": [order.id]}, idempotency_key="gw-q"
    )

    status = PaymentService.query_gateway_payment(payment_id=initiation.payment.id)

    assert status.transaction_status == "Completed"
    assert status.result.payment.status == PaymentStatus.COMPLETED
    assert status.result.payment.transaction_id == "TRX-Q"
    assert status.result.allocation.allocated_amount == Decimal("500.00")

    # settled payments are only reported
    again = PaymentService.query_gateway_payment(payment_id=initiation.payment.id)
    assert again.result.allocation is None
    assert PaymentAllocation.objects.filter(payment_id=initiation.payment.id).count() == 2


@pytest.mark.django_db
def test_query_gateway_error_is_external_failure(patient, order, fake_gateway):
    fake_gateway(fail_on="query")
    initiation = PaymentService.initiate_gateway_payment(
        patient_id=patient.id, amount="500", target={"orders": [order.id]}, idempotency_key="gw-q2"
    )

    with pytest.raises(ExternalServiceError):
        PaymentService.query_gateway_payment(payment_id=initiation.payment.id)


@pytest.mark.django_db
def test_refund_releases_allocations(patient, order, fake_gateway):
    gw = fake_gateway(status="Completed")
    payment = _gateway_paid(patient, {"orders": [order.id]}, "gw-rf")
    order.refresh_from_db()
    assert order.order_paid == Decimal("500.00")

    refunded = PaymentService.refund_gateway_payment(payment_id=payment.id, reason="changed mind")

    assert refunded.status == PaymentStatus.REFUNDED
    assert refunded.refunded_amount == Decimal("500.00")
    assert refunded.refund_transaction_id == "RF-TRX-1"
    assert refunded.refund_reason == "changed mind"
    assert gw.refunded == [("GW-gw-rf", "TRX-1", Decimal("500.00"))]
    assert not PaymentAllocation.objects.filter(payment=payment).exists()
    order.refresh_from_db()
    assert order.order_paid == Decimal("0.00")
    assert order.order_due == Decimal("1000.00")
    assert order.sample_allowed is False

    with pytest.raises(AlreadyProcessedError):
        PaymentService.refund_gateway_payment(payment_id=payment.id)


@pytest.mark.django_db
def test_refund_removes_prescription_payment_entries(patient, prescription, fake_gateway):
    fake_gateway(status="Completed")
    ref = PrescriptionItemRef(prescription_id=prescription.id, test_name="CBC")
    payment = _gateway_paid(patient, {"items": [ref.token]}, "gw-rf-rx")
    assert load_item(ref).allocated() == Decimal("300.00")

    PaymentService.refund_gateway_payment(payment_id=payment.id)

    assert load_item(ref).allocated() == Decimal("0.00")
    prescription.refresh_from_db()
    assert prescription.find_test("CBC")[1]["payments"] == []


@pytest.mark.django_db
def test_refund_requires_completed_payment(patient, order, fake_gateway):
    gw = fake_gateway(status="Initiated")
    initiation = PaymentService.initiate_gateway_payment(
        patient_id=patient.id, amount="500", target={"orders": [order.id]}, idempotency_key="gw-rf-p"
    )

    with pytest.raises(InvalidStateError):
        PaymentService.refund_gateway_payment(payment_id=initiation.payment.id)
    assert gw.refunded == []


@pytest.mark.django_db
def test_refund_gateway_error_keeps_payment_completed(patient, order, fake_gateway):
    fake_gateway(status="Completed")
    payment = _gateway_paid(patient, {"orders": [order.id]}, "gw-rf-e")
    fake_gateway(fail_on="refund")

    with pytest.raises(ExternalServiceError):
        PaymentService.refund_gateway_payment(payment_id=payment.id)

    payment.refresh_from_db()
    assert payment.status == PaymentStatus.COMPLETED
    assert PaymentAllocation.objects.filter(payment=payment).count() == 2


@pytest.mark.django_db
def test_duplicate_key_of_another_patient_hides_the_payment(patient, other_patient, order, cbc):
    foreign = OrderService.create_order(patient_id=other_patient.id, test_ids=[cbc.id])
    PaymentService.create_batch_payment(
        patient_id=other_patient.id, amount="100", target={"orders": [foreign.id]}, idempotency_key="shared"
    )

    with pytest.raises(DuplicatePaymentError) as exc:
        PaymentService.create_batch_payment(
            patient_id=patient.id, amount="100", target={"orders": [order.id]}, idempotency_key="shared"
        )

    assert exc.value.payment is None


@pytest.mark.django_db
def test_overlong_key_is_rejected(patient, order):
    with pytest.raises(ValidationError):
        PaymentService.create_batch_payment(
            patient_id=patient.id, amount="100", target={"orders": [order.id]}, idempotency_key="k" * 129
        )


@pytest.fixture
def two_patient_items(patient, other_patient, order, cbc, lipid):
    foreign = OrderService.create_order(patient_id=other_patient.id, test_ids=[cbc.id])
    mine = [f"order-item-{i.id}" for i in order.items.order_by("id")]
    theirs = [f"order-item-{foreign.items.get().id}"]
    return order, foreign, mine + theirs


@pytest.mark.django_db
def test_multi_patient_payment_pays_each_patient_in_full(patient, other_patient, two_patient_items):
    order, foreign, items = two_patient_items

    result = PaymentService.create_multi_patient_payment(items=items, idempotency_key="counter-1")

    assert result.allocated_amount == Decimal("1300.00")
    by_patient = {r.payment.patient_id: r.payment for r in result.payments}
    assert by_patient[patient.id].reference == f"counter-1:patient-{patient.id}"
    assert by_patient[patient.id].amount == Decimal("1000.00")
    assert by_patient[other_patient.id].amount == Decimal("300.00")
    assert all(p.status == PaymentStatus.COMPLETED for p in by_patient.values())
    assert all(p.method == "offline_cash" for p in by_patient.values())

    order.refresh_from_db()
    foreign.refresh_from_db()
    assert order.order_due == Decimal("0.00")
    assert foreign.order_due == Decimal("0.00")


@pytest.mark.django_db
def test_multi_patient_amount_is_split_across_patients(patient, other_patient, two_patient_items):
    order, foreign, items = two_patient_items

    result = PaymentService.create_multi_patient_payment(items=items, amount="400", idempotency_key="counter-2")

    amounts = {r.payment.patient_id: r.payment.amount for r in result.payments}
    assert amounts == {patient.id: Decimal("200.00"), other_patient.id: Decimal("200.00")}
    foreign.refresh_from_db()
    assert foreign.order_paid == Decimal("200.00")


@pytest.mark.django_db
def test_multi_patient_rejects_overpayment_and_duplicates(two_patient_items):
    _, _, items = two_patient_items

    with pytest.raises(ValidationError):
        PaymentService.create_multi_patient_payment(items=items, amount="1300.01", idempotency_key="counter-3")
    assert not LabPayment.objects.exists()

    PaymentService.create_multi_patient_payment(items=items, idempotency_key="counter-3")
    with pytest.raises(DuplicatePaymentError):
        PaymentService.create_multi_patient_payment(items=items, idempotency_key="counter-3")
    assert LabPayment.objects.count() == 2


@pytest.mark.django_db
def test_multi_patient_rejects_gateway_method_and_unknown_items(two_patient_items):
    _, _, items = two_patient_items

    with pytest.raises(ValidationError):
        PaymentService.create_multi_patient_payment(items=items, idempotency_key="c-4", method="bkash")
    with pytest.raises(ValidationError):
        PaymentService.create_multi_patient_payment(items=["order-item-999999"], idempotency_key="c-5")
