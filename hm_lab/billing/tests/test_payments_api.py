from decimal import Decimal

import pytest

from hm_lab.billing import gateway as gateway_module
from hm_lab.billing.gateway import GatewayPayment
from hm_lab.billing.models import LabPayment, PaymentStatus


def _payments_url(patient):
    return f"/api/v1/lab/patients/{patient.id}/payments/"


@pytest.mark.django_db
def test_patient_creates_pending_payment(patient_client, patient, order):
    resp = patient_client.post(
        _payments_url(patient),
        {"amount": "500.00", "target": {"orders": [order.id]}},
        format="json",
        HTTP_IDEMPOTENCY_KEY="pay-api-1",
    )

    assert resp.status_code == 201, resp.content
    payment = resp.data["payment"]
    assert payment["reference"] == "pay-api-1"
    assert payment["status"] == PaymentStatus.PENDING
    assert payment["allocations"] == []
    assert "remaining_amount" not in resp.data


@pytest.mark.django_db
def test_duplicate_payment_returns_conflict_with_existing(patient_client, patient, order):
    body = {"amount": "500.00", "target": {"orders": [order.id]}, "idempotency_key": "pay-api-dup"}

    first = patient_client.post(_payments_url(patient), body, format="json")
    assert first.status_code == 201

    again = patient_client.post(_payments_url(patient), body, format="json")

    assert again.status_code == 409
    err = again.json()["error"]
    assert err["code"] == "duplicate_payment"
    assert err["details"]["payment_id"] == first.data["payment"]["id"]
    assert err["details"]["reference"] == "pay-api-dup"
    assert err["request_id"]
    assert LabPayment.objects.count() == 1


@pytest.mark.django_db
def test_missing_idempotency_key_is_rejected(patient_client, patient, order):
    resp = patient_client.post(
        _payments_url(patient), {"amount": "10.00", "target": {"orders": [order.id]}}, format="json"
    )

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


@pytest.mark.django_db
def test_patient_cannot_pay_for_someone_else(patient_client, other_patient):
    resp = patient_client.post(
        _payments_url(other_patient),
        {"amount": "10.00", "target": {"orders": [1]}, "idempotency_key": "x"},
        format="json",
    )

    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "permission_denied"


@pytest.mark.django_db
def test_admin_payment_is_completed_and_allocated(billing_client, billing_user, patient, order):
    resp = billing_client.post(
        f"/api/v1/lab/patients/{patient.id}/payments/admin/",
        {"amount": "1200.00", "target": {"orders": [order.id]}, "method": "offline_cash"},
        format="json",
        HTTP_IDEMPOTENCY_KEY="counter-1",
    )

    assert resp.status_code == 201, resp.content
    assert resp.data["payment"]["status"] == PaymentStatus.COMPLETED
    assert resp.data["payment"]["created_by_user_id"] == billing_user.id
    assert resp.data["allocated_amount"] == "1000.00"
    assert resp.data["remaining_amount"] == "200.00"
    assert len(resp.data["payment"]["allocations"]) == 2

    order.refresh_from_db()
    assert order.order_due == Decimal("0.00")


@pytest.mark.django_db
def test_admin_payment_rejects_gateway_method(billing_client, patient, order):
    resp = billing_client.post(
        f"/api/v1/lab/patients/{patient.id}/payments/admin/",
        {"amount": "100.00", "target": {"orders": [order.id]}, "method": "bkash", "idempotency_key": "c-2"},
        format="json",
    )

    assert resp.status_code == 400


@pytest.mark.django_db
def test_patient_cannot_record_admin_payment(patient_client, patient, order):
    resp = patient_client.post(
        f"/api/v1/lab/patients/{patient.id}/payments/admin/",
        {"amount": "100.00", "target": {"orders": [order.id]}, "idempotency_key": "c-3"},
        format="json",
    )

    assert resp.status_code == 403


@pytest.mark.django_db
def test_pending_payments_lists_orders_with_due(billing_client, patient, order):
    url = f"/api/v1/lab/patients/{patient.id}/pending-payments/"

    resp = billing_client.get(url)
    assert resp.status_code == 200
    assert [o["id"] for o in resp.data["results"]] == [order.id]

    billing_client.post(
        f"/api/v1/lab/patients/{patient.id}/payments/admin/",
        {"amount": "1000.00", "target": {"orders": [order.id]}, "idempotency_key": "c-4"},
        format="json",
    )

    resp = billing_client.get(url)
    assert resp.data["count"] == 0


@pytest.mark.django_db
def test_payment_history_lists_patient_payments(patient_client, patient, order):
    patient_client.post(
        _payments_url(patient),
        {"amount": "100.00", "target": {"orders": [order.id]}, "idempotency_key": "h-1"},
        format="json",
    )

    resp = patient_client.get(_payments_url(patient))

    assert resp.status_code == 200
    assert [p["reference"] for p in resp.data["results"]] == ["h-1"]


@pytest.mark.django_db
def test_gateway_initiate_and_execute_via_api(patient_client, patient, order, monkeypatch):
    class Gw:
        def create_payment(self, *, amount, reference, payer_reference=""):
            return GatewayPayment(gateway_payment_id="P-77", redirect_url="https://bkash.example/P-77")

        def execute_payment(self, *, gateway_payment_id):
            from hm_lab.billing.gateway import GatewayExecution

            return GatewayExecution(gateway_payment_id, "Completed", "TRX-77")

    monkeypatch.setattr(gateway_module, "get_gateway", lambda: Gw())

    resp = patient_client.post(
        "/api/v1/lab/payments/gateway/",
        {"patient_id": patient.id, "amount": "500.00", "target": {"orders": [order.id]}},
        format="json",
        HTTP_IDEMPOTENCY_KEY="gw-api-1",
    )
    assert resp.status_code == 201, resp.content
    assert resp.data["redirect_url"] == "https://bkash.example/P-77"
    payment_id = resp.data["payment"]["id"]

    resp = patient_client.post(f"/api/v1/lab/payments/{payment_id}/execute/")

    assert resp.status_code == 200
    assert resp.data["payment"]["status"] == PaymentStatus.COMPLETED
    assert resp.data["remaining_amount"] == "0.00"

    resp = patient_client.get(f"/api/v1/lab/payments/{payment_id}/")
    assert resp.status_code == 200
    assert resp.data["transaction_id"] == "TRX-77"


@pytest.mark.django_db
def test_gateway_outage_maps_to_502(patient_client, patient, order, monkeypatch):
    import requests

    class Down:
        def create_payment(self, **kwargs):
            raise requests.ConnectionError("down")

    monkeypatch.setattr(gateway_module, "get_gateway", lambda: Down())

    resp = patient_client.post(
        "/api/v1/lab/payments/gateway/",
        {"patient_id": patient.id, "amount": "500.00", "target": {"orders": [order.id]}, "idempotency_key": "gw-x"},
        format="json",
    )

    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "external_failure"


def _pending_transfer(patient_client, patient, order, key):
    resp = patient_client.post(
        _payments_url(patient),
        {"amount": "500.00", "target": {"orders": [order.id]}, "method": "bank_transfer"},
        format="json",
        HTTP_IDEMPOTENCY_KEY=key,
    )
    assert resp.status_code == 201, resp.content
    return resp.data["payment"]["id"]


@pytest.mark.django_db
def test_billing_completes_pending_bank_transfer_once(patient_client, billing_client, patient, order):
    payment_id = _pending_transfer(patient_client, patient, order, "bt-1")

    resp = billing_client.post(
        f"/api/v1/lab/payments/{payment_id}/complete/", {"transaction_id": "BANK-778"}, format="json"
    )

    assert resp.status_code == 200, resp.content
    assert resp.data["payment"]["status"] == PaymentStatus.COMPLETED
    assert resp.data["payment"]["transaction_id"] == "BANK-778"
    assert resp.data["allocated_amount"] == "500.00"
    order.refresh_from_db()
    assert order.order_paid == Decimal("500.00")

    again = billing_client.post(f"/api/v1/lab/payments/{payment_id}/complete/", {}, format="json")

    assert again.status_code == 409
    assert again.json()["error"]["code"] == "already_processed"
    order.refresh_from_db()
    assert order.order_paid == Decimal("500.00")


@pytest.mark.django_db
def test_patient_cannot_complete_own_payment(patient_client, patient, order):
    payment_id = _pending_transfer(patient_client, patient, order, "bt-2")

    resp = patient_client.post(f"/api/v1/lab/payments/{payment_id}/complete/", {}, format="json")

    assert resp.status_code == 403
    assert LabPayment.objects.get(id=payment_id).status == PaymentStatus.PENDING


@pytest.mark.django_db
def test_duplicate_key_against_other_patient_reveals_nothing(
    patient_client, billing_client, patient, other_patient, cbc
):
    from hm_lab.orders.services import OrderService

    foreign = OrderService.create_order(patient_id=other_patient.id, test_ids=[cbc.id])
    billing_client.post(
        f"/api/v1/lab/patients/{other_patient.id}/payments/",
        {"amount": "10.00", "target": {"orders": [foreign.id]}},
        format="json",
        HTTP_IDEMPOTENCY_KEY="reused",
    )

    resp = patient_client.post(
        _payments_url(patient),
        {"amount": "10.00", "target": {"orders": [foreign.id]}},
        format="json",
        HTTP_IDEMPOTENCY_KEY="reused",
    )

    assert resp.status_code == 409
    err = resp.json()["error"]
    assert err["code"] == "duplicate_payment"
    assert err["details"] is None


@pytest.mark.django_db
def test_admin_refunds_gateway_payment(api_client, patient, order, monkeypatch):
    from hm_lab.billing.gateway import GatewayExecution, GatewayRefund

    class Gw:
        def create_payment(self, *, amount, reference, payer_reference=""):
            return GatewayPayment(gateway_payment_id="P-9", redirect_url="https://bkash.example/P-9")

        def query_payment(self, *, gateway_payment_id):
            return GatewayExecution(gateway_payment_id, "Completed", "TRX-9")

        def refund_payment(self, *, gateway_payment_id, transaction_id, amount, reason=""):
            return GatewayRefund(refund_transaction_id="RF-9", original_transaction_id=transaction_id)

    monkeypatch.setattr(gateway_module, "get_gateway", lambda: Gw())

    resp = api_client.post(
        "/api/v1/lab/payments/gateway/",
        {"patient_id": patient.id, "amount": "500.00", "target": {"orders": [order.id]}, "idempotency_key": "gw-r"},
        format="json",
    )
    payment_id = resp.data["payment"]["id"]

    resp = api_client.get(f"/api/v1/lab/payments/{payment_id}/query/")
    assert resp.status_code == 200, resp.content
    assert resp.data["transaction_status"] == "Completed"
    assert resp.data["payment"]["status"] == PaymentStatus.COMPLETED

    resp = api_client.post(
        f"/api/v1/lab/payments/{payment_id}/refund/", {"reason": "test ordered twice"}, format="json"
    )
    assert resp.status_code == 200, resp.content
    assert resp.data["status"] == PaymentStatus.REFUNDED
    assert resp.data["refund_transaction_id"] == "RF-9"
    assert resp.data["allocations"] == []

    order.refresh_from_db()
    assert order.order_paid == Decimal("0.00")


@pytest.mark.django_db
def test_billing_cannot_refund(billing_client, patient, order):
    payment_id = LabPayment.objects.create(
        reference="r-1", patient=patient, amount=Decimal("10.00"), target={"orders": [order.id]}
    ).id

    resp = billing_client.post(f"/api/v1/lab/payments/{payment_id}/refund/", {}, format="json")

    assert resp.status_code == 403


@pytest.mark.django_db
def test_admin_batch_over_two_patients(billing_client, patient, other_patient, order, cbc):
    from hm_lab.orders.services import OrderService

    foreign = OrderService.create_order(patient_id=other_patient.id, test_ids=[cbc.id])
    items = [f"order-item-{i.id}" for i in order.items.all()] + [f"order-item-{foreign.items.get().id}"]

    resp = billing_client.post(
        "/api/v1/lab/payments/admin-batch/",
        {"items": items, "method": "offline_card"},
        format="json",
        HTTP_IDEMPOTENCY_KEY="desk-1",
    )

    assert resp.status_code == 201, resp.content
    assert resp.data["reference"] == "desk-1"
    assert resp.data["allocated_amount"] == "1300.00"
    assert sorted(p["patient"] for p in resp.data["payments"]) == sorted([patient.id, other_patient.id])
    assert all(p["status"] == PaymentStatus.COMPLETED for p in resp.data["payments"])

    again = billing_client.post(
        "/api/v1/lab/payments/admin-batch/", {"items": items}, format="json", HTTP_IDEMPOTENCY_KEY="desk-1"
    )
    assert again.status_code == 409


@pytest.mark.django_db
def test_patient_cannot_use_admin_batch(patient_client, order):
    resp = patient_client.post(
        "/api/v1/lab/payments/admin-batch/",
        {"items": [f"order-item-{order.items.first().id}"], "idempotency_key": "desk-2"},
        format="json",
    )
    assert resp.status_code == 403
