# hm_lab/billing/gateway.py
"""
bKash tokenized-checkout client.

Calls used by the payment flow:

- create: gateway payment id + redirect URL
- execute: transaction status after the payer approves
- query: current transaction status, for payments whose execute never arrived
- refund: returns a completed transaction to the payer
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache

import requests
from django.conf import settings

from hm_lab.billing.models import PaymentStatus

logger = logging.getLogger(__name__)

# Tokens are valid for one hour; refresh a little earlier.
TOKEN_TTL_SECONDS = 55 * 60


class GatewayError(Exception):
    """Gateway answered, but not with something we can use."""


@dataclass(frozen=True)
class GatewayPayment:
    gateway_payment_id: str
    redirect_url: str


@dataclass(frozen=True)
class GatewayExecution:
    gateway_payment_id: str
    transaction_status: str
    transaction_id: str = ""
    amount: str = ""


@dataclass(frozen=True)
class GatewayRefund:
    refund_transaction_id: str
    original_transaction_id: str = ""
    amount: str = ""


def map_gateway_status(transaction_status: str | None) -> str:
    """
    Completed -> completed, Failed -> failed, anything else -> pending.
    """
    if transaction_status == "Completed":
        return PaymentStatus.COMPLETED
    if transaction_status == "Failed":
        return PaymentStatus.FAILED
    return PaymentStatus.PENDING


def _execution(data: dict, gateway_payment_id: str) -> GatewayExecution:
    return GatewayExecution(
        gateway_payment_id=data.get("paymentID") or gateway_payment_id,
        transaction_status=data.get("transactionStatus") or "",
        transaction_id=data.get("trxID") or "",
        amount=data.get("amount") or "",
    )


class BkashGateway:
    def __init__(
        self,
        *,
        base_url: str,
        username: str,
        password: str,
        app_key: str,
        app_secret: str,
        callback_url: str,
        timeout: float = 15.0,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.app_key = app_key
        self.app_secret = app_secret
        self.callback_url = callback_url
        self.timeout = timeout
        self.session = session or requests.Session()

        self._lock = threading.Lock()
        self._token: str | None = None
        self._token_expires_at = 0.0

    @classmethod
    def from_settings(cls) -> "BkashGateway":
        return cls(
            base_url=settings.BKASH_BASE_URL,
            username=settings.BKASH_USERNAME,
            password=settings.BKASH_PASSWORD,
            app_key=settings.BKASH_APP_KEY,
            app_secret=settings.BKASH_APP_SECRET,
            callback_url=settings.BKASH_CALLBACK_URL,
            timeout=settings.BKASH_TIMEOUT_SECONDS,
        )

    def _post(self, path: str, *, json: dict, headers: dict) -> dict:
        r = self.session.post(
            f"{self.base_url}{path}",
            json=json,
            headers={"Content-Type": "application/json", "Accept": "application/json", **headers},
            timeout=self.timeout,
        )
        return self._decode(r, path)

    def _get(self, path: str, *, headers: dict) -> dict:
        r = self.session.get(
            f"{self.base_url}{path}",
            headers={"Accept": "application/json", **headers},
            timeout=self.timeout,
        )
        return self._decode(r, path)

    @staticmethod
    def _decode(r, path: str) -> dict:
        r.raise_for_status()
        try:
            data = r.json()
        except ValueError:
            raise GatewayError(f"Non-JSON response from {path}")
        if not isinstance(data, dict):
            raise GatewayError(f"Unexpected response from {path}")
        return data

    def _access_token(self) -> str:
        with self._lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            data = self._post(
                "/tokenized/checkout/token/grant",
                json={"app_key": self.app_key, "app_secret": self.app_secret},
                headers={"username": self.username, "password": self.password},
            )
            token = data.get("id_token")
            if not token:
                raise GatewayError(f"Token grant failed: {data.get('statusMessage') or data}")

            self._token = token
            self._token_expires_at = time.monotonic() + TOKEN_TTL_SECONDS
            return token

    def _auth_headers(self) -> dict:
        return {"Authorization": self._access_token(), "X-APP-Key": self.app_key}

    def create_payment(self, *, amount: Decimal, reference: str, payer_reference: str = "") -> GatewayPayment:
        data = self._post(
            "/tokenized/checkout/create",
            json={
                "mode": "0011",
                "payerReference": payer_reference or reference,
                "callbackURL": self.callback_url,
                "amount": f"{Decimal(amount):.2f}",
                "currency": "BDT",
                "intent": "sale",
                "merchantInvoiceNumber": reference,
            },
            headers=self._auth_headers(),
        )
        payment_id = data.get("paymentID")
        if not payment_id:
            raise GatewayError(f"Create payment failed: {data.get('statusMessage') or data}")

        logger.info("bKash payment created: reference=%s paymentID=%s", reference, payment_id)
        return GatewayPayment(gateway_payment_id=payment_id, redirect_url=data.get("bkashURL", ""))

    def execute_payment(self, *, gateway_payment_id: str) -> GatewayExecution:
        data = self._post(
            "/tokenized/checkout/execute",
            json={"paymentID": gateway_payment_id},
            headers=self._auth_headers(),
        )
        logger.info(
            "bKash payment executed: paymentID=%s status=%s",
            gateway_payment_id,
            data.get("transactionStatus"),
        )
        return _execution(data, gateway_payment_id)


    def query_payment(self, *, gateway_payment_id: str) -> GatewayExecution:
        data = self._get(
            f"/tokenized/checkout/payment/query/{gateway_payment_id}",
            headers=self._auth_headers(),
        )
        logger.info(
            "bKash payment queried: paymentID=%s status=%s",
            gateway_payment_id,
            data.get("transactionStatus"),
        )
        return _execution(data, gateway_payment_id)

    def refund_payment(
        self, *, gateway_payment_id: str, transaction_id: str, amount: Decimal, reason: str = ""
    ) -> GatewayRefund:
        data = self._post(
            "/tokenized/checkout/payment/refund",
            json={
                "paymentID": gateway_payment_id,
                "trxID": transaction_id,
                "amount": f"{Decimal(amount):.2f}",
                "reason": reason or "Customer request",
                "sku": "lab-test",
            },
            headers=self._auth_headers(),
        )
        refund_id = data.get("refundTrxID") or data.get("refundTransactionID")
        if not refund_id:
            raise GatewayError(f"Refund failed: {data.get('statusMessage') or data}")

        logger.info("bKash payment refunded: paymentID=%s refund=%s", gateway_payment_id, refund_id)
        return GatewayRefund(
            refund_transaction_id=refund_id,
            original_transaction_id=data.get("originalTrxID") or transaction_id,
            amount=data.get("amount") or data.get("refundAmount") or "",
        )


@lru_cache(maxsize=1)
def get_gateway() -> BkashGateway:
    return BkashGateway.from_settings()
