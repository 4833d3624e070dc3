# hm_lab/common/api/exceptions.py
from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Any

from django.http import Http404
from rest_framework import status
from rest_framework.exceptions import APIException, NotAuthenticated, PermissionDenied, ValidationError
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)


def ensure_request_id(request) -> str:
    """
    Ensures request has a stable request_id attribute and returns it.
    Safe to call from middleware and DRF exception handler.
    """
    rid = getattr(request, "request_id", None) if request is not None else None
    if not rid:
        rid = uuid.uuid4().hex
        if request is not None:
            setattr(request, "request_id", rid)
    return rid


def build_error_envelope(*, request=None, code: str, message: str, details: Any = None) -> dict[str, Any]:
    """
    Canonical error envelope.
    Reusable from Django middleware (JsonResponse) and DRF (Response).
    """
    rid = ensure_request_id(request)
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details,
            "request_id": rid,
        }
    }


# -------------------------------------------------------------------
# Domain errors
# -------------------------------------------------------------------

class ConflictError(APIException):
    """
    409 Conflict that still flows through the global exception handler.
    Use when business rules block an action.
    """
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Conflict."
    default_code = "conflict"

    def __init__(self, detail=None, code=None):
        super().__init__(detail=detail or self.default_detail, code=code or self.default_code)


class InvalidStateError(ConflictError):
    """Item or payment is not in a status that permits the requested transition."""
    default_detail = "Operation not allowed in the current status."
    default_code = "invalid_state"

    def __init__(self, detail=None, *, current_status: str | None = None, expected=None):
        super().__init__(detail=detail)
        self.current_status = current_status
        self.expected = list(expected) if expected else []


class InsufficientPaymentError(ConflictError):
    """
    Payment gate failed. Carries paid/required so clients can show the shortfall.
    """
    default_detail = "Insufficient payment."
    default_code = "insufficient_payment"

    def __init__(self, detail=None, *, paid: Decimal, required: Decimal):
        super().__init__(detail=detail)
        self.paid = Decimal(paid).quantize(Decimal("0.01"))
        self.required = Decimal(required).quantize(Decimal("0.01"))

    @property
    def shortfall(self) -> Decimal:
        return max(Decimal("0.00"), self.required - self.paid)


class DuplicatePaymentError(ConflictError):
    """A payment with the same idempotency reference already exists."""
    default_detail = "Payment already exists for this reference."
    default_code = "duplicate_payment"

    def __init__(self, detail=None, *, payment=None):
        super().__init__(detail=detail)
        self.payment = payment


class SampleIdConflictError(ConflictError):
    """Another item was given the same sample id first; the caller may retry."""
    default_detail = "Sample id already in use."
    default_code = "sample_id_conflict"


class AlreadyProcessedError(ConflictError):
    default_detail = "Payment has already been processed."
    default_code = "already_processed"


class ExternalServiceError(APIException):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "External service failed."
    default_code = "external_failure"


def _code_for(exc: Exception, http_status: int) -> str:
    if isinstance(exc, ValidationError):
        return "validation_error"
    if isinstance(exc, NotAuthenticated):
        return "not_authenticated"
    if isinstance(exc, PermissionDenied):
        return "permission_denied"
    if isinstance(exc, Http404):
        return "not_found"
    if isinstance(exc, APIException):
        return getattr(exc, "default_code", "api_error") or "api_error"
    if http_status >= 500:
        return "server_error"
    return "error"


def _extra_details(exc: Exception) -> dict[str, Any] | None:
    if isinstance(exc, InsufficientPaymentError):
        return {
            "paid": str(exc.paid),
            "required": str(exc.required),
            "shortfall": str(exc.shortfall),
        }
    if isinstance(exc, InvalidStateError) and exc.current_status:
        return {"current_status": exc.current_status, "expected": exc.expected}
    if isinstance(exc, DuplicatePaymentError) and exc.payment is not None:
        p = exc.payment
        return {
            "payment_id": p.id,
            "reference": p.reference,
            "status": p.status,
            "amount": str(p.amount),
        }
    return None


def api_exception_handler(exc: Exception, context: dict[str, Any]):
    request = context.get("request")
    response = drf_exception_handler(exc, context)

    # Truly unhandled error
    if response is None:
        logger.exception("Unhandled API error", exc_info=exc)
        return Response(
            build_error_envelope(
                request=request,
                code="server_error",
                message="Unexpected server error.",
                details=None,
            ),
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    http_status = response.status_code
    code = _code_for(exc, http_status)

    # DRF standardizes errors into response.data
    data = response.data

    # Message + details rules:
    # 1) If {"detail": "..."} only -> message=detail, details=None
    # 2) If {"detail": "...", ...} -> message=detail, details={...without detail}
    # 3) Otherwise -> message="Request failed.", details=data
    message = "Request failed."
    details = data

    if isinstance(data, dict) and "detail" in data:
        message = str(data.get("detail"))
        rest = {k: v for k, v in data.items() if k != "detail"}
        details = rest or None

    extra = _extra_details(exc)
    if extra:
        details = {**(details or {}), **extra}

    return Response(
        build_error_envelope(
            request=request,
            code=code,
            message=message,
            details=details,
        ),
        status=http_status,
        headers=response.headers,
    )
