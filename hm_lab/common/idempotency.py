# hm_lab/common/idempotency.py
"""
Replays the first response of a retried write that carries an
Idempotency-Key header.

Entries are scoped to (user, method, path, key). Payments do not use this:
their key is the ledger reference and a retry is answered with 409.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any

from django.conf import settings
from django.db import IntegrityError, transaction

from hm_lab.common.models import IdempotencyRecord

MAX_KEY_LENGTH = 255

_lock = threading.Lock()
_memory: dict[tuple, "CachedResponse"] = {}


@dataclass(frozen=True)
class CachedResponse:
    data: Any
    status_code: int


def get_key(request) -> str | None:
    key = (request.META.get("HTTP_IDEMPOTENCY_KEY") or "").strip()
    return key[:MAX_KEY_LENGTH] or None


def _scope(request, key: str) -> tuple[int, str, str, str]:
    user_id = getattr(getattr(request, "user", None), "id", None) or 0
    return (int(user_id), request.method.upper(), request.path, key)


def _durable() -> bool:
    return bool(getattr(settings, "COMMON_IDEMPOTENCY_USE_DB", False))


def load_response(request) -> CachedResponse | None:
    key = get_key(request)
    if key is None:
        return None
    scope = _scope(request, key)

    if not _durable():
        with _lock:
            return _memory.get(scope)

    user_id, method, path, key = scope
    rec = IdempotencyRecord.objects.filter(
        user_id=user_id, method=method, path=path, idempotency_key=key
    ).first()
    if rec is None:
        return None
    return CachedResponse(data=rec.response_data, status_code=rec.status_code)


def save_response(request, data, *, status_code: int) -> None:
    """First writer wins; later saves for the same scope are ignored."""
    key = get_key(request)
    if key is None:
        return
    scope = _scope(request, key)

    if not _durable():
        with _lock:
            _memory.setdefault(scope, CachedResponse(data=data, status_code=status_code))
        return

    user_id, method, path, key = scope
    try:
        with transaction.atomic():
            IdempotencyRecord.objects.create(
                user_id=user_id,
                method=method,
                path=path,
                idempotency_key=key,
                status_code=status_code,
                response_data=data,
            )
    except IntegrityError:
        return
