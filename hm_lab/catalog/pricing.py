# hm_lab/catalog/pricing.py
from __future__ import annotations

import logging
import threading
import time
from decimal import Decimal
from typing import Callable

from django.apps import apps

logger = logging.getLogger(__name__)


def _load_active_prices() -> dict[str, Decimal]:
    from hm_lab.catalog.models import LabTest

    return {
        name: Decimal(price)
        for name, price in LabTest.objects.filter(is_active=True).values_list("name", "price")
    }


class PriceCache:
    """
    Read-through name -> price map over the active catalog.

    Entries are reloaded once `ttl_seconds` have passed since the last load,
    or immediately after `invalidate()`. The clock is injectable for tests.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float,
        loader: Callable[[], dict[str, Decimal]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = float(ttl_seconds)
        self._loader = loader or _load_active_prices
        self._clock = clock
        self._lock = threading.Lock()
        self._prices: dict[str, Decimal] = {}
        self._loaded_at: float | None = None

    def _expired(self) -> bool:
        if self._loaded_at is None:
            return True
        return (self._clock() - self._loaded_at) >= self.ttl_seconds

    def get(self, name: str) -> Decimal | None:
        with self._lock:
            if self._expired():
                self._prices = self._loader()
                self._loaded_at = self._clock()
                logger.debug("Price cache reloaded: %s tests", len(self._prices))
            return self._prices.get(name)

    def invalidate(self) -> None:
        with self._lock:
            self._loaded_at = None


def get_price_cache() -> PriceCache:
    return apps.get_app_config("catalog").price_cache
