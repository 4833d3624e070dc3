# hm_lab/catalog/apps.py
from __future__ import annotations

from django.apps import AppConfig
from django.conf import settings


class CatalogConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "hm_lab.catalog"
    label = "catalog"

    def ready(self) -> None:
        from hm_lab.catalog.pricing import PriceCache

        self.price_cache = PriceCache(
            ttl_seconds=getattr(settings, "LAB_PRICE_CACHE_TTL_SECONDS", 300),
        )
