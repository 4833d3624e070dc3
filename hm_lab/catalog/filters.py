# hm_lab/catalog/filters.py
from __future__ import annotations

import django_filters
from django.db.models import Q

from hm_lab.catalog.models import LabTest


class LabTestFilter(django_filters.FilterSet):
    category = django_filters.CharFilter(field_name="category", lookup_expr="iexact")
    search = django_filters.CharFilter(method="filter_search")
    min_price = django_filters.NumberFilter(field_name="price", lookup_expr="gte")
    max_price = django_filters.NumberFilter(field_name="price", lookup_expr="lte")

    class Meta:
        model = LabTest
        fields = ["category", "sample_type", "is_active"]

    def filter_search(self, queryset, name, value):
        if not value:
            return queryset
        return queryset.filter(
            Q(name__icontains=value) | Q(description__icontains=value) | Q(category__icontains=value)
        )
