# hm_lab/common/api/pagination.py
from __future__ import annotations

from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response


class DefaultPagination(PageNumberPagination):
    page_size = 20
    page_size_query_param = "page_size"
    max_page_size = 100


def paginate(request, queryset, serializer_class, *, context: dict | None = None) -> Response:
    """
    Renders one page as {count, next, previous, results}.
    Falls back to a plain list when paging is switched off (page_size=None).
    """
    paginator = DefaultPagination()
    ctx = {"request": request, **(context or {})}

    page = paginator.paginate_queryset(queryset, request)
    if page is None:
        return Response(serializer_class(queryset, many=True, context=ctx).data)
    return paginator.get_paginated_response(serializer_class(page, many=True, context=ctx).data)
