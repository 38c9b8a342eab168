from rest_framework.pagination import PageNumberPagination


class StandardResultsSetPagination(PageNumberPagination):
    """Shared pagination for list endpoints (orders, batches, payments).

    `?page_size=` is honoured up to `max_page_size` so receiving screens can
    load a whole purchase order's batches in one request.
    """

    page_size_query_param = "page_size"
    max_page_size = 200
