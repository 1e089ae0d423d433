from rest_framework.pagination import PageNumberPagination


class StandardResultsSetPagination(PageNumberPagination):
    """Order and inventory listings page through `?page=`; `?page_size=` is capped."""

    page_size_query_param = "page_size"
    max_page_size = 500
