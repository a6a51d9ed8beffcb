from rest_framework.pagination import PageNumberPagination


class StandardResultsSetPagination(PageNumberPagination):
    """Page-number pagination for documents, moves and stock levels.

    `?page_size=` is honoured up to `max_page_size`; the move ledger grows
    without bound so unpaginated listings are never served.
    """

    page_size_query_param = "page_size"
    max_page_size = 200
