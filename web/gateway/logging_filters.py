"""Logging filter that stamps the request correlation id on records.

Referenced from ``settings.LOGGING`` so the JSON formatter can always emit
``request_id``. Records produced by notification worker threads carry the
id too, because the dispatcher runs each send inside a copy of the
submitting request's context.
"""

from logging import Filter, LogRecord

from .middleware import REQUEST_ID_CTX


class RequestIdFilter(Filter):
    """Set ``record.request_id`` from ``REQUEST_ID_CTX`` ("-" outside a request).

    An explicit ``extra={"request_id": ...}`` on the log call wins.
    """

    def filter(self, record: LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = REQUEST_ID_CTX.get()
        return True
