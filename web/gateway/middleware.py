"""Request correlation and request-size guard for the checkout API.

``RequestIdMiddleware`` gives every request a correlation id. A client (or
the storefront's edge proxy) may send ``X-Request-ID``; ids that are too
long or contain anything besides letters, digits, dots, dashes and
underscores are replaced with a fresh UUID4. The id is stored on
``request.request_id`` and in ``REQUEST_ID_CTX`` so log records and the
outbound gateway client can pick it up, and it is echoed back on the
response.

``ApiSizeLimitMiddleware`` rejects ``/api/`` requests whose declared body is
larger than ``settings.API_MAX_BYTES`` with 413 before any view runs. The
gateway webhook is covered too: its signature check needs the whole body
in memory.
"""

import contextvars
import re
import uuid

from django.conf import settings
from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,128}$")
DEFAULT_API_MAX_BYTES = 1 * 1024 * 1024


def _valid_request_id(value) -> bool:
    return bool(value) and bool(REQUEST_ID_RE.match(value))


class RequestIdMiddleware(MiddlewareMixin):
    """Assign, expose and echo a per-request correlation id.

    Attributes:
        HEADER (str): ``request.META`` key of the incoming header.
        RESPONSE_HEADER (str): Header set on every response.
    """

    HEADER = "HTTP_X_REQUEST_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = request.META.get(self.HEADER)
        if not _valid_request_id(rid):
            rid = str(uuid.uuid4())
        request.request_id = rid
        request._request_id_token = REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        """Echo the id and restore the ContextVar for the worker thread.

        Args:
            request: Django HttpRequest.
            response: Django HttpResponse to modify.

        Returns:
            The same response with ``X-Request-ID`` set.
        """
        response[self.RESPONSE_HEADER] = getattr(request, "request_id", REQUEST_ID_CTX.get())
        token = getattr(request, "_request_id_token", None)
        if token is not None:
            REQUEST_ID_CTX.reset(token)
            request._request_id_token = None
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    def process_request(self, request):
        if not request.path.startswith("/api/"):
            return None
        limit = getattr(settings, "API_MAX_BYTES", DEFAULT_API_MAX_BYTES)
        clen = request.META.get("CONTENT_LENGTH")
        if clen and clen.isdigit() and int(clen) > limit:
            return JsonResponse({"detail": "PAYLOAD_TOO_LARGE", "max_bytes": limit}, status=413)
        return None
