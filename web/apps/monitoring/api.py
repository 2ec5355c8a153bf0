"""Health endpoint for load balancers and the storefront status page.

The service is healthy when the database answers. The gateway circuit state
is reported for visibility only: an open circuit means online payments are
failing fast, while cash on delivery orders still go through, so it does
not turn the probe red.
"""

import logging

from django.db import DatabaseError, connection
from django.http import JsonResponse

from apps.orders.http_adapters import gateway_cb

logger = logging.getLogger(__name__)


def health_view(_request):
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except DatabaseError:
        logger.exception("health check: database unavailable")

    circuit = gateway_cb.state
    return JsonResponse(
        {
            "ok": db_ok,
            "components": {
                "db": {"ok": db_ok},
                "gateway": {"ok": circuit != "OPEN", "circuit": circuit},
            },
        },
        status=200 if db_ok else 503,
    )
