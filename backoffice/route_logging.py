from __future__ import annotations

import logging
import time

from fastapi.routing import APIRoute
from starlette.requests import Request

from backoffice.request_context import operation_scope


logger = logging.getLogger(__name__)

_READ_METHODS = frozenset({'GET', 'HEAD', 'OPTIONS'})


class OperationRoute(APIRoute):
    """Runs each request inside an operation scope named `METHOD /path`.

    State-changing requests are logged with their status and duration.
    """

    def get_route_handler(self):
        original_handler = super().get_route_handler()

        async def custom_handler(request: Request):
            with operation_scope(f'{request.method} {self.path}') as label:
                started = time.perf_counter()
                response = await original_handler(request)
                if request.method not in _READ_METHODS:
                    logger.info(
                        'lifecycle_request operation=%s status=%s duration_ms=%.2f',
                        label,
                        response.status_code,
                        (time.perf_counter() - started) * 1000.0,
                    )
                return response

        return custom_handler
