from __future__ import annotations

import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from dealflow.context import reset_correlation_id, reset_mutation_id, set_correlation_id, set_mutation_id


CORRELATION_HEADER = "x-correlation-id"
MUTATION_HEADER = "x-mutation-id"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds the correlation id, and a caller-chosen mutation id when sent, to the request context.

    A client that tags its optimistic write with ``X-Mutation-Id`` sees the
    same id on the mutation's logs and spans and gets it echoed back.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        mutation_id = request.headers.get(MUTATION_HEADER) or None
        request.state.correlation_id = correlation_id
        correlation_token = set_correlation_id(correlation_id)
        mutation_token = set_mutation_id(mutation_id)
        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
            if mutation_id:
                span.set_attribute("mutation_id", mutation_id)
        try:
            response = await call_next(request)
        finally:
            reset_mutation_id(mutation_token)
            reset_correlation_id(correlation_token)

        response.headers[CORRELATION_HEADER] = correlation_id
        if mutation_id:
            response.headers[MUTATION_HEADER] = mutation_id
        return response
