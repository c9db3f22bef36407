"""HTTP middleware: CORS plus request correlation for the audit trail."""

import logging
import time
import uuid

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from governance_core.core.config import Settings

logger = logging.getLogger("governance_core")

REQUEST_ID_HEADER = "X-Request-Id"
# audit_logs.request_id column width
MAX_REQUEST_ID_LENGTH = 64
# governance refusals worth surfacing above access-log level
DENIAL_STATUSES = frozenset({403, 429})


def resolve_request_id(request: Request) -> str:
    incoming = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    return incoming[:MAX_REQUEST_ID_LENGTH] or uuid.uuid4().hex


class GovernanceRequestMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id that audit entries and responses carry.

    ``get_identity`` copies ``request.state.request_id`` onto the caller
    identity and leaves ``request.state.actor_id`` for the access log line.
    """

    async def dispatch(self, request: Request, call_next):
        request.state.request_id = resolve_request_id(request)
        request.state.actor_id = None
        started = time.perf_counter()

        response: Response = await call_next(request)

        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers[REQUEST_ID_HEADER] = request.state.request_id
        response.headers["X-Response-Time-Ms"] = str(elapsed_ms)

        level = logging.WARNING if response.status_code in DENIAL_STATUSES else logging.INFO
        logger.log(
            level, "%s %s -> %s (%sms) actor=%s request=%s",
            request.method, request.url.path, response.status_code, elapsed_ms,
            request.state.actor_id or "-", request.state.request_id,
        )
        return response


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Governance-Warnings", REQUEST_ID_HEADER],
    )
    app.add_middleware(GovernanceRequestMiddleware)
