"""Starlette ASGI application factory."""

import logging
from datetime import datetime, timezone
from typing import Optional

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route

from medical_mcp.config.schema import MedicalMcpConfig
from medical_mcp.constants import (
    HEALTH_PATH,
    POST_MESSAGES_PATH,
    SERVER_NAME,
    SSE_PATH,
    STREAMABLE_HTTP_PATH,
)
from medical_mcp.runtime.service import MedicalMcpService
from medical_mcp.server.lifespan import app_lifespan
from medical_mcp.server.protocol import MCP_PROTOCOL_VERSION_HEADER, MCP_SESSION_ID_HEADER
from medical_mcp.server.transport import LegacySseTransport, StreamableHTTPEndpoint

logger = logging.getLogger(__name__)


async def handle_health(request: Request) -> JSONResponse:
    """Liveness check; independent of session state."""
    return JSONResponse(
        {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}
    )


def create_app(
    config: Optional[MedicalMcpConfig] = None,
    *,
    service: Optional[MedicalMcpService] = None,
) -> Starlette:
    """Create the ASGI application around *service* (built from *config* if omitted)."""
    if service is None:
        service = MedicalMcpService(config)
    settings = service.config.server

    routes = [
        Route(HEALTH_PATH, endpoint=handle_health, methods=["GET"]),
        Route(STREAMABLE_HTTP_PATH, endpoint=StreamableHTTPEndpoint(service.sessions, settings)),
    ]
    if settings.legacy_sse:
        legacy = LegacySseTransport(service.sessions, settings)
        routes += [
            Route(SSE_PATH, endpoint=legacy, methods=["GET"]),
            Mount(POST_MESSAGES_PATH, app=legacy.handle_post_message),
        ]

    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins,
            allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
            allow_headers=[
                "Content-Type",
                "Accept",
                "Authorization",
                MCP_SESSION_ID_HEADER,
                MCP_PROTOCOL_VERSION_HEADER,
                "Last-Event-ID",
            ],
            expose_headers=["Mcp-Session-Id"],
        )
    ]

    application = Starlette(routes=routes, middleware=middleware, lifespan=app_lifespan)
    application.state.service = service
    logger.info(
        "Starlette ASGI app '%s' created. Streamable HTTP on %s%s, health on %s",
        SERVER_NAME,
        STREAMABLE_HTTP_PATH,
        f", SSE GET on {SSE_PATH}, POST on {POST_MESSAGES_PATH}" if settings.legacy_sse else "",
        HEALTH_PATH,
    )
    return application
