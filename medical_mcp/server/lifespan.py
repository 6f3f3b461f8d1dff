"""Application lifespan management: startup and shutdown sequences.

The Starlette ``lifespan`` context drives :class:`MedicalMcpService` and
installs a loop exception handler, so failures in background tasks start
a graceful shutdown instead of passing unnoticed.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict

from starlette.applications import Starlette

from medical_mcp.constants import SERVER_NAME, SERVER_VERSION
from medical_mcp.runtime.service import MedicalMcpService

logger = logging.getLogger(__name__)

LoopExceptionHandler = Callable[[asyncio.AbstractEventLoop, Dict[str, Any]], None]


def make_loop_exception_handler(app: Starlette) -> LoopExceptionHandler:
    """Log unhandled background errors and ask the ASGI server to exit."""

    def handler(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exc = context.get("exception")
        logger.critical(
            "Unhandled error in background task: %s",
            context.get("message", "unknown"),
            exc_info=exc if isinstance(exc, BaseException) else None,
        )
        uvicorn_server = getattr(app.state, "uvicorn_server", None)
        if uvicorn_server is not None and not uvicorn_server.should_exit:
            logger.warning("Starting graceful shutdown after background failure.")
            uvicorn_server.should_exit = True

    return handler


@asynccontextmanager
async def app_lifespan(app: Starlette) -> AsyncIterator[None]:
    """Start the service on entry; close sessions and clients on exit."""
    service: MedicalMcpService = app.state.service
    logger.info("Server '%s' v%s startup sequence started...", SERVER_NAME, SERVER_VERSION)

    loop = asyncio.get_running_loop()
    previous_handler = loop.get_exception_handler()
    loop.set_exception_handler(make_loop_exception_handler(app))
    try:
        await service.start()
        logger.info("Lifespan startup phase completed successfully.")
        yield
    except Exception as exc:
        logger.exception("Unexpected error during lifespan: %s", exc)
        raise
    finally:
        logger.info("Server '%s' shutdown sequence started...", SERVER_NAME)
        await service.stop()
        loop.set_exception_handler(previous_handler)
        logger.info("Server '%s' shut down (state: %s).", SERVER_NAME, service.state.value)
