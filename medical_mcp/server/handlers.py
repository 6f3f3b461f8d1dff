"""MCP handler functions - registered on the MCP server instance."""

import asyncio
import itertools
import logging
from typing import Any, Dict, List, Optional

from mcp import types as mcp_types
from mcp.server.lowlevel import NotificationOptions
from mcp.server.lowlevel import Server as McpServer
from mcp.server.models import InitializationOptions

from medical_mcp.constants import REQUEST_TIMEOUT, SERVER_NAME, SERVER_VERSION
from medical_mcp.errors import ToolError, ToolTimeoutError
from medical_mcp.progress import ProgressReporter, bind_reporter, unbind_reporter
from medical_mcp.tools.registry import Content, ToolRegistry

logger = logging.getLogger(__name__)

SERVER_INSTRUCTIONS = (
    "Medical information tools: FDA drug labels, WHO health statistics, "
    "RxNorm nomenclature, PubMed and Google Scholar literature, and the "
    "Australian PBS schedule. PBS calls are rate limited upstream and may "
    "wait up to 20 seconds; repeated queries are served from cache."
)


def build_mcp_server(
    registry: ToolRegistry,
    request_timeout: float = REQUEST_TIMEOUT,
) -> McpServer:
    """Create a low-level MCP server serving *registry*."""
    mcp_server = McpServer(SERVER_NAME, version=SERVER_VERSION, instructions=SERVER_INSTRUCTIONS)
    register_handlers(mcp_server, registry, request_timeout)
    logger.debug("MCP server instance '%s' created.", mcp_server.name)
    return mcp_server


def initialization_options(mcp_server: McpServer) -> InitializationOptions:
    return InitializationOptions(
        server_name=SERVER_NAME,
        server_version=SERVER_VERSION,
        capabilities=mcp_server.get_capabilities(NotificationOptions(), {}),
        instructions=SERVER_INSTRUCTIONS,
    )


async def run_mcp_server(mcp_server: McpServer, read_stream: Any, write_stream: Any) -> None:
    """Run the MCP main loop over one session's streams."""
    await mcp_server.run(read_stream, write_stream, initialization_options(mcp_server))


def _progress_reporter(mcp_server: McpServer) -> Optional[ProgressReporter]:
    """Build a reporter for the current request if the caller sent a progressToken."""
    try:
        ctx = mcp_server.request_context
    except LookupError:
        return None
    token = ctx.meta.progressToken if ctx.meta is not None else None
    if token is None:
        return None
    steps = itertools.count(1)

    async def report(message: str) -> None:
        await ctx.session.send_progress_notification(
            progress_token=token,
            progress=float(next(steps)),
            message=message,
            related_request_id=str(ctx.request_id),
        )

    return report


def register_handlers(
    mcp_server: McpServer,
    registry: ToolRegistry,
    request_timeout: float = REQUEST_TIMEOUT,
) -> None:
    """Register the MCP protocol handlers on the server instance.

    Tool failures are raised from ``handle_call_tool``; the SDK turns
    them into a normal result with ``isError`` set.
    """

    @mcp_server.list_tools()
    async def handle_list_tools() -> List[mcp_types.Tool]:
        tools = registry.list_tools()
        logger.debug("Returning %d tools", len(tools))
        return tools

    @mcp_server.call_tool(validate_input=False)
    async def handle_call_tool(name: str, arguments: Dict[str, Any]) -> List[Content]:
        logger.debug("Handling callTool: name='%s'", name)
        token = bind_reporter(_progress_reporter(mcp_server))
        try:
            return await asyncio.wait_for(registry.dispatch(name, arguments), timeout=request_timeout)
        except asyncio.TimeoutError:
            logger.warning("Tool '%s' exceeded the %.0fs request timeout.", name, request_timeout)
            raise ToolTimeoutError(name, request_timeout) from None
        except ToolError as exc:
            logger.info("Tool '%s' failed: %s", name, exc)
            raise
        finally:
            unbind_reporter(token)

    logger.debug("MCP protocol handlers registered (%d tools).", len(registry))
