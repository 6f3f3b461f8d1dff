"""SSE and streamable HTTP transport handling for MCP connections."""

import asyncio
import logging
import re
from typing import Any, Dict, Optional

from mcp.server.sse import SseServerTransport
from mcp.types import INTERNAL_ERROR, INVALID_REQUEST
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import Message, Receive, Scope, Send

from medical_mcp.config.schema import ServerSettings
from medical_mcp.constants import POST_MESSAGES_PATH
from medical_mcp.server.protocol import (
    MCP_SESSION_ID_HEADER,
    ProtocolError,
    check_content_type,
    check_get_accept,
    check_origin,
    check_post_accept,
    internal_error_response,
    is_initialize,
    negotiate_version,
    parse_message,
)
from medical_mcp.server.session import MCPSession, SessionManager

logger = logging.getLogger(__name__)

_ALLOWED_METHODS = "GET, POST, DELETE"
_ENDPOINT_SESSION_ID = re.compile(rb"session_id=([0-9a-f]{32})")


def _log_rejection(request: Request, exc: ProtocolError) -> None:
    logger.warning(
        "Rejected %s %s from %s: %d %s",
        request.method,
        request.url.path,
        request.client.host if request.client else "unknown",
        exc.status_code,
        exc.message,
    )


def _replay_body(body: bytes, receive: Receive) -> Receive:
    """Hand an already-read body to the SDK transport, then defer to *receive*."""
    delivered = False

    async def replay() -> Message:
        nonlocal delivered
        if not delivered:
            delivered = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


class StreamableHTTPEndpoint:
    """ASGI app for ``/mcp``: validates, resolves the session, delegates.

    Order of checks: Host/Origin, protocol version, method, Accept,
    Content-Type, JSON-RPC shape, session. Only a request passing all of
    them reaches the session's SDK transport.
    """

    def __init__(self, sessions: SessionManager, settings: ServerSettings) -> None:
        self._sessions = sessions
        self._settings = settings

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        response_started = False

        async def tracking_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            response = await self._dispatch(request, tracking_send)
        except ProtocolError as exc:
            _log_rejection(request, exc)
            response = exc.to_response()
        except Exception:
            logger.exception("Unhandled error handling %s %s", request.method, request.url.path)
            if response_started:
                return
            response = internal_error_response()
        if response is not None:
            await response(scope, receive, send)

    async def _dispatch(self, request: Request, send: Send) -> Optional[Response]:
        check_origin(request.headers, self._settings)
        negotiate_version(request.headers)
        if request.method == "POST":
            return await self._handle_post(request, send)
        if request.method == "GET":
            return await self._handle_get(request, send)
        if request.method == "DELETE":
            return await self._handle_delete(request)
        raise ProtocolError(
            405,
            INVALID_REQUEST,
            "Method Not Allowed",
            headers={"Allow": _ALLOWED_METHODS},
        )

    def _resolve(self, session_id: str, request_id: Any = None) -> MCPSession:
        session = self._sessions.lookup(session_id)
        if session is None:
            raise ProtocolError(
                404, INVALID_REQUEST, "Not Found: Session not found or closed", request_id=request_id
            )
        return session

    async def _handle_post(self, request: Request, send: Send) -> Optional[Response]:
        check_post_accept(request.headers, json_response=self._settings.json_response)
        check_content_type(request.headers)
        body = await request.body()
        message, request_id = parse_message(body)
        receive = _replay_body(body, request.receive)

        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if session_id is None:
            if not is_initialize(message):
                raise ProtocolError(
                    400, INVALID_REQUEST, "Bad Request: Missing session ID", request_id=request_id
                )
            await self._initialize(request.scope, receive, send)
            return None

        if is_initialize(message):
            raise ProtocolError(
                400,
                INVALID_REQUEST,
                "Bad Request: initialize must not carry a session ID",
                request_id=request_id,
            )
        session = self._resolve(session_id, request_id)
        await session.transport.handle_request(request.scope, receive, send)
        return None

    async def _initialize(self, scope: Scope, receive: Receive, send: Send) -> None:
        if not self._sessions.accepting:
            raise ProtocolError(503, INTERNAL_ERROR, "Service Unavailable: server is shutting down")
        session = await self._sessions.create_session()
        status: Dict[str, int] = {}

        async def capture_status(message: Message) -> None:
            if message["type"] == "http.response.start":
                status["code"] = message["status"]
            await send(message)

        try:
            await session.transport.handle_request(scope, receive, capture_status)
        except Exception:
            await self._sessions.close(session.id, reason="initialize failed")
            raise
        if status.get("code", 500) >= 400:
            logger.warning("Initialize for session %s rejected with HTTP %s.", session.id, status.get("code"))
            await self._sessions.close(session.id, reason="initialize rejected")

    async def _handle_get(self, request: Request, send: Send) -> Optional[Response]:
        check_get_accept(request.headers)
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if session_id is None:
            raise ProtocolError(400, INVALID_REQUEST, "Bad Request: Missing session ID")
        session = self._resolve(session_id)
        logger.debug("Opening push stream for session %s", session.id)
        session.stream_opened()
        try:
            await session.transport.handle_request(request.scope, request.receive, send)
        finally:
            session.stream_closed()
            logger.debug("Push stream for session %s closed", session.id)
        return None

    async def _handle_delete(self, request: Request) -> Response:
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if session_id is None:
            raise ProtocolError(400, INVALID_REQUEST, "Bad Request: Missing session ID")
        closed = await self._sessions.close(session_id, reason="terminated by client")
        if not closed:
            logger.debug("DELETE for unknown or closed session %s", session_id)
        return Response(status_code=200)


class LegacySseTransport:
    """Single-stream transport: ``GET /sse`` plus ``POST /messages/``.

    The instance is the ASGI app for ``GET /sse``. The SDK picks the
    session id and announces it in the stream's ``endpoint`` event; the
    session is registered with the manager under that id before the event
    reaches the client, so ``POST /messages/`` resolves ids through the
    manager alone. The push stream is the connection, so its end closes
    the session.
    """

    def __init__(self, sessions: SessionManager, settings: ServerSettings) -> None:
        self._sessions = sessions
        self._settings = settings
        self.sse = SseServerTransport(POST_MESSAGES_PATH)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        try:
            check_origin(request.headers, self._settings)
            if not self._sessions.accepting:
                raise ProtocolError(503, INTERNAL_ERROR, "Service Unavailable: server is shutting down")
        except ProtocolError as exc:
            _log_rejection(request, exc)
            await exc.to_response()(scope, receive, send)
            return

        logger.debug("Received new SSE connection request (GET): %s", request.url)
        server = self._sessions.server_for_session()
        bound: Dict[str, MCPSession] = {}
        run_task: Optional[asyncio.Task] = None

        async def register_on_endpoint(message: Message) -> None:
            if not bound and message["type"] == "http.response.body":
                match = _ENDPOINT_SESSION_ID.search(message.get("body", b""))
                if match is not None:
                    session = self._sessions.open_stream_session(
                        match.group(1).decode("ascii"), server=server
                    )
                    session.task = run_task
                    session.stream_opened()
                    bound["session"] = session
            await send(message)

        async with self.sse.connect_sse(scope, receive, register_on_endpoint) as (
            read_stream,
            write_stream,
        ):
            run_task = asyncio.create_task(
                self._sessions.run_server(server, read_stream, write_stream), name="mcp-sse"
            )
            try:
                await asyncio.wait({run_task})
                if not run_task.cancelled() and run_task.exception() is not None:
                    logger.error("MCP main loop for SSE stream failed.", exc_info=run_task.exception())
            finally:
                session = bound.get("session")
                if session is not None:
                    session.stream_closed()
                    await self._sessions.close(session.id, reason="SSE stream closed")
                if not run_task.done():
                    run_task.cancel()
                # Ends the SDK's event writer, which ends the response.
                await write_stream.aclose()
        logger.debug("SSE connection closed: %s", request.url)

    async def handle_post_message(self, scope: Scope, receive: Receive, send: Send) -> None:
        """ASGI app for ``POST /messages/?session_id=...``."""
        request = Request(scope, receive)
        try:
            check_origin(request.headers, self._settings)
            session_id = request.query_params.get("session_id")
            if not session_id:
                raise ProtocolError(400, INVALID_REQUEST, "Bad Request: Missing session ID")
            if self._sessions.lookup(session_id) is None:
                raise ProtocolError(404, INVALID_REQUEST, "Not Found: Session not found or closed")
        except ProtocolError as exc:
            _log_rejection(request, exc)
            await exc.to_response()(scope, receive, send)
            return
        await self.sse.handle_post_message(scope, receive, send)
