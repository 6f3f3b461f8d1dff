"""Session lifecycle management with TTL-based cleanup."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from uuid import uuid4

from mcp.server.streamable_http import StreamableHTTPServerTransport

from medical_mcp.constants import SESSION_CLEANUP_INTERVAL, SESSION_TTL
from medical_mcp.server.handlers import run_mcp_server
from medical_mcp.server.session.models import (
    TRANSPORT_SSE,
    TRANSPORT_STREAMABLE_HTTP,
    MCPSession,
    SessionState,
)

logger = logging.getLogger(__name__)

ServerFactory = Callable[[], Any]
TransportFactory = Callable[[str], Any]
SessionRunner = Callable[[Any, Any, Any], Awaitable[None]]

_TASK_GRACE: float = 2.0  # seconds to wait for a cancelled server loop


class SessionManager:
    """Owns the ``session id -> MCPSession`` table.

    Streamable HTTP sessions get their own SDK transport and a task
    running the MCP server loop over it. Legacy SSE sessions are
    registered by the SSE handler, which runs the loop itself.

    Parameters
    ----------
    server_factory:
        Builds a low-level MCP server. Called once and shared unless
        *per_session_server* is set.
    json_response:
        Passed to every streamable HTTP transport.
    transport_factory:
        Builds the transport for a new session id. Tests inject fakes.
    runner:
        Runs a server over a pair of streams until the client goes away.
    """

    def __init__(
        self,
        server_factory: ServerFactory,
        *,
        per_session_server: bool = False,
        json_response: bool = False,
        default_ttl: float = SESSION_TTL,
        cleanup_interval: float = SESSION_CLEANUP_INTERVAL,
        transport_factory: Optional[TransportFactory] = None,
        runner: SessionRunner = run_mcp_server,
    ) -> None:
        self._sessions: Dict[str, MCPSession] = {}
        self._issued: Set[str] = set()
        self._server_factory = server_factory
        self._shared_server: Any = None
        self._per_session_server = per_session_server
        self._json_response = json_response
        self._default_ttl = default_ttl
        self._cleanup_interval = cleanup_interval
        self._transport_factory = transport_factory or self._default_transport
        self._runner = runner
        self._cleanup_task: Optional[asyncio.Task[None]] = None
        self._background: Set[asyncio.Task] = set()
        self._accepting = True

    # ── Lifecycle ────────────────────────────────────────────────────

    @property
    def accepting(self) -> bool:
        """``False`` once shutdown has begun."""
        return self._accepting

    def start(self) -> None:
        """Start the background cleanup loop."""
        self._accepting = True
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="session-cleanup")
            logger.info(
                "Session cleanup started (interval=%.0fs, default_ttl=%.0fs).",
                self._cleanup_interval,
                self._default_ttl,
            )

    async def shutdown(self, timeout: float) -> None:
        """Stop accepting sessions and close every live one.

        Closing is bounded by *timeout*; sessions still open at the
        deadline are abandoned and their tasks cancelled.
        """
        self._accepting = False
        await self._stop_cleanup()

        session_ids = list(self._sessions)
        if session_ids:
            logger.info(
                "Closing %d live session(s) (deadline %.1fs).", len(session_ids), timeout
            )
            try:
                results = await asyncio.wait_for(
                    asyncio.gather(
                        *(self.close(sid, reason="shutdown") for sid in session_ids),
                        return_exceptions=True,
                    ),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Session shutdown deadline exceeded; abandoning %d session(s).",
                    len(self._sessions),
                )
                self._abandon_all()
            else:
                for sid, result in zip(session_ids, results):
                    if isinstance(result, BaseException):
                        logger.error("Error closing session %s: %s", sid, result)

        for task in list(self._background):
            task.cancel()
        self._background.clear()
        logger.info("SessionManager stopped.")

    async def _stop_cleanup(self) -> None:
        if self._cleanup_task is not None and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
        self._cleanup_task = None

    # ── Session CRUD ─────────────────────────────────────────────────

    def new_session_id(self) -> str:
        """Return an identifier never issued before by this manager."""
        while True:
            session_id = uuid4().hex
            if session_id not in self._issued:
                self._issued.add(session_id)
                return session_id

    async def create_session(self) -> MCPSession:
        """Create a streamable HTTP session and start its server loop.

        The session is ``ACTIVE`` once the transport streams are connected.
        """
        if not self._accepting:
            raise RuntimeError("Session manager is shutting down")
        session = self._new_record(TRANSPORT_STREAMABLE_HTTP)
        session.transport = self._transport_factory(session.id)
        session.task = asyncio.create_task(
            self._run_session(session), name=f"mcp-session-{session.id[:8]}"
        )
        session.task.add_done_callback(lambda t, s=session: self._on_task_done(s, t))
        await session.ready.wait()
        if session.state is SessionState.UNINITIALIZED:
            session.state = SessionState.ACTIVE
        logger.info(
            "Session created: id=%s transport=%s ttl=%.0f",
            session.id,
            session.transport_type,
            session.ttl,
        )
        return session

    def open_stream_session(
        self, session_id: Optional[str] = None, *, server: Any = None
    ) -> MCPSession:
        """Register a single-stream (legacy SSE) session.

        *session_id* is the id the stream transport already gave the
        client; one is issued here if omitted. The caller runs the server
        loop on *server* and sets ``session.task``.
        """
        if not self._accepting:
            raise RuntimeError("Session manager is shutting down")
        session = self._new_record(TRANSPORT_SSE, session_id, server)
        session.state = SessionState.ACTIVE
        logger.info("Session created: id=%s transport=%s", session.id, session.transport_type)
        return session

    def lookup(self, session_id: str) -> Optional[MCPSession]:
        """Return the live session for *session_id*, refreshing its idle timer.

        Unknown, closed and expired ids all give ``None``.
        """
        session = self._sessions.get(session_id)
        if session is None or session.state is not SessionState.ACTIVE:
            return None
        if session.expired:
            self._spawn(self.close(session_id, reason="expired"))
            return None
        session.touch()
        return session

    async def close(self, session_id: str, reason: str = "closed") -> bool:
        """Close a session. Unknown or already-closed ids are a no-op.

        Returns ``True`` if this call closed the session.
        """
        session = self._sessions.get(session_id)
        if session is None or session.state is SessionState.CLOSED:
            return False
        session.state = SessionState.CLOSED
        try:
            await self._teardown(session)
        finally:
            self._cancel_task(session)
            self._sessions.pop(session_id, None)
            logger.info(
                "Session closed: id=%s reason=%s age=%.1fs remaining=%d",
                session_id,
                reason,
                session.age_seconds,
                len(self._sessions),
            )
        return True

    def server_for_session(self) -> Any:
        """Return the MCP server a new session should use."""
        if self._per_session_server:
            return self._server_factory()
        if self._shared_server is None:
            self._shared_server = self._server_factory()
        return self._shared_server

    async def run_server(self, server: Any, read_stream: Any, write_stream: Any) -> None:
        await self._runner(server, read_stream, write_stream)

    # ── Queries ──────────────────────────────────────────────────────

    @property
    def active_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.is_active)

    def list_sessions(self) -> List[Dict[str, Any]]:
        return [s.to_dict() for s in self._sessions.values()]

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    # ── Internal ─────────────────────────────────────────────────────

    def _default_transport(self, session_id: str) -> StreamableHTTPServerTransport:
        return StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=self._json_response,
        )

    def _new_record(
        self, transport_type: str, session_id: Optional[str] = None, server: Any = None
    ) -> MCPSession:
        if session_id is None:
            session_id = self.new_session_id()
        elif session_id in self._issued:
            raise ValueError(f"Session id {session_id} was already issued")
        else:
            self._issued.add(session_id)
        session = MCPSession(
            id=session_id,
            transport_type=transport_type,
            ttl=self._default_ttl,
        )
        session.server = server if server is not None else self.server_for_session()
        session.owns_server = self._per_session_server
        self._sessions[session.id] = session
        return session

    async def _run_session(self, session: MCPSession) -> None:
        try:
            async with session.transport.connect() as (read_stream, write_stream):
                session.ready.set()
                await self._runner(session.server, read_stream, write_stream)
        finally:
            # Unblock create_session if connect() itself failed.
            session.ready.set()

    def _on_task_done(self, session: MCPSession, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "MCP server loop for session %s failed.",
                session.id,
                exc_info=task.exception(),
            )
        if session.state is not SessionState.CLOSED and self._accepting:
            self._spawn(self.close(session.id, reason="transport closed"))

    async def _teardown(self, session: MCPSession) -> None:
        transport = session.transport
        if transport is not None and hasattr(transport, "terminate"):
            try:
                await transport.terminate()
            except Exception:
                logger.warning("Error terminating transport for session %s", session.id, exc_info=True)

        task = session.task
        if self._cancel_task(session):
            await asyncio.wait({task}, timeout=_TASK_GRACE)
            if not task.done():
                logger.warning("Server loop for session %s did not stop in time.", session.id)

        if session.owns_server:
            session.server = None
        session.transport = None

    @staticmethod
    def _cancel_task(session: MCPSession) -> bool:
        """Cancel the session's server loop unless it is done or is the caller."""
        task = session.task
        if task is None or task.done() or task is asyncio.current_task():
            return False
        task.cancel()
        return True

    def _abandon_all(self) -> None:
        for session in list(self._sessions.values()):
            session.state = SessionState.CLOSED
            self._cancel_task(session)
        self._sessions.clear()

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _cleanup_loop(self) -> None:
        """Periodically close expired sessions."""
        try:
            while True:
                await asyncio.sleep(self._cleanup_interval)
                expired = [sid for sid, s in self._sessions.items() if s.is_active and s.expired]
                for sid in expired:
                    await self.close(sid, reason="expired")
                if expired:
                    logger.info(
                        "Session cleanup: closed %d expired session(s), %d remaining.",
                        len(expired),
                        len(self._sessions),
                    )
        except asyncio.CancelledError:
            logger.debug("Session cleanup loop cancelled.")
