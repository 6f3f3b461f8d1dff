"""Session data models for per-client MCP sessions."""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from time import monotonic
from typing import Any, Dict, Optional

from medical_mcp.constants import SESSION_TTL


class SessionState(str, enum.Enum):
    """Session lifecycle: ``UNINITIALIZED -> ACTIVE -> CLOSED``."""

    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    CLOSED = "closed"


TRANSPORT_STREAMABLE_HTTP = "streamable_http"
TRANSPORT_SSE = "sse"


@dataclass
class MCPSession:
    """A stateful binding between one client and a tool-serving context.

    The session manager owns the record; the transport only knows the id.
    """

    id: str
    transport_type: str = TRANSPORT_STREAMABLE_HTTP

    transport: Any = field(default=None, repr=False)
    """SDK transport bound to this session (``None`` until started)."""

    server: Any = field(default=None, repr=False)
    """Low-level MCP server serving this session, shared or per-session."""

    owns_server: bool = False
    """``True`` when *server* was built for this session alone."""

    task: Optional[asyncio.Task] = field(default=None, repr=False)
    """Task running the MCP server loop for this session."""

    state: SessionState = SessionState.UNINITIALIZED

    created_at: float = field(default_factory=monotonic)
    last_active: float = field(default_factory=monotonic)
    ttl: float = SESSION_TTL

    ready: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    """Set once the transport streams are connected to the server loop."""

    open_streams: int = 0
    """Server-to-client push streams currently held open by the client."""

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    @property
    def expired(self) -> bool:
        """``True`` if the session has been idle longer than its TTL.

        A session with an open push stream is in use and never expires.
        """
        if self.open_streams > 0:
            return False
        return (monotonic() - self.last_active) > self.ttl

    @property
    def age_seconds(self) -> float:
        return monotonic() - self.created_at

    @property
    def idle_seconds(self) -> float:
        return monotonic() - self.last_active

    def touch(self) -> None:
        """Refresh the idle timer."""
        self.last_active = monotonic()

    def stream_opened(self) -> None:
        self.open_streams += 1
        self.touch()

    def stream_closed(self) -> None:
        self.open_streams = max(0, self.open_streams - 1)
        self.touch()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "transport_type": self.transport_type,
            "per_session_server": self.owns_server,
            "age_seconds": round(self.age_seconds, 1),
            "idle_seconds": round(self.idle_seconds, 1),
            "open_streams": self.open_streams,
            "ttl": self.ttl,
            "expired": self.expired,
        }
