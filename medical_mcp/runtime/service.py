"""Medical MCP runtime service: lifecycle management with a state machine.

MedicalMcpService owns the upstream clients, the PBS gateway, the tool
registry and the session manager. It does not import the display layer;
callers render status however they choose.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from mcp import types as mcp_types

from medical_mcp.config.schema import MedicalMcpConfig
from medical_mcp.pbs.gateway import PbsClient, PbsGateway, ResponseCache, ThrottleState
from medical_mcp.runtime.models import ServiceState, is_valid_transition
from medical_mcp.server.handlers import build_mcp_server
from medical_mcp.server.session import SessionManager
from medical_mcp.server.session.manager import TransportFactory
from medical_mcp.tools import ToolRegistry, build_registry
from medical_mcp.upstream import (
    ApiClient,
    FdaClient,
    PubMedClient,
    RxNormClient,
    ScholarClient,
    WhoClient,
)

logger = logging.getLogger(__name__)


class _InvalidStateTransition(Exception):
    def __init__(self, current: ServiceState, target: ServiceState) -> None:
        super().__init__(f"Invalid state transition: {current.value} → {target.value}")
        self.current = current
        self.target = target


class MedicalMcpService:
    """Owns every long-lived component of the server.

    State machine::

        PENDING ─► STARTING ─► RUNNING ─► STOPPING ─► STOPPED
                       │                      ▲
                       └──────► ERROR ────────┘

    Parameters
    ----------
    config:
        Validated configuration; defaults apply when omitted.
    registry:
        Pre-built tool registry. When omitted, the upstream clients and
        the PBS gateway are built from *config* and every tool registered.
    transport_factory:
        Passed to the session manager (tests inject fake transports).
    """

    def __init__(
        self,
        config: Optional[MedicalMcpConfig] = None,
        *,
        registry: Optional[ToolRegistry] = None,
        transport_factory: Optional[TransportFactory] = None,
    ) -> None:
        self._config = config or MedicalMcpConfig()
        self._state = ServiceState.PENDING
        self._started_at: Optional[datetime] = None
        self._clients: List[ApiClient] = []
        self._gateway: Optional[PbsGateway] = None
        self._registry = registry if registry is not None else self._build_registry()

        srv = self._config.server
        self._sessions = SessionManager(
            self._new_mcp_server,
            per_session_server=srv.per_session_server,
            json_response=srv.json_response,
            default_ttl=srv.session_ttl,
            cleanup_interval=srv.session_cleanup_interval,
            transport_factory=transport_factory,
        )

    # ------------------------------------------------------------------ #
    #  Construction
    # ------------------------------------------------------------------ #

    def _build_registry(self) -> ToolRegistry:
        up = self._config.upstreams
        common = {"user_agent": up.user_agent, "timeout": up.timeout}
        fda = FdaClient(up.fda_base, **common)
        who = WhoClient(up.who_base, **common)
        rxnorm = RxNormClient(up.rxnav_base, **common)
        pubmed = PubMedClient(up.pubmed_base, **common)
        scholar = ScholarClient(up.serpapi_base, api_key=up.serpapi_key, **common)

        pbs = self._config.pbs
        pbs_client = PbsClient(
            pbs.base_url,
            user_agent=up.user_agent,
            timeout=pbs.timeout,
            subscription_key=pbs.subscription_key,
        )
        self._gateway = PbsGateway(
            pbs_client,
            ThrottleState(min_interval=pbs.min_interval),
            ResponseCache(ttl=pbs.cache_ttl),
        )
        self._clients = [fda, who, rxnorm, pubmed, scholar]
        return build_registry(
            gateway=self._gateway,
            fda=fda,
            who=who,
            rxnorm=rxnorm,
            pubmed=pubmed,
            scholar=scholar,
        )

    def _new_mcp_server(self) -> Any:
        return build_mcp_server(self._registry, self._config.server.request_timeout)

    # ------------------------------------------------------------------ #
    #  Properties
    # ------------------------------------------------------------------ #

    @property
    def config(self) -> MedicalMcpConfig:
        return self._config

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def gateway(self) -> Optional[PbsGateway]:
        return self._gateway

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def tools(self) -> List[mcp_types.Tool]:
        return self._registry.list_tools()

    @property
    def started_at(self) -> Optional[datetime]:
        return self._started_at

    @property
    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    def _transition(self, target: ServiceState) -> None:
        if not is_valid_transition(self._state, target):
            raise _InvalidStateTransition(self._state, target)
        prev = self._state
        self._state = target
        logger.info("Service state: %s → %s", prev.value, target.value)

    # ------------------------------------------------------------------ #
    #  Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Start background work and begin accepting sessions."""
        self._transition(ServiceState.STARTING)
        try:
            self._sessions.start()
        except Exception:
            logger.exception("Service startup failed.")
            self._transition(ServiceState.ERROR)
            raise
        self._started_at = datetime.now(timezone.utc)
        self._transition(ServiceState.RUNNING)
        logger.info(
            "Service running with %d tools (PBS min interval %.0fs, cache TTL %.0fs).",
            len(self._registry),
            self._config.pbs.min_interval,
            self._config.pbs.cache_ttl,
        )

    async def stop(self) -> None:
        """Close all sessions within the shutdown deadline, then the HTTP clients.

        Safe to call from any state; repeated calls are no-ops.
        """
        if self._state in (ServiceState.RUNNING, ServiceState.ERROR):
            self._transition(ServiceState.STOPPING)
        elif self._state == ServiceState.STARTING:
            self._state = ServiceState.ERROR
            logger.warning("Stop requested while still STARTING; forcing ERROR state.")
            self._transition(ServiceState.STOPPING)
        else:
            logger.info("Stop requested but service is %s; nothing to do.", self._state.value)
            return

        try:
            await self._sessions.shutdown(self._config.server.shutdown_timeout)
            await self._close_clients()
            self._transition(ServiceState.STOPPED)
        except Exception as exc:
            logger.exception("Error during shutdown: %s", exc)
            self._transition(ServiceState.ERROR)

    async def _close_clients(self) -> None:
        closers = [c.close() for c in self._clients]
        if self._gateway is not None:
            closers.append(self._gateway.close())
        results = await asyncio.gather(*closers, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning("Error closing upstream client: %s", result)
        logger.info("Upstream clients closed.")
