"""End-to-end tests for the MCP HTTP endpoints.

Most go through TestClient in JSON-response mode, which keeps every POST a
plain request/response exchange. TestClient buffers a response until it
ends, so long-lived push streams are driven straight through the ASGI app.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Callable, Dict, Iterator, List, Optional

import pytest
from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import INTERNAL_ERROR, INVALID_REQUEST, LATEST_PROTOCOL_VERSION, PARSE_ERROR
from pydantic import BaseModel
from starlette.testclient import TestClient

from medical_mcp.config.schema import MedicalMcpConfig, ServerSettings
from medical_mcp.runtime.service import MedicalMcpService
from medical_mcp.server.app import create_app
from medical_mcp.server.session.models import SessionState
from medical_mcp.tools.registry import ToolRegistry

ACCEPT_BOTH = "application/json, text/event-stream"


class NoteArgs(BaseModel):
    note: str


def _registry(calls: list) -> ToolRegistry:
    registry = ToolRegistry()

    @registry.tool("echo", NoteArgs, "Echo a note")
    async def echo(args: NoteArgs) -> str:
        calls.append(args.note)
        return f"echo: {args.note}"

    @registry.tool("explode", NoteArgs, "Always fails")
    async def explode(args: NoteArgs) -> str:
        calls.append(args.note)
        raise RuntimeError("handler blew up")

    registry.freeze()
    return registry


def _app(calls: list, **server_settings: Any):
    settings = ServerSettings(**{"json_response": True, "legacy_sse": False, **server_settings})
    service = MedicalMcpService(MedicalMcpConfig(server=settings), registry=_registry(calls))
    return create_app(service=service), service


@pytest.fixture
def calls() -> list:
    return []


@pytest.fixture
def client(calls: list) -> Iterator[TestClient]:
    app, _ = _app(calls)
    with TestClient(app) as test_client:
        yield test_client


def _headers(session_id: Optional[str] = None, **extra: str) -> Dict[str, str]:
    headers = {"Accept": ACCEPT_BOTH, "Content-Type": "application/json"}
    if session_id is not None:
        headers["mcp-session-id"] = session_id
    headers.update(extra)
    return headers


def _initialize_body(request_id: int = 1) -> Dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "initialize",
        "params": {
            "protocolVersion": LATEST_PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": "pytest", "version": "0"},
        },
    }


def _initialize(client: TestClient) -> str:
    resp = client.post("/mcp", json=_initialize_body(), headers=_headers())
    assert resp.status_code == 200, resp.text
    session_id = resp.headers["mcp-session-id"]
    notified = client.post(
        "/mcp",
        json={"jsonrpc": "2.0", "method": "notifications/initialized"},
        headers=_headers(session_id),
    )
    assert notified.status_code == 202
    return session_id


def _call_tool(client: TestClient, session_id: str, name: str, arguments: Dict[str, Any], request_id: int = 2):
    return client.post(
        "/mcp",
        json={
            "jsonrpc": "2.0",
            "id": request_id,
            "method": "tools/call",
            "params": {"name": name, "arguments": arguments},
        },
        headers=_headers(session_id),
    )


# ════════════════════════════════════════════════════════════════════════
#  Session establishment
# ════════════════════════════════════════════════════════════════════════


class TestInitialize:
    def test_initialize_returns_session_id(self, client: TestClient) -> None:
        resp = client.post("/mcp", json=_initialize_body(), headers=_headers())
        assert resp.status_code == 200
        body = resp.json()
        assert body["id"] == 1
        assert body["result"]["serverInfo"]["name"] == "medical-mcp"
        assert resp.headers["mcp-session-id"]

    def test_each_initialize_gets_a_new_session(self, client: TestClient) -> None:
        ids = {_initialize(client) for _ in range(3)}
        assert len(ids) == 3

    def test_non_initialize_without_session_is_bad_request(self, client: TestClient, calls: list) -> None:
        resp = client.post(
            "/mcp",
            json={"jsonrpc": "2.0", "id": 7, "method": "tools/list"},
            headers=_headers(),
        )
        assert resp.status_code == 400
        body = resp.json()
        assert body["jsonrpc"] == "2.0"
        assert body["error"]["code"] == INVALID_REQUEST
        assert body["id"] == 7

    def test_initialize_with_session_header_rejected(self, client: TestClient) -> None:
        session_id = _initialize(client)
        resp = client.post("/mcp", json=_initialize_body(), headers=_headers(session_id))
        assert resp.status_code == 400


# ════════════════════════════════════════════════════════════════════════
#  Routing to a session
# ════════════════════════════════════════════════════════════════════════


class TestSessionRouting:
    def test_list_tools(self, client: TestClient) -> None:
        session_id = _initialize(client)
        resp = client.post(
            "/mcp",
            json={"jsonrpc": "2.0", "id": 3, "method": "tools/list"},
            headers=_headers(session_id),
        )
        assert resp.status_code == 200
        names = {t["name"] for t in resp.json()["result"]["tools"]}
        assert names == {"echo", "explode"}

    def test_call_tool(self, client: TestClient, calls: list) -> None:
        session_id = _initialize(client)
        resp = _call_tool(client, session_id, "echo", {"note": "hi"})
        assert resp.status_code == 200
        result = resp.json()["result"]
        assert result["isError"] is False
        assert result["content"][0]["text"] == "echo: hi"
        assert calls == ["hi"]

    def test_unknown_session_rejected(self, client: TestClient, calls: list) -> None:
        resp = _call_tool(client, "deadbeef" * 4, "echo", {"note": "hi"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == INVALID_REQUEST
        assert calls == []

    def test_rejection_logged_as_warning_with_reason(
        self, client: TestClient, caplog: pytest.LogCaptureFixture
    ) -> None:
        caplog.set_level(logging.WARNING, logger="medical_mcp.server.transport")
        _call_tool(client, "deadbeef" * 4, "echo", {"note": "hi"})
        rejected = [r for r in caplog.records if r.getMessage().startswith("Rejected POST /mcp")]
        assert len(rejected) == 1
        assert rejected[0].levelno == logging.WARNING
        assert "404 Not Found: Session not found or closed" in rejected[0].getMessage()

    def test_unknown_tool_keeps_session_open(self, client: TestClient) -> None:
        session_id = _initialize(client)
        resp = _call_tool(client, session_id, "no-such-tool", {})
        assert resp.status_code == 200
        result = resp.json()["result"]
        assert result["isError"] is True
        assert "Unknown tool: no-such-tool" in result["content"][0]["text"]

        again = _call_tool(client, session_id, "echo", {"note": "still here"}, request_id=3)
        assert again.status_code == 200
        assert again.json()["result"]["isError"] is False


# ════════════════════════════════════════════════════════════════════════
#  Execution errors vs protocol errors
# ════════════════════════════════════════════════════════════════════════


class TestErrorSeparation:
    def test_handler_exception_is_successful_response(self, client: TestClient) -> None:
        session_id = _initialize(client)
        resp = _call_tool(client, session_id, "explode", {"note": "x"})
        assert resp.status_code == 200
        result = resp.json()["result"]
        assert result["isError"] is True
        assert "handler blew up" in result["content"][0]["text"]

    def test_invalid_arguments_is_successful_response(self, client: TestClient, calls: list) -> None:
        session_id = _initialize(client)
        resp = _call_tool(client, session_id, "echo", {"wrong": 1})
        assert resp.status_code == 200
        assert resp.json()["result"]["isError"] is True
        assert calls == []

    def test_malformed_json_is_parse_error(self, client: TestClient, calls: list) -> None:
        resp = client.post("/mcp", content=b"{not json", headers=_headers())
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"]["code"] == PARSE_ERROR
        assert body["id"] is None
        assert calls == []

    def test_not_a_jsonrpc_message(self, client: TestClient) -> None:
        resp = client.post("/mcp", json={"hello": "world"}, headers=_headers())
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == INVALID_REQUEST

    def test_batch_rejected(self, client: TestClient) -> None:
        resp = client.post("/mcp", json=[_initialize_body()], headers=_headers())
        assert resp.status_code == 400

    def test_unexpected_failure_is_500_envelope(self, calls: list) -> None:
        app, service = _app(calls)
        with TestClient(app) as test_client:
            session_id = _initialize(test_client)

            def broken_lookup(sid: str):
                raise RuntimeError("session table on fire")

            service.sessions.lookup = broken_lookup  # type: ignore[method-assign]
            resp = _call_tool(test_client, session_id, "echo", {"note": "x"})
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == INTERNAL_ERROR


# ════════════════════════════════════════════════════════════════════════
#  Headers and negotiation
# ════════════════════════════════════════════════════════════════════════


class TestNegotiation:
    def test_unsupported_protocol_version(self, client: TestClient) -> None:
        resp = client.post(
            "/mcp",
            json=_initialize_body(),
            headers=_headers(**{"mcp-protocol-version": "9999-99-99"}),
        )
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["data"]["supported"] == list(SUPPORTED_PROTOCOL_VERSIONS)
        for version in SUPPORTED_PROTOCOL_VERSIONS:
            assert version in error["message"]

    def test_version_checked_before_session(self, client: TestClient) -> None:
        resp = _call_tool(client, "unknown-session", "echo", {"note": "x"})
        assert resp.status_code == 404
        resp = client.post(
            "/mcp",
            json={"jsonrpc": "2.0", "id": 1, "method": "tools/list"},
            headers=_headers("unknown-session", **{"mcp-protocol-version": "1999-01-01"}),
        )
        assert resp.status_code == 400

    def test_supported_version_header_accepted(self, client: TestClient) -> None:
        session_id = _initialize(client)
        resp = client.post(
            "/mcp",
            json={"jsonrpc": "2.0", "id": 4, "method": "tools/list"},
            headers=_headers(session_id, **{"mcp-protocol-version": LATEST_PROTOCOL_VERSION}),
        )
        assert resp.status_code == 200

    def test_not_acceptable(self, client: TestClient) -> None:
        resp = client.post(
            "/mcp",
            json=_initialize_body(),
            headers={"Accept": "text/html", "Content-Type": "application/json"},
        )
        assert resp.status_code == 406

    def test_unsupported_media_type(self, client: TestClient) -> None:
        resp = client.post(
            "/mcp",
            content=b"hello",
            headers={"Accept": ACCEPT_BOTH, "Content-Type": "text/plain"},
        )
        assert resp.status_code == 415

    def test_method_not_allowed(self, client: TestClient) -> None:
        resp = client.put("/mcp", content=b"{}", headers=_headers())
        assert resp.status_code == 405
        assert "POST" in resp.headers["allow"]

    def test_get_requires_session(self, client: TestClient) -> None:
        resp = client.get("/mcp", headers={"Accept": "text/event-stream"})
        assert resp.status_code == 400

    def test_get_unknown_session(self, client: TestClient) -> None:
        resp = client.get("/mcp", headers={"Accept": "text/event-stream", "mcp-session-id": "nope"})
        assert resp.status_code == 404

    def test_get_requires_event_stream(self, client: TestClient) -> None:
        resp = client.get("/mcp", headers={"Accept": "application/json", "mcp-session-id": "nope"})
        assert resp.status_code == 406


# ════════════════════════════════════════════════════════════════════════
#  Termination
# ════════════════════════════════════════════════════════════════════════


class TestDelete:
    def test_delete_terminates_session(self, client: TestClient, calls: list) -> None:
        session_id = _initialize(client)
        resp = client.delete("/mcp", headers={"mcp-session-id": session_id})
        assert resp.status_code == 200
        after = _call_tool(client, session_id, "echo", {"note": "x"})
        assert after.status_code == 404
        assert calls == []

    def test_delete_twice_is_idempotent(self, client: TestClient) -> None:
        session_id = _initialize(client)
        assert client.delete("/mcp", headers={"mcp-session-id": session_id}).status_code == 200
        assert client.delete("/mcp", headers={"mcp-session-id": session_id}).status_code == 200

    def test_delete_unknown_session(self, client: TestClient) -> None:
        assert client.delete("/mcp", headers={"mcp-session-id": "never-issued"}).status_code == 200

    def test_delete_without_header(self, client: TestClient) -> None:
        assert client.delete("/mcp").status_code == 400


# ════════════════════════════════════════════════════════════════════════
#  Origin checks, health, lifecycle
# ════════════════════════════════════════════════════════════════════════


class TestDnsRebinding:
    def _client(self, calls: list) -> TestClient:
        app, _ = _app(
            calls,
            dns_rebinding_protection=True,
            allowed_hosts=["testserver"],
            allowed_origins=["http://good.example"],
        )
        return TestClient(app)

    def test_bad_origin_forbidden(self, calls: list) -> None:
        with self._client(calls) as client:
            resp = client.post(
                "/mcp", json=_initialize_body(), headers=_headers(Origin="http://evil.example")
            )
        assert resp.status_code == 403

    def test_bad_host_forbidden(self, calls: list) -> None:
        with self._client(calls) as client:
            resp = client.post("/mcp", json=_initialize_body(), headers=_headers(Host="evil.example"))
        assert resp.status_code == 403

    def test_allowed_origin_passes(self, calls: list) -> None:
        with self._client(calls) as client:
            resp = client.post(
                "/mcp", json=_initialize_body(), headers=_headers(Origin="http://good.example")
            )
        assert resp.status_code == 200


class TestHealthAndLifecycle:
    def test_health(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert "T" in body["timestamp"]

    def test_shutdown_closes_sessions(self, calls: list) -> None:
        app, service = _app(calls)
        with TestClient(app) as test_client:
            _initialize(test_client)
            _initialize(test_client)
            assert service.sessions.active_count == 2
        assert len(service.sessions) == 0
        assert service.state.value == "stopped"

    def test_cors_exposes_session_header(self, calls: list) -> None:
        app, _ = _app(calls, allowed_origins=["http://good.example"])
        with TestClient(app) as test_client:
            resp = test_client.options(
                "/mcp",
                headers={
                    "Origin": "http://good.example",
                    "Access-Control-Request-Method": "POST",
                    "Access-Control-Request-Headers": "mcp-session-id",
                },
            )
        assert resp.status_code == 200
        assert resp.headers["access-control-allow-origin"] == "http://good.example"

    def test_legacy_sse_routes_mounted(self) -> None:
        app = create_app(
            service=MedicalMcpService(MedicalMcpConfig(), registry=_registry([]))
        )
        paths = {getattr(route, "path", None) for route in app.routes}
        assert {"/mcp", "/health", "/sse", "/messages"} <= paths


# ════════════════════════════════════════════════════════════════════════
#  Push streams
# ════════════════════════════════════════════════════════════════════════


class AsgiExchange:
    """One HTTP exchange against the ASGI app, with a client-side inbox."""

    def __init__(
        self,
        app: Any,
        method: str,
        path: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        body: bytes = b"",
        query: str = "",
    ) -> None:
        self.app = app
        self.sent: List[Dict[str, Any]] = []
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._inbox.put_nowait({"type": "http.request", "body": body, "more_body": False})
        self._changed = asyncio.Event()
        raw_headers = [(b"host", b"testserver")]
        raw_headers += [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
        self.scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": method,
            "scheme": "http",
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "query_string": query.encode(),
            "headers": raw_headers,
            "client": ("127.0.0.1", 50000),
            "server": ("testserver", 80),
        }
        self.task: Optional[asyncio.Task] = None

    def start(self) -> "AsgiExchange":
        self.task = asyncio.ensure_future(self.app(self.scope, self._receive, self._send))
        return self

    async def _receive(self) -> Dict[str, Any]:
        return await self._inbox.get()

    async def _send(self, message: Dict[str, Any]) -> None:
        self.sent.append(message)
        self._changed.set()

    @property
    def status(self) -> Optional[int]:
        for message in self.sent:
            if message["type"] == "http.response.start":
                return message["status"]
        return None

    @property
    def body(self) -> bytes:
        return b"".join(m.get("body", b"") for m in self.sent if m["type"] == "http.response.body")

    async def wait_for(self, condition: Callable[["AsgiExchange"], bool], timeout: float = 5.0) -> None:
        async def poll() -> None:
            while not condition(self):
                if self.task is not None and self.task.done():
                    self.task.result()
                    raise AssertionError("exchange ended before the condition held")
                self._changed.clear()
                try:
                    await asyncio.wait_for(self._changed.wait(), 0.05)
                except asyncio.TimeoutError:
                    pass

        await asyncio.wait_for(poll(), timeout)

    def disconnect(self) -> None:
        self._inbox.put_nowait({"type": "http.disconnect"})

    async def finish(self, timeout: float = 5.0) -> None:
        await asyncio.wait_for(self.task, timeout)


def _legacy_post(app: Any, session_id: str, message: Dict[str, Any]) -> AsgiExchange:
    return AsgiExchange(
        app,
        "POST",
        "/messages/",
        headers={"Content-Type": "application/json"},
        body=json.dumps(message).encode(),
        query=f"session_id={session_id}",
    ).start()


class TestStandaloneStream:
    def test_streaming_mode_post_answers_over_sse(self, calls: list) -> None:
        app, _ = _app(calls, json_response=False)
        with TestClient(app) as client:
            resp = client.post("/mcp", json=_initialize_body(), headers=_headers())
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.headers["mcp-session-id"]
        assert "event: message" in resp.text
        assert '"serverInfo"' in resp.text

    @pytest.mark.asyncio
    async def test_get_stream_opens_and_closes_without_ending_session(self, calls: list) -> None:
        app, service = _app(calls, json_response=False)
        session = await service.sessions.create_session()

        stream = AsgiExchange(
            app, "GET", "/mcp", headers={"Accept": "text/event-stream", "mcp-session-id": session.id}
        ).start()
        await stream.wait_for(lambda s: s.status is not None)
        assert stream.status == 200
        assert session.open_streams == 1

        # Idle past the TTL while the stream is held: still in use.
        session.last_active -= session.ttl + 10
        assert service.sessions.lookup(session.id) is session

        stream.disconnect()
        await stream.finish()
        assert session.open_streams == 0
        assert session.state is SessionState.ACTIVE
        assert service.sessions.lookup(session.id) is session
        await service.sessions.shutdown(1.0)


class TestLegacySse:
    @pytest.mark.asyncio
    async def test_session_lifecycle_follows_the_stream(self, calls: list) -> None:
        app, service = _app(calls, legacy_sse=True)
        stream = AsgiExchange(app, "GET", "/sse", headers={"Accept": "text/event-stream"}).start()
        await stream.wait_for(lambda s: b"session_id=" in s.body)
        assert b"event: endpoint" in stream.body
        session_id = re.search(rb"session_id=([0-9a-f]+)", stream.body).group(1).decode()

        # The id the client was given is the one the manager knows.
        session = service.sessions.lookup(session_id)
        assert session is not None
        assert session.transport_type == "sse"
        assert len(service.sessions) == 1

        post = _legacy_post(app, session_id, _initialize_body())
        await post.finish()
        assert post.status == 202
        await stream.wait_for(lambda s: b'"serverInfo"' in s.body)

        stream.disconnect()
        await stream.finish()
        assert session_id not in service.sessions
        assert session.state is SessionState.CLOSED

        late = _legacy_post(app, session_id, {"jsonrpc": "2.0", "id": 2, "method": "tools/list"})
        await late.finish()
        assert late.status == 404
        assert json.loads(late.body)["error"]["code"] == INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_shutdown_ends_open_stream(self, calls: list) -> None:
        app, service = _app(calls, legacy_sse=True)
        stream = AsgiExchange(app, "GET", "/sse", headers={"Accept": "text/event-stream"}).start()
        await stream.wait_for(lambda s: b"session_id=" in s.body)

        await service.sessions.shutdown(1.0)
        await stream.finish()
        assert len(service.sessions) == 0


class TestLegacyMessages:
    def _client(self, calls: list, **server_settings: Any) -> TestClient:
        app, _ = _app(calls, legacy_sse=True, **server_settings)
        return TestClient(app)

    def test_missing_session_id(self, calls: list) -> None:
        with self._client(calls) as client:
            resp = client.post("/messages/", json=_initialize_body())
        assert resp.status_code == 400
        body = resp.json()
        assert body["jsonrpc"] == "2.0"
        assert body["error"]["code"] == INVALID_REQUEST

    def test_unknown_session(self, calls: list) -> None:
        with self._client(calls) as client:
            resp = client.post("/messages/?session_id=" + "ab" * 16, json=_initialize_body())
        assert resp.status_code == 404
        assert resp.json()["error"]["message"] == "Not Found: Session not found or closed"

    def test_bad_origin_forbidden(self, calls: list) -> None:
        with self._client(
            calls,
            dns_rebinding_protection=True,
            allowed_hosts=["testserver"],
            allowed_origins=["http://good.example"],
        ) as client:
            resp = client.post(
                "/messages/?session_id=" + "ab" * 16,
                json=_initialize_body(),
                headers={"Origin": "http://evil.example"},
            )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == INVALID_REQUEST

    def test_stream_refused_with_bad_origin(self, calls: list) -> None:
        with self._client(
            calls,
            dns_rebinding_protection=True,
            allowed_hosts=["testserver"],
            allowed_origins=["http://good.example"],
        ) as client:
            resp = client.get("/sse", headers={"Origin": "http://evil.example"})
        assert resp.status_code == 403
