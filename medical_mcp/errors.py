"""Project-specific exception classes."""

from typing import Optional


class MedicalMcpError(Exception):
    """Base class for all custom exceptions in Medical MCP."""


class ConfigurationError(MedicalMcpError):
    """Raised when loading or validating the configuration fails."""


# ── Upstream failures ────────────────────────────────────────────────────


class UpstreamError(MedicalMcpError):
    """An upstream HTTP call failed (non-2xx status or network error)."""

    def __init__(
        self,
        endpoint: str,
        cause: str,
        *,
        api: str = "Upstream",
        status_code: Optional[int] = None,
        orig_exc: Optional[Exception] = None,
    ) -> None:
        self.endpoint = endpoint
        self.cause = cause
        self.api = api
        self.status_code = status_code
        self.orig_exc = orig_exc
        super().__init__(self._build_message())

    def _build_message(self) -> str:
        return f"{self.api} request to '{self.endpoint}' failed: {self.cause}"


class UpstreamFormatError(UpstreamError):
    """An upstream answered 2xx but the payload was not the expected JSON."""

    def _build_message(self) -> str:
        return f"{self.api} returned an unexpected response for '{self.endpoint}': {self.cause}"


# ── Tool errors ──────────────────────────────────────────────────────────
# str() of every ToolError is shown to the caller as the tool result text.


class ToolError(MedicalMcpError):
    """Base class for failures reported back as tool-execution errors."""


class DuplicateToolError(ToolError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class UnknownToolError(ToolError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown tool: {name}")


class InvalidArgumentsError(ToolError):
    """Arguments did not satisfy the tool's input schema."""

    def __init__(self, tool: str, field: str, constraint: str) -> None:
        self.tool = tool
        self.field = field
        self.constraint = constraint
        super().__init__(f"Invalid arguments for tool '{tool}': field '{field}': {constraint}")


class ToolExecutionError(ToolError):
    """A tool handler failed while running."""

    def __init__(self, tool: str, message: str, orig_exc: Optional[Exception] = None) -> None:
        self.tool = tool
        self.orig_exc = orig_exc
        super().__init__(message)


class ToolTimeoutError(ToolError):
    def __init__(self, tool: str, timeout: float) -> None:
        self.tool = tool
        self.timeout = timeout
        super().__init__(f"Tool '{tool}' timed out after {timeout:g}s")


class RecordNotFoundError(ToolError):
    """The upstream has no record matching the caller's identifier."""
