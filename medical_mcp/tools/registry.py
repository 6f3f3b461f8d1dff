"""Tool registry: unique names mapped to an argument model and an async handler.

The registry holds no per-session state, so one instance can back any
number of MCP server instances concurrently.  It is filled once at startup
and frozen; lookups afterwards are read-only and need no locking.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Type, Union

from mcp import types as mcp_types
from pydantic import BaseModel, ValidationError

from medical_mcp.errors import (
    DuplicateToolError,
    InvalidArgumentsError,
    ToolError,
    ToolExecutionError,
    UnknownToolError,
    UpstreamError,
)

logger = logging.getLogger(__name__)

Content = Union[mcp_types.TextContent, mcp_types.ImageContent, mcp_types.EmbeddedResource]
ToolResult = Union[str, Sequence[Content]]
ToolHandler = Callable[[Any], Awaitable[ToolResult]]


@dataclass(frozen=True)
class ToolDescriptor:
    """One registered tool."""

    name: str
    description: str
    args_model: Type[BaseModel]
    handler: ToolHandler

    @property
    def input_schema(self) -> Dict[str, Any]:
        schema = self.args_model.model_json_schema()
        schema.pop("title", None)
        schema.setdefault("type", "object")
        schema.setdefault("properties", {})
        return schema

    def to_mcp_tool(self) -> mcp_types.Tool:
        return mcp_types.Tool(
            name=self.name,
            description=self.description,
            inputSchema=self.input_schema,
        )


def _first_violation(exc: ValidationError) -> tuple[str, str]:
    err = exc.errors()[0]
    field = ".".join(str(part) for part in err["loc"]) or "(arguments)"
    return field, err["msg"]


class ToolRegistry:
    """Lookup and dispatch for tools.

    Usage::

        registry = ToolRegistry()
        registry.register("echo", EchoArgs, handle_echo, "Echo the input")
        registry.freeze()
        content = await registry.dispatch("echo", {"text": "hi"})
    """

    def __init__(self) -> None:
        self._tools: Dict[str, ToolDescriptor] = {}
        self._frozen = False

    # ── Registration ─────────────────────────────────────────────────

    def register(
        self,
        name: str,
        args_model: Type[BaseModel],
        handler: ToolHandler,
        description: str = "",
    ) -> ToolDescriptor:
        if self._frozen:
            raise RuntimeError(f"Cannot register '{name}': tool registry is frozen")
        if name in self._tools:
            raise DuplicateToolError(name)
        descriptor = ToolDescriptor(
            name=name, description=description, args_model=args_model, handler=handler
        )
        self._tools[name] = descriptor
        logger.debug("Registered tool '%s'.", name)
        return descriptor

    def tool(
        self, name: str, args_model: Type[BaseModel], description: str = ""
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator form of :meth:`register`."""

        def decorator(handler: ToolHandler) -> ToolHandler:
            self.register(name, args_model, handler, description)
            return handler

        return decorator

    def freeze(self) -> None:
        self._frozen = True
        logger.info("Tool registry frozen with %d tool(s).", len(self._tools))

    @property
    def frozen(self) -> bool:
        return self._frozen

    # ── Queries ──────────────────────────────────────────────────────

    def get(self, name: str) -> Optional[ToolDescriptor]:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def list_tools(self) -> List[mcp_types.Tool]:
        return [d.to_mcp_tool() for d in self._tools.values()]

    # ── Dispatch ─────────────────────────────────────────────────────

    def validate(self, name: str, raw_args: Optional[Dict[str, Any]]) -> BaseModel:
        """Return the parsed arguments for *name* or raise a :class:`ToolError`."""
        descriptor = self._tools.get(name)
        if descriptor is None:
            raise UnknownToolError(name)
        if raw_args is None:
            raw_args = {}
        if not isinstance(raw_args, dict):
            raise InvalidArgumentsError(name, "(arguments)", "must be a JSON object")
        try:
            return descriptor.args_model.model_validate(raw_args)
        except ValidationError as exc:
            field, constraint = _first_violation(exc)
            raise InvalidArgumentsError(name, field, constraint) from exc

    async def dispatch(self, name: str, raw_args: Optional[Dict[str, Any]]) -> List[Content]:
        """Validate *raw_args* and run the handler for *name*.

        Every failure surfaces as a :class:`ToolError`; the caller turns
        those into error-flagged tool results rather than protocol errors.
        """
        args = self.validate(name, raw_args)
        handler = self._tools[name].handler
        try:
            result = await handler(args)
        except ToolError:
            raise
        except UpstreamError as exc:
            raise ToolExecutionError(name, str(exc), orig_exc=exc) from exc
        except Exception as exc:
            logger.exception("Tool '%s' raised an unexpected error.", name)
            raise ToolExecutionError(
                name, f"Tool '{name}' failed: {type(exc).__name__}: {exc}", orig_exc=exc
            ) from exc

        if isinstance(result, str):
            return [mcp_types.TextContent(type="text", text=result)]
        return list(result)
