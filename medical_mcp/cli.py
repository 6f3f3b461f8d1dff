"""CLI argument parsing and main entry point.

* ``medical-mcp server`` runs the Uvicorn server.
* ``medical-mcp tools``  lists the registered tools and exits.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import math
import os
import signal
import socket
import sys
from typing import Any, List, Optional

import uvicorn

from medical_mcp.config import load_config
from medical_mcp.config.schema import MedicalMcpConfig
from medical_mcp.constants import SERVER_NAME, SERVER_VERSION
from medical_mcp.display.console import disp_shutdown, disp_startup_banner
from medical_mcp.display.logging_config import setup_logging
from medical_mcp.errors import ConfigurationError

module_logger = logging.getLogger(__name__)

uvicorn_svr_inst: Optional[uvicorn.Server] = None

_CONFIG_SEARCH_ORDER = ("config.yaml", "config.yml")


def _find_config_file() -> Optional[str]:
    """Return ``config.yaml``/``config.yml`` from the CWD if present.

    Unlike a required config, running without one is fine: defaults and
    environment variables cover every setting.
    """
    for name in _CONFIG_SEARCH_ORDER:
        candidate = os.path.join(os.getcwd(), name)
        if os.path.isfile(candidate):
            return candidate
    return None


def _resolve_config(args: argparse.Namespace) -> tuple[MedicalMcpConfig, Optional[str]]:
    cfg_fpath = getattr(args, "config", None) or os.environ.get("MEDICAL_MCP_CONFIG")
    if cfg_fpath is None:
        cfg_fpath = _find_config_file()
    cfg_abs_path = os.path.abspath(cfg_fpath) if cfg_fpath else None
    config = load_config(cfg_abs_path)

    overrides = {}
    if getattr(args, "host", None):
        overrides["host"] = args.host
    if getattr(args, "port", None):
        overrides["port"] = args.port
    if overrides:
        config = config.model_copy(update={"server": config.server.model_copy(update=overrides)})
    return config, cfg_abs_path


def _port_available(host: str, port: int) -> bool:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
    except OSError as e_bind:
        module_logger.error("Port %s on %s is already in use: %s", port, host, e_bind)
        return False
    finally:
        sock.close()
    return True


# ── ``medical-mcp server`` ──────────────────────────────────────────────


def graceful_shutdown_timeout(seconds: float) -> int:
    """Uvicorn takes whole seconds and reads ``0`` as "wait forever"."""
    return max(1, math.ceil(seconds))


class MedicalMcpServer(uvicorn.Server):
    """Uvicorn server that closes MCP sessions before draining connections.

    Open push streams never finish on their own, so uvicorn's graceful
    wait would otherwise run out its whole timeout on them.
    """

    def __init__(self, config: uvicorn.Config, sessions: Any, session_timeout: float) -> None:
        super().__init__(config)
        self._sessions = sessions
        self._session_timeout = session_timeout

    async def shutdown(self, sockets: Optional[List[socket.socket]] = None) -> None:
        module_logger.info("Closing MCP sessions before stopping the HTTP server.")
        await self._sessions.shutdown(self._session_timeout)
        await super().shutdown(sockets=sockets)


async def _run_server(args: argparse.Namespace) -> None:
    """Async main for the server subcommand."""
    global uvicorn_svr_inst

    log_fpath, cfg_log_lvl = setup_logging(args.log_level)
    module_logger.info(
        "---- %s v%s starting (file log level: %s) ----",
        SERVER_NAME,
        SERVER_VERSION,
        cfg_log_lvl,
    )

    try:
        config, cfg_abs_path = _resolve_config(args)
    except ConfigurationError as e_cfg:
        module_logger.error("Configuration error: %s", e_cfg)
        print(f"\nError: {e_cfg}\n", file=sys.stderr)
        raise SystemExit(2) from e_cfg
    module_logger.info("Configuration file: %s", cfg_abs_path or "(defaults + environment)")

    # Import here so logging is configured before the app logs anything.
    from medical_mcp.server.app import create_app

    app = create_app(config)
    host, port = config.server.host, config.server.port

    uvicorn_cfg = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_config=None,
        log_level=cfg_log_lvl.lower() if cfg_log_lvl == "DEBUG" else "warning",
        timeout_graceful_shutdown=graceful_shutdown_timeout(config.server.shutdown_timeout),
    )
    uvicorn_svr_inst = MedicalMcpServer(
        uvicorn_cfg, app.state.service.sessions, config.server.shutdown_timeout
    )
    app.state.uvicorn_server = uvicorn_svr_inst

    if not _port_available(host, port):
        print(
            f"\nError: Port {port} on {host} is already in use.\n"
            f"   Release the port or choose a different one with --port.\n",
            file=sys.stderr,
        )
        return

    disp_startup_banner(config, app.state.service.tools, log_fpath, cfg_log_lvl, cfg_abs_path)
    module_logger.info("Preparing to start Uvicorn server: http://%s:%s", host, port)
    try:
        await uvicorn_svr_inst.serve()
    except (KeyboardInterrupt, SystemExit) as e_exit:
        module_logger.info("Server stopped due to '%s'.", type(e_exit).__name__)
    except Exception as e_serve:
        module_logger.exception("Unexpected error while running Uvicorn server: %s", e_serve)
        raise
    finally:
        disp_shutdown("server stopped")
        module_logger.info("%s has shut down or is shutting down.", SERVER_NAME)


def _cmd_server(args: argparse.Namespace) -> None:
    """Entry-point for ``medical-mcp server``."""
    force_exit_count = 0

    def _sigint_handler(sig: int, frame: object) -> None:
        nonlocal force_exit_count
        force_exit_count += 1
        if force_exit_count >= 2:
            module_logger.info("Force exit requested (double Ctrl+C).")
            signal.signal(signal.SIGINT, signal.SIG_DFL)
            os._exit(1)
        module_logger.info("Ctrl+C received, shutting down.")
        print("\n[Ctrl+C] Shutting down gracefully... (press again to force)")
        if uvicorn_svr_inst is not None:
            uvicorn_svr_inst.should_exit = True

    def _sigterm_handler(sig: int, frame: object) -> None:
        module_logger.info("SIGTERM received, shutting down gracefully.")
        if uvicorn_svr_inst is not None:
            uvicorn_svr_inst.should_exit = True

    signal.signal(signal.SIGINT, _sigint_handler)
    signal.signal(signal.SIGTERM, _sigterm_handler)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, signal.SIG_IGN)

    try:
        asyncio.run(_run_server(args))
    except KeyboardInterrupt:
        module_logger.info("%s main program interrupted by KeyboardInterrupt.", SERVER_NAME)
    except SystemExit as e_sys_exit:
        if e_sys_exit.code not in (None, 0):
            module_logger.error(
                "%s main program exited with SystemExit (code: %s).", SERVER_NAME, e_sys_exit.code
            )
            raise
    except Exception as e_fatal:
        module_logger.exception(
            "%s main program encountered an uncaught fatal error: %s", SERVER_NAME, e_fatal
        )
        sys.exit(1)
    finally:
        module_logger.info("%s application finished.", SERVER_NAME)


# ── ``medical-mcp tools`` ───────────────────────────────────────────────


def _cmd_tools(args: argparse.Namespace) -> None:
    """Print every registered tool with its description."""
    from medical_mcp.runtime.service import MedicalMcpService

    try:
        config, _ = _resolve_config(args)
    except ConfigurationError as e_cfg:
        print(f"Error: {e_cfg}", file=sys.stderr)
        sys.exit(2)
    service = MedicalMcpService(config)
    for tool in service.tools:
        print(f"{tool.name}")
        if tool.description:
            print(f"    {tool.description}")


def _build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser with server/tools subcommands."""
    parser = argparse.ArgumentParser(description=f"{SERVER_NAME} v{SERVER_VERSION}")
    subparsers = parser.add_subparsers(dest="command")

    # ── server ──────────────────────────────────────────────────
    sp_server = subparsers.add_parser("server", help="Run the MCP server (Uvicorn)")
    sp_server.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host address (default: config, HOST, or 127.0.0.1)",
    )
    sp_server.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port (default: config, PORT/MCP_PORT, or 3000)",
    )
    sp_server.add_argument(
        "--log-level",
        type=str,
        default="info",
        choices=["debug", "info", "warning", "error", "critical"],
        help="Set file logging level (default: info)",
    )
    sp_server.add_argument(
        "--config",
        type=str,
        default=None,
        metavar="PATH",
        help="Path to configuration file (YAML). Default: config.yaml/config.yml in CWD",
    )
    sp_server.set_defaults(func=_cmd_server)

    # ── tools ───────────────────────────────────────────────────
    sp_tools = subparsers.add_parser("tools", help="List the registered MCP tools")
    sp_tools.add_argument("--config", type=str, default=None, metavar="PATH")
    sp_tools.set_defaults(func=_cmd_tools)

    return parser


def main() -> None:
    """Program entry point: parse arguments and dispatch to subcommand."""
    parser = _build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)
    else:
        args.func(args)
