"""Console status display for headless server runs."""

import os
from datetime import datetime
from typing import List, Optional

from mcp import types as mcp_types

from medical_mcp.config.schema import MedicalMcpConfig
from medical_mcp.constants import (
    HEALTH_PATH,
    SERVER_NAME,
    SERVER_VERSION,
    SSE_PATH,
    STREAMABLE_HTTP_PATH,
)

_LINE_LEN = 70


def disp_startup_banner(
    config: MedicalMcpConfig,
    tools: List[mcp_types.Tool],
    log_fpath: str,
    log_level: str,
    cfg_fpath: Optional[str] = None,
) -> None:
    """Print the endpoints and key settings once the server is configured."""
    host, port = config.server.host, config.server.port
    base = f"http://{host}:{port}"
    header = f" {SERVER_NAME} v{SERVER_VERSION} "

    print(f"\n{'=' * _LINE_LEN}")
    print(f"{header:-^{_LINE_LEN}}")
    print(f"{'=' * _LINE_LEN}")
    print(f"[{datetime.now():%Y-%m-%d %H:%M:%S}] Initialization Status: starting")
    print(f"    Endpoint (streamable-http): {base}{STREAMABLE_HTTP_PATH}")
    if config.server.legacy_sse:
        print(f"    Endpoint (sse, legacy):     {base}{SSE_PATH}")
    print(f"    Health check:               {base}{HEALTH_PATH}")
    print(f"    Config File: {os.path.basename(cfg_fpath) if cfg_fpath else '(defaults)'}")
    print(f"    Log File: {log_fpath} (level: {log_level})")
    print(
        f"    PBS throttle: 1 request / {config.pbs.min_interval:g}s, "
        f"cache TTL {config.pbs.cache_ttl:g}s"
    )
    print(f"    MCP Tools: {len(tools)} loaded")
    print(f"{'=' * _LINE_LEN}\n")


def disp_shutdown(reason: str) -> None:
    print(f"[{datetime.now():%Y-%m-%d %H:%M:%S}] Shutdown Status: {reason}")
