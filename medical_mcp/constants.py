"""Shared constants for Medical MCP."""

SERVER_NAME = "medical-mcp"
SERVER_VERSION = "1.0.0"

# Network defaults
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3000

# Transport paths
STREAMABLE_HTTP_PATH = "/mcp"
SSE_PATH = "/sse"
POST_MESSAGES_PATH = "/messages/"
HEALTH_PATH = "/health"

# Logging defaults
LOG_DIR = "logs"
DEFAULT_LOG_LEVEL = "INFO"

# Request handling
REQUEST_TIMEOUT = 120.0  # seconds a single tool call may run
SESSION_TTL = 1800.0  # idle seconds before a session is reaped
SESSION_CLEANUP_INTERVAL = 60.0
SHUTDOWN_TIMEOUT = 10.0  # hard deadline for closing live sessions
PROGRESS_SEND_TIMEOUT = 5.0  # a progress notification to a stalled client is dropped after this

# Upstream APIs
USER_AGENT = "medical-mcp/1.0"
FDA_API_BASE = "https://api.fda.gov"
WHO_API_BASE = "https://ghoapi.azureedge.net/api"
RXNAV_API_BASE = "https://rxnav.nlm.nih.gov/REST"
PUBMED_API_BASE = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils"
SERPAPI_BASE = "https://serpapi.com"
UPSTREAM_TIMEOUT = 30.0

# PBS public API: one request per ~20s across all users
PBS_API_BASE = "https://data-api.health.gov.au/pbs/api/v3"
PBS_MIN_INTERVAL = 20.0
PBS_CACHE_TTL = 300.0
PBS_TIMEOUT = 30.0
