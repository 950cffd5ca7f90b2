"""
config.py — Centralized configuration for the Ticket Triage Agent.

All parameters, model IDs, endpoints and paths are defined here.
Import this module everywhere instead of hard-coding values.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

from triage_agent.errors import ConfigurationError

# Load .env from project root (two levels up from this file)
_PROJECT_ROOT = Path(__file__).parent.parent
load_dotenv(dotenv_path=_PROJECT_ROOT / ".env")


# ─── AWS / Bedrock ────────────────────────────────────────────────────────────
AWS_ACCESS_KEY_ID: str = os.getenv("AWS_ACCESS_KEY_ID", "")
AWS_SECRET_ACCESS_KEY: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
AWS_DEFAULT_REGION: str = os.getenv("AWS_DEFAULT_REGION", "us-east-1")


# ─── LLM ─────────────────────────────────────────────────────────────────────
# Must be an image-capable model: attachments are sent inline with the prompt.
LLM_MODEL_ID: str = os.getenv("LLM_MODEL_ID", "amazon.nova-pro-v1:0")
LLM_TEMPERATURE: float = 0.2
LLM_MAX_TOKENS: int = 1024
LLM_TOP_P: float = 0.9


# ─── Remote tool server (issue tracker over MCP) ─────────────────────────────
TRACKER_API_KEY: str = os.getenv("TRACKER_API_KEY", "")
TOOL_GATEWAY_API_KEY: str = os.getenv("TOOL_GATEWAY_API_KEY", "")
TOOL_SERVER_URL: str = os.getenv(
    "TOOL_SERVER_URL",
    "https://server.smithery.ai/@emmett-deen/linear-mcp-server/mcp",
)
TOOL_CLIENT_NAME: str = "TicketTriageAgent"
TOOL_CLIENT_VERSION: str = "1.0.0"


# ─── Attachments ──────────────────────────────────────────────────────────────
# Bearer token sent when downloading private chat attachments.
FILE_AUTH_TOKEN: str = os.getenv("FILE_AUTH_TOKEN", "")
FILE_FETCH_TIMEOUT_S: float = float(os.getenv("FILE_FETCH_TIMEOUT_S", "30"))
TEMP_DIR: Path = Path(os.getenv("TEMP_DIR", str(_PROJECT_ROOT / "temp")))


# ─── Pipeline ─────────────────────────────────────────────────────────────────
SEARCH_TOOL_NAME: str = "search_issues"
SEARCH_RESULT_LIMIT: int = 10
PREVIEW_TICKET_LIMIT: int = 5
RELEVANCE_THRESHOLD: int = 8        # out of 10


# ─── Resilience ───────────────────────────────────────────────────────────────
MAX_ATTEMPTS: int = 2
RETRY_BACKOFF_S: float = 1.0


# ─── Sessions ─────────────────────────────────────────────────────────────────
# Abandoned conversations are evicted after this much inactivity.
SESSION_TTL_S: int = int(os.getenv("SESSION_TTL_S", str(6 * 60 * 60)))


# ─── Logging ──────────────────────────────────────────────────────────────────
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_MAX_BYTES: int = int(os.getenv("LOG_MAX_BYTES", str(10 * 1024 * 1024)))
LOG_BACKUP_COUNT: int = int(os.getenv("LOG_BACKUP_COUNT", "5"))


# ─── Paths ────────────────────────────────────────────────────────────────────
LOGS_DIR: Path = _PROJECT_ROOT / "logs"
LOG_FILE: Path = LOGS_DIR / "agent.log"
METRICS_FILE: Path = LOGS_DIR / "metrics.jsonl"

# Ensure directories exist at import time
for _dir in [LOGS_DIR, TEMP_DIR]:
    _dir.mkdir(parents=True, exist_ok=True)


_REQUIRED_AT_STARTUP = ("TRACKER_API_KEY", "TOOL_GATEWAY_API_KEY")


def require(name: str) -> str:
    """
    Return the value of a configured setting, or fail loudly.

    Raises:
        ConfigurationError: If the setting is unset or empty.
    """
    value = globals().get(name) or os.getenv(name, "")
    if not value:
        raise ConfigurationError(f"{name} environment variable is not set.", setting=name)
    return str(value)


def check_required_settings() -> None:
    """Validate credentials once at process start (entry points only)."""
    for name in _REQUIRED_AT_STARTUP:
        require(name)
