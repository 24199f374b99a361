# GoClaw Configuration
# Environment-driven settings and logging for the deployment service.
# Every knob has an env var. .env is loaded before anything reads os.environ.

from dotenv import load_dotenv
load_dotenv()

import logging
import os
import re
from dataclasses import dataclass
from urllib.parse import urlsplit

from errors import ConfigurationError

# ── Paths & environment ───────────────────────────────────────────────

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
LOG_FILE = os.environ.get("GOCLAW_LOG_FILE", os.path.join(BASE_DIR, "goclaw.log"))

GOCLAW_ENV = os.environ.get("GOCLAW_ENV", "dev").lower()
API_TOKEN = os.environ.get("GOCLAW_API_TOKEN", "")

DEFAULT_MARKETPLACE_URL = "https://console-api.akash.network"
DEFAULT_CONSOLE_URL = "https://console.akash.network"

# Minimum escrow deposit accepted by the marketplace for a new deployment
MIN_DEPOSIT_USD = 5.0


def _env_bool(name, default=False):
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name, default):
    return float(os.environ.get(name, default))


def _env_int(name, default):
    return int(os.environ.get(name, default))


def normalize_marketplace_url(value):
    """Normalize a marketplace API base URL.

    Operators regularly paste the dashboard host or an /api path instead of
    the API host. Both are corrected; anything unparseable falls back to the
    default endpoint.
    """
    trimmed = (value or "").strip().strip("'\"")
    if not trimmed:
        return DEFAULT_MARKETPLACE_URL

    parts = urlsplit(trimmed)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        log.warning(
            "Marketplace URL %r is invalid, falling back to %s",
            trimmed, DEFAULT_MARKETPLACE_URL,
        )
        return DEFAULT_MARKETPLACE_URL

    netloc = parts.netloc
    path = parts.path
    corrected = False

    if parts.hostname == "console.akash.network":
        netloc = netloc.replace("console.akash.network", "console-api.akash.network")
        corrected = True
    if path == "/api" or path.startswith("/api/"):
        path = ""
        corrected = True

    normalized = f"{parts.scheme}://{netloc}{path.rstrip('/')}"
    if corrected:
        log.warning("Marketplace URL normalized from %r to %r", trimmed, normalized)
    return normalized


# ── Marketplace / orchestration settings ──────────────────────────────


@dataclass(frozen=True)
class MarketplaceSettings:
    """Knobs for one orchestration run. Times are in seconds."""

    api_key: str = ""
    base_url: str = DEFAULT_MARKETPLACE_URL
    console_url: str = DEFAULT_CONSOLE_URL
    request_timeout: float = 30.0
    http_max_retries: int = 3
    http_retry_base_delay: float = 2.0
    bid_poll_interval: float = 3.0
    bid_poll_max_attempts: int = 20
    bid_poll_timeout: float = 60.0
    lease_max_retries: int = 3
    lease_retry_base_delay: float = 2.0
    blacklist_cooldown: float = 3600.0
    deposit_usd: float = MIN_DEPOSIT_USD
    inference_api_key: str = ""
    gateway_token: str = "2002"
    close_on_failure: bool = True

    @classmethod
    def from_env(cls):
        return cls(
            api_key=os.environ.get("GOCLAW_MARKETPLACE_API_KEY", ""),
            base_url=normalize_marketplace_url(os.environ.get("GOCLAW_MARKETPLACE_URL")),
            console_url=os.environ.get("GOCLAW_CONSOLE_URL", DEFAULT_CONSOLE_URL).rstrip("/"),
            request_timeout=_env_float("GOCLAW_REQUEST_TIMEOUT_SEC", 30),
            http_max_retries=_env_int("GOCLAW_HTTP_MAX_RETRIES", 3),
            http_retry_base_delay=_env_float("GOCLAW_HTTP_RETRY_BASE_DELAY_SEC", 2),
            bid_poll_interval=_env_float("GOCLAW_BID_POLL_INTERVAL_SEC", 3),
            bid_poll_max_attempts=_env_int("GOCLAW_BID_POLL_MAX_ATTEMPTS", 20),
            bid_poll_timeout=_env_float("GOCLAW_BID_POLL_TIMEOUT_SEC", 60),
            lease_max_retries=_env_int("GOCLAW_LEASE_MAX_RETRIES", 3),
            lease_retry_base_delay=_env_float("GOCLAW_LEASE_RETRY_BASE_DELAY_SEC", 2),
            blacklist_cooldown=_env_float("GOCLAW_BLACKLIST_COOLDOWN_SEC", 3600),
            deposit_usd=_env_float("GOCLAW_DEPOSIT_USD", MIN_DEPOSIT_USD),
            inference_api_key=os.environ.get("GOCLAW_INFERENCE_API_KEY", ""),
            gateway_token=os.environ.get("GOCLAW_GATEWAY_TOKEN", "2002"),
            close_on_failure=_env_bool("GOCLAW_CLOSE_ON_FAILURE", True),
        )

    def require_api_key(self):
        """Fail fast when the service's own marketplace credentials are missing."""
        if not self.api_key:
            raise ConfigurationError(
                "GOCLAW_MARKETPLACE_API_KEY",
                "marketplace API key is not configured",
            )
        return self.api_key


# ── Logging ───────────────────────────────────────────────────────────

# Telegram bot tokens look like 123456789:AAH... and must never hit a log file
_BOT_TOKEN_RE = re.compile(r"\b(\d{6,12}):[A-Za-z0-9_-]{30,}\b")


class RedactSecretsFilter(logging.Filter):
    """Mask channel bot tokens in formatted log messages."""

    def filter(self, record):
        message = record.getMessage()
        redacted = _BOT_TOKEN_RE.sub(r"\1:***", message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(log_file=None, level=logging.INFO):
    """Console + file logging for the goclaw logger. Idempotent."""
    log_file = log_file or LOG_FILE
    logger = logging.getLogger("goclaw")

    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )
    redact = RedactSecretsFilter()

    fh = logging.FileHandler(log_file)
    fh.setLevel(level)
    fh.setFormatter(fmt)
    fh.addFilter(redact)
    logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(fmt)
    ch.addFilter(redact)
    logger.addHandler(ch)

    return logger


log = logging.getLogger("goclaw")
