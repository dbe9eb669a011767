"""Configuration loading and defaults.

Reads from config.toml at the project root, with environment variable overrides.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path

from dotenv import load_dotenv

# Look for .env in the package's parent directory (project root)
_project_root = Path(__file__).resolve().parent.parent
load_dotenv(_project_root / ".env")
load_dotenv()  # also check cwd

# ---------------------------------------------------------------------------
# Load config.toml
# ---------------------------------------------------------------------------

_toml_path = Path(os.getenv("BLOCKFLOW_CONFIG", str(_project_root / "config.toml")))
_cfg: dict = {}
if _toml_path.exists():
    with open(_toml_path, "rb") as f:
        _cfg = tomllib.load(f)

_engine = _cfg.get("engine", {})
_rate = _cfg.get("rate_limit", {})
_downloads = _cfg.get("downloads", {})
_server = _cfg.get("server", {})

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

STATE_DIR = Path(os.getenv("BLOCKFLOW_STATE_DIR", _engine.get("state_dir", str(Path.cwd() / ".blockflow"))))
DOWNLOAD_DIR = Path(os.getenv("BLOCKFLOW_DOWNLOAD_DIR", _downloads.get("dir", str(Path.cwd() / "downloads"))))

# ---------------------------------------------------------------------------
# Provider API keys (env-only, never in toml)
# ---------------------------------------------------------------------------

ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")

# ---------------------------------------------------------------------------
# Engine defaults
# ---------------------------------------------------------------------------

DEFAULT_MODEL = os.getenv("BLOCKFLOW_DEFAULT_MODEL", _engine.get("default_model", "openai/gpt-4o-mini"))
DEFAULT_IMAGE_MODEL = os.getenv("BLOCKFLOW_IMAGE_MODEL", _engine.get("image_model", "dall-e-3"))
DEFAULT_TEMPERATURE = float(os.getenv("BLOCKFLOW_TEMPERATURE", _engine.get("temperature", 0.7)))
DEFAULT_MAX_TOKENS = int(os.getenv("BLOCKFLOW_MAX_TOKENS", _engine.get("max_tokens", 2048)))
DEFAULT_WORKERS = int(os.getenv("BLOCKFLOW_WORKERS", _engine.get("workers", 3)))
DEFAULT_MAX_RETRIES = int(os.getenv("BLOCKFLOW_MAX_RETRIES", _engine.get("max_retries", 3)))
DEFAULT_RETRY_DELAY = float(os.getenv("BLOCKFLOW_RETRY_DELAY", _engine.get("retry_delay", 5.0)))
MAX_BATCH_ITEMS = int(os.getenv("BLOCKFLOW_MAX_BATCH_ITEMS", _engine.get("max_batch_items", 50)))
MIN_PROMPT_LENGTH = int(os.getenv("BLOCKFLOW_MIN_PROMPT_LENGTH", _engine.get("min_prompt_length", 5)))
MAX_HISTORY_RECORDS = int(os.getenv("BLOCKFLOW_MAX_HISTORY", _engine.get("max_history", 1000)))

# Snapshots older than this are discarded on load
BATCH_STATE_MAX_AGE = float(os.getenv("BLOCKFLOW_STATE_MAX_AGE", _engine.get("state_max_age", 24 * 60 * 60)))

# ---------------------------------------------------------------------------
# Rate limiting (per provider)
# ---------------------------------------------------------------------------

REQUESTS_PER_MINUTE = int(os.getenv("BLOCKFLOW_RPM", _rate.get("requests_per_minute", 60)))
REQUESTS_PER_SECOND = float(os.getenv("BLOCKFLOW_RPS", _rate.get("requests_per_second", 2)))

# ---------------------------------------------------------------------------
# Downloads
# ---------------------------------------------------------------------------

DOWNLOAD_MAX_CONCURRENT = int(os.getenv("BLOCKFLOW_DOWNLOAD_CONCURRENCY", _downloads.get("max_concurrent", 3)))
DOWNLOAD_MAX_RETRIES = int(os.getenv("BLOCKFLOW_DOWNLOAD_RETRIES", _downloads.get("max_retries", 3)))
DOWNLOAD_RETRY_DELAY = float(os.getenv("BLOCKFLOW_DOWNLOAD_RETRY_DELAY", _downloads.get("retry_delay", 2.0)))
DOWNLOAD_TIMEOUT = float(os.getenv("BLOCKFLOW_DOWNLOAD_TIMEOUT", _downloads.get("timeout", 60.0)))
DOWNLOAD_SEQUENTIAL = os.getenv(
    "BLOCKFLOW_DOWNLOAD_SEQUENTIAL", str(_downloads.get("sequential", False))
).lower() in ("1", "true", "yes")
DOWNLOAD_SEQUENTIAL_DELAY = float(os.getenv("BLOCKFLOW_DOWNLOAD_DELAY", _downloads.get("sequential_delay", 0.5)))
DOWNLOAD_NAMING = os.getenv("BLOCKFLOW_DOWNLOAD_NAMING", _downloads.get("naming", "original"))

# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

SERVER_HOST = os.getenv("BLOCKFLOW_HOST", _server.get("host", "0.0.0.0"))
SERVER_PORT = int(os.getenv("BLOCKFLOW_PORT", _server.get("port", 8000)))
