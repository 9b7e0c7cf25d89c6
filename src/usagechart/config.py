"""Configuration management for usagechart."""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _expand(path: str) -> Path:
    return Path(os.path.expanduser(path))


AGENTS_DIR = _expand(os.getenv("USAGECHART_AGENTS_DIR", "~/.openclaw/agents"))
DB_PATH = _expand(os.getenv("USAGECHART_DB_PATH", "~/.usagechart/usage_cache.db"))

HOST = os.getenv("USAGECHART_HOST", "0.0.0.0")
PORT = int(os.getenv("USAGECHART_PORT", "8585"))

# Layout: <AGENTS_DIR>/<agent>/<SESSIONS_DIRNAME>/*.jsonl
SESSIONS_DIRNAME = "sessions"
SESSION_GLOB = "*.jsonl"

# Upper bound for a single log line held in memory
MAX_LINE_BYTES = 2 * 1024 * 1024
INSERT_BATCH_SIZE = 500

# Per-line ceilings; larger values are treated as unusable so cache sums stay finite
MAX_RECORD_TOKENS = 10**12
MAX_RECORD_COST = 1e9

UNKNOWN_DATE = "unknown"
UNKNOWN_MODEL = "unknown"

COST_PRECISION = 6
