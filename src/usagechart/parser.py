"""Usage extraction from heterogeneous JSON-lines session logs.

Agent runtimes write usage in several shapes: nested under ``message``
or at the top level, with camelCase or snake_case field names, with or
without a precomputed total. Every alias table below is evaluated in
order and the first usable value wins, so supporting a new shape means
adding an entry rather than another branch.
"""

import json
import math
import re
from datetime import date, datetime, time

from .config import MAX_RECORD_COST, MAX_RECORD_TOKENS, UNKNOWN_DATE, UNKNOWN_MODEL
from .models import UsageRecord

# Precomputed totals, highest priority first
TOTAL_TOKEN_FIELDS = ("totalTokens", "total_tokens", "total", "tokens")

# Summed when no total is present
COMPONENT_TOKEN_FIELDS = (
    "input",
    "output",
    "cacheRead",
    "cacheWrite",
    "input_tokens",
    "output_tokens",
    "cache_read_input_tokens",
    "cache_creation_input_tokens",
    "reasoning_tokens",
)

MODEL_PATHS = (
    ("message", "model"),
    ("message", "modelId"),
    ("message", "model_id"),
    ("model",),
    ("modelId",),
    ("model_id",),
)

USAGE_PATHS = (("message", "usage"), ("usage",))
TIMESTAMP_PATHS = (("timestamp",), ("message", "timestamp"))

# Numbers above this are epoch milliseconds rather than seconds
EPOCH_MS_THRESHOLD = 10_000_000_000
EPOCH_MS_DIGITS = 13

_INT_RE = re.compile(r"-?\d+")
_DATE_PREFIX_RE = re.compile(r"\d{4}-\d{2}-\d{2}")


def _safe_json(text) -> dict | None:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _dig(data, path):
    """Follow ``path`` through nested dicts; None when any step is missing."""
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _to_int(value) -> int:
    """Coerce a loosely-typed token count; anything unusable is 0."""
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return 0
    if isinstance(value, float):
        if not math.isfinite(value):
            return 0
        value = int(value)
    if not isinstance(value, int) or abs(value) > MAX_RECORD_TOKENS:
        return 0
    return value


def _to_cost(value) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        value = float(value)
    except OverflowError:
        return None
    if not math.isfinite(value) or not 0 <= value <= MAX_RECORD_COST:
        return None
    return value


def _first_usage(raw: dict) -> dict | None:
    for path in USAGE_PATHS:
        usage = _dig(raw, path)
        if isinstance(usage, dict):
            return usage
    return None


def extract_tokens(usage: dict) -> int:
    """Total tokens for a usage object: explicit total first, else the component sum."""
    for field in TOTAL_TOKEN_FIELDS:
        total = _to_int(usage.get(field))
        if total > 0:
            return total
    total = sum(n for n in (_to_int(usage.get(f)) for f in COMPONENT_TOKEN_FIELDS) if n > 0)
    return total if total <= MAX_RECORD_TOKENS else 0


def extract_model(raw: dict) -> str:
    for path in MODEL_PATHS:
        value = _dig(raw, path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return UNKNOWN_MODEL


# (selector, extractor) pairs; the first pair producing a value wins
COST_SOURCES = (
    (lambda raw, usage: raw.get("costUsd"), _to_cost),
    (lambda raw, usage: usage.get("cost"), _to_cost),
    (lambda raw, usage: _dig(usage, ("cost", "total")), _to_cost),
)


def extract_cost(raw: dict, usage: dict) -> float:
    for select, extract in COST_SOURCES:
        cost = extract(select(raw, usage))
        if cost is not None:
            return cost
    return 0.0


def extract_timestamp(raw: dict):
    for path in TIMESTAMP_PATHS:
        value = _dig(raw, path)
        if value is not None:
            return value
    return None


def _from_epoch(seconds: float) -> datetime | None:
    try:
        return datetime.fromtimestamp(seconds).astimezone()
    except (OverflowError, OSError, ValueError):
        return None


def _local_midnight(day: date) -> datetime:
    return datetime.combine(day, time()).astimezone()


def parse_timestamp(value) -> datetime | None:
    """Normalize a raw timestamp to an aware datetime in local time.

    Accepts unix seconds or milliseconds (as numbers or numeric strings),
    ISO-8601 strings and bare ``YYYY-MM-DD`` dates. Naive values are taken
    as local wall-clock time.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        try:
            seconds = value / 1000 if value > EPOCH_MS_THRESHOLD else value
            return _from_epoch(int(seconds))
        except (OverflowError, ValueError):
            return None
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None
    if _INT_RE.fullmatch(text):
        try:
            seconds = int(text)
        except ValueError:
            return None
        if len(text) >= EPOCH_MS_DIGITS:
            seconds //= 1000
        return _from_epoch(seconds)

    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).astimezone()
    except (OverflowError, OSError, ValueError):
        pass

    # Trailing junk after a calendar date still yields that date
    if _DATE_PREFIX_RE.match(text):
        try:
            return _local_midnight(date.fromisoformat(text[:10]))
        except (OverflowError, OSError, ValueError):
            return None
    return None


def parse_line(agent_name: str, line) -> UsageRecord | None:
    """Parse one JSONL line into a UsageRecord, or None if it carries no usage."""
    if isinstance(line, bytes):
        line = line.strip()
    else:
        line = (line or "").strip()
    if not line:
        return None

    raw = _safe_json(line)
    if raw is None:
        return None

    usage = _first_usage(raw)
    if usage is None:
        return None

    tokens = extract_tokens(usage)
    if tokens <= 0:
        return None

    ts = parse_timestamp(extract_timestamp(raw))
    if ts is None:
        date_key, hour, dow = UNKNOWN_DATE, None, None
    else:
        date_key, hour, dow = ts.date().isoformat(), ts.hour, ts.weekday()

    return UsageRecord(
        agent_name=agent_name,
        model=extract_model(raw),
        date_key=date_key,
        tokens=tokens,
        cost=extract_cost(raw, usage),
        hour=hour,
        dow=dow,
    )
