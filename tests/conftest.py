"""Shared fixtures for usagechart tests."""

import json
import time

import pytest

from usagechart.db import Database


@pytest.fixture(autouse=True)
def utc_timezone(monkeypatch):
    """Pin local time to UTC so date keys are deterministic."""
    monkeypatch.setenv("TZ", "UTC")
    time.tzset()
    yield
    monkeypatch.undo()
    time.tzset()


@pytest.fixture
def agents_dir(tmp_path):
    path = tmp_path / "agents"
    path.mkdir()
    return path


@pytest.fixture
async def db(tmp_path):
    database = Database(tmp_path / "usage_cache.db")
    await database.init()
    yield database
    await database.close()


def _usage_line(tokens, ts="2026-02-17T00:00:00Z", model="test-model", **extra):
    entry = {
        "timestamp": ts,
        "model": model,
        "usage": {"input_tokens": tokens, "output_tokens": 0},
        **extra,
    }
    return json.dumps(entry)


@pytest.fixture
def write_session(agents_dir):
    """Write ``lines`` (dicts or raw strings) to <agents>/<agent>/sessions/<name>."""

    def _write(agent, name, lines, mode="w"):
        sessions = agents_dir / agent / "sessions"
        sessions.mkdir(parents=True, exist_ok=True)
        path = sessions / name
        text = "".join((json.dumps(entry) if isinstance(entry, dict) else entry) + "\n" for entry in lines)
        with open(path, mode, encoding="utf-8", newline="") as f:
            f.write(text)
        return path

    return _write


@pytest.fixture
def tokens_session(write_session):
    """Session file whose lines carry the given token counts, one minute apart."""

    def _write(agent, name, tokens, mode="w"):
        lines = [_usage_line(t, ts=f"2026-02-17T00:{i:02d}:00Z") for i, t in enumerate(tokens)]
        return write_session(agent, name, lines, mode=mode)

    return _write
