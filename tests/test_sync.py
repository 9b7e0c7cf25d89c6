"""Tests for incremental session log synchronization."""

import asyncio
import json
import threading

import aiosqlite
import pytest

from usagechart import sync as sync_module
from usagechart.db import Database
from usagechart.sync import SyncError, iter_session_files, read_lines, sync_sessions


async def usage_totals(db):
    row = await db.fetch_one("SELECT COUNT(*) AS n, COALESCE(SUM(tokens), 0) AS tokens FROM usage_records")
    return row["n"], row["tokens"]


async def rows_for(db, path):
    return await db.fetch_all(
        "SELECT tokens, source_offset FROM usage_records WHERE source_file = ? ORDER BY source_offset",
        (str(path),),
    )


def test_iter_session_files_layout(agents_dir, tokens_session):
    tokens_session("beta", "b.jsonl", [1])
    tokens_session("alpha", "z.jsonl", [1])
    tokens_session("alpha", "a.jsonl", [1])
    (agents_dir / "alpha" / "sessions" / "notes.txt").write_text("skip me")
    (agents_dir / "alpha" / "a.jsonl").write_text("outside sessions dir")
    (agents_dir / "README.md").write_text("not an agent")
    (agents_dir / "gamma").mkdir()

    files = iter_session_files(agents_dir)
    assert [(f.agent_name, f.path.rsplit("/", 1)[-1]) for f in files] == [
        ("alpha", "a.jsonl"),
        ("alpha", "z.jsonl"),
        ("beta", "b.jsonl"),
    ]


def test_iter_session_files_missing_root(tmp_path):
    assert iter_session_files(tmp_path / "nope") == []


def test_read_lines_offsets(tmp_path):
    path = tmp_path / "s.jsonl"
    path.write_bytes(b"ab\ncde\n\nf")
    assert list(read_lines(str(path), 0)) == [
        (0, 3, b"ab\n"),
        (3, 7, b"cde\n"),
        (7, 8, b"\n"),
    ]
    assert list(read_lines(str(path), 3)) == [(3, 7, b"cde\n"), (7, 8, b"\n")]


async def test_first_sync_counts(db, agents_dir, tokens_session):
    tokens_session("alpha", "a.jsonl", [10, 20])
    tokens_session("beta", "b.jsonl", [5])

    result = await sync_sessions(db, agents_dir)

    assert result.new_records == 3
    assert result.synced_files == 2
    assert result.skipped_files == 0
    assert await usage_totals(db) == (3, 35)
    assert await db.count_session_files() == 2


async def test_resync_without_growth_is_noop(db, agents_dir, tokens_session):
    tokens_session("alpha", "a.jsonl", [10, 20])
    await sync_sessions(db, agents_dir)

    result = await sync_sessions(db, agents_dir)

    assert result.new_records == 0
    assert result.synced_files == 0
    assert result.skipped_files == 1
    assert await usage_totals(db) == (2, 30)


async def test_truncated_file_is_reread(db, agents_dir, tokens_session):
    file_a = tokens_session("alpha", "a.jsonl", [10, 20])
    tokens_session("alpha", "b.jsonl", [5])

    await sync_sessions(db, agents_dir)
    assert await usage_totals(db) == (3, 35)

    tokens_session("alpha", "a.jsonl", [7])
    result = await sync_sessions(db, agents_dir)
    assert result.new_records == 1
    assert await usage_totals(db) == (2, 12)
    assert len(await rows_for(db, file_a)) == 1

    result = await sync_sessions(db, agents_dir)
    assert result.new_records == 0
    assert await usage_totals(db) == (2, 12)


async def test_appended_lines_only(db, agents_dir, tokens_session):
    path = tokens_session("alpha", "a.jsonl", [10])
    await sync_sessions(db, agents_dir)
    first_len = len(path.read_bytes())

    tokens_session("alpha", "a.jsonl", [20, 30], mode="a")
    result = await sync_sessions(db, agents_dir)

    assert result.new_records == 2
    rows = await rows_for(db, path)
    assert [r["tokens"] for r in rows] == [10, 20, 30]
    assert rows[0]["source_offset"] == 0
    assert rows[1]["source_offset"] == first_len

    state = await db.get_file_state(str(path))
    assert state.agent_name == "alpha"
    assert state.last_offset == len(path.read_bytes())


async def test_dropped_lines_still_advance_offset(db, agents_dir, write_session):
    path = write_session(
        "alpha",
        "a.jsonl",
        ["garbage", {"type": "session"}, {"usage": {"input": 0}}, {"usage": {"input": 4}}],
    )

    result = await sync_sessions(db, agents_dir)

    assert result.new_records == 1
    assert result.synced_files == 1
    state = await db.get_file_state(str(path))
    assert state.last_offset == len(path.read_bytes())


async def test_partial_trailing_line_waits_for_newline(db, agents_dir, write_session):
    path = write_session("alpha", "a.jsonl", [{"usage": {"input": 3}}])
    complete = len(path.read_bytes())
    tail = json.dumps({"usage": {"input": 8}})
    with open(path, "a") as f:
        f.write(tail[:10])

    result = await sync_sessions(db, agents_dir)
    assert result.new_records == 1
    assert (await db.get_file_state(str(path))).last_offset == complete

    with open(path, "a") as f:
        f.write(tail[10:] + "\n")
    result = await sync_sessions(db, agents_dir)
    assert result.new_records == 1
    assert await usage_totals(db) == (2, 11)


async def test_oversized_line_skipped(db, agents_dir, write_session, monkeypatch):
    monkeypatch.setattr(sync_module, "MAX_LINE_BYTES", 64)
    huge = json.dumps({"usage": {"input": 1}, "padding": "x" * 500})
    path = write_session("alpha", "a.jsonl", [{"usage": {"input": 2}}, huge, {"usage": {"input": 3}}])

    result = await sync_sessions(db, agents_dir)

    assert result.new_records == 2
    assert await usage_totals(db) == (2, 5)
    assert (await db.get_file_state(str(path))).last_offset == len(path.read_bytes())


@pytest.mark.parametrize(
    "bad_line,ingested",
    [
        ('{"usage": {"total": 1e30}}', 0),
        ('{"usage": {"input": 9223372036854775808}}', 0),
        ('{"usage": {"input": 1}, "timestamp": ' + "1" * 400 + "}", 1),
        ('{"usage": {"input": 1}, "costUsd": ' + "1" * 400 + "}", 1),
        ('{"usage": {"input": 1}, "timestamp": "' + "1" * 5000 + '"}', 1),
    ],
)
async def test_out_of_range_numbers_do_not_block_file(db, agents_dir, write_session, bad_line, ingested):
    path = write_session("alpha", "a.jsonl", [{"usage": {"input": 5}}, bad_line, {"usage": {"input": 7}}])

    result = await sync_sessions(db, agents_dir)

    assert result.failed_files == 0
    assert result.new_records == 2 + ingested
    assert (await db.get_file_state(str(path))).last_offset == len(path.read_bytes())

    write_session("alpha", "a.jsonl", [{"usage": {"input": 9}}], mode="a")
    result = await sync_sessions(db, agents_dir)
    assert result.new_records == 1
    assert await usage_totals(db) == (3 + ingested, 21 + ingested)


async def test_file_scan_runs_off_event_loop(db, agents_dir, tokens_session, monkeypatch):
    tokens_session("alpha", "a.jsonl", [10, 20])
    loop_thread = threading.get_ident()
    seen = []
    real_parse = sync_module.parse_line

    def tracking_parse(agent_name, line):
        seen.append(threading.get_ident())
        return real_parse(agent_name, line)

    monkeypatch.setattr(sync_module, "parse_line", tracking_parse)
    result = await sync_sessions(db, agents_dir)

    assert result.new_records == 2
    assert len(seen) == 2
    assert loop_thread not in seen


async def test_failing_file_rolled_back_alone(db, agents_dir, tokens_session, monkeypatch):
    good = tokens_session("alpha", "a.jsonl", [10])
    bad = tokens_session("beta", "b.jsonl", [1, 2, 3])

    real_parse = sync_module.parse_line
    calls = {"beta": 0}

    def flaky_parse(agent_name, line):
        if agent_name == "beta":
            calls["beta"] += 1
            if calls["beta"] == 3:
                raise RuntimeError("disk hiccup")
        return real_parse(agent_name, line)

    monkeypatch.setattr(sync_module, "parse_line", flaky_parse)
    monkeypatch.setattr(sync_module, "INSERT_BATCH_SIZE", 1)

    result = await sync_sessions(db, agents_dir)

    assert result.synced_files == 1
    assert result.failed_files == 1
    assert result.skipped_files == 1
    assert result.new_records == 1
    assert len(await rows_for(db, good)) == 1
    assert await rows_for(db, bad) == []
    assert await db.get_file_state(str(bad)) is None

    monkeypatch.setattr(sync_module, "parse_line", real_parse)
    result = await sync_sessions(db, agents_dir)
    assert result.new_records == 3
    assert await usage_totals(db) == (4, 16)


async def test_unreadable_file_skipped(db, agents_dir, tokens_session, monkeypatch):
    tokens_session("alpha", "a.jsonl", [10])
    blocked = tokens_session("beta", "b.jsonl", [5])
    tokens_session("gamma", "c.jsonl", [1])

    def guarded_open(path, *args, **kwargs):
        if path == str(blocked):
            raise PermissionError(13, "Permission denied", path)
        return open(path, *args, **kwargs)

    monkeypatch.setattr(sync_module, "open", guarded_open, raising=False)
    result = await sync_sessions(db, agents_dir)

    assert result.new_records == 2
    assert result.failed_files == 1
    assert await usage_totals(db) == (2, 11)
    assert await db.get_file_state(str(blocked)) is None


async def test_commit_failure_is_fatal(db, agents_dir, tokens_session):
    tokens_session("alpha", "a.jsonl", [10, 20])

    async def broken_commit():
        raise aiosqlite.OperationalError("disk I/O error")

    db.commit = broken_commit
    with pytest.raises(SyncError):
        await sync_sessions(db, agents_dir)

    assert await usage_totals(db) == (0, 0)
    assert await db.count_session_files() == 0

    del db.commit
    result = await sync_sessions(db, agents_dir)
    assert result.new_records == 2


async def test_concurrent_syncs_ingest_once(db, agents_dir, tokens_session):
    tokens_session("alpha", "a.jsonl", [10, 20])
    tokens_session("beta", "b.jsonl", [5])

    results = await asyncio.gather(*(sync_sessions(db, agents_dir) for _ in range(5)))

    assert sum(r.new_records for r in results) == 3
    assert await usage_totals(db) == (3, 35)


async def test_outdated_schema_rebuilt(tmp_path, agents_dir, tokens_session):
    db_path = tmp_path / "old.db"
    async with aiosqlite.connect(db_path) as conn:
        await conn.executescript(
            """
            CREATE TABLE file_state (file_path TEXT PRIMARY KEY, agent_name TEXT, last_offset INTEGER);
            CREATE TABLE usage_records (id INTEGER PRIMARY KEY, agent_name TEXT, model TEXT,
                date_key TEXT, tokens INTEGER, cost REAL);
            INSERT INTO usage_records (agent_name, model, date_key, tokens, cost)
                VALUES ('alpha', 'm', '2026-01-01', 99, 0);
            INSERT INTO file_state VALUES ('/gone.jsonl', 'alpha', 1234);
            """
        )
        await conn.commit()

    tokens_session("alpha", "a.jsonl", [10])
    db = Database(db_path)
    await db.init()
    try:
        assert await usage_totals(db) == (0, 0)
        assert await db.count_session_files() == 0
        result = await sync_sessions(db, agents_dir)
        assert result.new_records == 1
        row = await db.fetch_one("SELECT hour, dow, source_offset FROM usage_records")
        assert row == {"hour": 0, "dow": 1, "source_offset": 0}
    finally:
        await db.close()


async def test_current_schema_kept(tmp_path, agents_dir, tokens_session):
    tokens_session("alpha", "a.jsonl", [10])
    db = Database(tmp_path / "cache.db")
    await db.init()
    await sync_sessions(db, agents_dir)
    await db.close()

    await db.init()
    try:
        assert await usage_totals(db) == (1, 10)
        assert (await sync_sessions(db, agents_dir)).new_records == 0
    finally:
        await db.close()
