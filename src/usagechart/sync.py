"""Incremental synchronization of session logs into the SQLite cache.

Each session file is read from its stored byte offset. New complete lines
are parsed and inserted together with the updated offset inside a
per-file savepoint, so a file that fails mid-way is rolled back on its own
and retried on the next pass from its last committed offset.
"""

import asyncio
import logging
import os
import weakref
from pathlib import Path

import aiosqlite

from .config import INSERT_BATCH_SIZE, MAX_LINE_BYTES, SESSION_GLOB, SESSIONS_DIRNAME
from .db import Database
from .models import FileState, SessionFile, SyncResult, UsageRecord
from .parser import parse_line

logger = logging.getLogger("usagechart")


class SyncError(RuntimeError):
    """A sync pass could not be committed to the cache."""


_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]" = (
    weakref.WeakKeyDictionary()
)


def sync_lock() -> asyncio.Lock:
    """The lock serializing sync passes and stats reads on the running loop.

    Tasks on one event loop share a connection and must not interleave.
    Separate loops or processes are kept apart by SQLite's write lock,
    which ``BEGIN IMMEDIATE`` takes for the whole pass.
    """
    loop = asyncio.get_running_loop()
    lock = _locks.get(loop)
    if lock is None:
        lock = _locks[loop] = asyncio.Lock()
    return lock


def iter_session_files(agents_dir) -> list[SessionFile]:
    """List ``<agents_dir>/<agent>/sessions/*.jsonl`` in a stable order."""
    root = Path(agents_dir)
    if not root.is_dir():
        return []
    files = []
    for agent_dir in sorted(p for p in root.iterdir() if p.is_dir()):
        for path in sorted((agent_dir / SESSIONS_DIRNAME).glob(SESSION_GLOB)):
            if path.is_file():
                files.append(SessionFile(agent_name=agent_dir.name, path=str(path)))
    return files


def read_lines(path: str, offset: int):
    """Yield ``(line_offset, next_offset, line)`` for complete lines after ``offset``.

    Lines longer than MAX_LINE_BYTES are consumed and yielded as None.
    A trailing fragment without a newline is not yielded; it is read again
    once the writer terminates it.
    """
    with open(path, "rb") as f:
        f.seek(offset)
        while True:
            line = f.readline(MAX_LINE_BYTES + 1)
            if line.endswith(b"\n"):
                yield offset, offset + len(line), line
                offset += len(line)
                continue
            if len(line) <= MAX_LINE_BYTES:
                return

            size = len(line)
            while not line.endswith(b"\n"):
                line = f.readline(MAX_LINE_BYTES)
                if not line:
                    return
                size += len(line)
            logger.warning("Skipping %d-byte line at %s:%d", size, path, offset)
            yield offset, offset + size, None
            offset += size


def scan_file(session: SessionFile, start: int) -> tuple[int, list[UsageRecord]]:
    """Parse the complete lines after ``start``. Returns (next offset, records)."""
    offset = start
    records = []
    for line_offset, offset, line in read_lines(session.path, start):
        if line is None:
            continue
        record = parse_line(session.agent_name, line)
        if record is not None:
            records.append(
                record.model_copy(update={"source_file": session.path, "source_offset": line_offset})
            )
    return offset, records


async def _sync_file(db: Database, session: SessionFile) -> tuple[bool, int]:
    """Apply new bytes of one file. Returns (read anything, records added)."""
    state = await db.get_file_state(session.path)
    start = state.last_offset if state else 0
    size = (await asyncio.to_thread(os.stat, session.path)).st_size

    if state and size < start:
        logger.warning(
            "%s shrank from %d to %d bytes, re-reading from start", session.path, start, size
        )
        await db.delete_records_for(session.path)
        start = 0
        await db.save_file_state(
            FileState(file_path=session.path, agent_name=session.agent_name, last_offset=0)
        )

    if size <= start:
        return False, 0

    # File reads and JSON parsing stay off the event loop
    offset, records = await asyncio.to_thread(scan_file, session, start)
    added = 0
    for i in range(0, len(records), INSERT_BATCH_SIZE):
        added += await db.insert_records(records[i : i + INSERT_BATCH_SIZE])

    await db.save_file_state(
        FileState(file_path=session.path, agent_name=session.agent_name, last_offset=offset)
    )
    return offset > start, added


async def run_sync_pass(db: Database, agents_dir) -> SyncResult:
    """Sync every session file in one transaction. Callers must hold sync_lock()."""
    result = SyncResult()
    committed = False
    try:
        files = iter_session_files(agents_dir)
        await db.begin()
        for session in files:
            await db.savepoint()
            try:
                synced, added = await _sync_file(db, session)
            except Exception:
                logger.exception("Failed to sync %s, retrying next pass", session.path)
                await db.rollback_to_savepoint()
                result.skipped_files += 1
                result.failed_files += 1
                continue
            await db.release()

            if synced:
                result.synced_files += 1
                result.new_records += added
            else:
                result.skipped_files += 1
        await db.commit()
        committed = True
    except (aiosqlite.Error, OSError) as exc:
        raise SyncError(f"sync of {agents_dir} failed: {exc}") from exc
    finally:
        if not committed:
            await db.rollback()

    logger.debug(
        "Sync pass: %d new records, %d synced, %d skipped (%d failed)",
        result.new_records,
        result.synced_files,
        result.skipped_files,
        result.failed_files,
    )
    return result


async def sync_sessions(db: Database, agents_dir) -> SyncResult:
    """Bring the cache up to date with the session files under ``agents_dir``."""
    async with sync_lock():
        return await run_sync_pass(db, agents_dir)
