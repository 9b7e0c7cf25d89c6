"""Aggregated usage statistics over the synced cache."""

import logging

from .config import COST_PRECISION, UNKNOWN_DATE
from .db import Database
from .models import (
    AgentTotal,
    DailyTokens,
    DateRange,
    HeatmapCell,
    ModelTotal,
    StatsResponse,
    Summary,
)
from .sync import run_sync_pass, sync_lock

logger = logging.getLogger("usagechart")

_GROUP_TOTALS = """SELECT {column} AS name,
    COALESCE(SUM(tokens), 0) AS tokens,
    COALESCE(SUM(cost), 0.0) AS cost,
    COUNT(*) AS records
FROM usage_records
WHERE {where}
GROUP BY {column}
ORDER BY SUM(tokens) DESC, {column}"""


def _round_cost(value) -> float:
    return round(value or 0.0, COST_PRECISION)


def date_filter(date_range: DateRange) -> tuple[str, list]:
    """SQL condition and parameters for a date range.

    Any bound excludes records without a known date, since they cannot be
    compared against it.
    """
    if not date_range.bounded:
        return "1=1", []
    clauses = ["date_key != ?"]
    params = [UNKNOWN_DATE]
    if date_range.start:
        clauses.append("date_key >= ?")
        params.append(date_range.start.isoformat())
    if date_range.end:
        clauses.append("date_key <= ?")
        params.append(date_range.end.isoformat())
    return " AND ".join(clauses), params


async def aggregate(db: Database, date_range: DateRange) -> StatsResponse:
    """Build the statistics views from the cache as it is now."""
    where, params = date_filter(date_range)

    totals = await db.fetch_one(
        f"""SELECT
            COUNT(*) AS records,
            COALESCE(SUM(tokens), 0) AS tokens,
            COALESCE(SUM(cost), 0.0) AS cost
        FROM usage_records WHERE {where}""",
        params,
    )
    session_files = await db.count_session_files()

    agent_rows = await db.fetch_all(_GROUP_TOTALS.format(column="agent_name", where=where), params)
    model_rows = await db.fetch_all(_GROUP_TOTALS.format(column="model", where=where), params)

    daily_rows = await db.fetch_all(
        f"""SELECT date_key,
            COALESCE(SUM(tokens), 0) AS tokens,
            COALESCE(SUM(cost), 0.0) AS cost,
            COUNT(*) AS records
        FROM usage_records
        WHERE {where}
        GROUP BY date_key
        ORDER BY CASE WHEN date_key = ? THEN 1 ELSE 0 END, date_key""",
        [*params, UNKNOWN_DATE],
    )

    heat_rows = await db.fetch_all(
        f"""SELECT dow, hour,
            COALESCE(SUM(tokens), 0) AS tokens,
            COALESCE(SUM(cost), 0.0) AS cost
        FROM usage_records
        WHERE hour IS NOT NULL AND dow IS NOT NULL AND ({where})
        GROUP BY dow, hour
        ORDER BY dow, hour""",
        params,
    )

    agent_totals = [
        AgentTotal(agent=r["name"], tokens=r["tokens"], cost=_round_cost(r["cost"]), records=r["records"])
        for r in agent_rows
    ]
    model_totals = [
        ModelTotal(model=r["name"], tokens=r["tokens"], cost=_round_cost(r["cost"]), records=r["records"])
        for r in model_rows
    ]
    daily = [
        DailyTokens(date=r["date_key"], tokens=r["tokens"], cost=_round_cost(r["cost"]), records=r["records"])
        for r in daily_rows
    ]
    heatmap = [
        HeatmapCell(dow=r["dow"], hour=r["hour"], tokens=r["tokens"], cost=_round_cost(r["cost"]))
        for r in heat_rows
    ]

    return StatsResponse(
        summary=Summary(
            total_tokens=totals["tokens"],
            total_cost=_round_cost(totals["cost"]),
            usage_records=totals["records"],
            session_files=session_files,
            agent_count=len(agent_totals),
            model_count=len(model_totals),
            day_count=len(daily),
        ),
        agent_totals=agent_totals,
        model_totals=model_totals,
        daily_tokens=daily,
        heatmap=heatmap,
    )


async def collect_stats(db: Database, agents_dir, date_range: DateRange | None = None) -> StatsResponse:
    """Sync the cache with ``agents_dir``, then aggregate it.

    Raises SyncError if the sync pass cannot be committed; no statistics
    are computed in that case.
    """
    date_range = date_range or DateRange()
    async with sync_lock():
        sync = await run_sync_pass(db, agents_dir)
        stats = await aggregate(db, date_range)

    stats.source = str(agents_dir)
    stats.sync = sync
    logger.info(
        "Stats: %d records, %d tokens (sync: +%d records)",
        stats.summary.usage_records,
        stats.summary.total_tokens,
        sync.new_records,
    )
    return stats
