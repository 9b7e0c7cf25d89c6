"""Pydantic models for usagechart records and statistics."""

from datetime import UTC, date, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import UNKNOWN_DATE, UNKNOWN_MODEL


def _utcnow_iso():
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class UsageRecord(BaseModel):
    """One normalized usage entry extracted from a session log line."""

    model_config = ConfigDict(frozen=True)

    agent_name: str
    model: str = UNKNOWN_MODEL
    date_key: str = UNKNOWN_DATE  # "YYYY-MM-DD" (local) or "unknown"
    tokens: int = Field(gt=0)
    cost: float = Field(default=0.0, ge=0)
    hour: int | None = Field(default=None, ge=0, le=23)
    dow: int | None = Field(default=None, ge=0, le=6)  # 0=Monday..6=Sunday
    source_file: str = ""
    source_offset: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _hour_and_dow_together(self):
        if (self.hour is None) != (self.dow is None):
            raise ValueError("hour and dow must be set together")
        return self


class FileState(BaseModel):
    """Read position of one session file in the cache."""

    file_path: str
    agent_name: str
    last_offset: int = Field(default=0, ge=0)


class SessionFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    agent_name: str
    path: str


class SyncResult(BaseModel):
    """Counters from one sync pass."""

    new_records: int = 0
    synced_files: int = 0
    skipped_files: int = 0
    failed_files: int = 0


class DateRange(BaseModel):
    """Inclusive date filter; a missing bound leaves that side open."""

    start: date | None = None
    end: date | None = None

    @field_validator("start", "end", mode="before")
    @classmethod
    def _blank_is_unbounded(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _ordered(self):
        if self.start and self.end and self.start > self.end:
            raise ValueError(f"start {self.start} is after end {self.end}")
        return self

    @property
    def bounded(self) -> bool:
        return self.start is not None or self.end is not None


class AgentTotal(BaseModel):
    agent: str
    tokens: int = 0
    cost: float = 0.0
    records: int = 0


class ModelTotal(BaseModel):
    model: str
    tokens: int = 0
    cost: float = 0.0
    records: int = 0


class DailyTokens(BaseModel):
    date: str
    tokens: int = 0
    cost: float = 0.0
    records: int = 0


class HeatmapCell(BaseModel):
    dow: int
    hour: int
    tokens: int = 0
    cost: float = 0.0


class Summary(BaseModel):
    total_tokens: int = 0
    total_cost: float = 0.0
    usage_records: int = 0
    session_files: int = 0
    agent_count: int = 0
    model_count: int = 0
    day_count: int = 0


class StatsResponse(BaseModel):
    """Aggregated usage statistics served to the dashboard."""

    generated_at: str = Field(default_factory=_utcnow_iso)
    source: str = ""
    cached: bool = True
    sync: SyncResult = Field(default_factory=SyncResult)
    summary: Summary = Field(default_factory=Summary)
    agent_totals: list[AgentTotal] = Field(default_factory=list)
    model_totals: list[ModelTotal] = Field(default_factory=list)
    daily_tokens: list[DailyTokens] = Field(default_factory=list)
    heatmap: list[HeatmapCell] = Field(default_factory=list)
