"""Data models for ML job crawl runs."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RunMode(str, Enum):
    standard = "standard"
    advanced = "advanced"


class RunStatus(str, Enum):
    running = "running"
    completed = "completed"
    failed = "failed"


class EventType(str, Enum):
    progress = "progress"
    log = "log"
    done = "done"
    error = "error"


class LogLevel(str, Enum):
    info = "info"
    warning = "warning"
    error = "error"


class Job(BaseModel):
    """A canonical job posting, independent of the source it came from."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    source: str
    title: str
    company: str
    location: str
    url: str = ""
    published_at: Optional[str] = None
    summary: str = ""
    description: str = ""
    # Set only by the ranking step
    fit_score: Optional[float] = None
    rationale: Optional[str] = None

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class RunEvent(BaseModel):
    """One entry of a run's event log.

    Carries the run's progress/stage/status as they were right after the
    event was applied, so any single event is a consistent view of the run.
    """

    type: EventType
    at: datetime = Field(default_factory=utc_now)
    progress: int
    stage: str
    status: RunStatus
    message: str = ""
    level: LogLevel = LogLevel.info

    def to_wire(self) -> dict:
        return self.model_dump(mode="json")


class RankingResult(BaseModel):
    """Output of the ranking step."""

    jobs: list[Job] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
    ranked: bool = False
    # True only when a model ranking was attempted and could not be used
    fallback: bool = False
    summary: Optional[str] = None
