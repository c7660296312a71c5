"""ml_job_crawler — ML job aggregation with live run progress."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .config import CrawlerConfig, load_config
from .errors import (
    CrawlerError,
    InvalidRequest,
    RankingUnavailable,
    RunFailure,
    RunNotFound,
    SourceUnavailable,
)
from .models import EventType, Job, RunMode, RunStatus
from .orchestrator import CrawlService, validate_start_request
from .runs import Run, RunRegistry, Subscription
from .sources import Source, build_sources

logger = logging.getLogger(__name__)

__all__ = [
    "CrawlService", "CrawlerConfig", "CrawlerError", "EventType", "InvalidRequest",
    "Job", "RankingUnavailable", "Run", "RunFailure", "RunMode", "RunNotFound",
    "RunRegistry", "RunStatus", "Source", "SourceUnavailable", "Subscription",
    "build_sources", "crawl_jobs", "load_config", "validate_start_request",
]


async def crawl_jobs(
    mode: str = "standard",
    llm_token: Optional[str] = None,
    config_path: Optional[Path] = None,
    config: Optional[CrawlerConfig] = None,
    sources: Optional[list[Source]] = None,
) -> Run:
    """Run a full crawl cycle in the current event loop. This is the public API.

    Args:
        mode: "standard" or "advanced" (advanced requires llm_token).
        llm_token: Credential for model-assisted ranking.
        config_path: Path to a YAML config override.
        config: Pre-built config (takes precedence over config_path).
        sources: Source list override (defaults to the configured sources).

    Raises InvalidRequest before anything runs if the request is malformed.
    """
    if config is None:
        config = load_config(config_path)

    service = CrawlService(RunRegistry(config.runs.max_events), config, sources=sources)
    run = service.start(mode, llm_token)
    return await service.wait(run)
