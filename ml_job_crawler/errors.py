"""Error taxonomy for crawl runs."""

from __future__ import annotations


class CrawlerError(Exception):
    """Base class for all crawler errors."""


class SourceUnavailable(CrawlerError):
    """A single source fetcher failed. Isolated: the source contributes no jobs."""

    def __init__(self, source: str, reason: str):
        super().__init__(reason)
        self.source = source
        self.reason = reason


class RankingUnavailable(CrawlerError):
    """Model-assisted ranking could not be used. Isolated: heuristic ordering wins."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InvalidRequest(CrawlerError):
    """A start request was rejected before any run was created."""


class RunNotFound(CrawlerError):
    def __init__(self, run_id: str):
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id


class RunFailure(CrawlerError):
    """Illegal transition on a run that already reached a terminal state."""
