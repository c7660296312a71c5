"""Crawl run orchestration: start runs, drive sources, fold and rank results."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .config import CrawlerConfig
from .dedup import dedupe_jobs
from .errors import InvalidRequest, RankingUnavailable, SourceUnavailable
from .filters import KeywordFilter
from .models import Job, LogLevel, RankingResult, RunMode
from .normalize import normalize_jobs
from .ranker import heuristic_ranking, rank_jobs
from .runs import Run, RunRegistry
from .sources import Source, build_sources

logger = logging.getLogger(__name__)


def validate_start_request(mode: object, llm_token: object = None) -> RunMode:
    """Reject a malformed start request before any run exists."""
    if not isinstance(mode, str) or mode not in {m.value for m in RunMode}:
        raise InvalidRequest("mode must be either 'standard' or 'advanced'.")
    if llm_token is not None and not isinstance(llm_token, str):
        raise InvalidRequest("llmToken must be a string.")
    run_mode = RunMode(mode)
    if run_mode is RunMode.advanced and not (llm_token or "").strip():
        raise InvalidRequest("Advanced mode requires llmToken.")
    return run_mode


class CrawlService:
    """Owns the run registry and launches one asyncio task per run."""

    def __init__(
        self,
        registry: RunRegistry,
        config: CrawlerConfig,
        sources: Optional[list[Source]] = None,
    ):
        self.registry = registry
        self.config = config
        self.sources = sources if sources is not None else build_sources(config)
        self.keyword_filter = KeywordFilter.from_config(config.filter)
        self._tasks: dict[str, asyncio.Task] = {}

    def start(self, mode: object = "standard", llm_token: object = None) -> Run:
        """Validate, create the run and launch it. Must be called from a running loop."""
        run_mode = validate_start_request(mode, llm_token)
        credential = llm_token.strip() if run_mode is RunMode.advanced else None

        run = self.registry.create(run_mode)
        task = asyncio.get_running_loop().create_task(self.execute(run, credential))
        self._tasks[run.id] = task
        task.add_done_callback(lambda _t, run_id=run.id: self._tasks.pop(run_id, None))
        return run

    async def wait(self, run: Run) -> Run:
        """Wait for a run launched by start() to finish."""
        task = self._tasks.get(run.id)
        if task is not None:
            await task
        return run

    async def execute(self, run: Run, credential: Optional[str] = None) -> Run:
        """Drive a run to a terminal state. Never raises."""
        try:
            await self._pipeline(run, credential)
        except Exception as exc:
            logger.exception("Run %s failed", run.id)
            if not run.terminal:
                run.fail(str(exc) or type(exc).__name__)
        return run

    async def _pipeline(self, run: Run, credential: Optional[str]) -> None:
        plan = self.config.progress
        run.advance(f"Starting {run.mode.value} crawl", plan.startup)
        run.log(f"Starting {run.mode.value} crawl across {len(self.sources)} sources…")

        collected = await self._crawl_sources(run)

        run.advance("Filtering and deduplicating results", plan.dedupe)
        unique = dedupe_jobs(collected)
        removed = len(collected) - len(unique)
        run.advance("Deduplicated results", plan.dedupe, jobs=unique)
        run.log(f"Deduplicated to {len(unique)} unique roles ({removed} duplicates removed).")

        if run.mode is RunMode.advanced:
            run.advance("Ranking with language model", plan.ranking)
        else:
            run.advance("Selecting top results", plan.ranking)
        result = await self._rank(unique, credential)
        for note in result.notes:
            level = LogLevel.warning if result.fallback else LogLevel.info
            run.log(note, level=level)

        run.complete(result.jobs)
        logger.info("Run %s completed with %d jobs", run.id, len(result.jobs))

    async def _rank(self, jobs: list[Job], credential: Optional[str]) -> RankingResult:
        limit = self.config.ranking.max_results
        try:
            return await rank_jobs(jobs, credential, self.config.ranking)
        except Exception as exc:
            reason = exc.reason if isinstance(exc, RankingUnavailable) else f"{type(exc).__name__}: {exc}"
            logger.warning("Ranking step failed, using heuristic order: %s", reason)
            return heuristic_ranking(
                jobs, limit, f"Model ranking unavailable, fell back to crawl order: {reason}", fallback=True,
            )

    async def _crawl_sources(self, run: Run) -> list[Job]:
        """Fetch every source; fold results in source order, not completion order."""
        plan = self.config.progress
        total = len(self.sources)
        collected: list[Job] = []

        if self.config.sources.concurrent:
            run.advance(f"Crawling {total} sources", plan.source_start(0, total))
            for source in self.sources:
                run.log(f"Scanning {source.label}…")
            outcomes = await asyncio.gather(*(self._fetch(source) for source in self.sources))
            for i, (source, outcome) in enumerate(zip(self.sources, outcomes)):
                run.advance(f"Collected {source.label}", plan.source_end(i, total))
                collected.extend(self._fold(run, source, outcome))
            return collected

        for i, source in enumerate(self.sources):
            run.advance(f"Crawling {source.label}", plan.source_start(i, total))
            run.log(f"Scanning {source.label}…")
            outcome = await self._fetch(source)
            run.advance(f"Collected {source.label}", plan.source_end(i, total))
            collected.extend(self._fold(run, source, outcome))
        return collected

    async def _fetch(self, source: Source) -> list[dict] | SourceUnavailable:
        """Run one fetcher off the loop; failures come back as values."""
        try:
            records = await asyncio.to_thread(source.fetch)
        except SourceUnavailable as exc:
            logger.warning("%s failed: %s", source.label, exc.reason)
            return exc
        except Exception as exc:
            logger.warning("%s failed unexpectedly: %s", source.label, exc, exc_info=True)
            return SourceUnavailable(source.label, f"{type(exc).__name__}: {exc}")
        if not isinstance(records, list):
            return SourceUnavailable(source.label, f"fetcher returned {type(records).__name__}, expected list")
        return records

    def _fold(self, run: Run, source: Source, outcome: list[dict] | SourceUnavailable) -> list[Job]:
        if isinstance(outcome, SourceUnavailable):
            run.log(f"{source.label} failed: {outcome.reason}", level=LogLevel.warning)
            return []

        normalized = normalize_jobs(
            source.label,
            outcome,
            summary_max_chars=self.config.normalize.summary_max_chars,
            description_max_chars=self.config.normalize.description_max_chars,
        )
        matching = [job for job in normalized if self.keyword_filter(job)]
        run.log(f"{source.label}: found {len(matching)} matching ML roles (of {len(normalized)} listed).")
        return matching
