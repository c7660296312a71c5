"""ML relevance filter: keyword match over title + description + location."""

from __future__ import annotations

import re

from .config import FilterConfig
from .models import Job


def _build_keyword_patterns(keywords: list[str]) -> list[tuple[str, re.Pattern]]:
    """Build word-boundary regex patterns from keyword list."""
    patterns = []
    for kw in keywords:
        escaped = re.escape(kw)
        patterns.append((kw, re.compile(rf"\b{escaped}\b", re.I)))
    return patterns


def job_text(job: Job) -> str:
    return f"{job.title} {job.description} {job.location}"


class KeywordFilter:
    """Decide whether a canonical job is ML-relevant.

    The same instance is applied to every source so recall is consistent.
    Substring mode (the default) matches short tokens inside other words,
    e.g. "ml" in "html"; word-boundary mode trades that recall for precision.
    """

    def __init__(self, keywords: list[str], word_boundary: bool = False):
        self.keywords = [kw.lower() for kw in keywords if kw and kw.strip()]
        self.word_boundary = word_boundary
        self._patterns = _build_keyword_patterns(self.keywords) if word_boundary else []

    @classmethod
    def from_config(cls, config: FilterConfig) -> "KeywordFilter":
        return cls(config.keywords, word_boundary=config.word_boundary)

    def matched_keyword(self, job: Job) -> str | None:
        """Return the first keyword that matches, or None."""
        text = job_text(job)
        if self.word_boundary:
            for kw, pattern in self._patterns:
                if pattern.search(text):
                    return kw
            return None

        lowered = text.lower()
        for kw in self.keywords:
            if kw in lowered:
                return kw
        return None

    def __call__(self, job: Job) -> bool:
        return self.matched_keyword(job) is not None


def filter_jobs(jobs: list[Job], keyword_filter: KeywordFilter) -> list[Job]:
    return [job for job in jobs if keyword_filter(job)]
