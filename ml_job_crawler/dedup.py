"""Order-stable deduplication of canonical jobs.

Key formula: normalized title + "|" + normalized company. The URL is not part
of the key, so one posting syndicated to several boards collapses to a single
job. The first occurrence wins.
"""

from __future__ import annotations

import re

from .models import Job


def _normalize_for_key(text: str) -> str:
    t = text.lower()
    t = re.sub(r"[^\w\s]", " ", t)
    t = re.sub(r"\s+", " ", t).strip()
    return t


def dedup_key(job: Job) -> str:
    return f"{_normalize_for_key(job.title)}|{_normalize_for_key(job.company)}"


def dedupe_jobs(jobs: list[Job]) -> list[Job]:
    seen: set[str] = set()
    out: list[Job] = []
    for job in jobs:
        key = dedup_key(job)
        if key in seen:
            continue
        seen.add(key)
        out.append(job)
    return out
