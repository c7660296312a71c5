"""Source fetchers: one stateless callable per upstream job board.

A fetcher returns raw, source-shaped records (dicts) and raises
SourceUnavailable on network errors, non-success responses or malformed
payloads. Normalization and filtering happen later, in the run pipeline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable

import feedparser
import requests

from .config import CrawlerConfig, SourceTarget
from .errors import SourceUnavailable

logger = logging.getLogger(__name__)

Fetcher = Callable[[], list[dict]]


@dataclass(frozen=True)
class Source:
    name: str
    label: str
    fetch: Fetcher


def _get(target: SourceTarget, user_agent: str) -> requests.Response:
    label = target.display_name
    try:
        resp = requests.get(
            target.url,
            headers={"User-Agent": user_agent},
            timeout=target.timeout,
            allow_redirects=True,
        )
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise SourceUnavailable(label, str(exc) or type(exc).__name__) from exc
    return resp


def _json(resp: requests.Response, label: str) -> Any:
    try:
        return resp.json()
    except ValueError as exc:
        raise SourceUnavailable(label, f"malformed JSON payload ({exc})") from exc


def fetch_remoteok(target: SourceTarget, user_agent: str) -> list[dict]:
    """RemoteOK public API. The first array element is a legal notice, not a job."""
    label = target.display_name
    data = _json(_get(target, user_agent), label)
    if not isinstance(data, list):
        raise SourceUnavailable(label, f"unexpected payload type: {type(data).__name__}")

    jobs = [item for item in data if isinstance(item, dict) and item.get("position")]
    logger.debug("%s: %d records (%d raw items)", label, len(jobs), len(data))
    return jobs


def fetch_remotive(target: SourceTarget, user_agent: str) -> list[dict]:
    """Remotive public API: {"jobs": [...]}."""
    label = target.display_name
    data = _json(_get(target, user_agent), label)
    if not isinstance(data, dict) or not isinstance(data.get("jobs"), list):
        raise SourceUnavailable(label, "payload has no 'jobs' list")
    return [item for item in data["jobs"] if isinstance(item, dict)]


def _split_wwr_title(title: str) -> tuple[str, str]:
    """WeWorkRemotely titles read "Company: Role"."""
    company, sep, role = title.partition(":")
    if not sep:
        return "", title.strip()
    return company.strip(), role.strip() or title.strip()


def fetch_weworkremotely(target: SourceTarget, user_agent: str) -> list[dict]:
    """WeWorkRemotely RSS feed."""
    label = target.display_name
    resp = _get(target, user_agent)
    feed = feedparser.parse(resp.text)
    if feed.bozo and not feed.entries:
        reason = getattr(feed, "bozo_exception", None) or "unparseable feed"
        raise SourceUnavailable(label, f"malformed RSS payload ({reason})")

    jobs = []
    for entry in feed.entries:
        raw_title = (entry.get("title") or "").strip()
        company, role = _split_wwr_title(raw_title)
        jobs.append({
            "id": entry.get("id") or entry.get("link"),
            "title": role,
            "company": company,
            "region": entry.get("region") or "Remote",
            "link": entry.get("link"),
            "description": entry.get("description") or entry.get("summary") or "",
            "published": entry.get("published"),
        })
    return jobs


FETCHERS: dict[str, Callable[[SourceTarget, str], list[dict]]] = {
    "remoteok": fetch_remoteok,
    "weworkremotely": fetch_weworkremotely,
    "remotive": fetch_remotive,
}


def build_sources(config: CrawlerConfig) -> list[Source]:
    """Build enabled sources in config order. Unknown names are skipped with a warning."""
    sources: list[Source] = []
    for target in config.sources.targets:
        if not target.enabled:
            continue
        fetcher = FETCHERS.get(target.name)
        if fetcher is None:
            logger.warning("Unknown source '%s' in config, skipping", target.name)
            continue
        sources.append(
            Source(
                name=target.name,
                label=target.display_name,
                fetch=partial(fetcher, target, config.sources.user_agent),
            )
        )
    return sources
