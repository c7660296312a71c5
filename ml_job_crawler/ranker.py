"""Model-assisted re-ranking of crawled jobs via an OpenAI-compatible API.

Single attempt, no retry. Any failure degrades to the heuristic ordering
(crawl order, truncated) with a note describing why.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Optional

import requests

from .config import RankingConfig
from .errors import RankingUnavailable
from .models import Job, RankingResult

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = """\
You are assisting with a machine-learning job search. You receive a JSON array of job postings.
Rank the postings from best to worst fit for an ML engineer or researcher, judging how central
ML work is to the role and how clearly the posting describes it.

Respond with ONLY a JSON object, no other text:
{"ranked": [{"id": "<job id>", "fitScore": <1-100>, "rationale": "max 2 sentences"}],
 "summary": "one short paragraph about the overall set of roles"}
Use the exact ids you were given. You may omit postings that are not ML roles."""


@dataclass
class RankedEntry:
    ref: str
    fit_score: Optional[float] = None
    rationale: Optional[str] = None


@dataclass
class ParsedRanking:
    entries: list[RankedEntry]
    summary: Optional[str] = None


def heuristic_ranking(jobs: list[Job], limit: int, note: str, fallback: bool = False) -> RankingResult:
    """First `limit` jobs in their current order."""
    return RankingResult(jobs=list(jobs[:limit]), notes=[note], ranked=False, fallback=fallback)


def build_prompt(jobs: list[Job], max_jobs: int, summary_max_chars: int = 300) -> str:
    payload = [
        {
            "id": job.id,
            "title": job.title,
            "company": job.company,
            "location": job.location,
            "summary": job.summary[:summary_max_chars],
        }
        for job in jobs[:max_jobs]
    ]
    return f"Jobs:\n{json.dumps(payload, ensure_ascii=False)}"


def request_ranking(jobs: list[Job], credential: str, config: RankingConfig) -> str:
    """POST the ranking prompt once and return the raw message content."""
    try:
        resp = requests.post(
            config.url,
            headers={"Authorization": f"Bearer {credential}"},
            json={
                "model": config.model,
                "messages": [
                    {"role": "system", "content": _SYSTEM_PROMPT},
                    {"role": "user", "content": build_prompt(jobs, config.max_prompt_jobs, config.summary_max_chars)},
                ],
                "max_tokens": config.max_tokens,
                "temperature": config.temperature,
            },
            timeout=config.timeout,
        )
    except requests.RequestException as exc:
        raise RankingUnavailable(f"request failed ({type(exc).__name__}: {exc})") from exc

    if not resp.ok:
        raise RankingUnavailable(f"LLM API error {resp.status_code}")

    try:
        content = resp.json()["choices"][0]["message"]["content"]
    except (ValueError, KeyError, IndexError, TypeError) as exc:
        raise RankingUnavailable(f"unexpected response shape ({type(exc).__name__})") from exc
    if not isinstance(content, str) or not content.strip():
        raise RankingUnavailable("empty response content")

    logger.debug("LLM raw ranking response: %s", content[:300])
    return content


def _coerce_score(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(score):
        return None
    return max(0.0, min(100.0, score))


def _entry_from(item: Any) -> Optional[RankedEntry]:
    if isinstance(item, (str, int)) and not isinstance(item, bool):
        return RankedEntry(ref=str(item))
    if not isinstance(item, dict):
        return None
    ref = item.get("id") or item.get("url")
    if not isinstance(ref, (str, int)) or isinstance(ref, bool) or not str(ref).strip():
        return None
    rationale = item.get("rationale")
    return RankedEntry(
        ref=str(ref).strip(),
        fit_score=_coerce_score(item.get("fitScore", item.get("fit_score"))),
        rationale=rationale.strip() if isinstance(rationale, str) and rationale.strip() else None,
    )


def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    # Fall back to the outermost {...} or [...] block inside surrounding prose,
    # whichever opens first
    pairs = sorted(
        (("{", "}"), ("[", "]")),
        key=lambda pair: text.find(pair[0]) if pair[0] in text else len(text),
    )
    for opener, closer in pairs:
        start, end = text.find(opener), text.rfind(closer)
        if start != -1 and end > start:
            try:
                return json.loads(text[start:end + 1])
            except json.JSONDecodeError:
                continue
    raise RankingUnavailable(f"unparseable response: {text[:80]}")


def parse_ranking(text: str) -> ParsedRanking:
    """Extract ranked references and summary. Strips <think> blocks and code fences."""
    text = re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL).strip()
    text = re.sub(r"^```(?:json)?\s*", "", text, flags=re.I)
    text = re.sub(r"\s*```$", "", text).strip()

    data = _load_json(text)
    summary = None
    if isinstance(data, dict):
        items = data.get("ranked", data.get("jobs"))
        raw_summary = data.get("summary")
        if isinstance(raw_summary, str) and raw_summary.strip():
            summary = raw_summary.strip()
    else:
        items = data

    if not isinstance(items, list):
        raise RankingUnavailable("response has no ranked list")

    entries = [e for e in (_entry_from(item) for item in items) if e is not None]
    if not entries:
        raise RankingUnavailable("response ranked no job ids")
    return ParsedRanking(entries=entries, summary=summary)


def merge_ranking(jobs: list[Job], entries: list[RankedEntry], limit: int) -> tuple[list[Job], int]:
    """Referenced jobs first (in model order), then the rest in original order.

    Entries may reference a job by id or url; unknown and repeated references
    are ignored. Returns (merged jobs truncated to `limit`, matched count).
    """
    by_ref: dict[str, int] = {}
    for idx, job in enumerate(jobs):
        by_ref.setdefault(job.id, idx)
        if job.url:
            by_ref.setdefault(job.url, idx)

    used: set[int] = set()
    ranked: list[Job] = []
    for entry in entries:
        idx = by_ref.get(entry.ref)
        if idx is None or idx in used:
            continue
        used.add(idx)
        ranked.append(jobs[idx].model_copy(update={
            "fit_score": entry.fit_score,
            "rationale": entry.rationale,
        }))

    rest = [job for idx, job in enumerate(jobs) if idx not in used]
    return (ranked + rest)[:limit], len(ranked)


async def rank_jobs(
    jobs: list[Job],
    credential: Optional[str],
    config: RankingConfig,
) -> RankingResult:
    """Produce the final ordered job subset plus human-readable notes."""
    limit = config.max_results
    if not credential:
        return heuristic_ranking(
            jobs, limit,
            f"No model-assisted ranking: kept the first {min(limit, len(jobs))} jobs in crawl order.",
        )
    if not jobs:
        return heuristic_ranking(jobs, limit, "No jobs available for model ranking.")

    try:
        content = await asyncio.to_thread(request_ranking, jobs, credential, config)
        parsed = parse_ranking(content)
    except RankingUnavailable as exc:
        logger.warning("Model ranking unavailable: %s", exc.reason)
        return heuristic_ranking(
            jobs, limit, f"Model ranking unavailable, fell back to crawl order: {exc.reason}", fallback=True,
        )

    merged, matched = merge_ranking(jobs, parsed.entries, limit)
    if matched == 0:
        logger.warning("Model ranking referenced no known job ids")
        return heuristic_ranking(
            jobs, limit, "Model ranking unavailable, fell back to crawl order: no known job ids in response",
            fallback=True,
        )

    notes = [f"Model ranking complete: {matched} jobs scored with fitScore and rationale."]
    if parsed.summary:
        notes.append(f"Model summary: {parsed.summary}")
    return RankingResult(jobs=merged, notes=notes, ranked=True, summary=parsed.summary)
