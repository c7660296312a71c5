"""Map source-shaped job records onto the canonical Job shape.

Each canonical attribute has an ordered list of field names to try; the first
non-empty value wins. Missing data degrades to a default, never an error.
"""

from __future__ import annotations

import hashlib
import html
import re
from collections.abc import Mapping
from html.parser import HTMLParser
from typing import Any

from .models import Job

DEFAULT_TITLE = "Unknown role"
DEFAULT_COMPANY = "Unknown company"
DEFAULT_LOCATION = "Remote / Unknown"

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "title": ("title", "position", "job_title", "role"),
    "company": ("company", "company_name", "author", "employer"),
    "location": ("location", "candidate_required_location", "region"),
    "url": ("url", "apply_url", "link"),
    "published_at": ("published_at", "date", "publication_date", "published", "pubDate"),
    "description": ("description", "summary", "content"),
    "native_id": ("id", "slug", "guid"),
}

_SKIP_TAGS = {"script", "style", "noscript", "svg", "head"}


class _TextExtractor(HTMLParser):
    """Simple HTML → plain text extractor."""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs):
        if tag.lower() in _SKIP_TAGS:
            self._skip_depth += 1

    def handle_endtag(self, tag: str):
        if tag.lower() in _SKIP_TAGS and self._skip_depth > 0:
            self._skip_depth -= 1

    def handle_data(self, data: str):
        if self._skip_depth == 0:
            self._parts.append(data)

    def get_text(self) -> str:
        raw = " ".join(self._parts)
        return re.sub(r"\s+", " ", raw).strip()


def strip_html(text: str) -> str:
    """Return plain text with tags removed, entities decoded and whitespace collapsed."""
    if not text:
        return ""
    extractor = _TextExtractor()
    extractor.feed(text)
    extractor.close()
    # Feeds sometimes double-encode markup (&lt;p&gt;), so unescape and strip once more
    plain = html.unescape(extractor.get_text())
    if "<" in plain and ">" in plain:
        plain = re.sub(r"<[^>]+>", " ", plain)
    # Unterminated markup from truncated feeds: "</", "<!", "<?", "<div"
    plain = re.sub(r"<[/!?]+|<(?=[A-Za-z])|<\s*$", " ", plain)
    return re.sub(r"\s+", " ", plain).strip()


def stable_id(*parts: str) -> str:
    """Create a deterministic identifier from a set of string parts."""
    joined = "|".join(p.strip() for p in parts if p is not None)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:16]


def _as_text(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value.strip()
    return ""


def first_value(raw: Mapping, names: tuple[str, ...]) -> str:
    """Return the first non-empty scalar among `names`, or ''."""
    for name in names:
        text = _as_text(raw.get(name))
        if text:
            return text
    return ""


def _tags_text(raw: Mapping) -> str:
    tags = raw.get("tags")
    if not isinstance(tags, (list, tuple)):
        return ""
    return ", ".join(t.strip() for t in tags if isinstance(t, str) and t.strip())


def normalize_job(
    source: str,
    raw: Any,
    *,
    aliases: Mapping[str, tuple[str, ...]] = FIELD_ALIASES,
    summary_max_chars: int = 220,
    description_max_chars: int = 4000,
) -> Job:
    """Build a canonical Job from one raw source record."""
    if not isinstance(raw, Mapping):
        raw = {}

    title = strip_html(first_value(raw, aliases["title"])) or DEFAULT_TITLE
    company = strip_html(first_value(raw, aliases["company"])) or DEFAULT_COMPANY
    location = strip_html(first_value(raw, aliases["location"])) or DEFAULT_LOCATION
    url = first_value(raw, aliases["url"])
    published_at = first_value(raw, aliases["published_at"]) or None

    description = strip_html(first_value(raw, aliases["description"]))
    tags = _tags_text(raw)
    if tags:
        description = f"{description} Tags: {tags}".strip()
    description = description[:description_max_chars]
    summary = (description or tags)[:summary_max_chars]

    native_id = first_value(raw, aliases["native_id"])
    if native_id:
        job_id = stable_id(source, native_id)
    elif url:
        job_id = stable_id(source, url)
    else:
        job_id = stable_id(source, title.lower(), company.lower())

    return Job(
        id=job_id,
        source=source,
        title=title,
        company=company,
        location=location,
        url=url,
        published_at=published_at,
        summary=summary,
        description=description,
    )


def normalize_jobs(source: str, records: list, **kwargs) -> list[Job]:
    return [normalize_job(source, raw, **kwargs) for raw in records]
