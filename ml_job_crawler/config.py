"""YAML config loader + Pydantic models."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

_DEFAULT_CONFIG = Path(__file__).parent / "config.default.yaml"


class SourceTarget(BaseModel):
    name: str
    label: str = ""
    url: str
    enabled: bool = True
    timeout: int = 20

    @property
    def display_name(self) -> str:
        return self.label or self.name


class SourcesConfig(BaseModel):
    concurrent: bool = True
    user_agent: str = (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    )
    targets: list[SourceTarget] = Field(default_factory=list)


class FilterConfig(BaseModel):
    keywords: list[str] = Field(default_factory=lambda: [
        "machine learning", "ml", "deep learning", "nlp", "computer vision",
        "llm", "ai engineer", "data scientist", "applied scientist",
        "research scientist",
    ])
    # Substring matching keeps short tokens like "ml" broad; opt in to \b matching for precision.
    word_boundary: bool = False


class NormalizeConfig(BaseModel):
    summary_max_chars: int = 220
    description_max_chars: int = 4000


class RankingConfig(BaseModel):
    url: str = "https://api.openai.com/v1/chat/completions"
    model: str = "gpt-4o-mini"
    timeout: int = 30
    temperature: float = 0.2
    max_tokens: int = 2000
    max_results: int = 30
    max_prompt_jobs: int = 40
    summary_max_chars: int = 300


class RunsConfig(BaseModel):
    max_events: int = 150


class ProgressConfig(BaseModel):
    """Progress bands for a run. Completion always snaps to 100."""

    startup: int = 10
    crawl_end: int = 70
    dedupe: int = 80
    ranking: int = 90

    def source_start(self, index: int, total: int) -> int:
        if total <= 0:
            return self.startup
        return self.startup + (index * (self.crawl_end - self.startup)) // total

    def source_end(self, index: int, total: int) -> int:
        if total <= 0:
            return self.crawl_end
        return self.startup + ((index + 1) * (self.crawl_end - self.startup)) // total


class CrawlerConfig(BaseModel):
    sources: SourcesConfig = Field(default_factory=SourcesConfig)
    filter: FilterConfig = Field(default_factory=FilterConfig)
    normalize: NormalizeConfig = Field(default_factory=NormalizeConfig)
    ranking: RankingConfig = Field(default_factory=RankingConfig)
    runs: RunsConfig = Field(default_factory=RunsConfig)
    progress: ProgressConfig = Field(default_factory=ProgressConfig)


def load_config(config_path: Optional[Path] = None) -> CrawlerConfig:
    """Load config from YAML, falling back to defaults."""
    # Start with defaults
    with open(_DEFAULT_CONFIG) as f:
        data = yaml.safe_load(f)

    # Merge user overrides if provided
    if config_path and config_path.exists():
        with open(config_path) as f:
            overrides = yaml.safe_load(f) or {}
        _deep_merge(data, overrides)

    # Environment wins over both files for the ranking endpoint
    ranking = data.setdefault("ranking", {})
    if os.environ.get("OPENAI_MODEL"):
        ranking["model"] = os.environ["OPENAI_MODEL"]
    if os.environ.get("OPENAI_API_URL"):
        ranking["url"] = os.environ["OPENAI_API_URL"]

    return CrawlerConfig.model_validate(data)


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base dict."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base
