"""Data models shared by the crawl pipeline stages."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


@dataclass
class FetchedPage:
    """A page handed over by the fetch engine. Consumed exactly once."""
    url: str
    status: int
    html: str
    depth: int = 0
    discovered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    content_type: Optional[str] = None
    # Where the response came from after redirects; None when not redirected
    final_url: Optional[str] = None

    @property
    def base_url(self) -> str:
        """URL that relative links on the page resolve against."""
        return self.final_url or self.url

    @property
    def redirected(self) -> bool:
        return self.final_url is not None and self.final_url != self.url


@dataclass(frozen=True)
class PageMetadata:
    """Title, description and canonical URL derived from a fetched page."""
    title: str
    description: str
    url: str


@dataclass
class ProcessedPage:
    """Output of the cleaning/conversion stage for one page."""
    metadata: PageMetadata
    cleaned_html: str
    markdown: str
    skill_name: str
    # H1 title and Markdown; front matter is added once the final name is known
    body: str


@dataclass
class SkillArtifact:
    """A materialized skill: where it goes and what it contains."""
    name: str
    path: Path
    front_matter: str
    body: str
    url: str

    @property
    def content(self) -> str:
        return self.front_matter + self.body

    @property
    def size(self) -> int:
        return len(self.content)
