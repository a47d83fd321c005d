"""Error taxonomy for the DocSkills pipeline.

Configuration problems are fatal and surface before any crawl activity.
Everything that happens to a single page (fetch, cleaning, writing) is
isolated to that page unless it reveals a structural problem with the
output directory, in which case the whole run is aborted.
"""

from typing import Optional


class SkillsError(Exception):
    """Base class for all DocSkills errors."""
    pass


class ConfigError(SkillsError):
    """Malformed configuration, glob pattern or seed URL."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        if field:
            message = f"{field}: {message}"
        super().__init__(message)


class FetchError(SkillsError):
    """Network failure, timeout or non-2xx response for a page."""

    def __init__(self, url: str, reason: str, status: Optional[int] = None):
        self.url = url
        self.reason = reason
        self.status = status
        detail = f"HTTP {status}: {reason}" if status else reason
        super().__init__(f"Failed to fetch {url}: {detail}")


class RobotsFetchError(SkillsError):
    """robots.txt could not be retrieved; treated as permissive."""
    pass


class CleaningError(SkillsError):
    """HTML could not be cleaned; callers degrade to best-effort output."""
    pass


class MaterializationError(SkillsError):
    """A skill artifact could not be written.

    ``structural`` marks failures that affect every page (an unwritable
    or read-only output root, a full disk) and must abort the run.
    """

    def __init__(self, path, reason: str, structural: bool = False):
        self.path = path
        self.structural = structural
        super().__init__(f"Failed to write {path}: {reason}")


class CrawlAborted(SkillsError):
    """Carries the cause of a run-level abort."""
    pass
