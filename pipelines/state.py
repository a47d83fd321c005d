"""Crawl statistics and the resume checkpoint."""

import asyncio
import json
import logging
import os
from collections import deque
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, Optional, Set, Tuple

import aiofiles
import aiofiles.os

from .errors import ConfigError

logger = logging.getLogger(__name__)

STATE_FILENAME = '.docskills-state.json'
STATE_VERSION = 1

COUNTERS = ('discovered', 'visited', 'skipped_by_rule', 'skipped_by_policy', 'failed', 'written')


@dataclass
class CrawlStats:
    """Counters for a crawl session.

    Counters only grow, except `visited` when a cancelled page is handed back
    to the frontier or a redirect lands on a page that was already visited.
    """
    discovered: int = 0
    visited: int = 0
    skipped_by_rule: int = 0
    skipped_by_policy: int = 0
    failed: int = 0
    written: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def __post_init__(self):
        if self.start_time is None:
            self.start_time = datetime.now(timezone.utc)

    @property
    def duration(self) -> Optional[timedelta]:
        if self.end_time and self.start_time:
            return self.end_time - self.start_time
        return None

    def finish(self):
        """Mark crawl as finished."""
        self.end_time = datetime.now(timezone.utc)

    def snapshot(self) -> 'CrawlStats':
        """Read-only copy for reporting."""
        return CrawlStats(**{f.name: getattr(self, f.name) for f in fields(self)})

    def counters(self) -> Dict[str, int]:
        return {name: getattr(self, name) for name in COUNTERS}

    def summary(self) -> str:
        return (
            f"{self.visited} visited, {self.written} written, {self.failed} failed, "
            f"{self.skipped_by_rule} skipped by rule, {self.skipped_by_policy} skipped by policy "
            f"({self.discovered} discovered)"
        )

    def to_dict(self) -> Dict[str, Any]:
        return self.counters()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CrawlStats':
        values = {}
        for name in COUNTERS:
            value = data.get(name, 0)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValueError(f"invalid counter {name!r}: {value!r}")
            values[name] = value
        return cls(**values)


@dataclass
class CrawlState:
    """Visited set, frontier and statistics of one crawl.

    Owned by the orchestrator. Processing tasks only touch it through
    :meth:`mark_visited`, :meth:`record_redirect` and :meth:`increment`, which
    run under one lock.
    """
    visited: Set[str] = field(default_factory=set)
    frontier: Deque[Tuple[str, int]] = field(default_factory=deque)
    stats: CrawlStats = field(default_factory=CrawlStats)
    artifacts: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self._lock = asyncio.Lock()
        # Every URL ever queued in this run, so each is discovered at most once
        self._seen: Set[str] = set(self.visited) | {url for url, _ in self.frontier}

    async def mark_visited(self, url: str) -> bool:
        """Insert ``url`` into the visited set. False if it was already there."""
        async with self._lock:
            if url in self.visited:
                return False
            self.visited.add(url)
            self.stats.visited += 1
            return True

    async def record_redirect(self, source: str, target: str) -> bool:
        """Mark ``target`` as visited through the redirected page ``source``.

        Returns False if ``target`` had already been visited on its own; the
        visit of ``source`` is then counted as a policy skip instead.
        """
        async with self._lock:
            if target in self.visited:
                self.stats.visited -= 1
                self.stats.skipped_by_policy += 1
                return False
            if target in self._seen:
                # Still queued; it will come back as a duplicate
                self.stats.skipped_by_policy += 1
            self.visited.add(target)
            self._seen.add(target)
            return True

    async def increment(self, counter: str, amount: int = 1):
        if counter not in COUNTERS:
            raise KeyError(counter)
        async with self._lock:
            setattr(self.stats, counter, getattr(self.stats, counter) + amount)

    def is_known(self, url: str) -> bool:
        return url in self._seen

    def enqueue(self, url: str, depth: int) -> bool:
        """Add a URL to the frontier unless it was seen before."""
        if url in self._seen:
            return False
        self.frontier.append((url, depth))
        self._seen.add(url)
        return True

    def pop(self) -> Tuple[str, int]:
        return self.frontier.popleft()

    def requeue(self, url: str, depth: int):
        """Put a popped but undispatched URL back at the front of the frontier."""
        self.frontier.appendleft((url, depth))

    def unvisit(self, url: str, depth: int):
        """Undo the visit of a page whose processing was cancelled."""
        if url in self.visited:
            self.visited.discard(url)
            self.stats.visited -= 1
        self.requeue(url, depth)

    def to_dict(self, in_flight: Iterable[Tuple[str, int]] = ()) -> Dict[str, Any]:
        """Serializable checkpoint.

        ``in_flight`` pages are recorded as unvisited frontier entries, so a
        checkpoint taken mid-run never claims work that has not finished.
        """
        in_flight = list(in_flight)
        pending = {url for url, _ in in_flight}
        return {
            'version': STATE_VERSION,
            'visited': sorted(self.visited - pending),
            'frontier': [[url, depth] for url, depth in in_flight + list(self.frontier)],
            'stats': dict(self.stats.to_dict(), visited=self.stats.visited - len(pending & self.visited)),
            'artifacts': dict(self.artifacts),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CrawlState':
        if data.get('version') != STATE_VERSION:
            raise ValueError(f"unsupported state version {data.get('version')!r}")

        frontier = deque()
        for entry in data.get('frontier', []):
            url, depth = entry
            if not isinstance(url, str) or not isinstance(depth, int):
                raise ValueError(f"invalid frontier entry {entry!r}")
            frontier.append((url, depth))

        artifacts = data.get('artifacts', {})
        if not isinstance(artifacts, dict):
            raise ValueError("artifacts must be a mapping")

        return cls(
            visited=set(data.get('visited', [])),
            frontier=frontier,
            stats=CrawlStats.from_dict(data.get('stats', {})),
            artifacts={str(k): str(v) for k, v in artifacts.items()},
        )

    @classmethod
    def load(cls, path: Path) -> 'CrawlState':
        """Load a checkpoint written by :meth:`save`.

        Raises:
            ConfigError: If the file is missing, unreadable or corrupt.
        """
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            state = cls.from_dict(data)
        except FileNotFoundError:
            raise ConfigError(f"no resume state found at {path}", 'resume')
        except (OSError, ValueError, TypeError, AttributeError) as e:
            raise ConfigError(f"corrupt resume state {path}: {e}", 'resume')

        logger.info(
            f"Loaded resume state from {path}: {len(state.visited)} visited, "
            f"{len(state.frontier)} queued"
        )
        return state

    async def save(self, path: Path, in_flight: Iterable[Tuple[str, int]] = ()):
        """Write the checkpoint atomically."""
        payload = json.dumps(self.to_dict(in_flight), indent=2)
        tmp_path = path.with_name(f"{path.name}.{os.getpid()}.tmp")
        try:
            async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
                await f.write(payload)
            await aiofiles.os.replace(tmp_path, path)
        except BaseException:
            if tmp_path.exists():
                tmp_path.unlink()
            raise
        logger.debug(f"Checkpoint saved to {path} ({len(self.visited)} visited)")


def seed_state(urls: Iterable[str]) -> CrawlState:
    state = CrawlState()
    for url in urls:
        if state.enqueue(url, 0):
            state.stats.discovered += 1
    return state
