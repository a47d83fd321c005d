"""Skill materializer: names, assembles and writes skill documents.

Layouts:
    nested  ``<output>/<name>/SKILL.md``
    flat    ``<output>/<name>.md``

Writes are atomic: content goes to a temporary sibling file that is then
renamed into place, so a cancelled or failed write never leaves a
truncated artifact behind.
"""

import errno
import logging
import os
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import aiofiles
import aiofiles.os
import yaml

from .errors import MaterializationError
from .models import PageMetadata, ProcessedPage, SkillArtifact
from .rules import compile_glob
from .state import STATE_FILENAME
from .urls import disambiguate

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 1024
SKILL_FILENAME = 'SKILL.md'

# OSError codes that affect every write, not just the current page
STRUCTURAL_ERRNOS = {errno.EACCES, errno.EPERM, errno.EROFS, errno.ENOSPC, errno.ENOTDIR}


def truncate_description(description: str, max_chars: int = MAX_DESCRIPTION_LENGTH) -> str:
    """Collapse whitespace and cut to ``max_chars``.

    Prefers ending on a sentence boundary in the second half of the allowed
    length; otherwise cuts at a word boundary and appends ``...``.
    """
    text = ' '.join(description.split())
    if len(text) <= max_chars:
        return text

    window = text[:max_chars]
    sentence_end = max(window.rfind(p) for p in ('. ', '! ', '? '))
    if sentence_end > max_chars // 2:
        return window[:sentence_end + 1]

    cut = text[:max_chars - 3]
    space = cut.rfind(' ')
    if space > 0:
        cut = cut[:space]
    return cut.rstrip() + '...'


def build_front_matter(name: str, description: str, url: str) -> str:
    data = {
        'name': name,
        'description': truncate_description(description),
        'metadata': {'url': url},
    }
    dumped = yaml.safe_dump(
        data,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
        width=float('inf'),
    )
    return f"---\n{dumped}---\n"


def _strip_leading_title(markdown: str, title: str) -> str:
    lines = markdown.lstrip('\n').split('\n', 1)
    if lines[0].strip() == f"# {title}":
        return lines[1].lstrip('\n') if len(lines) > 1 else ''
    return markdown


def render_body(metadata: PageMetadata, markdown: str) -> str:
    """A blank line, the H1 title, a blank line and the Markdown, newline terminated."""
    title = ' '.join(metadata.title.split()) or 'Untitled'
    content = _strip_leading_title(markdown, title).strip('\n')
    if content:
        return f"\n# {title}\n\n{content}\n"
    return f"\n# {title}\n"


def render_skill_document(name: str, metadata: PageMetadata, markdown: str) -> Tuple[str, str]:
    """Return ``(front_matter, body)`` for one skill."""
    return build_front_matter(name, metadata.description, metadata.url), render_body(metadata, markdown)


class SkillMaterializer:
    """Turns processed pages into artifacts and writes them to disk."""

    def __init__(self,
                 output_dir: Path,
                 flat: bool = False,
                 dry_run: bool = False,
                 claimed: Optional[Dict[str, str]] = None):
        """Initialize the materializer.

        Args:
            output_dir: Root directory for artifacts
            flat: Write ``<name>.md`` files instead of ``<name>/SKILL.md``
            dry_run: Do everything except touching the filesystem
            claimed: Skill name to source URL map, shared with the resume
                state so disambiguation is stable across runs
        """
        self.output_dir = Path(output_dir)
        self.flat = flat
        self.dry_run = dry_run
        self.claimed: Dict[str, str] = claimed if claimed is not None else {}
        self.would_write: List[Path] = []

    def path_for(self, name: str) -> Path:
        if self.flat:
            return self.output_dir / f"{name}.md"
        return self.output_dir / name / SKILL_FILENAME

    def claim_name(self, base: str, url: str) -> str:
        """Reserve a unique skill name for ``url``."""
        owner = self.claimed.get(base)
        if owner is None or owner == url:
            self.claimed[base] = url
            return base

        name = disambiguate(base, url)
        logger.debug(f"Skill name '{base}' already used by {owner}; using '{name}' for {url}")
        self.claimed[name] = url
        return name

    def materialize(self, page: ProcessedPage) -> SkillArtifact:
        name = self.claim_name(page.skill_name, page.metadata.url)
        return SkillArtifact(
            name=name,
            path=self.path_for(name),
            front_matter=build_front_matter(name, page.metadata.description, page.metadata.url),
            body=page.body,
            url=page.metadata.url,
        )

    def ensure_output_dir(self):
        """Create the output root.

        Raises:
            MaterializationError: (structural) If the root is unusable.
        """
        if self.dry_run:
            return
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise MaterializationError(self.output_dir, e.strerror or str(e), structural=True)
        if not self.output_dir.is_dir():
            raise MaterializationError(self.output_dir, "output path is not a directory", structural=True)
        if not os.access(self.output_dir, os.W_OK | os.X_OK):
            raise MaterializationError(self.output_dir, "output directory is not writable", structural=True)

    async def write(self, artifact: SkillArtifact) -> Path:
        """Write ``artifact`` atomically (or record it in dry-run).

        Raises:
            MaterializationError: If the write fails.
        """
        if self.dry_run:
            self.would_write.append(artifact.path)
            logger.info(f"[dry-run] Would write skill '{artifact.name}' ({artifact.size} chars) to {artifact.path}")
            return artifact.path

        path = artifact.path
        tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
            try:
                async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
                    await f.write(artifact.content)
                await aiofiles.os.replace(tmp_path, path)
            except BaseException:
                if tmp_path.exists():
                    tmp_path.unlink()
                raise
        except OSError as e:
            raise MaterializationError(
                path, e.strerror or str(e), structural=e.errno in STRUCTURAL_ERRNOS
            )

        logger.info(f"Wrote skill '{artifact.name}' ({artifact.size} chars) to {path}")
        return path


def _is_flat_skill(path: Path) -> bool:
    """A ``.md`` file that starts with front matter carrying a ``name`` field."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            if f.readline().rstrip('\n') != '---':
                return False
            for line in f:
                if line.rstrip('\n') == '---':
                    return False
                if line.startswith('name:'):
                    return True
    except (OSError, UnicodeDecodeError):
        return False
    return False


def find_generated(output_dir: Path, pattern: Optional[str] = None) -> List[Path]:
    """Skill directories and flat skill files under ``output_dir``.

    Raises:
        ConfigError: If ``pattern`` is not a valid glob.
    """
    output_dir = Path(output_dir)
    if not output_dir.is_dir():
        return []

    matcher = compile_glob(pattern) if pattern else None
    found = []
    for entry in sorted(output_dir.iterdir()):
        if entry.is_dir() and (entry / SKILL_FILENAME).is_file():
            name = entry.name
        elif entry.is_file() and entry.suffix == '.md' and _is_flat_skill(entry):
            name = entry.stem
        else:
            continue
        if matcher is None or matcher.match(name):
            found.append(entry)
    return found


def clean_output_dir(output_dir: Path, pattern: Optional[str] = None) -> List[Path]:
    """Remove generated skills (and the resume state) from ``output_dir``.

    Returns:
        The removed skill paths.
    """
    output_dir = Path(output_dir)
    removed = []
    for entry in find_generated(output_dir, pattern):
        if entry.is_dir():
            shutil.rmtree(entry)
        else:
            entry.unlink()
        logger.info(f"Removed {entry}")
        removed.append(entry)

    state_file = output_dir / STATE_FILENAME
    if pattern is None and state_file.exists():
        state_file.unlink()
        logger.info(f"Removed resume state {state_file}")

    return removed
