"""Crawl configuration loaded from ``skills.yaml``.

The configuration is validated once, up front. Any problem is a
:class:`~pipelines.errors.ConfigError` naming the offending field, raised
before a single request is made. Loaded configs are immutable; command
line overrides produce a new snapshot via :meth:`CrawlConfig.with_overrides`.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from pipelines.errors import ConfigError
from pipelines.rules import Rule, UrlFilter

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = 'skills.yaml'
DEFAULT_OUTPUT_DIR = '.agent/skills'
DEFAULT_USER_AGENT = 'DocSkills/1.0 (+https://github.com/docskills/docskills)'
DEFAULT_DELAY_MS = 100
DEFAULT_MAX_DEPTH = 25
DEFAULT_REQUEST_TIMEOUT_SECS = 30
DEFAULT_CONCURRENCY = 4

DEFAULT_REMOVE_SELECTORS = (
    'nav',
    'footer',
    'header',
    'script',
    'style',
    'noscript',
    'iframe',
    '.toc',
    '.table-of-contents',
    '.sidebar',
    '.navigation',
    '.nav',
    '.menu',
    '.breadcrumb',
    '.breadcrumbs',
    '.ads',
    '.advertisement',
    '.cookie-banner',
    '.cookie-consent',
    "[role='navigation']",
    "[role='banner']",
    "[role='contentinfo']",
)


class SkillsTarget(str, Enum):
    """Agent tool the skills are generated for; decides the output directory."""
    GITHUB_COPILOT = "github-copilot"
    CLAUDE_CODE = "claude-code"
    CURSOR = "cursor"
    ANTIGRAVITY = "antigravity"
    OPENAI_CODEX = "openai-codex"
    OPENCODE = "opencode"
    CUSTOM = "custom"

    @property
    def project_dir(self) -> str:
        return _TARGET_DIRS[self][0]

    @property
    def user_dir(self) -> str:
        """Directory relative to the user's home."""
        return _TARGET_DIRS[self][1]

    @classmethod
    def parse(cls, value: str) -> 'SkillsTarget':
        key = str(value).strip().lower()
        key = _TARGET_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            valid = ', '.join(t.value for t in cls)
            raise ConfigError(f"unknown target '{value}'. Valid targets: {valid}", 'target')


_TARGET_DIRS = {
    SkillsTarget.GITHUB_COPILOT: ('.github/skills', '.copilot/skills'),
    SkillsTarget.CLAUDE_CODE: ('.claude/skills', '.claude/skills'),
    SkillsTarget.CURSOR: ('.cursor/skills', '.cursor/skills'),
    SkillsTarget.ANTIGRAVITY: ('.gemini/skills', '.gemini/skills'),
    SkillsTarget.OPENAI_CODEX: ('.codex/skills', '.codex/skills'),
    SkillsTarget.OPENCODE: ('.opencode/skills', '.config/opencode/skills'),
    SkillsTarget.CUSTOM: (DEFAULT_OUTPUT_DIR, DEFAULT_OUTPUT_DIR),
}

_TARGET_ALIASES = {
    'copilot': 'github-copilot',
    'claude': 'claude-code',
    'gemini': 'antigravity',
    'codex': 'openai-codex',
    'openai': 'openai-codex',
    'open-code': 'opencode',
}


class SkillsScope(str, Enum):
    PROJECT = "project"
    USER = "user"

    @classmethod
    def parse(cls, value: str) -> 'SkillsScope':
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigError(f"unknown scope '{value}' (expected 'project' or 'user')", 'scope')


def _expect_bool(name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"expected true/false, got {value!r}", name)
    return value


def _expect_int(name: str, value: Any, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"expected an integer, got {value!r}", name)
    if value < minimum:
        raise ConfigError(f"must be >= {minimum}, got {value}", name)
    return value


def _expect_str_list(name: str, value: Any) -> Tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError("expected a list of strings", name)
    return tuple(value)


@dataclass(frozen=True)
class CrawlConfig:
    """Immutable snapshot of every setting a crawl run needs."""
    output: Path = Path(DEFAULT_OUTPUT_DIR)
    flat: bool = False
    user_agent: Optional[str] = None
    delay_ms: int = DEFAULT_DELAY_MS
    max_depth: int = DEFAULT_MAX_DEPTH
    request_timeout_secs: int = DEFAULT_REQUEST_TIMEOUT_SECS
    respect_robots_txt: bool = True
    subdomains: bool = False
    concurrency: int = DEFAULT_CONCURRENCY
    rules: Tuple[Rule, ...] = ()
    remove_selectors: Tuple[str, ...] = DEFAULT_REMOVE_SELECTORS
    target: SkillsTarget = SkillsTarget.CUSTOM
    scope: SkillsScope = SkillsScope.PROJECT
    url_filter: UrlFilter = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        _expect_bool('flat', self.flat)
        _expect_int('delay_ms', self.delay_ms, 0)
        _expect_int('max_depth', self.max_depth, 0)
        _expect_int('request_timeout_secs', self.request_timeout_secs, 1)
        _expect_bool('respect_robots_txt', self.respect_robots_txt)
        _expect_bool('subdomains', self.subdomains)
        _expect_int('concurrency', self.concurrency, 1)
        if self.user_agent is not None and (not isinstance(self.user_agent, str) or not self.user_agent.strip()):
            raise ConfigError("expected a non-empty string", 'user_agent')

        object.__setattr__(self, 'output', Path(self.output))
        object.__setattr__(self, 'rules', tuple(self.rules))
        object.__setattr__(self, 'remove_selectors', tuple(self.remove_selectors))
        # Globs are compiled here so a bad pattern fails at load time
        object.__setattr__(self, 'url_filter', UrlFilter(self.rules))

    @property
    def effective_user_agent(self) -> str:
        return self.user_agent or DEFAULT_USER_AGENT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CrawlConfig':
        """Create a CrawlConfig from parsed YAML.

        Raises:
            ConfigError: On wrong types, out-of-range values or bad rules.
        """
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError("configuration must be a mapping at the top level")

        known = {f for f in cls.__dataclass_fields__ if f != 'url_filter'}
        for key in data:
            if key not in known:
                logger.warning(f"Ignoring unknown configuration key '{key}'")

        kwargs: Dict[str, Any] = {}
        for key in ('flat', 'user_agent', 'delay_ms', 'max_depth', 'request_timeout_secs',
                    'respect_robots_txt', 'subdomains', 'concurrency'):
            if key in data and data[key] is not None:
                kwargs[key] = data[key]

        if data.get('output') is not None:
            if not isinstance(data['output'], str) or not data['output'].strip():
                raise ConfigError("expected a non-empty path", 'output')
            kwargs['output'] = Path(data['output'])

        if data.get('rules') is not None:
            if not isinstance(data['rules'], list):
                raise ConfigError("expected a list of {url, action} rules", 'rules')
            kwargs['rules'] = tuple(Rule.from_dict(r, i) for i, r in enumerate(data['rules']))

        if data.get('remove_selectors') is not None:
            kwargs['remove_selectors'] = _expect_str_list('remove_selectors', data['remove_selectors'])

        if data.get('target') is not None:
            kwargs['target'] = SkillsTarget.parse(data['target'])
        if data.get('scope') is not None:
            kwargs['scope'] = SkillsScope.parse(data['scope'])

        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a YAML-friendly dictionary."""
        return {
            'output': str(self.output),
            'flat': self.flat,
            'user_agent': self.user_agent,
            'delay_ms': self.delay_ms,
            'max_depth': self.max_depth,
            'request_timeout_secs': self.request_timeout_secs,
            'respect_robots_txt': self.respect_robots_txt,
            'subdomains': self.subdomains,
            'concurrency': self.concurrency,
            'target': self.target.value,
            'scope': self.scope.value,
            'rules': [r.to_dict() for r in self.rules],
            'remove_selectors': list(self.remove_selectors),
        }

    def with_overrides(self, **changes: Any) -> 'CrawlConfig':
        """New snapshot with ``changes`` applied; ``None`` values are ignored."""
        changes = {k: v for k, v in changes.items() if v is not None}
        if not changes:
            return self
        return replace(self, **changes)

    def resolve_output_path(self, home: Optional[Path] = None) -> Path:
        """Directory skills are written to, after applying target and scope.

        A custom target in project scope uses ``output`` as given.
        """
        if self.scope is SkillsScope.USER:
            return Path(home or Path.home()) / self.target.user_dir
        if self.target is SkillsTarget.CUSTOM:
            return self.output
        return Path(self.target.project_dir)


def load_config(path: Union[str, Path]) -> CrawlConfig:
    """Load and validate a YAML configuration file.

    Raises:
        ConfigError: If the file cannot be read or is invalid.
    """
    path = Path(path)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"config file not found: {path}")
    except OSError as e:
        raise ConfigError(f"failed to read config file {path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse config file {path}: {e}")

    config = CrawlConfig.from_dict(data)
    logger.debug(f"Loaded configuration from {path}")
    return config


def load_config_or_default(path: Union[str, Path], required: bool = False) -> CrawlConfig:
    """Like :func:`load_config`, but fall back to defaults when the file is absent.

    Args:
        path: Config file location
        required: Treat a missing file as an error (explicitly requested path)
    """
    if not Path(path).exists() and not required:
        logger.info(f"No config file at {path}, using defaults")
        return CrawlConfig()
    return load_config(path)


def describe_targets() -> List[str]:
    return [f"{t.value}: {t.project_dir} (project), ~/{t.user_dir} (user)" for t in SkillsTarget]


CONFIG_TEMPLATE = """\
# DocSkills configuration
#
# Generated skills are written one per crawled page, either as
# <output>/<name>/SKILL.md or, with flat: true, as <output>/<name>.md

# Where to write skills (used when target is 'custom')
output: {output}

# Agent tool to generate skills for. Sets the output directory:
#   github-copilot  .github/skills    (user: ~/.copilot/skills)
#   claude-code     .claude/skills    (user: ~/.claude/skills)
#   cursor          .cursor/skills    (user: ~/.cursor/skills)
#   antigravity     .gemini/skills    (user: ~/.gemini/skills)
#   openai-codex    .codex/skills     (user: ~/.codex/skills)
#   opencode        .opencode/skills  (user: ~/.config/opencode/skills)
#   custom          the 'output' path above
target: {target}

# project or user
scope: {scope}

# Write <name>.md files instead of <name>/SKILL.md directories
flat: false

# user_agent: "MyBot/1.0"

# Politeness
delay_ms: {delay_ms}
max_depth: {max_depth}
request_timeout_secs: 30
respect_robots_txt: true
subdomains: false

# Pages processed in parallel
concurrency: {concurrency}

# URL rules, matched as globs against the full URL.
# If any allow rule exists, only URLs matching an allow rule are crawled.
# A matching ignore rule always wins.
rules:
  # - url: "https://docs.example.com/guide/*"
  #   action: allow
  # - url: "*/changelog*"
  #   action: ignore

# CSS selectors removed from every page before conversion
remove_selectors:
  - nav
  - footer
  - header
  - script
  - style
  - noscript
  - iframe
  - .toc
  - .table-of-contents
  - .sidebar
  - .navigation
  - .nav
  - .menu
  - .breadcrumb
  - .breadcrumbs
  - .ads
  - .advertisement
  - .cookie-banner
  - .cookie-consent
  - "[role='navigation']"
  - "[role='banner']"
  - "[role='contentinfo']"
"""


def _yaml_string(value: str) -> str:
    """``value`` as a YAML scalar, quoted unless it reads back unchanged."""
    try:
        plain = bool(value) and yaml.safe_load(value) == value
    except yaml.YAMLError:
        plain = False
    return value if plain else json.dumps(value)


def render_config_template(target: SkillsTarget = SkillsTarget.CUSTOM,
                           scope: SkillsScope = SkillsScope.PROJECT,
                           output: str = DEFAULT_OUTPUT_DIR,
                           delay_ms: int = DEFAULT_DELAY_MS,
                           max_depth: int = DEFAULT_MAX_DEPTH,
                           concurrency: int = DEFAULT_CONCURRENCY) -> str:
    """Commented ``skills.yaml`` with the given settings filled in."""
    return CONFIG_TEMPLATE.format(
        target=target.value,
        scope=scope.value,
        output=_yaml_string(output),
        delay_ms=delay_ms,
        max_depth=max_depth,
        concurrency=concurrency,
    )


DEFAULT_CONFIG_TEMPLATE = render_config_template()
