"""URL helpers: seed handling, scoping rules and skill-name derivation."""

import hashlib
import logging
import re
from typing import List, Optional, Tuple
from urllib.parse import unquote, urldefrag, urlparse

from .errors import ConfigError
from .rules import Action, Rule

logger = logging.getLogger(__name__)

MAX_SKILL_NAME_LENGTH = 64

# Extensions dropped from the last path segment before naming
STRIPPED_EXTENSIONS = ('.html', '.htm', '.md', '.txt', '.php', '.asp', '.aspx', '.jsp')

SEED_WILDCARDS = ('*', '[', '{')

_NON_ALNUM = re.compile(r'[^a-z0-9]+')
_GLOB_SPECIAL = re.compile(r'([*?\[\]{}\\,])')


def host_of(url: str) -> str:
    """Lower-cased host name of a URL (no port, no credentials)."""
    return (urlparse(url).hostname or '').lower()


def origin_of(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def extract_url_path(url: str) -> str:
    """Path component of ``url`` without leading/trailing slashes."""
    return urlparse(url).path.strip('/')


def escape_glob(text: str) -> str:
    """Escape glob metacharacters so ``text`` matches literally."""
    return _GLOB_SPECIAL.sub(r'\\\1', text)


def normalize_seed(url: str) -> str:
    """Validate a seed URL and strip its fragment.

    Raises:
        ConfigError: If the URL is not an absolute http(s) URL with a host.
    """
    url = (url or '').strip()
    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https') or not parsed.hostname:
        raise ConfigError(f"invalid seed URL {url!r}: expected an absolute http(s) URL", 'seeds')
    return urldefrag(url)[0]


def parse_url_pattern(url: str) -> Tuple[str, Optional[str]]:
    """Split a seed into the URL to start from and an optional glob pattern.

    ``https://docs.flutter.dev/ui/*`` becomes
    ``("https://docs.flutter.dev/ui/", "https://docs.flutter.dev/ui/*")``.
    A seed without wildcards is returned unchanged with no pattern.
    """
    positions = [url.find(c) for c in SEED_WILDCARDS if c in url]
    if not positions:
        return url, None

    start = min(positions)
    slash = url.rfind('/', 0, start)
    base = url[:slash + 1] if slash >= 0 else url[:start]
    return base, url


def scoping_rules(seed: str, subdomains: bool = False) -> List[Rule]:
    """Allow rules that confine a crawl to the scope of one seed.

    With ``subdomains`` every page on a subdomain of the seed host is in
    scope as well; the politeness host check still applies.
    """
    base, pattern = parse_url_pattern(seed)
    if pattern is not None:
        rules = [
            Rule(url=escape_glob(base), action=Action.ALLOW),
            Rule(url=pattern, action=Action.ALLOW),
        ]
    else:
        prefix = seed if seed.endswith('/') else seed + '/'
        rules = [
            Rule(url=escape_glob(seed), action=Action.ALLOW),
            Rule(url=escape_glob(prefix) + '**', action=Action.ALLOW),
        ]

    if subdomains:
        parsed = urlparse(base)
        rules.append(Rule(url=f"{parsed.scheme}://*.{escape_glob(parsed.netloc)}/**", action=Action.ALLOW))
    return rules


def _strip_extension(segment: str) -> str:
    for ext in STRIPPED_EXTENSIONS:
        if segment.endswith(ext):
            return segment[:-len(ext)]
    return segment


def _truncate_name(name: str, limit: int) -> str:
    """Cut ``name`` to ``limit`` chars without splitting a hyphen-delimited token."""
    if len(name) <= limit:
        return name
    cut = name[:limit]
    if name[limit] != '-':
        boundary = cut.rfind('-')
        if boundary > 0:
            cut = cut[:boundary]
    return cut.strip('-')


def slugify(text: str, limit: int = MAX_SKILL_NAME_LENGTH) -> str:
    slug = _NON_ALNUM.sub('-', text.lower()).strip('-')
    return _truncate_name(slug, limit)


def skill_name_from_url(url: str) -> str:
    """Derive a kebab-case skill name from the path of ``url``.

    The path is URL-decoded, lower-cased and stripped of a known file
    extension; every run of non-alphanumeric characters becomes a single
    hyphen. A root URL falls back to the host name, then to ``index``.

    >>> skill_name_from_url("https://docs.example.com/getting-started")
    'getting-started'
    """
    path = unquote(extract_url_path(url)).lower()
    name = slugify(_strip_extension(path))
    if name:
        return name

    name = slugify(host_of(url))
    return name or 'index'


def disambiguate(name: str, url: str) -> str:
    """Append a short digest of ``url`` to ``name``, keeping the 64-char limit."""
    suffix = hashlib.sha1(url.encode('utf-8')).hexdigest()[:8]
    base = _truncate_name(name, MAX_SKILL_NAME_LENGTH - len(suffix) - 1)
    return f"{base}-{suffix}" if base else suffix
