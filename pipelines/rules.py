"""URL admission rules.

Rules are ordered ``{url: glob, action: allow|ignore}`` pairs. Patterns are
compiled once when the filter is built; a malformed pattern raises
:class:`ConfigError` at that point and never at match time.

Glob syntax (matched against the full URL, case-sensitive):
    ``*`` / ``**``  any run of characters, ``/`` included
    ``?``           exactly one character
    ``[abc]``       character class, ``[!abc]`` / ``[^abc]`` negated
    ``{a,b}``       alternation
    ``\\x``          literal ``x``
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Pattern, Sequence, Tuple

from .errors import ConfigError

logger = logging.getLogger(__name__)


class Action(str, Enum):
    ALLOW = "allow"
    IGNORE = "ignore"


@dataclass(frozen=True)
class Rule:
    """A single URL filtering rule."""
    url: str
    action: Action

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: int = 0) -> 'Rule':
        field_name = f"rules[{index}]"
        if not isinstance(data, dict):
            raise ConfigError("rule must be a mapping with 'url' and 'action'", field_name)

        url = data.get('url')
        if not isinstance(url, str) or not url.strip():
            raise ConfigError("rule is missing a non-empty 'url' pattern", field_name)

        action = data.get('action', Action.ALLOW.value)
        try:
            action = Action(str(action).lower())
        except ValueError:
            raise ConfigError(
                f"unknown action {action!r} (expected 'allow' or 'ignore')", field_name
            )
        return cls(url=url.strip(), action=action)

    def to_dict(self) -> Dict[str, str]:
        return {'url': self.url, 'action': self.action.value}

    def matches(self, url: str) -> bool:
        return compile_glob(self.url).match(url) is not None


def compile_glob(pattern: str) -> Pattern[str]:
    """Translate a glob pattern into an anchored regular expression.

    Raises:
        ConfigError: If the pattern is malformed.
    """
    parts: List[str] = []
    in_group = False
    i, n = 0, len(pattern)

    while i < n:
        c = pattern[i]
        if c == '*':
            while i + 1 < n and pattern[i + 1] == '*':
                i += 1
            parts.append('.*')
        elif c == '?':
            parts.append('.')
        elif c == '[':
            j = i + 1
            if j < n and pattern[j] in '!^':
                j += 1
            if j < n and pattern[j] == ']':
                j += 1
            while j < n and pattern[j] != ']':
                j += 1
            if j >= n:
                raise ConfigError(f"unclosed character class in glob pattern {pattern!r}")
            body = pattern[i + 1:j]
            negate = body[:1] in ('!', '^')
            if negate:
                body = body[1:]
            body = body.replace('\\', '\\\\').replace('[', '\\[')
            parts.append('[' + ('^' if negate else '') + body + ']')
            i = j
        elif c == '{':
            if in_group:
                raise ConfigError(f"nested alternation is not supported in glob pattern {pattern!r}")
            in_group = True
            parts.append('(?:')
        elif c == '}':
            if not in_group:
                raise ConfigError(f"unopened alternation group in glob pattern {pattern!r}")
            in_group = False
            parts.append(')')
        elif c == ',' and in_group:
            parts.append('|')
        elif c == '\\':
            if i + 1 >= n:
                raise ConfigError(f"dangling escape in glob pattern {pattern!r}")
            i += 1
            parts.append(re.escape(pattern[i]))
        else:
            parts.append(re.escape(c))
        i += 1

    if in_group:
        raise ConfigError(f"unclosed alternation group in glob pattern {pattern!r}")

    try:
        return re.compile('^' + ''.join(parts) + '$', re.DOTALL)
    except re.error as e:
        raise ConfigError(f"invalid glob pattern {pattern!r}: {e}")


class UrlFilter:
    """Pure admission predicate over pre-compiled rules.

    If at least one allow rule exists, a URL is admitted only when it
    matches an allow rule and no ignore rule. Without allow rules, a URL is
    admitted unless it matches an ignore rule. Ignore wins over a matching
    allow rule.
    """

    def __init__(self, rules: Sequence[Rule] = ()):
        self.rules: Tuple[Rule, ...] = tuple(rules)
        self._compiled: List[Tuple[Rule, Pattern[str]]] = []

        for rule in self.rules:
            try:
                self._compiled.append((rule, compile_glob(rule.url)))
            except ConfigError as e:
                raise ConfigError(str(e), field='rules')

        self.has_allow_rules = any(r.action is Action.ALLOW for r in self.rules)

    @classmethod
    def from_dicts(cls, rules: Sequence[Dict[str, Any]]) -> 'UrlFilter':
        return cls([Rule.from_dict(r, i) for i, r in enumerate(rules)])

    def __len__(self) -> int:
        return len(self.rules)

    def _matches(self, url: str) -> Tuple[Optional[Rule], Optional[Rule]]:
        """Return the first matching allow rule and first matching ignore rule."""
        allow_match = None
        ignore_match = None
        for rule, pattern in self._compiled:
            if rule.action is Action.ALLOW:
                if allow_match is None and pattern.match(url):
                    allow_match = rule
            elif ignore_match is None and pattern.match(url):
                ignore_match = rule
        return allow_match, ignore_match

    def admit(self, url: str) -> bool:
        allow_match, ignore_match = self._matches(url)
        if ignore_match is not None:
            return False
        if self.has_allow_rules:
            return allow_match is not None
        return True

    def explain(self, url: str) -> str:
        """Human-readable reason for the admission decision of ``url``."""
        allow_match, ignore_match = self._matches(url)
        if ignore_match is not None:
            return f"ignored by rule {ignore_match.url!r}"
        if allow_match is not None:
            return f"allowed by rule {allow_match.url!r}"
        if self.has_allow_rules:
            return "matches no allow rule"
        return "no rule applies"
