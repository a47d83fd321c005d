"""Content cleaner: strips structural noise from HTML and converted Markdown.

Cleaning never fails a page. Anything the parser chokes on degrades to a
regex strip of scripts and styles, logged as a :class:`CleaningError`.
"""

import logging
import re
from typing import List, Optional, Pattern, Sequence, Tuple

import soupsieve
from bs4 import BeautifulSoup, Comment, Tag

from .errors import CleaningError

logger = logging.getLogger(__name__)

# Markdown larger than this defeats the point of a token-efficient skill
LARGE_CONTENT_THRESHOLD = 20_000

STRUCTURAL_TAGS = [
    'head', 'script', 'style', 'noscript', 'template', 'nav', 'footer', 'header',
    'aside', 'iframe', 'svg', 'canvas', 'video', 'audio', 'form', 'button',
    'object', 'embed',
]

PROTECTED_TAGS = {'html', 'body', 'main', 'article'}

ID_NOISE = (
    'cookie', 'consent', 'banner', 'popup', 'modal', 'overlay', 'gdpr',
    'privacy-notice', 'skip-link', 'feedback', 'newsletter', 'subscribe',
)

CLASS_NOISE = (
    'nav', 'navigation', 'menu', 'sidebar', 'toc', 'table-of-contents', 'breadcrumb', 'breadcrumbs',
    'cookie', 'consent', 'gdpr', 'privacy-notice', 'cookie-banner', 'cookie-consent',
    'ad', 'ads', 'advertisement', 'promo', 'promotional', 'banner', 'announcement',
    'feedback', 'rating', 'ratings', 'helpful', 'thumbs', 'vote', 'voting',
    'skip-link', 'skip-to-content', 'sr-only', 'visually-hidden',
    'social', 'share', 'sharing', 'follow-us',
    'page-meta', 'page-info', 'last-updated', 'edit-page', 'view-source', 'report-issue',
)

ICON_CLASSES = {'material-icons', 'icon', 'fa', 'fas', 'far', 'fab', 'glyphicon'}


def _keyword_pattern(keywords: Sequence[str]) -> Pattern[str]:
    # Longest first so 'cookie-banner' wins over 'cookie'
    alternation = '|'.join(re.escape(k) for k in sorted(keywords, key=len, reverse=True))
    return re.compile(rf'(?<![\w])(?:{alternation})(?![\w])', re.IGNORECASE)


_ID_NOISE_RE = _keyword_pattern(ID_NOISE)
_CLASS_NOISE_RE = _keyword_pattern(CLASS_NOISE)

_FALLBACK_PATTERNS = [
    re.compile(rf'<{tag}[^>]*>.*?</{tag}>', re.IGNORECASE | re.DOTALL)
    for tag in ('script', 'style', 'noscript', 'template')
]

# Material icon ligature names that leak into text when icon fonts are stripped
ICON_NAMES = {
    'chevron_right', 'chevron_left', 'arrow_forward', 'arrow_back', 'arrow_drop_down',
    'arrow_drop_up', 'content_copy', 'content_paste', 'thumb_up', 'thumb_down',
    'thumbs_up', 'thumbs_down', 'vertical_align_top', 'vertical_align_bottom',
    'expand_more', 'expand_less', 'menu', 'close', 'search', 'home', 'settings', 'check',
    'check_circle', 'error', 'warning', 'info', 'list', 'share', 'edit', 'delete', 'add',
    'remove', 'star', 'star_border', 'favorite', 'favorite_border', 'bookmark',
    'bookmark_border', 'visibility', 'visibility_off', 'lock', 'lock_open', 'person',
    'people', 'notifications', 'email', 'phone', 'location_on', 'calendar_today',
    'schedule', 'more_vert', 'more_horiz', 'open_in_new', 'launch', 'link',
    'file_download', 'file_upload', 'cloud_download', 'cloud_upload', 'play_arrow',
    'pause', 'stop', 'skip_next', 'skip_previous', 'fast_forward', 'fast_rewind',
    'volume_up', 'volume_down', 'volume_mute', 'fullscreen', 'fullscreen_exit', 'zoom_in',
    'zoom_out', 'refresh', 'sync', 'cached', 'done', 'done_all', 'clear', 'cancel', 'help',
    'help_outline', 'code',
}

# Underscored names never occur as prose, so they are removed anywhere
_UNDERSCORE_ICON_RE = re.compile(
    r'(?<![\w`])(?:' + '|'.join(sorted((n for n in ICON_NAMES if '_' in n), key=len, reverse=True)) + r')(?![\w`])'
)

_FENCE_RE = re.compile(r'^(```|~~~)')
_EMPTY_LINK_RE = re.compile(r'!?\[[\s¶#§]*\]\([^)]*\)')
_EMPTY_HEADING_RE = re.compile(r'^#{1,6}\s*$')

NOISE_LINE_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    # skip links
    r'^\[skip to (main )?content\]\([^)]*\)$',
    r'^skip to (main )?content$',
    # cookie notices
    r'^(this site|this website|we) uses? cookies\b.*$',
    r'^.*\buses cookies\b.*\b(ok,? )?got it$',
    # feedback widgets
    r"^was this page'?s? content helpful\??$",
    r'^was this (page )?helpful\??$',
    r'^did you find this helpful\??$',
    r'^rate this page:?$',
    # page metadata footers
    r'^unless stated otherwise.*page last updated.*$',
    r'^page last updated on \d{4}-\d{1,2}-\d{1,2}\.?$',
    r'^\[view source\]\([^)]*\).*\[report an issue\]\([^)]*\).*$',
    r'^last (modified|updated):.*$',
    # promotional banners
    r'^check out our newly published.*$',
    r'^\U0001F389.*\bnew\b.*$',
    r'^\U0001F4E2.*\bannouncement\b.*$',
)]


def _is_removed(element) -> bool:
    return getattr(element, 'decomposed', False)


def _remove(element):
    if not _is_removed(element):
        element.decompose()


class ContentCleaner:
    """Removes navigation, chrome and decorative noise from page HTML."""

    def __init__(self, remove_selectors: Sequence[str] = ()):
        self.selectors: List[Tuple[str, soupsieve.SoupSieve]] = []
        for selector in remove_selectors:
            try:
                self.selectors.append((selector, soupsieve.compile(selector)))
            except soupsieve.SelectorSyntaxError as e:
                logger.warning(f"Failed to parse CSS selector '{selector}': {e}. Skipping.")

    def clean(self, html: str) -> str:
        """Return the cleaned inner HTML of the page body."""
        try:
            cleaned = self._clean(html)
        except Exception as e:
            error = CleaningError(f"HTML cleaning failed ({type(e).__name__}: {e}); using best-effort output")
            logger.warning(str(error))
            cleaned = fallback_clean(html)

        logger.debug(f"Cleaned HTML: {len(html)} -> {len(cleaned)} bytes")
        return cleaned

    def _clean(self, html: str) -> str:
        soup = BeautifulSoup(html, 'html.parser')

        for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
            comment.extract()

        for tag in soup.find_all(STRUCTURAL_TAGS):
            _remove(tag)

        for _selector, compiled in self.selectors:
            for element in compiled.select(soup):
                if element.name not in ('html', 'body'):
                    _remove(element)

        for element in soup.find_all(True):
            if _is_removed(element):
                continue
            if self._is_noise(element) or self._is_icon(element) or self._is_skip_link(element):
                _remove(element)

        for element in soup.find_all(True):
            element.attrs = {k: v for k, v in element.attrs.items() if not k.startswith('data-')}

        body = soup.body
        return body.decode_contents() if body else soup.decode()

    @staticmethod
    def _is_noise(element: Tag) -> bool:
        if element.name in PROTECTED_TAGS:
            return False

        element_id = element.get('id')
        if isinstance(element_id, str) and _ID_NOISE_RE.search(element_id):
            return True

        return any(_CLASS_NOISE_RE.search(cls) for cls in element.get('class') or [])

    @staticmethod
    def _is_icon(element: Tag) -> bool:
        classes = element.get('class') or []
        if element.name in ('span', 'i'):
            if any(cls in ICON_CLASSES for cls in classes):
                return element.find(True) is None
        return any(cls.startswith('material-symbols') for cls in classes) and element.find(True) is None

    @staticmethod
    def _is_skip_link(element: Tag) -> bool:
        if element.name != 'a':
            return False
        href = element.get('href') or ''
        return href.startswith('#') and element.get_text(strip=True).lower().startswith('skip')


def fallback_clean(html: str) -> str:
    """Regex strip of executable and style blocks for unparseable input."""
    for pattern in _FALLBACK_PATTERNS:
        html = pattern.sub('', html)
    return html


def _is_icon_line(stripped: str) -> bool:
    tokens = stripped.split()
    return bool(tokens) and all(token in ICON_NAMES for token in tokens)


def clean_markdown(markdown: str) -> str:
    """Second noise pass over converted Markdown.

    Fenced code blocks are left untouched.
    """
    output: List[str] = []
    in_fence = False
    previous_blank = True

    for line in markdown.splitlines():
        stripped = line.strip()

        if _FENCE_RE.match(stripped):
            in_fence = not in_fence
            output.append(line.rstrip())
            previous_blank = False
            continue
        if in_fence:
            output.append(line)
            continue

        line = _UNDERSCORE_ICON_RE.sub('', _EMPTY_LINK_RE.sub('', line)).rstrip()
        stripped = line.strip()

        if not stripped:
            if not previous_blank:
                output.append('')
            previous_blank = True
            continue

        if _is_icon_line(stripped) or _EMPTY_HEADING_RE.match(stripped):
            continue
        if any(pattern.match(stripped) for pattern in NOISE_LINE_PATTERNS):
            continue

        output.append(line)
        previous_blank = False

    return '\n'.join(output).strip('\n')


def check_size(markdown: str, label: Optional[str] = None) -> bool:
    """Warn when a document exceeds :data:`LARGE_CONTENT_THRESHOLD`. True if it does."""
    size = len(markdown)
    if size <= LARGE_CONTENT_THRESHOLD:
        return False
    logger.warning(
        f"Large skill '{label or 'unnamed'}': {size} characters (~{size // 4} tokens). "
        f"Consider splitting into smaller sections."
    )
    return True
