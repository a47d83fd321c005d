"""Page processing: metadata extraction, cleaning and Markdown conversion."""

import logging
from typing import Optional, Sequence

from bs4 import BeautifulSoup
from markdownify import markdownify as md_convert

from .cleaner import ContentCleaner, check_size, clean_markdown
from .materializer import render_body, truncate_description
from .models import FetchedPage, PageMetadata, ProcessedPage
from .urls import skill_name_from_url

logger = logging.getLogger(__name__)

# A paragraph has to be at least this long to stand in for a description
MIN_PARAGRAPH_LENGTH = 50
PARAGRAPH_DESCRIPTION_LENGTH = 200


def html_to_markdown(html: str) -> str:
    """Convert cleaned HTML to Markdown.

    Falls back to the plain text of the document if conversion fails.
    """
    try:
        return md_convert(html, heading_style="ATX", bullets="-")
    except Exception as e:
        logger.warning(f"Markdown conversion failed ({type(e).__name__}: {e}); using plain text")
        return BeautifulSoup(html, 'html.parser').get_text('\n')


def _text(element) -> Optional[str]:
    if element is None:
        return None
    text = ' '.join(element.get_text(' ').split())
    return text or None


def _meta_content(soup: BeautifulSoup, **attrs) -> Optional[str]:
    tag = soup.find('meta', attrs=attrs)
    if tag is None:
        return None
    content = ' '.join((tag.get('content') or '').split())
    return content or None


def extract_title(soup: BeautifulSoup) -> str:
    return _text(soup.find('title')) or _text(soup.find('h1')) or 'Untitled'


def extract_description(soup: BeautifulSoup) -> str:
    """Meta description, then og:description, then the first substantial paragraph."""
    description = (
        _meta_content(soup, name='description')
        or _meta_content(soup, property='og:description')
    )
    if description:
        return truncate_description(description)

    for paragraph in soup.find_all('p'):
        text = _text(paragraph)
        if text and len(text) > MIN_PARAGRAPH_LENGTH:
            return truncate_description(text, PARAGRAPH_DESCRIPTION_LENGTH)
    return ''


def extract_metadata(page: FetchedPage) -> PageMetadata:
    soup = BeautifulSoup(page.html, 'html.parser')
    return PageMetadata(
        title=extract_title(soup),
        description=extract_description(soup),
        url=page.url,
    )


class PageProcessor:
    """Turns a fetched page into a processed page ready for materialization.

    Synchronous and free of I/O; safe to call from any processing task.
    """

    def __init__(self, remove_selectors: Sequence[str] = ()):
        self.cleaner = ContentCleaner(remove_selectors)

    @classmethod
    def from_config(cls, config) -> 'PageProcessor':
        return cls(config.remove_selectors)

    def process(self, page: FetchedPage) -> ProcessedPage:
        metadata = extract_metadata(page)
        cleaned_html = self.cleaner.clean(page.html)
        markdown = clean_markdown(html_to_markdown(cleaned_html))

        skill_name = skill_name_from_url(page.url)
        check_size(markdown, skill_name)

        logger.debug(f"Processed {page.url}: '{metadata.title}' -> {skill_name} ({len(markdown)} chars)")

        return ProcessedPage(
            metadata=metadata,
            cleaned_html=cleaned_html,
            markdown=markdown,
            skill_name=skill_name,
            body=render_body(metadata, markdown),
        )
