"""Pipelines package for DocSkills.

Provides the crawl, cleaning, and skill materialization stages.
"""

from .crawler import (
    CrawlReport,
    CrawlStatus,
    WebCrawler,
    crawl_urls,
    crawl_urls_sync,
    process_single_page
)
from .errors import (
    CleaningError,
    ConfigError,
    CrawlAborted,
    FetchError,
    MaterializationError,
    RobotsFetchError,
    SkillsError
)
from .fetcher import FetchEngine, HttpFetchEngine, extract_links
from .materializer import SkillMaterializer, clean_output_dir, render_skill_document, truncate_description
from .models import FetchedPage, PageMetadata, ProcessedPage, SkillArtifact
from .policy import HostThrottle, PolicyChecker, RobotsCache, Verdict
from .processor import PageProcessor
from .rules import Action, Rule, UrlFilter
from .state import CrawlState, CrawlStats

__all__ = [
    # Crawler
    'CrawlReport',
    'CrawlStatus',
    'WebCrawler',
    'crawl_urls',
    'crawl_urls_sync',
    'process_single_page',

    # Errors
    'CleaningError',
    'ConfigError',
    'CrawlAborted',
    'FetchError',
    'MaterializationError',
    'RobotsFetchError',
    'SkillsError',

    # Fetching
    'FetchEngine',
    'HttpFetchEngine',
    'extract_links',

    # Materialization
    'SkillMaterializer',
    'clean_output_dir',
    'render_skill_document',
    'truncate_description',

    # Models
    'FetchedPage',
    'PageMetadata',
    'ProcessedPage',
    'SkillArtifact',

    # Policy
    'HostThrottle',
    'PolicyChecker',
    'RobotsCache',
    'Verdict',

    # Processing
    'PageProcessor',

    # Rules
    'Action',
    'Rule',
    'UrlFilter',

    # State
    'CrawlState',
    'CrawlStats'
]
