"""Configuration module for DocSkills.

Provides loading and validation of the ``skills.yaml`` crawl configuration.
"""

from .skills_config import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_CONFIG_TEMPLATE,
    CrawlConfig,
    SkillsScope,
    SkillsTarget,
    load_config,
    load_config_or_default,
    render_config_template
)

__all__ = [
    'DEFAULT_CONFIG_PATH',
    'DEFAULT_CONFIG_TEMPLATE',
    'CrawlConfig',
    'SkillsScope',
    'SkillsTarget',
    'load_config',
    'load_config_or_default',
    'render_config_template'
]
