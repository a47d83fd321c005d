import pytest

from config.skills_config import CrawlConfig
from fakes import make_page


@pytest.fixture
def output_dir(tmp_path):
    return tmp_path / "skills"


@pytest.fixture
def crawl_config(output_dir):
    return CrawlConfig(output=output_dir, delay_ms=0, respect_robots_txt=False, concurrency=1)


@pytest.fixture
def docs_site():
    return {
        "https://docs.example.com/guide/": make_page(
            "Guide",
            links=[
                "/guide/intro",
                "/guide/setup",
                "https://other.example.org/elsewhere",
                "/blog/announcement",
            ],
            description="The user guide.",
        ),
        "https://docs.example.com/guide/intro": make_page("Introduction", links=["/guide/"]),
        "https://docs.example.com/guide/setup": make_page("Setup", body="Install the tool first."),
    }
