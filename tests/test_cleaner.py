import logging

from unittest.mock import patch

from config.skills_config import DEFAULT_REMOVE_SELECTORS
from pipelines.cleaner import (
    LARGE_CONTENT_THRESHOLD,
    ContentCleaner,
    check_size,
    clean_markdown,
    fallback_clean
)

PAGE = """
<html>
<head><title>Widgets</title><style>body { color: red; }</style></head>
<body>
  <a href="#main" class="skip">Skip to content</a>
  <header><div class="logo">Docs</div></header>
  <nav><a href="/">Home</a></nav>
  <div class="sidebar"><a href="/a">A</a></div>
  <div id="cookie-banner">We use cookies</div>
  <main>
    <!-- build 1234 -->
    <h1>Widgets <span class="material-icons">link</span></h1>
    <p data-track="x">Widgets are the building blocks.</p>
    <div class="navbar-like">Keep me</div>
    <pre><code>widget = Widget()</code></pre>
    <div class="feedback">Was this page helpful?</div>
    <script>track()</script>
  </main>
  <footer>Copyright 2024</footer>
</body>
</html>
"""


class TestContentCleaner:
    """Structural noise removal"""

    def test_removes_chrome_and_keeps_content(self):
        cleaned = ContentCleaner(DEFAULT_REMOVE_SELECTORS).clean(PAGE)

        assert "Widgets are the building blocks." in cleaned
        assert "widget = Widget()" in cleaned
        assert "Keep me" in cleaned

        for noise in ("color: red", "Home", "Copyright", "We use cookies", "track()",
                      "build 1234", "Skip to content", "Was this page helpful", "material-icons"):
            assert noise not in cleaned

    def test_strips_data_attributes(self):
        cleaned = ContentCleaner().clean(PAGE)
        assert "data-track" not in cleaned

    def test_structural_tags_removed_without_selectors(self):
        cleaned = ContentCleaner().clean(PAGE)
        assert "<nav" not in cleaned
        assert "<footer" not in cleaned
        assert "<script" not in cleaned

    def test_invalid_selector_is_skipped(self, caplog):
        with caplog.at_level(logging.WARNING):
            cleaner = ContentCleaner(["div[", ".sidebar"])
        assert [selector for selector, _ in cleaner.selectors] == [".sidebar"]
        assert "Failed to parse CSS selector" in caplog.text

    def test_custom_selector(self):
        html = '<body><div class="promo-box">Buy now</div><p>Text</p></body>'
        assert "Buy now" not in ContentCleaner([".promo-box"]).clean(html)

    def test_fragment_without_body(self):
        assert "Hello" in ContentCleaner().clean("<p>Hello</p>")

    def test_failure_degrades_to_fallback(self, caplog):
        cleaner = ContentCleaner()
        with patch.object(ContentCleaner, "_clean", side_effect=RuntimeError("boom")):
            with caplog.at_level(logging.WARNING):
                cleaned = cleaner.clean("<p>Text</p><script>x()</script>")
        assert cleaned == "<p>Text</p>"
        assert "HTML cleaning failed" in caplog.text


def test_fallback_clean():
    html = "<style>a{}</style><p>Keep</p><noscript>no</noscript><template>t</template>"
    assert fallback_clean(html) == "<p>Keep</p>"


class TestCleanMarkdown:

    def test_collapses_blank_lines(self):
        assert clean_markdown("# Title\n\n\n\nText\n\n\n") == "# Title\n\nText"

    def test_removes_noise_lines(self):
        markdown = "\n".join([
            "[Skip to main content](#main)",
            "# Guide",
            "Real text.",
            "Was this page helpful?",
            "Page last updated on 2024-01-31.",
            "This site uses cookies to improve your experience.",
            "chevron_right",
            "content_copy",
            "##",
            "[](https://example.com/#anchor)",
        ])
        assert clean_markdown(markdown) == "# Guide\nReal text."

    def test_removes_inline_icon_names(self):
        assert clean_markdown("Next page arrow_forward") == "Next page"

    def test_prose_words_survive(self):
        assert clean_markdown("Use the search box to check settings.") == "Use the search box to check settings."

    def test_code_fences_untouched(self):
        markdown = "```python\n\n\n# comment\nchevron_right = 1\n```"
        assert clean_markdown(markdown) == markdown

    def test_empty_input(self):
        assert clean_markdown("") == ""


def test_check_size(caplog):
    with caplog.at_level(logging.WARNING):
        assert not check_size("x" * 100, "small")
        assert check_size("x" * (LARGE_CONTENT_THRESHOLD + 1), "big")
    assert "Large skill 'big'" in caplog.text
    assert "tokens" in caplog.text
