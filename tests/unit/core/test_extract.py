"""Tests for the default HTML extractor."""

import pytest

from crawlfront.core.engines import RawContent
from crawlfront.core.extract import HtmlExtractor
from crawlfront.foundation.errors import ExtractionError

PAGE = """
<html lang="en">
  <head>
    <title> Example Domain </title>
    <meta name="description" content="An example page">
    <script>var tracking = true;</script>
  </head>
  <body>
    <h1>Hello</h1>
    <p>World</p>
    <a href="/about">About</a>
    <a href="/about">About again</a>
    <a href="https://other.org/">Elsewhere</a>
  </body>
</html>
"""


@pytest.fixture
def extractor():
    return HtmlExtractor()


def test_extracts_metadata_text_and_links(extractor):
    raw = RawContent(url="https://example.com/", content=PAGE, final_url="https://example.com/home")

    extraction = extractor.extract(raw, {})

    metadata = extraction.payload["metadata"]
    assert metadata == {"title": "Example Domain", "description": "An example page", "language": "en"}
    assert "Hello World" in extraction.payload["text"]
    assert "tracking" not in extraction.payload["text"]
    assert extraction.links == ["/about", "https://other.org/"]
    assert extraction.base_url == "https://example.com/home"
    assert extraction.payload["url"] == "https://example.com/home"


def test_options_control_payload(extractor):
    raw = RawContent(url="https://example.com/", content=PAGE)

    extraction = extractor.extract(raw, {"include_html": True, "include_links": False})

    assert extraction.payload["html"] == PAGE
    assert "links" not in extraction.payload
    # Links still feed the crawl frontier
    assert extraction.links


def test_unsupported_content_type_is_permanent(extractor):
    raw = RawContent(url="https://example.com/file.pdf", content="%PDF", content_type="application/pdf")

    with pytest.raises(ExtractionError) as exc_info:
        extractor.extract(raw, {})

    assert not exc_info.value.retryable


def test_empty_document_is_retryable(extractor):
    raw = RawContent(url="https://example.com/", content="   ")

    with pytest.raises(ExtractionError) as exc_info:
        extractor.extract(raw, {})

    assert exc_info.value.retryable
