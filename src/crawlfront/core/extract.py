"""Extraction callback turning raw content into a result payload."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from bs4 import BeautifulSoup

from .engines import RawContent
from ..foundation.errors import ExtractionError


@dataclass
class Extraction:
    """Result payload plus outbound links discovered on the page."""
    payload: Dict[str, Any]
    links: List[str] = field(default_factory=list)
    base_url: Optional[str] = None


class Extractor(Protocol):
    def extract(self, raw: RawContent, options: Dict[str, Any]) -> Extraction:
        ...


class HtmlExtractor:
    """Pulls title, description, visible text and links out of an HTML page."""

    TEXT_TYPES = ("text/html", "application/xhtml+xml", "text/plain")

    def __init__(self, parser: str = "html.parser"):
        self.parser = parser

    def extract(self, raw: RawContent, options: Dict[str, Any]) -> Extraction:
        content_type = (raw.content_type or "").split(";")[0].strip().lower()
        if content_type and content_type not in self.TEXT_TYPES:
            raise ExtractionError(
                f"Cannot extract content of type {content_type}", step="content_type"
            )
        if not raw.content or not raw.content.strip():
            # Empty bodies are usually transient
            raise ExtractionError("Empty document", step="parse", retryable=True)

        soup = BeautifulSoup(raw.content, self.parser)
        links = self._extract_links(soup)

        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()

        payload: Dict[str, Any] = {
            "url": raw.effective_url,
            "status_code": raw.status_code,
            "metadata": self._extract_metadata(soup),
            "text": soup.get_text(" ", strip=True),
        }
        if options.get("include_html"):
            payload["html"] = raw.content
        if options.get("include_links", True):
            payload["links"] = links

        return Extraction(payload=payload, links=links, base_url=raw.effective_url)

    def _extract_metadata(self, soup: BeautifulSoup) -> Dict[str, Optional[str]]:
        title = None
        description = None
        language = None

        title_tag = soup.find("title")
        if title_tag:
            title = title_tag.get_text().strip()

        desc_tag = soup.find("meta", attrs={"name": "description"})
        if desc_tag:
            description = (desc_tag.get("content") or "").strip()

        html_tag = soup.find("html")
        if html_tag:
            language = html_tag.get("lang")

        return {"title": title, "description": description, "language": language}

    def _extract_links(self, soup: BeautifulSoup) -> List[str]:
        links: List[str] = []
        seen = set()
        for anchor in soup.find_all("a", href=True):
            href = anchor["href"].strip()
            if href and href not in seen:
                seen.add(href)
                links.append(href)
        return links
