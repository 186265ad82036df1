"""Pydantic models for the crawlfront submission boundary."""

from .requests import ScrapeOptions, ScrapeRequest, SearchRequest, CrawlRequest, parse_request

__all__ = [
    "ScrapeOptions",
    "ScrapeRequest",
    "SearchRequest",
    "CrawlRequest",
    "parse_request",
]
