"""CLI commands for crawlfront."""

from .scrape import scrape
from .search import search
from .crawl import crawl
from .status import status, results, cancel
from .credits import credits

__all__ = [
    "scrape",
    "search",
    "crawl",
    "status",
    "results",
    "cancel",
    "credits",
]
