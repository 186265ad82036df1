"""
crawlfront - job orchestration and crawl frontier for scrape, search and
crawl jobs.

Jobs are routed to bounded per-engine worker pools, tracked through a
persistent lifecycle state machine, expanded into deduplicated crawl
frontiers, and billed exactly once per completed unit of work.
"""

from .version import __version__

__all__ = ["__version__"]
