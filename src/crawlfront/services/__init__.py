"""Service layer components for crawlfront."""

from .jobs import JobService, JobStatusView, JobResultSet

__all__ = [
    "JobService",
    "JobStatusView",
    "JobResultSet",
]
