"""Retry-or-fail decisions for units of work that raised an error."""

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .lifecycle import JobLifecycleManager
from .units import WorkUnit
from ..foundation.errors import (
    CrawlfrontError, ErrorContext, ErrorHandler, InvalidTransitionError, RetryConfig,
    format_traceback
)
from ..foundation.logging import get_logger, job_prefix
from ..foundation.metrics import MetricsCollector

logger = get_logger(__name__)


class FailureHandler:
    """Decides between retry and terminal failure for one engine's units."""

    def __init__(
        self,
        lifecycle: JobLifecycleManager,
        requeue: Callable[[WorkUnit], None],
        max_retries: int,
        retry_config: Optional[RetryConfig] = None,
        error_handler: Optional[ErrorHandler] = None,
        metrics: Optional[MetricsCollector] = None,
        queue_name: str = "queue"
    ):
        self.lifecycle = lifecycle
        self.requeue = requeue
        self.max_retries = max_retries
        self.retry_config = retry_config or RetryConfig()
        self.error_handler = error_handler or ErrorHandler()
        self.metrics = metrics or lifecycle.metrics
        self.queue_name = queue_name

    async def handle_failed_task(self, unit: WorkUnit, error: Exception) -> bool:
        """Retry the unit or mark its job failed.

        Returns:
            True if the unit was re-enqueued
        """
        prefix = job_prefix(self.queue_name, unit.job_id)

        if self.error_handler.should_retry(error, unit.retry_count, self.max_retries):
            return await self._retry(unit, error, prefix)

        context = ErrorContext(
            operation=f"{unit.kind.value}_unit",
            url=unit.url,
            job_id=unit.job_id,
            engine=unit.engine,
            metadata={"attempts": unit.retry_count + 1},
        )
        error_info = self.error_handler.handle_error(error, context)

        details = self.failure_details(unit, error)
        try:
            await self.lifecycle.mark_failed(unit.job_id, error_info.message, details)
        except InvalidTransitionError:
            logger.info(f"{prefix} Failure not recorded, job already finished")
            return False

        logger.info(
            f"{prefix} Marked failed after {unit.retry_count + 1} attempt(s): {error_info.message}"
        )
        return False

    async def _retry(self, unit: WorkUnit, error: Exception, prefix: str) -> bool:
        attempt = unit.retry_count + 1
        delay = self.error_handler.calculate_retry_delay(attempt, self.retry_config, error)
        logger.warning(
            f"{prefix} Attempt {attempt} failed ({error}); retrying in {delay:.2f}s "
            f"({attempt}/{self.max_retries})"
        )
        if delay > 0:
            await asyncio.sleep(delay)

        if self.lifecycle.is_cancelled(unit.job_id):
            logger.info(f"{prefix} Cancelled during backoff, not retrying")
            return False

        try:
            await self.lifecycle.mark_retrying(unit.job_id, attempt)
        except InvalidTransitionError:
            logger.info(f"{prefix} Not retrying, job left the running state")
            return False

        self.metrics.increment_counter("jobs.retried", tags={"engine": unit.engine})
        self.requeue(replace(unit, retry_count=attempt))
        return True

    @staticmethod
    def failure_details(unit: WorkUnit, error: Exception) -> Dict[str, Any]:
        """Error payload kept on the job: message, type, traceback and unit data."""
        message = error.message if isinstance(error, CrawlfrontError) else str(error)
        details: Dict[str, Any] = {
            "message": message,
            "type": type(error).__name__,
            "traceback": format_traceback(error),
            "data": unit.describe(),
            "failed_at": datetime.utcnow().isoformat(),
        }
        if isinstance(error, CrawlfrontError) and error.details:
            details["error_details"] = error.details
        return details
