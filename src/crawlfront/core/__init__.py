"""Core layer: engine queues, job lifecycle, crawl frontiers and billing."""

from .context import OrchestrationContext
from .crawl import CrawlOrchestrator, CrawlRegistry, CrawlRule
from .engines import EngineKind, EngineRegistry, HttpxFetchEngine, RawContent
from .extract import Extraction, HtmlExtractor
from .ledger import CreditLedger
from .lifecycle import CancelOutcome, JobLifecycleManager
from .manager import CompletionOutcome, EngineQueueManager, JobStatusInfo
from .queue import EngineQueue
from .store import JobStore

__all__ = [
    "OrchestrationContext",
    "CrawlOrchestrator",
    "CrawlRegistry",
    "CrawlRule",
    "EngineKind",
    "EngineRegistry",
    "HttpxFetchEngine",
    "RawContent",
    "Extraction",
    "HtmlExtractor",
    "CreditLedger",
    "CancelOutcome",
    "JobLifecycleManager",
    "CompletionOutcome",
    "EngineQueueManager",
    "JobStatusInfo",
    "EngineQueue",
    "JobStore",
]
