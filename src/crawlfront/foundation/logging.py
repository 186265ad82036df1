"""Logging configuration for crawlfront."""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Dict, Optional


# ANSI color codes for console output
class Colors:
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    BLUE = '\033[34m'
    CYAN = '\033[36m'
    WHITE = '\033[37m'
    BRIGHT_RED = '\033[91m'


class ColorFormatter(logging.Formatter):
    """Formatter that adds colors to log levels."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.CYAN,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BRIGHT_RED + Colors.BOLD,
    }

    def __init__(self, fmt: Optional[str] = None, use_colors: bool = True):
        if fmt is None:
            fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        super().__init__(fmt)
        self.use_colors = use_colors and hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        if not self.use_colors:
            return super().format(record)

        # Color a copy so other handlers see the plain record
        record = logging.makeLogRecord(record.__dict__)
        color = self.LEVEL_COLORS.get(record.levelno, Colors.WHITE)
        record.levelname = f"{color}{record.levelname}{Colors.RESET}"
        if record.name.startswith('crawlfront'):
            record.name = f"{Colors.BLUE}{record.name}{Colors.RESET}"
        return super().format(record)


class CrawlfrontLogger:
    """Logger configuration for crawlfront."""

    def __init__(self):
        self._loggers: Dict[str, logging.Logger] = {}
        self.configured = False

    def _configure_external_loggers(self) -> None:
        """Reduce verbosity of external libraries."""
        logging.getLogger('httpx').setLevel(logging.WARNING)
        logging.getLogger('httpcore').setLevel(logging.WARNING)
        logging.getLogger('asyncio').setLevel(logging.WARNING)
        logging.getLogger('sqlalchemy').setLevel(logging.WARNING)
        logging.getLogger('aiosqlite').setLevel(logging.WARNING)

    def setup_logging(
        self,
        level: str = "INFO",
        log_file: Optional[str] = None,
        use_colors: bool = True
    ) -> None:
        """Set up logging configuration.

        Args:
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_file: Optional log file path
            use_colors: Whether to use colors in console output
        """
        log_level = getattr(logging, level.upper(), logging.INFO)

        root_logger = logging.getLogger()
        root_logger.setLevel(log_level)
        root_logger.handlers.clear()

        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(ColorFormatter(use_colors=use_colors))
        console_handler.setLevel(log_level)
        root_logger.addHandler(console_handler)

        if log_file:
            log_path = Path(log_file).expanduser()
            log_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                log_path,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5
            )
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            file_handler.setLevel(log_level)
            root_logger.addHandler(file_handler)

        self._configure_external_loggers()
        self.configured = True

    def get_logger(self, name: str) -> logging.Logger:
        """Get a logger with the specified name."""
        if name not in self._loggers:
            self._loggers[name] = logging.getLogger(name)
        return self._loggers[name]


_crawlfront_logger: Optional[CrawlfrontLogger] = None


def get_crawlfront_logger() -> CrawlfrontLogger:
    """Get the process-wide CrawlfrontLogger instance."""
    global _crawlfront_logger
    if _crawlfront_logger is None:
        _crawlfront_logger = CrawlfrontLogger()
    return _crawlfront_logger


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    use_colors: bool = True
) -> None:
    """Set up logging for the process.

    Library code never calls this; the CLI calls it with values taken from
    the ``global`` configuration section.
    """
    get_crawlfront_logger().setup_logging(level=level, log_file=log_file, use_colors=use_colors)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the specified name.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Logger instance
    """
    return get_crawlfront_logger().get_logger(name)


def job_prefix(queue: str, job_id: Optional[str] = None) -> str:
    """Build the ``[queue] [job_id]`` prefix used in log messages."""
    if job_id is None:
        return f"[{queue}]"
    return f"[{queue}] [{job_id}]"
