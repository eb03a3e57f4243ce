from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "TFTPI_LOG_DIR",
        Path.home() / ".tftpi" / "logs",
    )
)


def _should_log_uart(record) -> bool:
    """Raw UART lines are only useful when tracing a boot."""
    tags = record["extra"].get("tags", [])
    if "uart" in tags and record["message"].startswith("uart:"):
        return record["level"].no <= logger.level("TRACE").no
    return True


def _should_log_cache(record) -> bool:
    """Filter cache hit logs - these are noisy and not useful."""
    message = record["message"].lower()
    if "cache hit" in message and "cache" in record["extra"].get("tags", []):
        return record["level"].no >= logger.level("INFO").no
    return True


def _combined_filter(record) -> bool:
    """Combined filter for all log suppression rules."""
    return _should_log_uart(record) and _should_log_cache(record)


def setup_logging(
    *,
    verbose: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: Unrecoverable failures, wedged BMC
    - SUCCESS/INFO: Phase transitions, flashes, cache writes
    - DEBUG: Command execution, SSH sessions, retries
    - TRACE: Raw UART and interactive session output

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --verbose is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        verbose: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.tftpi/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "tftpi"})

    if trace:
        console_level = "TRACE"
    elif verbose:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr)
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "<blue>{extra[job_id]: <20}</blue> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <20} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log (DEBUG+ when verbose)
    if verbose or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <20} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Structured JSON Log (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["cache", "remote"])
        source: Source component (e.g., "bmc", "engine")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Automatically logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "flash", "prepare", "upload")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("flash", node=1, image="/root/imgs/1/a.img") as log:
            log.debug("Invoking vendor tool")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started")

        try:
            yield log
            duration = time.time() - start_time
            log.bind(duration_seconds=round(duration, 2)).success(
                "{} completed in {:.2f}s", operation.capitalize(), duration
            )
        except Exception as e:
            duration = time.time() - start_time
            # The error text goes in as an argument; it may contain braces.
            log.bind(
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            ).error("{} failed: {}", operation.capitalize(), e)
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source, tags, and context for the domain.
    """

    @staticmethod
    def for_bmc(host: str = "-") -> Logger:
        """Logger for BMC shell and vendor tool operations."""
        return logger.bind(source="bmc", tags=["bmc", "ssh"], host=host)

    @staticmethod
    def for_node(node_id: int | None = None, host: str = "-") -> Logger:
        """Logger for direct node SSH sessions."""
        job_id = f"node{node_id}" if node_id is not None else "-"
        return logger.bind(source="node", job_id=job_id, tags=["node", "ssh"], host=host)

    @staticmethod
    def for_uart(node_id: int) -> Logger:
        """Logger for UART boot monitoring."""
        return logger.bind(source="uart", job_id=f"node{node_id}", tags=["uart", "boot"])

    @staticmethod
    def for_imageops(job_id: str | None = None) -> Logger:
        """Logger for image customization primitives."""
        if job_id is None:
            job_id = f"imageops-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="imageops", tags=["imageops", "storage"])

    @staticmethod
    def for_cache(location: str = "local") -> Logger:
        """Logger for artifact cache operations."""
        return logger.bind(source="cache", tags=["cache", location])

    @staticmethod
    def for_state() -> Logger:
        """Logger for the node state store."""
        return logger.bind(source="state", tags=["state"])

    @staticmethod
    def for_builder(node_id: int) -> Logger:
        """Logger for the image builder."""
        return logger.bind(source="builder", job_id=f"node{node_id}", tags=["builder"])

    @staticmethod
    def for_installer(node_id: int) -> Logger:
        """Logger for OS installation."""
        return logger.bind(
            source="installer", job_id=f"node{node_id}", tags=["installer", "bmc"]
        )

    @staticmethod
    def for_engine(node_id: int) -> Logger:
        """Logger for the provisioning engine."""
        return logger.bind(source="engine", job_id=f"node{node_id}", tags=["engine"])

    @staticmethod
    def for_cli() -> Logger:
        """Logger for command line handling."""
        return logger.bind(source="cli", tags=["cli"])


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Used for UART polling, which emits the same waiting message every
    few seconds during a boot.
    """

    def __init__(self, log: Logger, interval_seconds: float = 15.0):
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def info(self, key: str, message: str) -> None:
        """Log at INFO level unless ``key`` was logged within the interval."""
        now = time.time()
        if now - self.last_log_time.get(key, 0) >= self.interval:
            self.log.info(message)
            self.last_log_time[key] = now
