"""Logging configuration and process metrics."""

import logging
from dataclasses import asdict, dataclass

import psutil


@dataclass
class MemoryUsage:
    """Process memory usage relative to a configured budget."""

    current: int
    max: int
    percentage: float

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """
    Configure application logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Format type ('json' or 'text')
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    if log_format == "json":
        logging.basicConfig(
            level=level,
            format='{"time": "%(asctime)s", "logger": "%(name)s", '
            '"level": "%(levelname)s", "message": "%(message)s"}',
            handlers=[logging.StreamHandler()],
        )
    else:
        logging.basicConfig(
            level=level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            handlers=[logging.StreamHandler()],
        )

    # PIL logs every plugin import at debug level
    logging.getLogger("PIL").setLevel(max(level, logging.INFO))

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured: level={log_level}, format={log_format}")


def sample_process_memory() -> int:
    """Resident set size of the current process in bytes."""
    return int(psutil.Process().memory_info().rss)


def memory_usage(current: int, max_bytes: int) -> MemoryUsage:
    """Build a usage snapshot against a byte budget."""
    percentage = (current / max_bytes) * 100 if max_bytes else 0.0
    return MemoryUsage(current=current, max=max_bytes, percentage=round(percentage, 2))
