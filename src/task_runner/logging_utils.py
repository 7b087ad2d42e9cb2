"""Configure loguru output and format task headers."""

from __future__ import annotations

import sys

from loguru import logger


def configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<level>{message}</level>",
    )


def output_task(task_name: str, script: str) -> None:
    """Log the header printed before each task step runs."""
    logger.opt(colors=True).info("<green>Task</green> <cyan>{}</cyan> {}", task_name, script)
