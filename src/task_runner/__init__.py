"""Provide the public `task_runner` package exports."""

from __future__ import annotations

from .config import ProjectConfig
from .driver import execute_task

__all__ = ["ProjectConfig", "execute_task"]
