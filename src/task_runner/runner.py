#!/usr/bin/env python3
"""Provide the CLI entrypoint for the task runner.

`task-runner task [NAME] [ARGS...]` runs a task from the configuration file or
a `package.json` script. Without a name it lists the available tasks.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

from .config import ProjectConfig
from .driver import execute_task
from .errors import TaskRunnerError
from .logging_utils import configure_logging


# Initialize with default level; reconfigured in main() based on CLI args
configure_logging()


def _build_main_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="task-runner",
        description="Task Runner - run configuration tasks and package.json scripts",
    )
    parser.add_argument(
        "command",
        choices=["task"],
        help="Subcommand to run",
    )
    return parser


def _build_task_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="task-runner task",
        description="Task Runner - run a task defined in the configuration file or package.json",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Configuration file path or URL (default: search upwards for taskrunner.yaml)",
    )
    parser.add_argument(
        "--cwd",
        type=str,
        default=None,
        help="Directory to run the task in (default: directory of the file declaring the task)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        help="Log level (default: INFO)",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Only print errors (hides task headers)",
    )
    parser.add_argument(
        "task",
        nargs="?",
        default=None,
        help="Task name (omit to list available tasks)",
    )
    parser.add_argument(
        "task_args",
        nargs=argparse.REMAINDER,
        help="Arguments passed through to the task script",
    )
    return parser


def _task_command(
    task_name: Optional[str],
    task_args: Sequence[str],
    *,
    config: Optional[str] = None,
    cwd: Optional[str] = None,
) -> int:
    """Run (or list) tasks and return the process exit code."""
    args = list(task_args)
    if args and args[0] == "--":
        args = args[1:]
    try:
        project = ProjectConfig.discover(Path.cwd(), config=config)
        return execute_task(project, task_name, args, cwd_override=cwd)
    except TaskRunnerError as exc:
        if task_name:
            logger.error("Task '{}' failed: {}", task_name, exc)
        else:
            logger.error("{}", exc)
        return 1


def main(argv: list[str] | None = None) -> None:
    """Run the `task-runner` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`.

    Raises:
        SystemExit: Raised to return the task's exit code.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    if argv and argv[0] == "task":
        args = _build_task_parser().parse_args(argv[1:])
        configure_logging("ERROR" if args.quiet else args.log_level)
        raise SystemExit(
            _task_command(
                args.task,
                args.task_args,
                config=args.config,
                cwd=args.cwd,
            )
        )

    parser = _build_main_parser()
    parser.parse_args(argv)
    parser.print_help(sys.stderr)
    raise SystemExit(2)


if __name__ == "__main__":
    main()
