"""Decide which task source owns a task name and where it runs."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Mapping, Optional
from urllib.parse import urlparse
from urllib.request import url2pathname

from loguru import logger

from .config import DependencySpec
from .errors import ConfigurationError, TaskNotFoundError


class TaskSource(str, Enum):
    CONFIG = "config"
    MANIFEST = "manifest"


@dataclass(frozen=True)
class ResolvedSource:
    """Selected source of a task, its working directory and the steps to run."""

    task_name: str
    source: TaskSource
    cwd: Path
    step_names: tuple[str, ...]


def hook_names(task_name: str) -> tuple[str, str, str]:
    return (f"pre{task_name}", task_name, f"post{task_name}")


def local_config_path(location: Optional[str]) -> Path:
    """Convert a configuration file URI into a local path.

    Raises:
        ConfigurationError: If the configuration file is not a `file:` URI.
    """
    parsed = urlparse(location or "")
    if parsed.scheme != "file":
        raise ConfigurationError("Only local configuration files are supported")
    return Path(url2pathname(parsed.path))


def canonicalize_dir(path: str) -> Path:
    try:
        resolved = Path(path).resolve(strict=True)
    except OSError as exc:
        raise ConfigurationError(f"Failed to resolve working directory '{path}': {exc}") from exc
    if not resolved.is_dir():
        raise ConfigurationError(f"Working directory '{path}' is not a directory")
    return resolved


def select_task(
    task_name: str,
    tasks: Mapping[str, str],
    scripts: Mapping[str, str],
    *,
    config_location: Optional[str] = None,
    manifest_path: Optional[Path] = None,
    cwd_override: Optional[str] = None,
) -> ResolvedSource:
    """Pick the task source for `task_name`.

    Config tasks always win over manifest scripts of the same name. Manifest
    tasks expand into their `pre`/`post` hooks when those scripts exist.

    Raises:
        TaskNotFoundError: If neither source declares the task.
        ConfigurationError: If the config file is not local or `cwd_override`
            does not exist.
    """
    if task_name in tasks:
        config_path = local_config_path(config_location)
        cwd = canonicalize_dir(cwd_override) if cwd_override else config_path.parent
        return ResolvedSource(task_name, TaskSource.CONFIG, cwd, (task_name,))

    if task_name in scripts:
        if cwd_override:
            cwd = canonicalize_dir(cwd_override)
        elif manifest_path is not None:
            cwd = manifest_path.parent
        else:
            raise ConfigurationError("Manifest scripts were given without a package.json location")
        steps = tuple(name for name in hook_names(task_name) if name in scripts)
        return ResolvedSource(task_name, TaskSource.MANIFEST, cwd, steps)

    raise TaskNotFoundError(task_name)


def warn_unparsed_dependencies(dependencies: Iterable[DependencySpec]) -> list[DependencySpec]:
    """Log a warning for each dependency whose requirement failed to parse."""
    invalid = [dep for dep in dependencies if not dep.valid]
    for dep in invalid:
        logger.warning(
            "Ignoring dependency '{}' in package.json because its version requirement failed to parse: {}",
            dep.key,
            dep.error,
        )
    return invalid
