"""Exception types raised while resolving and running tasks."""

from __future__ import annotations


class TaskRunnerError(Exception):
    """Base class for fatal task runner failures."""

    pass


class ConfigurationError(TaskRunnerError):
    """The configuration file, manifest, or working directory is unusable."""

    pass


class ScriptParseError(TaskRunnerError):
    """A task script could not be parsed by the shell engine."""

    def __init__(self, task_name: str, detail: str = ""):
        self.task_name = task_name
        self.detail = detail
        message = f"Error parsing script '{task_name}'."
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)


class ResolutionError(TaskRunnerError):
    """A top-level package folder or its binaries could not be resolved."""

    pass


class TaskNotFoundError(TaskRunnerError):
    """The task name exists in neither the config tasks nor the manifest scripts."""

    def __init__(self, task_name: str):
        self.task_name = task_name
        super().__init__(f"Task not found: {task_name}")
