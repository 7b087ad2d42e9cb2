"""Resolve a task request and run its hook steps through the shell engine."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence

from loguru import logger

from .commands import RunPackageCommand, resolve_npm_commands
from .config import ProjectConfig
from .constants import NPX_COMMAND
from .environment import build_env
from .errors import ScriptParseError, TaskNotFoundError
from .listing import print_available_tasks, print_task_not_found
from .logging_utils import output_task
from .packages import PackageResolver
from .selector import ResolvedSource, TaskSource, select_task, warn_unparsed_dependencies
from .shell import ShellCommand, ShellEngine, ShellSyntaxError, TaskShell
from .templating import with_args


@dataclass(frozen=True)
class TaskInvocation:
    """Everything needed to run one hook step."""

    task_name: str
    cwd: Path
    script: str
    env: Mapping[str, str]
    commands: Mapping[str, ShellCommand]


def run_invocation(engine: ShellEngine, invocation: TaskInvocation) -> int:
    """Parse and execute one step on its own event loop.

    Raises:
        ScriptParseError: If the engine cannot parse the step's script.
    """
    output_task(invocation.task_name, invocation.script)
    try:
        sequence = engine.parse(invocation.script)
    except ShellSyntaxError as exc:
        raise ScriptParseError(invocation.task_name, str(exc)) from exc
    # Each step gets a fresh loop that is closed once all of its jobs finish
    return asyncio.run(
        engine.execute(sequence, dict(invocation.env), invocation.cwd, invocation.commands)
    )


def _manifest_commands(
    project: ProjectConfig,
    resolver: PackageResolver,
) -> dict[str, ShellCommand]:
    if not resolver.is_managed:
        return {NPX_COMMAND: RunPackageCommand()}
    resolver.ensure_top_level_installed()
    resolver.resolve_pending()
    return resolve_npm_commands(resolver, runtime_command=project.packages.runtime_command)


def _run_steps(
    resolved: ResolvedSource,
    scripts: Mapping[str, str],
    extra_args: Sequence[str],
    env: Mapping[str, str],
    commands: Mapping[str, ShellCommand],
    engine: ShellEngine,
) -> int:
    for step_name in resolved.step_names:
        invocation = TaskInvocation(
            task_name=step_name,
            cwd=resolved.cwd,
            script=with_args(scripts[step_name], extra_args),
            env=env,
            commands=commands,
        )
        exit_code = run_invocation(engine, invocation)
        if exit_code != 0:
            logger.debug("Step '{}' exited with code {}, skipping remaining steps", step_name, exit_code)
            return exit_code
    return 0


def execute_task(
    project: ProjectConfig,
    task_name: Optional[str],
    extra_args: Sequence[str] = (),
    *,
    cwd_override: Optional[str] = None,
    engine: Optional[ShellEngine] = None,
    resolver: Optional[PackageResolver] = None,
    base_env: Optional[Mapping[str, str]] = None,
) -> int:
    """Run a task by name and return its exit code.

    Args:
        project: Loaded configuration file and manifest.
        task_name: Task to run. `None` prints the task listing.
        extra_args: Arguments appended (quoted) to every step's script.
        cwd_override: Directory to run in instead of the owning file's directory.
        engine: Shell engine; defaults to `TaskShell`.
        resolver: Package resolver for manifest tasks; defaults to the project's.
        base_env: Environment to start from instead of the process environment.

    Returns:
        The first non-zero step exit code, 0 when every step succeeds, or 1
        when no task was given or the task does not exist.
    """
    tasks = project.resolve_tasks_config()
    package_json = project.maybe_package_json()
    scripts = package_json.scripts if package_json else {}

    if task_name is None:
        print_available_tasks(tasks, scripts)
        return 1

    try:
        resolved = select_task(
            task_name,
            tasks,
            scripts,
            config_location=project.config_file_location(),
            manifest_path=package_json.path if package_json else None,
            cwd_override=cwd_override,
        )
    except TaskNotFoundError:
        print_task_not_found(task_name)
        print_available_tasks(tasks, scripts)
        return 1

    engine = engine or TaskShell()

    if resolved.source is TaskSource.CONFIG:
        env = build_env(base_env)
        return _run_steps(resolved, tasks, extra_args, env, {}, engine)

    if package_json is not None:
        warn_unparsed_dependencies(package_json.dependencies.values())
    resolver = resolver or project.package_resolver()
    commands = _manifest_commands(project, resolver)
    env = build_env(base_env, bin_dir=resolver.root_bin_dir())
    return _run_steps(resolved, scripts, extra_args, env, commands, engine)
