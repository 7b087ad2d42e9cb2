"""Build the command table of package binaries available inside scripts."""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import Callable, Iterable

from loguru import logger

from .constants import DEFAULT_RUNTIME_COMMAND, NPM_SPECIFIER_PREFIX, NPX_COMMAND
from .packages import PackageId, PackageResolver
from .shell import ExecutableCommand, ShellCommand, ShellCommandContext, replace_args


class PackageBinCommand(ShellCommand):
    """Run a binary of one installed package through the runtime's `run` command."""

    def __init__(self, name: str, package: PackageId, runtime_command: str = DEFAULT_RUNTIME_COMMAND):
        self.name = name
        self.package = package
        self.runtime_command = runtime_command

    def __repr__(self) -> str:
        return f"PackageBinCommand({self.name!r}, {self.package.nv!r})"

    @property
    def specifier(self) -> str:
        if self.package.name == self.name:
            return f"{NPM_SPECIFIER_PREFIX}{self.package.nv}"
        return f"{NPM_SPECIFIER_PREFIX}{self.package.nv}/{self.name}"

    def command_line(self, args: Iterable[str]) -> list[str]:
        runtime = shlex.split(self.runtime_command)
        return [*runtime, "run", "-A", self.specifier, *args]

    async def execute(self, context: ShellCommandContext) -> int:
        executable, *args = self.command_line(context.args)
        return await ExecutableCommand(executable).execute(replace_args(context, args))


class RunPackageCommand(ShellCommand):
    """`npx`: run a command from the current command table by name."""

    async def execute(self, context: ShellCommandContext) -> int:
        if not context.args:
            context.stderr.write(f"{NPX_COMMAND}: missing command\n")
            return 1
        first_arg = context.args[0]
        command = context.state.resolve_command(first_arg)
        if command is None:
            context.stderr.write(f"{NPX_COMMAND}: could not resolve command '{first_arg}'\n")
            return 1
        return await command.execute(replace_args(context, context.args[1:]))


def resolve_package_commands(
    packages: Iterable[PackageId],
    package_folder: Callable[[PackageId], Path],
    binary_names: Callable[[Path], Iterable[str]],
    *,
    runtime_command: str = DEFAULT_RUNTIME_COMMAND,
) -> dict[str, ShellCommand]:
    """Map every binary exposed by a top-level package to a command.

    When two packages expose the same binary name the later package wins.
    `npx` is added unless a package already provides it. Errors raised by
    `package_folder` or `binary_names` propagate unchanged.
    """
    result: dict[str, ShellCommand] = {}
    for package in packages:
        folder = package_folder(package)
        for bin_name in binary_names(folder):
            result[bin_name] = PackageBinCommand(bin_name, package, runtime_command)
    if NPX_COMMAND not in result:
        result[NPX_COMMAND] = RunPackageCommand()
    logger.debug("Resolved package commands: {}", sorted(result))
    return result


def resolve_npm_commands(
    resolver: PackageResolver,
    *,
    runtime_command: str = DEFAULT_RUNTIME_COMMAND,
) -> dict[str, ShellCommand]:
    return resolve_package_commands(
        resolver.top_level_packages(),
        resolver.package_folder,
        resolver.exposed_binary_names,
        runtime_command=runtime_command,
    )
