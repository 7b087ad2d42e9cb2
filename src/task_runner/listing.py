"""Print the tasks available from both task sources."""

from __future__ import annotations

from typing import Mapping, Optional

from rich.console import Console
from rich.text import Text


def available_tasks(
    tasks: Mapping[str, str],
    scripts: Mapping[str, str],
) -> list[tuple[str, str, bool]]:
    """Return `(name, script, from_manifest)` rows in display order.

    Config tasks come first; manifest scripts shadowed by a config task are
    left out.
    """
    rows = [(name, script, False) for name, script in tasks.items()]
    rows.extend((name, script, True) for name, script in scripts.items() if name not in tasks)
    return rows


def print_available_tasks(
    tasks: Mapping[str, str],
    scripts: Mapping[str, str],
    console: Optional[Console] = None,
) -> None:
    console = console or Console(stderr=True, highlight=False, soft_wrap=True)
    console.print(Text("Available tasks:", style="green"))
    rows = available_tasks(tasks, scripts)
    for name, script, from_manifest in rows:
        line = Text.assemble("- ", (name, "cyan"))
        if from_manifest:
            line.append(" ")
            line.append("(package.json)", style="italic bright_black")
        console.print(line)
        console.print(Text(f"    {script}"))
    if not rows:
        console.print(Text.assemble("  ", ("No tasks found in configuration file", "red")))


def print_task_not_found(task_name: str, console: Optional[Console] = None) -> None:
    console = console or Console(stderr=True, highlight=False, soft_wrap=True)
    console.print(Text(f"Task not found: {task_name}"))
