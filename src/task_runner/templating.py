"""Append pass-through CLI arguments to a task script."""

from __future__ import annotations

from typing import Iterable


def quote_arg(arg: str) -> str:
    """Wrap one argument in double quotes, escaping `"` and `$`.

    Escaping `$` keeps the shell engine from expanding variables or running
    command substitutions that arrive through forwarded arguments.
    """
    escaped = arg.replace('"', '\\"').replace("$", "\\$")
    return f'"{escaped}"'


def with_args(script: str, extra_args: Iterable[str]) -> str:
    """Return `script` followed by the quoted `extra_args`, trimmed."""
    additional = " ".join(quote_arg(a) for a in extra_args)
    return f"{script} {additional}".strip()
