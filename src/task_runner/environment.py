"""Build the environment mapping handed to every executed script."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional

from .constants import INIT_CWD_ENV, PATH_ENV


def prepend_to_path(env: dict[str, str], value: str, separator: str = os.pathsep) -> None:
    """Put `value` at the front of `env["PATH"]` without dropping the old value."""
    current = env.get(PATH_ENV)
    if not current:
        env[PATH_ENV] = value
    else:
        env[PATH_ENV] = f"{value}{separator}{current}"


def build_env(
    base_env: Optional[Mapping[str, str]] = None,
    *,
    cwd: Optional[Path] = None,
    bin_dir: Optional[Path] = None,
) -> dict[str, str]:
    """Collect the environment variables for a task run.

    Args:
        base_env: Starting variables. Defaults to a copy of the process environment.
        cwd: Directory recorded as `INIT_CWD` when the variable is not set yet.
            Defaults to the current working directory at call time.
        bin_dir: Package binary directory to prepend to `PATH`, if any.

    Returns:
        A new mapping; the caller owns it.
    """
    env = dict(os.environ if base_env is None else base_env)
    if INIT_CWD_ENV not in env:
        env[INIT_CWD_ENV] = str(cwd if cwd is not None else Path.cwd())
    if bin_dir is not None:
        prepend_to_path(env, str(bin_dir))
    return env
