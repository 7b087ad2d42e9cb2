from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml


def _parse_data(text: str, suffix: str) -> Any:
    if suffix in {".yaml", ".yml"}:
        return yaml.safe_load(text)
    return json.loads(text)


def _load_data_with_error(
    path: Path,
    default: dict[str, Any],
) -> tuple[dict[str, Any], str | None]:
    """
    Load JSON/YAML and return (data, error_message).

    Missing files return the default without an error; parse and IO failures
    are reported so callers can refuse to run against a broken file.
    """
    if not path.exists():
        return default, None
    try:
        text = path.read_text(encoding="utf-8")
        data = _parse_data(text, path.suffix)
        if data is None:
            return default, None
        if not isinstance(data, dict):
            return default, f"{path.name}: expected object, got {type(data).__name__}"
        return data, None
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except json.JSONDecodeError as exc:
        return default, f"{path.name}: JSONDecodeError: {exc}"
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"


def _find_upwards(start_dir: Path, names: tuple[str, ...]) -> Path | None:
    """Return the first file named in `names` found in `start_dir` or an ancestor."""
    for directory in (start_dir, *start_dir.parents):
        for name in names:
            candidate = directory / name
            if candidate.is_file():
                return candidate
    return None
