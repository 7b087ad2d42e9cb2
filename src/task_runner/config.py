"""Load the task configuration file and the `package.json` manifest.

The configuration file (`taskrunner.yaml`, `.yml` or `.json`) declares named
tasks and optional package settings. The manifest contributes its `scripts`
and the dependency declarations used to build the package command table.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
import yaml
from loguru import logger
from semantic_version import NpmSpec

from .constants import (
    CONFIG_FILE_NAMES,
    DEFAULT_INSTALL_COMMAND,
    DEFAULT_NODE_MODULES_DIR,
    DEFAULT_RUNTIME_COMMAND,
    MANIFEST_DEPENDENCY_KEYS,
    NPM_SPECIFIER_PREFIX,
    PACKAGE_JSON_FILE,
    UNSUPPORTED_SPECIFIER_PREFIXES,
)
from .errors import ConfigurationError
from .io_utils import _find_upwards, _load_data_with_error
from .packages import NodeModulesResolver

_REMOTE_SCHEMES = {"http", "https"}
_DIST_TAG_RE = re.compile(r"^[A-Za-z][A-Za-z0-9._-]*$")
REMOTE_CONFIG_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class PackagesConfig:
    """Settings for the package command table and dependency installs."""

    managed: bool = True
    install_command: str = DEFAULT_INSTALL_COMMAND
    node_modules_dir: str = DEFAULT_NODE_MODULES_DIR
    runtime_command: str = DEFAULT_RUNTIME_COMMAND


@dataclass(frozen=True)
class DependencySpec:
    """One manifest dependency entry.

    `name` is the package actually installed (it differs from `key` for
    `npm:` aliases). `error` is set when the version requirement is unusable.
    """

    key: str
    name: str
    requirement: str
    error: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class PackageJson:
    path: Path
    name: Optional[str] = None
    scripts: dict[str, str] = field(default_factory=dict)
    dependencies: dict[str, DependencySpec] = field(default_factory=dict)

    @property
    def root_dir(self) -> Path:
        return self.path.parent


def _validate_requirement(requirement: str) -> Optional[str]:
    if requirement in ("", "*") or _DIST_TAG_RE.match(requirement):
        return None
    try:
        NpmSpec(requirement)
    except ValueError as exc:
        return str(exc) or f"Invalid version requirement '{requirement}'"
    return None


def parse_dependency(key: str, raw: Any) -> DependencySpec:
    """Parse a manifest dependency value into a `DependencySpec`.

    Never raises: problems are recorded on the returned `DependencySpec` so the caller
    can warn and carry on.
    """
    if not isinstance(raw, str):
        return DependencySpec(key=key, name=key, requirement=str(raw), error="expected a string")

    requirement = raw.strip()
    for prefix in UNSUPPORTED_SPECIFIER_PREFIXES:
        if requirement.startswith(prefix):
            return DependencySpec(
                key=key,
                name=key,
                requirement=requirement,
                error=f"Not implemented scheme '{prefix.rstrip(':+')}'",
            )

    name = key
    version_req = requirement
    if requirement.startswith(NPM_SPECIFIER_PREFIX):
        aliased = requirement[len(NPM_SPECIFIER_PREFIX):]
        # The first character may be the "@" of a scoped package name
        at = aliased.rfind("@")
        if at > 0:
            name, version_req = aliased[:at], aliased[at + 1:]
        else:
            name, version_req = aliased, ""
        if not name:
            return DependencySpec(key=key, name=key, requirement=requirement, error="missing package name")
    elif "/" in requirement:
        return DependencySpec(
            key=key,
            name=key,
            requirement=requirement,
            error="Not implemented scheme for repository shorthand",
        )

    return DependencySpec(
        key=key,
        name=name,
        requirement=version_req,
        error=_validate_requirement(version_req),
    )


def load_package_json(path: Path) -> PackageJson:
    """Read a `package.json` file.

    Raises:
        ConfigurationError: If the file cannot be read or has invalid `scripts`.
    """
    data, err = _load_data_with_error(path, {})
    if err:
        raise ConfigurationError(f"Failed to read {path}: {err}")

    raw_scripts = data.get("scripts") or {}
    if not isinstance(raw_scripts, dict):
        raise ConfigurationError(f"{path}: 'scripts' must be an object")
    scripts: dict[str, str] = {}
    for name, script in raw_scripts.items():
        if not isinstance(script, str):
            raise ConfigurationError(f"{path}: script '{name}' must be a string")
        scripts[str(name)] = script

    dependencies: dict[str, DependencySpec] = {}
    for section in MANIFEST_DEPENDENCY_KEYS:
        raw_deps = data.get(section) or {}
        if not isinstance(raw_deps, dict):
            logger.warning("Ignoring '{}' in {} because it is not an object", section, path)
            continue
        for key, value in raw_deps.items():
            dependencies[str(key)] = parse_dependency(str(key), value)

    name = data.get("name")
    return PackageJson(
        path=path,
        name=name if isinstance(name, str) else None,
        scripts=scripts,
        dependencies=dependencies,
    )


def _is_remote(location: str) -> bool:
    return urlparse(location).scheme in _REMOTE_SCHEMES


def _fetch_remote_config(url: str) -> dict[str, Any]:
    logger.debug("Fetching remote configuration {}", url)
    try:
        response = httpx.get(url, timeout=REMOTE_CONFIG_TIMEOUT_SECONDS, follow_redirects=True)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        raise ConfigurationError(f"Failed to fetch configuration file {url}: {exc}") from exc
    try:
        # YAML is a superset of JSON, so one parser covers both formats
        data = yaml.safe_load(response.text)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Failed to parse configuration file {url}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{url}: expected object, got {type(data).__name__}")
    return data


def _load_local_config(path: Path) -> dict[str, Any]:
    if not path.is_file():
        raise ConfigurationError(f"Configuration file not found: {path}")
    data, err = _load_data_with_error(path, {})
    if err:
        raise ConfigurationError(f"Failed to read configuration file {err}")
    return data


def _parse_tasks(data: dict[str, Any], location: str) -> dict[str, str]:
    raw = data.get("tasks") or {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{location}: 'tasks' must be a mapping of task name to command")
    tasks: dict[str, str] = {}
    for name, script in raw.items():
        if not isinstance(script, str):
            raise ConfigurationError(f"{location}: task '{name}' must be a string")
        tasks[str(name)] = script
    return tasks


def _parse_packages_config(data: dict[str, Any], location: str) -> PackagesConfig:
    raw = data.get("packages") or {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{location}: 'packages' must be a mapping")
    defaults = PackagesConfig()
    managed = raw.get("managed", defaults.managed)
    if not isinstance(managed, bool):
        raise ConfigurationError(f"{location}: 'packages.managed' must be true or false")

    def _text(key: str, default: str) -> str:
        value = raw.get(key)
        if value is None:
            return default
        if not isinstance(value, str) or not value.strip():
            raise ConfigurationError(f"{location}: 'packages.{key}' must be a non-empty string")
        return value.strip()

    return PackagesConfig(
        managed=managed,
        install_command=_text("install_command", defaults.install_command),
        node_modules_dir=_text("node_modules_dir", defaults.node_modules_dir),
        runtime_command=_text("runtime_command", defaults.runtime_command),
    )


class ProjectConfig:
    """Resolved task sources for one invocation."""

    def __init__(
        self,
        *,
        config_location: Optional[str] = None,
        tasks: Optional[dict[str, str]] = None,
        package_json: Optional[PackageJson] = None,
        packages: Optional[PackagesConfig] = None,
    ):
        self._config_location = config_location
        self._tasks = dict(tasks or {})
        self._package_json = package_json
        self.packages = packages or PackagesConfig()

    @classmethod
    def discover(cls, start_dir: Path, config: Optional[str] = None) -> "ProjectConfig":
        """Locate and load the configuration file and manifest.

        Args:
            start_dir: Directory where the upward search for both files begins.
            config: Explicit configuration file path or `http(s)` URL.

        Raises:
            ConfigurationError: If a file exists but cannot be loaded.
        """
        start_dir = start_dir.resolve()
        location: Optional[str] = None
        data: dict[str, Any] = {}
        if config and _is_remote(config):
            location = config
            data = _fetch_remote_config(config)
        else:
            path = (start_dir / config).resolve() if config else _find_upwards(start_dir, CONFIG_FILE_NAMES)
            if path is not None:
                location = path.as_uri()
                data = _load_local_config(path)

        manifest_path = _find_upwards(start_dir, (PACKAGE_JSON_FILE,))
        package_json = load_package_json(manifest_path) if manifest_path else None

        if location:
            logger.debug("Using configuration file {}", location)
        if package_json:
            logger.debug("Using package.json file {}", package_json.path)

        label = location or "configuration"
        return cls(
            config_location=location,
            tasks=_parse_tasks(data, label),
            package_json=package_json,
            packages=_parse_packages_config(data, label),
        )

    def resolve_tasks_config(self) -> dict[str, str]:
        return dict(self._tasks)

    def maybe_package_json(self) -> Optional[PackageJson]:
        return self._package_json

    def config_file_location(self) -> Optional[str]:
        return self._config_location

    def package_resolver(self) -> NodeModulesResolver:
        """Build the package resolver rooted at the manifest directory."""
        if self._package_json is None:
            raise ConfigurationError("No package.json found")
        return NodeModulesResolver(
            self._package_json.root_dir,
            self._package_json.dependencies,
            node_modules_dir=self.packages.node_modules_dir,
            install_command=self.packages.install_command,
            managed=self.packages.managed,
        )

