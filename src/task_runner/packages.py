"""Read installed top-level packages from a local `node_modules` directory."""

from __future__ import annotations

import json
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Mapping, Optional

from loguru import logger

from .constants import (
    DEFAULT_INSTALL_COMMAND,
    DEFAULT_NODE_MODULES_DIR,
    NODE_MODULES_BIN_DIR,
    PACKAGE_JSON_FILE,
)
from .errors import ResolutionError

if TYPE_CHECKING:
    from .config import DependencySpec


@dataclass(frozen=True)
class PackageId:
    """Name and exact version of an installed package."""

    name: str
    version: str

    @property
    def nv(self) -> str:
        return f"{self.name}@{self.version}"

    def __str__(self) -> str:
        return self.nv


class PackageResolver(ABC):
    """Snapshot of installed packages plus the hooks that keep it current."""

    is_managed: bool = False

    @abstractmethod
    def top_level_packages(self) -> list[PackageId]:
        raise NotImplementedError

    @abstractmethod
    def package_folder(self, package: PackageId) -> Path:
        raise NotImplementedError

    @abstractmethod
    def exposed_binary_names(self, folder: Path) -> list[str]:
        raise NotImplementedError

    @abstractmethod
    def root_bin_dir(self) -> Optional[Path]:
        raise NotImplementedError

    def ensure_top_level_installed(self) -> None:
        return None

    def resolve_pending(self) -> None:
        return None


def _read_package_manifest(folder: Path) -> dict:
    path = folder / PACKAGE_JSON_FILE
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ResolutionError(f"Failed to read {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ResolutionError(f"Failed to parse {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ResolutionError(f"{path}: expected object, got {type(data).__name__}")
    return data


def _bin_name_for(package_name: str) -> str:
    # "@scope/tool" exposes a single string bin as "tool"
    return package_name.rsplit("/", 1)[-1]


def binary_names_from_manifest(data: dict) -> list[str]:
    """List the binary names declared by a package's `bin` field."""
    raw = data.get("bin")
    if isinstance(raw, str):
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise ResolutionError("Package declares a 'bin' path but has no name")
        return [_bin_name_for(name)]
    if isinstance(raw, dict):
        return [str(key) for key in raw.keys()]
    return []


class NodeModulesResolver(PackageResolver):
    """Resolve packages from `<root>/node_modules` using the manifest dependencies.

    Installing missing packages is delegated to an external install command
    (`npm install` by default) run in the manifest directory.
    """

    def __init__(
        self,
        root_dir: Path,
        dependencies: Mapping[str, "DependencySpec"],
        *,
        node_modules_dir: str = DEFAULT_NODE_MODULES_DIR,
        install_command: str = DEFAULT_INSTALL_COMMAND,
        managed: bool = True,
    ):
        self.root_dir = root_dir
        self.dependencies = dict(dependencies)
        self.node_modules = root_dir / node_modules_dir
        self.install_command = install_command
        self.is_managed = managed
        self._snapshot: Optional[dict[PackageId, Path]] = None

    def _installed_folder(self, key: str) -> Path:
        return self.node_modules / key

    def _missing_dependencies(self) -> list[str]:
        return [
            key
            for key, spec in self.dependencies.items()
            if spec.valid and not (self._installed_folder(key) / PACKAGE_JSON_FILE).is_file()
        ]

    def _scan(self) -> dict[PackageId, Path]:
        snapshot: dict[PackageId, Path] = {}
        for key, spec in self.dependencies.items():
            if not spec.valid:
                continue
            folder = self._installed_folder(key)
            if not (folder / PACKAGE_JSON_FILE).is_file():
                continue
            data = _read_package_manifest(folder)
            version = data.get("version")
            if not isinstance(version, str) or not version:
                raise ResolutionError(f"Package '{key}' in {folder} has no version")
            name = data.get("name")
            package = PackageId(name=name if isinstance(name, str) and name else spec.name, version=version)
            snapshot[package] = folder
        return snapshot

    @property
    def snapshot(self) -> dict[PackageId, Path]:
        if self._snapshot is None:
            self._snapshot = self._scan()
        return self._snapshot

    def top_level_packages(self) -> list[PackageId]:
        return list(self.snapshot.keys())

    def package_folder(self, package: PackageId) -> Path:
        folder = self.snapshot.get(package)
        if folder is None:
            raise ResolutionError(f"Could not find package folder for '{package.nv}'")
        return folder

    def exposed_binary_names(self, folder: Path) -> list[str]:
        data = _read_package_manifest(folder)
        try:
            return binary_names_from_manifest(data)
        except ResolutionError as exc:
            raise ResolutionError(f"{folder}: {exc}") from exc

    def root_bin_dir(self) -> Optional[Path]:
        if not self.node_modules.is_dir():
            return None
        return self.node_modules / NODE_MODULES_BIN_DIR

    def ensure_top_level_installed(self) -> None:
        """Run the install command when a declared dependency is not on disk.

        Raises:
            ResolutionError: If the install command cannot be started or fails.
        """
        if not self.is_managed:
            return
        missing = self._missing_dependencies()
        if not missing:
            return
        logger.info("Installing {} missing package(s): {}", len(missing), ", ".join(missing))
        command = shlex.split(self.install_command)
        logger.debug("Running install command {} in {}", command, self.root_dir)
        try:
            result = subprocess.run(command, cwd=self.root_dir)
        except OSError as exc:
            raise ResolutionError(f"Failed to run install command '{self.install_command}': {exc}") from exc
        if result.returncode != 0:
            raise ResolutionError(
                f"Install command '{self.install_command}' exited with code {result.returncode}"
            )
        self._snapshot = None

    def resolve_pending(self) -> None:
        """Re-read the installed packages after an install."""
        self._snapshot = self._scan()
        still_missing = self._missing_dependencies()
        if still_missing:
            logger.warning("Packages still missing after install: {}", ", ".join(still_missing))
