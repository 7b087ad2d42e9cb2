"""Tests for task selection, hook sequencing and step execution."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional

import pytest
from loguru import logger

from task_runner.commands import PackageBinCommand, RunPackageCommand
from task_runner.config import PackageJson, ProjectConfig, parse_dependency
from task_runner.driver import TaskInvocation, execute_task, run_invocation
from task_runner.errors import ConfigurationError, ScriptParseError
from task_runner.packages import PackageId, PackageResolver
from task_runner.shell import CommandSequence, SequenceItem, ShellCommand, ShellEngine, ShellSyntaxError


class RecordingEngine(ShellEngine):
    """Engine that records each step instead of running it."""

    def __init__(self, exit_codes: Optional[dict[str, int]] = None, events: Optional[list[str]] = None):
        self.exit_codes = exit_codes or {}
        self.events = events if events is not None else []
        self.runs: list[dict] = []

    def parse(self, script: str) -> CommandSequence:
        if "((" in script:
            raise ShellSyntaxError("Unexpected '('")
        return CommandSequence(items=(SequenceItem(text=script),))

    async def execute(
        self,
        sequence: CommandSequence,
        env: Mapping[str, str],
        cwd: Path,
        commands: Mapping[str, ShellCommand],
    ) -> int:
        script = sequence.items[0].text
        self.events.append(f"run:{script}")
        self.runs.append({"script": script, "env": dict(env), "cwd": cwd, "commands": commands})
        return self.exit_codes.get(script, 0)

    @property
    def scripts(self) -> list[str]:
        return [run["script"] for run in self.runs]


class FakeResolver(PackageResolver):
    def __init__(
        self,
        bins: Optional[dict[PackageId, list[str]]] = None,
        *,
        bin_dir: Optional[Path] = None,
        managed: bool = True,
        events: Optional[list[str]] = None,
    ):
        self.bins = bins or {}
        self.bin_dir = bin_dir
        self.is_managed = managed
        self.events = events if events is not None else []

    def top_level_packages(self) -> list[PackageId]:
        return list(self.bins)

    def package_folder(self, package: PackageId) -> Path:
        return Path("/node_modules") / package.name

    def exposed_binary_names(self, folder: Path) -> list[str]:
        for package, names in self.bins.items():
            if folder.name == package.name:
                return names
        return []

    def root_bin_dir(self) -> Optional[Path]:
        return self.bin_dir

    def ensure_top_level_installed(self) -> None:
        self.events.append("install")

    def resolve_pending(self) -> None:
        self.events.append("resolve")


def _project(
    tmp_path: Path,
    *,
    tasks: Optional[dict[str, str]] = None,
    scripts: Optional[dict[str, str]] = None,
    dependencies: Optional[dict[str, str]] = None,
    config_location: Optional[str] = None,
) -> ProjectConfig:
    package_json = None
    if scripts is not None:
        package_json = PackageJson(
            path=tmp_path / "web" / "package.json",
            scripts=scripts,
            dependencies={k: parse_dependency(k, v) for k, v in (dependencies or {}).items()},
        )
    if tasks is not None and config_location is None:
        config_location = (tmp_path / "taskrunner.yaml").as_uri()
    return ProjectConfig(config_location=config_location, tasks=tasks, package_json=package_json)


BASE_ENV = {"PATH": "/usr/bin", "HOME": "/home/user"}


class TestConfigTasks:
    def test_config_task_shadows_manifest_script(self, tmp_path: Path):
        project = _project(
            tmp_path,
            tasks={"build": "make"},
            scripts={"prebuild": "echo pre", "build": "tsc", "postbuild": "echo post"},
        )
        engine = RecordingEngine()

        exit_code = execute_task(project, "build", engine=engine, resolver=FakeResolver(), base_env=BASE_ENV)

        assert exit_code == 0
        assert engine.scripts == ["make"]
        run = engine.runs[0]
        assert run["cwd"] == tmp_path
        assert run["commands"] == {}
        assert run["env"]["PATH"] == "/usr/bin"
        assert "INIT_CWD" in run["env"]

    def test_exit_code_is_returned(self, tmp_path: Path):
        project = _project(tmp_path, tasks={"fail": "false"})
        engine = RecordingEngine({"false": 3})

        assert execute_task(project, "fail", engine=engine, base_env=BASE_ENV) == 3

    def test_cwd_override(self, tmp_path: Path):
        other = tmp_path / "other"
        other.mkdir()
        project = _project(tmp_path, tasks={"build": "make"})
        engine = RecordingEngine()

        execute_task(project, "build", cwd_override=str(other), engine=engine, base_env=BASE_ENV)

        assert engine.runs[0]["cwd"] == other.resolve()

    def test_remote_config_cannot_run_tasks(self, tmp_path: Path):
        project = _project(tmp_path, tasks={"build": "make"}, config_location="https://example.com/taskrunner.yaml")

        with pytest.raises(ConfigurationError, match="Only local configuration files are supported"):
            execute_task(project, "build", engine=RecordingEngine(), base_env=BASE_ENV)

    def test_init_cwd_is_kept_when_set(self, tmp_path: Path):
        project = _project(tmp_path, tasks={"build": "make"})
        engine = RecordingEngine()

        execute_task(project, "build", engine=engine, base_env={**BASE_ENV, "INIT_CWD": "/somewhere"})

        assert engine.runs[0]["env"]["INIT_CWD"] == "/somewhere"


class TestManifestTasks:
    def test_single_step_without_hooks(self, tmp_path: Path):
        project = _project(tmp_path, scripts={"build": "tsc"})
        engine = RecordingEngine()

        exit_code = execute_task(project, "build", engine=engine, resolver=FakeResolver(), base_env=BASE_ENV)

        assert exit_code == 0
        assert engine.scripts == ["tsc"]
        assert engine.runs[0]["cwd"] == tmp_path / "web"

    def test_hooks_run_in_order(self, tmp_path: Path):
        project = _project(tmp_path, scripts={"postbuild": "echo post", "build": "tsc", "prebuild": "echo pre"})
        engine = RecordingEngine()

        execute_task(project, "build", engine=engine, resolver=FakeResolver(), base_env=BASE_ENV)

        assert engine.scripts == ["echo pre", "tsc", "echo post"]

    def test_failing_step_stops_the_sequence(self, tmp_path: Path):
        project = _project(tmp_path, scripts={"prebuild": "echo pre", "build": "exit 1", "postbuild": "echo post"})
        engine = RecordingEngine({"exit 1": 1})

        exit_code = execute_task(project, "build", engine=engine, resolver=FakeResolver(), base_env=BASE_ENV)

        assert exit_code == 1
        assert engine.scripts == ["echo pre", "exit 1"]

    def test_failing_pre_hook_skips_main_step(self, tmp_path: Path):
        project = _project(tmp_path, scripts={"prebuild": "lint", "build": "tsc"})
        engine = RecordingEngine({"lint": 2})

        assert execute_task(project, "build", engine=engine, resolver=FakeResolver(), base_env=BASE_ENV) == 2
        assert engine.scripts == ["lint"]

    def test_extra_args_are_quoted_onto_every_step(self, tmp_path: Path):
        project = _project(tmp_path, scripts={"prebuild": "echo pre", "build": "tsc"})
        engine = RecordingEngine()

        execute_task(
            project,
            "build",
            ["--watch", "a b", "$HOME"],
            engine=engine,
            resolver=FakeResolver(),
            base_env=BASE_ENV,
        )

        suffix = '"--watch" "a b" "\\$HOME"'
        assert engine.scripts == [f"echo pre {suffix}", f"tsc {suffix}"]

    def test_bin_dir_is_prepended_to_path(self, tmp_path: Path):
        bin_dir = tmp_path / "web" / "node_modules" / ".bin"
        project = _project(tmp_path, scripts={"build": "tsc"})
        engine = RecordingEngine()

        execute_task(project, "build", engine=engine, resolver=FakeResolver(bin_dir=bin_dir), base_env=BASE_ENV)

        assert engine.runs[0]["env"]["PATH"] == f"{bin_dir}{os.pathsep}/usr/bin"

    def test_command_table_is_shared_by_all_steps(self, tmp_path: Path):
        project = _project(tmp_path, scripts={"prebuild": "a", "build": "b", "postbuild": "c"})
        events: list[str] = []
        resolver = FakeResolver({PackageId("vite", "5.0.0"): ["vite"]}, events=events)
        engine = RecordingEngine(events=events)

        execute_task(project, "build", engine=engine, resolver=resolver, base_env=BASE_ENV)

        tables = [run["commands"] for run in engine.runs]
        assert tables[0] is tables[1] is tables[2]
        assert isinstance(tables[0]["vite"], PackageBinCommand)
        assert isinstance(tables[0]["npx"], RunPackageCommand)
        assert events == ["install", "resolve", "run:a", "run:b", "run:c"]

    def test_unmanaged_resolver_only_gets_npx(self, tmp_path: Path):
        project = _project(tmp_path, scripts={"build": "tsc"})
        events: list[str] = []
        resolver = FakeResolver({PackageId("vite", "5.0.0"): ["vite"]}, managed=False, events=events)
        engine = RecordingEngine(events=events)

        execute_task(project, "build", engine=engine, resolver=resolver, base_env=BASE_ENV)

        commands = engine.runs[0]["commands"]
        assert list(commands) == ["npx"]
        assert isinstance(commands["npx"], RunPackageCommand)
        assert events == ["run:tsc"]

    def test_parse_error_names_the_failing_step(self, tmp_path: Path):
        project = _project(tmp_path, scripts={"prebuild": "echo pre", "build": "tsc", "postbuild": "echo (("})
        engine = RecordingEngine()

        with pytest.raises(ScriptParseError) as exc_info:
            execute_task(project, "build", engine=engine, resolver=FakeResolver(), base_env=BASE_ENV)

        assert exc_info.value.task_name == "postbuild"
        assert str(exc_info.value).startswith("Error parsing script 'postbuild'.")
        assert engine.scripts == ["echo pre", "tsc"]

    def test_unparsed_dependencies_are_warned_about(self, tmp_path: Path):
        project = _project(
            tmp_path,
            scripts={"build": "tsc"},
            dependencies={"typescript": "^5.0.0", "broken": "not a version!"},
        )
        messages: list[str] = []
        handler_id = logger.add(lambda m: messages.append(str(m)), level="WARNING", format="{message}")
        try:
            exit_code = execute_task(
                project, "build", engine=RecordingEngine(), resolver=FakeResolver(), base_env=BASE_ENV
            )
        finally:
            logger.remove(handler_id)

        assert exit_code == 0
        assert len(messages) == 1
        assert "Ignoring dependency 'broken'" in messages[0]


class TestListing:
    def test_no_task_name_lists_tasks(self, tmp_path: Path, capsys):
        project = _project(tmp_path, tasks={"build": "make"}, scripts={"dev": "vite"})
        engine = RecordingEngine()

        assert execute_task(project, None, engine=engine) == 1

        err = capsys.readouterr().err
        assert "Available tasks:" in err
        assert "- build" in err
        assert "- dev (package.json)" in err
        assert engine.runs == []

    def test_unknown_task_prints_listing(self, tmp_path: Path, capsys):
        project = _project(tmp_path, tasks={"build": "make"})

        assert execute_task(project, "deploy", engine=RecordingEngine()) == 1

        err = capsys.readouterr().err
        assert "Task not found: deploy" in err
        assert "- build" in err

    def test_empty_project(self, capsys):
        assert execute_task(ProjectConfig(), None) == 1
        assert "No tasks found in configuration file" in capsys.readouterr().err


def test_run_invocation_passes_env_and_cwd(tmp_path: Path):
    engine = RecordingEngine({"build": 9})
    invocation = TaskInvocation(task_name="build", cwd=tmp_path, script="build", env={"A": "1"}, commands={})

    assert run_invocation(engine, invocation) == 9
    assert engine.runs[0]["env"] == {"A": "1"}
    assert engine.runs[0]["cwd"] == tmp_path
