"""Parse task scripts into command lists and execute them.

The engine understands just enough shell syntax to find command boundaries:
list operators (`&&`, `||`, `;`, newlines), quoting, and `$NAME` expansion.
A list item whose command name is registered in the command table is
dispatched in-process to that `ShellCommand`. Every other item is handed to
the platform shell unchanged, so pipes, redirects and globbing keep their
usual meaning there.

Pipelines that involve a command-table name are run one stage at a time: the
output of each stage is buffered and fed to the next stage's stdin. Plain
`<`, `>` and `>>` file redirects are honoured for in-process stages.
"""

from __future__ import annotations

import asyncio
import io
import shutil
import sys
from abc import ABC, abstractmethod
from contextlib import ExitStack
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Optional, TextIO, Union

from loguru import logger

from .constants import COMMAND_NOT_FOUND_EXIT_CODE, PATH_ENV

# Characters that only the platform shell can interpret
_COMPLEX_CHARS = set("|&<>()*?`")
_DOUBLE_QUOTE_ESCAPES = set('$`"\\\n')


class ShellSyntaxError(ValueError):
    pass


@dataclass(frozen=True)
class SequenceItem:
    """One command-list item plus the operator joining it to the previous item."""

    text: str
    operator: Optional[str] = None
    complex: bool = False


@dataclass(frozen=True)
class CommandSequence:
    items: tuple[SequenceItem, ...] = ()

    def __len__(self) -> int:
        return len(self.items)


@dataclass
class ShellState:
    """Mutable state of one script execution (cwd, env, command table)."""

    commands: Mapping[str, "ShellCommand"]
    env: dict[str, str]
    cwd: Path
    exit_requested: Optional[int] = None

    def resolve_command(self, name: str) -> Optional["ShellCommand"]:
        return self.commands.get(name)


@dataclass
class ShellCommandContext:
    args: list[str]
    state: ShellState
    stdout: TextIO
    stderr: TextIO
    env: dict[str, str] = field(default_factory=dict)
    # Text fed to the command's stdin; None inherits the parent's stdin
    stdin: Optional[str] = None

    @property
    def cwd(self) -> Path:
        return self.state.cwd


class ShellCommand(ABC):
    """A command implemented in-process and resolvable from a running script."""

    @abstractmethod
    async def execute(self, context: ShellCommandContext) -> int:
        """Run the command and return its exit code."""
        raise NotImplementedError


def _stream_target(stream: TextIO) -> Union[TextIO, int]:
    try:
        stream.fileno()
    except (AttributeError, OSError, io.UnsupportedOperation):
        return asyncio.subprocess.PIPE
    stream.flush()
    return stream


def _stdin_target(stdin: Optional[str]) -> Optional[int]:
    return asyncio.subprocess.PIPE if stdin is not None else None


async def _communicate(
    process: Any,
    stdout: TextIO,
    stderr: TextIO,
    stdin: Optional[str] = None,
) -> int:
    out, err = await process.communicate(None if stdin is None else stdin.encode("utf-8"))
    if out:
        stdout.write(out.decode("utf-8", errors="replace"))
    if err:
        stderr.write(err.decode("utf-8", errors="replace"))
    code = int(process.returncode or 0)
    if code < 0:
        # Killed by signal -code; report 128 + signal like POSIX shells
        code = 128 - code
    return code


class ExecutableCommand(ShellCommand):
    """Run an executable found on the context's `PATH`."""

    def __init__(self, name: str):
        self.name = name

    def __repr__(self) -> str:
        return f"ExecutableCommand({self.name!r})"

    async def execute(self, context: ShellCommandContext) -> int:
        env = context.env or context.state.env
        resolved = shutil.which(self.name, path=env.get(PATH_ENV))
        if resolved is None:
            context.stderr.write(f"{self.name}: command not found\n")
            return COMMAND_NOT_FOUND_EXIT_CODE
        logger.debug("Spawning {} {}", resolved, context.args)
        process = await asyncio.create_subprocess_exec(
            resolved,
            *context.args,
            cwd=str(context.cwd),
            env=env,
            stdin=_stdin_target(context.stdin),
            stdout=_stream_target(context.stdout),
            stderr=_stream_target(context.stderr),
        )
        return await _communicate(process, context.stdout, context.stderr, context.stdin)


def _split_list(script: str) -> list[SequenceItem]:
    items: list[SequenceItem] = []
    buf: list[str] = []
    pending_op: Optional[str] = None
    is_complex = False
    quote: Optional[str] = None
    i = 0
    n = len(script)

    def flush(next_op: Optional[str], semicolon: bool = False) -> None:
        nonlocal buf, pending_op, is_complex
        text = "".join(buf).strip()
        if not text:
            if next_op in ("&&", "||") or pending_op in ("&&", "||"):
                raise ShellSyntaxError(f"Expected command around '{next_op or pending_op}'")
            if semicolon:
                # Blank lines are fine, an empty command before ';' is not
                raise ShellSyntaxError("Unexpected ';' without a preceding command")
        else:
            items.append(SequenceItem(text=text, operator=pending_op, complex=is_complex))
        buf = []
        pending_op = next_op
        is_complex = False

    while i < n:
        ch = script[i]
        if quote == "'":
            buf.append(ch)
            if ch == "'":
                quote = None
            i += 1
            continue
        if ch == "\\" and i + 1 < n:
            buf.append(script[i : i + 2])
            i += 2
            continue
        if quote == '"':
            buf.append(ch)
            if ch == '"':
                quote = None
            elif ch == "`" or script.startswith("$(", i):
                is_complex = True
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
            buf.append(ch)
            i += 1
            continue
        two = script[i : i + 2]
        if two in ("&&", "||"):
            flush(two)
            i += 2
            continue
        if ch == "\n" and pending_op in ("&&", "||") and not "".join(buf).strip():
            # A list operator may be followed by a line break
            i += 1
            continue
        if ch in (";", "\n"):
            flush(";", semicolon=ch == ";")
            i += 1
            continue
        if ch in _COMPLEX_CHARS or two == "$(":
            is_complex = True
        buf.append(ch)
        i += 1

    if quote is not None:
        raise ShellSyntaxError(f"Unterminated {quote} quote")
    if pending_op in ("&&", "||") and not "".join(buf).strip():
        raise ShellSyntaxError(f"Expected command following '{pending_op}'")
    flush(None)
    return items


def _expand_var(text: str, i: int, env: Mapping[str, str]) -> tuple[str, int]:
    """Expand `$NAME` or `${NAME}` starting at `text[i] == "$"`."""
    if text.startswith("${", i):
        end = text.find("}", i + 2)
        if end == -1:
            raise ShellSyntaxError("Unterminated ${ expansion")
        return env.get(text[i + 2 : end], ""), end + 1
    j = i + 1
    while j < len(text) and (text[j].isalnum() or text[j] == "_"):
        j += 1
    if j == i + 1:
        return "$", j
    return env.get(text[i + 1 : j], ""), j


def split_words(text: str, env: Mapping[str, str]) -> list[str]:
    """Split a simple command into words, applying quotes and `$` expansion."""
    words: list[str] = []
    current: list[str] = []
    in_word = False
    quote: Optional[str] = None
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if quote == "'":
            if ch == "'":
                quote = None
            else:
                current.append(ch)
            i += 1
            continue
        if quote == '"':
            if ch == '"':
                quote = None
                i += 1
            elif ch == "\\" and i + 1 < n and text[i + 1] in _DOUBLE_QUOTE_ESCAPES:
                current.append(text[i + 1])
                i += 2
            elif ch == "$":
                value, i = _expand_var(text, i, env)
                current.append(value)
            else:
                current.append(ch)
                i += 1
            continue
        if ch.isspace():
            if in_word:
                words.append("".join(current))
                current = []
                in_word = False
            i += 1
            continue
        in_word = True
        if ch in ("'", '"'):
            quote = ch
            i += 1
        elif ch == "\\" and i + 1 < n:
            current.append(text[i + 1])
            i += 2
        elif ch == "$":
            value, i = _expand_var(text, i, env)
            current.append(value)
        else:
            current.append(ch)
            i += 1
    if quote is not None:
        raise ShellSyntaxError(f"Unterminated {quote} quote")
    if in_word:
        words.append("".join(current))
    return words


def _split_assignment(word: str) -> Optional[tuple[str, str]]:
    name, sep, value = word.partition("=")
    if not sep or not name or not (name[0].isalpha() or name[0] == "_"):
        return None
    if not all(c.isalnum() or c == "_" for c in name):
        return None
    return name, value


def _command_words(text: str, env: Mapping[str, str]) -> tuple[dict[str, str], list[str]]:
    """Split a simple command into its leading `NAME=value` assignments and words."""
    words = split_words(text, env)
    assignments: dict[str, str] = {}
    while words:
        pair = _split_assignment(words[0])
        if pair is None:
            break
        assignments[pair[0]] = pair[1]
        words.pop(0)
    return assignments, words


@dataclass(frozen=True)
class PipelineStage:
    """One `|`-separated stage of a list item.

    `source` is the raw stage text for the platform shell. `text` is the same
    command with its plain file redirects removed; those are kept in
    `redirects` as `(operator, raw target)` pairs.
    """

    source: str
    text: str
    redirects: tuple[tuple[str, str], ...] = ()
    complex: bool = False


def _read_word(text: str, i: int) -> tuple[str, int]:
    """Return the raw word starting after any blanks at `text[i]`."""
    n = len(text)
    while i < n and text[i] in " \t":
        i += 1
    start = i
    quote: Optional[str] = None
    while i < n:
        ch = text[i]
        if ch == "\\" and quote != "'" and i + 1 < n:
            i += 2
            continue
        if quote is not None:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch.isspace() or ch in "|&;<>()`":
            break
        i += 1
    return text[start:i], i


def split_pipeline(text: str) -> Optional[list[PipelineStage]]:
    """Split a list item into pipeline stages.

    Returns None when the item has an empty stage, a redirect without a
    target, or a `|&` pipe, leaving it to the platform shell as a whole.
    """
    stages: list[PipelineStage] = []
    source: list[str] = []
    plain: list[str] = []
    redirects: list[tuple[str, str]] = []
    is_complex = False
    quote: Optional[str] = None
    depth = 0
    i = 0
    n = len(text)

    def finish() -> bool:
        nonlocal source, plain, redirects, is_complex
        stage_source = "".join(source).strip()
        if not stage_source:
            return False
        stages.append(
            PipelineStage(
                source=stage_source,
                text="".join(plain).strip(),
                redirects=tuple(redirects),
                complex=is_complex,
            )
        )
        source, plain, redirects, is_complex = [], [], [], False
        return True

    def append(chunk: str) -> None:
        source.append(chunk)
        plain.append(chunk)

    while i < n:
        ch = text[i]
        if quote == "'":
            append(ch)
            if ch == "'":
                quote = None
            i += 1
            continue
        if ch == "\\" and i + 1 < n:
            append(text[i : i + 2])
            i += 2
            continue
        if quote is not None:
            append(ch)
            if ch == quote:
                quote = None
            elif quote == '"' and (ch == "`" or text.startswith("$(", i)):
                is_complex = True
            i += 1
            continue
        if ch in ("'", '"', "`"):
            quote = ch
            is_complex = is_complex or ch == "`"
            append(ch)
            i += 1
            continue
        if ch in "()":
            depth = depth + 1 if ch == "(" else max(depth - 1, 0)
            is_complex = True
            append(ch)
            i += 1
            continue
        if depth == 0 and ch == "|":
            if text.startswith("|&", i) or not finish():
                return None
            i += 1
            continue
        if depth == 0 and ch in "<>":
            following = text[i + 1 : i + 2]
            current = "".join(plain)
            word = "" if not current or current[-1].isspace() else current.split()[-1]
            if word.isdigit() or following in ("&", "|") or (ch == "<" and following in ("<", ">")):
                # fd duplication, heredocs and the like stay with the platform shell
                is_complex = True
                append(ch)
                i += 1
                continue
            op = ">>" if ch == ">" and following == ">" else ch
            target, end = _read_word(text, i + len(op))
            if not target:
                return None
            redirects.append((op, target))
            source.append(text[i:end])
            plain.append(" ")
            i = end
            continue
        if ch in "&*?":
            is_complex = True
        append(ch)
        i += 1

    if not finish():
        return None
    return stages


class ShellEngine(ABC):
    @abstractmethod
    def parse(self, script: str) -> CommandSequence:
        raise NotImplementedError

    @abstractmethod
    async def execute(
        self,
        sequence: CommandSequence,
        env: Mapping[str, str],
        cwd: Path,
        commands: Mapping[str, ShellCommand],
    ) -> int:
        raise NotImplementedError


class TaskShell(ShellEngine):
    """Default shell engine: command-table dispatch plus platform-shell fallback."""

    def __init__(self, stdout: Optional[TextIO] = None, stderr: Optional[TextIO] = None):
        self._stdout = stdout
        self._stderr = stderr

    @property
    def stdout(self) -> TextIO:
        return self._stdout or sys.stdout

    @property
    def stderr(self) -> TextIO:
        return self._stderr or sys.stderr

    def parse(self, script: str) -> CommandSequence:
        items = _split_list(script)
        for item in items:
            if not item.complex:
                # Surface quoting errors at parse time rather than mid-run
                split_words(item.text, {})
        return CommandSequence(items=tuple(items))

    async def execute(
        self,
        sequence: CommandSequence,
        env: Mapping[str, str],
        cwd: Path,
        commands: Mapping[str, ShellCommand],
    ) -> int:
        state = ShellState(commands=commands, env=dict(env), cwd=Path(cwd))
        exit_code = 0
        for item in sequence.items:
            if item.operator == "&&" and exit_code != 0:
                continue
            if item.operator == "||" and exit_code == 0:
                continue
            exit_code = await self._execute_item(item, state)
            if state.exit_requested is not None:
                return state.exit_requested
        return exit_code

    async def _execute_item(self, item: SequenceItem, state: ShellState) -> int:
        if item.complex:
            return await self._execute_complex(item.text, state)

        assignments, words = _command_words(item.text, state.env)
        if not words:
            state.env.update(assignments)
            return 0

        name, args = words[0], words[1:]
        builtin = _BUILTINS.get(name)
        if builtin is not None:
            return builtin(state, args, self.stderr)

        command = state.resolve_command(name)
        if command is None:
            return await self._run_in_platform_shell(item.text, state)

        context = ShellCommandContext(
            args=args,
            state=state,
            stdout=self.stdout,
            stderr=self.stderr,
            env={**state.env, **assignments},
        )
        return await command.execute(context)

    def _resolve_stage(
        self,
        stage: PipelineStage,
        state: ShellState,
    ) -> Optional[tuple[ShellCommand, list[str], dict[str, str]]]:
        try:
            assignments, words = _command_words(stage.text, state.env)
        except ShellSyntaxError:
            return None
        if not words:
            return None
        command = state.resolve_command(words[0])
        if command is None:
            return None
        return command, words, assignments

    async def _execute_complex(self, text: str, state: ShellState) -> int:
        stages = split_pipeline(text)
        if stages is None:
            return await self._run_in_platform_shell(text, state)
        resolved = [self._resolve_stage(stage, state) for stage in stages]
        if not any(resolved):
            return await self._run_in_platform_shell(text, state)

        piped: Optional[str] = None
        exit_code = 0
        for index, stage in enumerate(stages):
            last = index == len(stages) - 1
            buffer = io.StringIO()
            stdout = self.stdout if last else buffer
            exit_code = await self._run_stage(stage, resolved[index], state, piped, stdout)
            piped = None if last else buffer.getvalue()
        # Pipeline status is the status of its last stage
        return exit_code

    async def _run_stage(
        self,
        stage: PipelineStage,
        resolved: Optional[tuple[ShellCommand, list[str], dict[str, str]]],
        state: ShellState,
        stdin: Optional[str],
        stdout: TextIO,
    ) -> int:
        if resolved is None:
            return await self._run_in_platform_shell(stage.source, state, stdin=stdin, stdout=stdout)

        command, words, assignments = resolved
        name = words[0]
        if stage.complex:
            self.stderr.write(f"{name}: unsupported shell syntax for a package command: {stage.source}\n")
            return 1

        with ExitStack() as stack:
            for op, raw_target in stage.redirects:
                targets = split_words(raw_target, state.env)
                if len(targets) != 1:
                    self.stderr.write(f"{name}: {raw_target}: ambiguous redirect\n")
                    return 1
                path = state.cwd / targets[0]
                try:
                    if op == "<":
                        stdin = path.read_text(encoding="utf-8")
                    else:
                        mode = "a" if op == ">>" else "w"
                        stdout = stack.enter_context(path.open(mode, encoding="utf-8"))
                except OSError as exc:
                    self.stderr.write(f"{name}: {targets[0]}: {exc.strerror or exc}\n")
                    return 1

            context = ShellCommandContext(
                args=words[1:],
                state=state,
                stdout=stdout,
                stderr=self.stderr,
                env={**state.env, **assignments},
                stdin=stdin,
            )
            return await command.execute(context)

    async def _run_in_platform_shell(
        self,
        text: str,
        state: ShellState,
        *,
        stdin: Optional[str] = None,
        stdout: Optional[TextIO] = None,
    ) -> int:
        stdout = self.stdout if stdout is None else stdout
        process = await asyncio.create_subprocess_shell(
            text,
            cwd=str(state.cwd),
            env=state.env,
            stdin=_stdin_target(stdin),
            stdout=_stream_target(stdout),
            stderr=_stream_target(self.stderr),
        )
        return await _communicate(process, stdout, self.stderr, stdin)


def _builtin_cd(state: ShellState, args: list[str], stderr: TextIO) -> int:
    target = args[0] if args else state.env.get("HOME", str(Path.home()))
    path = (state.cwd / target).resolve()
    if not path.is_dir():
        stderr.write(f"cd: {target}: No such file or directory\n")
        return 1
    state.cwd = path
    state.env["PWD"] = str(path)
    return 0


def _builtin_exit(state: ShellState, args: list[str], stderr: TextIO) -> int:
    code = 0
    if args:
        try:
            code = int(args[0]) & 0xFF
        except ValueError:
            stderr.write(f"exit: {args[0]}: numeric argument required\n")
            code = 2
    state.exit_requested = code
    return code


def _builtin_export(state: ShellState, args: list[str], stderr: TextIO) -> int:
    for arg in args:
        pair = _split_assignment(arg)
        if pair is not None:
            state.env[pair[0]] = pair[1]
    return 0


def _builtin_unset(state: ShellState, args: list[str], stderr: TextIO) -> int:
    for arg in args:
        state.env.pop(arg, None)
    return 0


# Builtins that change the state seen by later list items
_BUILTINS = {
    "cd": _builtin_cd,
    "exit": _builtin_exit,
    "export": _builtin_export,
    "unset": _builtin_unset,
}


def replace_args(context: ShellCommandContext, args: list[str]) -> ShellCommandContext:
    """Copy of `context` carrying different arguments."""
    return replace(context, args=list(args))
