"""Utilities for executing piped tool invocations with optional dry-run support."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, List, Mapping, Sequence, cast
import io
import logging
import os
import shlex
import subprocess
import sys

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024

# Shell conventions for a program that cannot be started.
_EXIT_NOT_FOUND = 127
_EXIT_NOT_EXECUTABLE = 126


@dataclass
class CommandResult:
    """Represents the outcome of an executed command."""

    command: Sequence[str]
    returncode: int
    log_path: Path | None = None
    log_complete: bool = True


class CommandRunner:
    """Abstract command runner interface."""

    def run(
        self,
        command: Sequence[str],
        *,
        log_path: Path,
        append: bool = False,
        post_processors: Sequence[Sequence[str]] = (),
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        note: str | None = None,
    ) -> CommandResult:
        raise NotImplementedError

    def format_command(self, command: Sequence[str], *, secrets: Iterable[str] = ()) -> str:
        hidden = {value for value in secrets if value}
        return " ".join("****" if part in hidden else shlex.quote(part) for part in command)


class SubprocessCommandRunner(CommandRunner):
    """Runs the primary command with stderr merged into stdout.

    The combined stream is copied into the log file and fed to the first
    post-processor; the last post-processor writes to the terminal. Without
    post-processors the stream is echoed to stdout. The returned status is
    always the primary command's.
    """

    @staticmethod
    def _merge_environment(env: Mapping[str, str] | None) -> Dict[str, str] | None:
        if env is None:
            return None
        merged = os.environ.copy()
        merged.update(env)
        return merged

    @staticmethod
    def _open_log(log_path: Path, append: bool) -> BinaryIO:
        return log_path.open("ab" if append else "wb")

    @staticmethod
    def _echo(chunk: bytes) -> None:
        buffer = getattr(sys.stdout, "buffer", None)
        if buffer is not None:
            buffer.write(chunk)
            buffer.flush()
        else:
            sys.stdout.write(chunk.decode("utf-8", errors="replace"))
            sys.stdout.flush()

    def _start_post_processors(
        self,
        post_processors: Sequence[Sequence[str]],
        env: Mapping[str, str] | None,
    ) -> List[subprocess.Popen]:
        stages: List[subprocess.Popen] = []
        for index, processor in enumerate(post_processors):
            is_last = index == len(post_processors) - 1
            upstream = stages[-1].stdout if stages else subprocess.PIPE
            try:
                stage = subprocess.Popen(
                    list(processor),
                    stdin=upstream,
                    stdout=None if is_last else subprocess.PIPE,
                    env=env,
                )
            except OSError as exc:
                logger.warning("Skipping post-processor %s: %s", self.format_command(processor), exc)
                continue
            if stages and stages[-1].stdout is not None:
                # The downstream stage now owns the read end.
                stages[-1].stdout.close()
            stages.append(stage)
        if stages and stages[-1].stdout is not None:
            # The final stage failed to start, so nothing reads this output.
            stages[-1].stdout.close()
        return stages

    def run(
        self,
        command: Sequence[str],
        *,
        log_path: Path,
        append: bool = False,
        post_processors: Sequence[Sequence[str]] = (),
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        note: str | None = None,
    ) -> CommandResult:
        merged_env = self._merge_environment(env)
        log_complete = True

        log_handle: BinaryIO | None
        try:
            log_handle = self._open_log(log_path, append)
        except OSError as exc:
            logger.warning("Cannot open log file %s: %s", log_path, exc)
            log_handle = None
            log_complete = False

        try:
            primary = subprocess.Popen(
                list(command),
                cwd=str(cwd) if cwd else None,
                env=merged_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except OSError as exc:
            returncode = _EXIT_NOT_FOUND if isinstance(exc, FileNotFoundError) else _EXIT_NOT_EXECUTABLE
            message = f"{command[0]}: {exc.strerror or exc}\n".encode()
            logger.error("Cannot start %s: %s", command[0], exc)
            if log_handle is not None:
                try:
                    log_handle.write(message)
                except OSError:
                    log_complete = False
                log_handle.close()
            return CommandResult(command=command, returncode=returncode, log_path=log_path, log_complete=log_complete)

        stages = self._start_post_processors(post_processors, merged_env)
        sink = stages[0].stdin if stages else None
        output = cast(io.BufferedReader, primary.stdout)

        try:
            while True:
                chunk = output.read1(_CHUNK_SIZE)
                if not chunk:
                    break
                if log_handle is not None:
                    try:
                        log_handle.write(chunk)
                    except OSError as exc:
                        logger.warning("Writing log file %s failed: %s", log_path, exc)
                        log_complete = False
                        try:
                            log_handle.close()
                        except OSError:
                            pass
                        log_handle = None
                if stages:
                    if sink is not None:
                        try:
                            sink.write(chunk)
                            sink.flush()
                        except OSError as exc:
                            logger.warning("Post-processor stopped reading output: %s", exc)
                            try:
                                sink.close()
                            except OSError:
                                pass
                            sink = None
                else:
                    self._echo(chunk)
            returncode = primary.wait()
        finally:
            if primary.poll() is None:
                primary.kill()
                primary.wait()
            output.close()
            if sink is not None:
                try:
                    sink.close()
                except OSError:
                    pass
            for stage in stages:
                stage_status = stage.wait()
                if stage_status != 0:
                    logger.debug("Post-processor %s exited with %s", stage.args, stage_status)
            if log_handle is not None:
                try:
                    log_handle.close()
                except OSError as exc:
                    logger.warning("Closing log file %s failed: %s", log_path, exc)
                    log_complete = False

        return CommandResult(command=command, returncode=returncode, log_path=log_path, log_complete=log_complete)


@dataclass(slots=True)
class RecordedCommand:
    command: List[str]
    cwd: str | None
    env: Dict[str, str]
    note: str | None
    log_path: str
    append: bool
    post_processors: List[List[str]] = field(default_factory=list)


class RecordingCommandRunner(CommandRunner):
    """Command runner that records commands instead of executing them."""

    def __init__(self) -> None:
        self.commands: List[RecordedCommand] = []

    def run(
        self,
        command: Sequence[str],
        *,
        log_path: Path,
        append: bool = False,
        post_processors: Sequence[Sequence[str]] = (),
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        note: str | None = None,
    ) -> CommandResult:
        self.commands.append(
            RecordedCommand(
                command=list(command),
                cwd=str(cwd) if cwd else None,
                env=dict(env) if env else {},
                note=note,
                log_path=str(log_path),
                append=append,
                post_processors=[list(processor) for processor in post_processors],
            )
        )
        return CommandResult(command=command, returncode=0, log_path=log_path)

    def iter_commands(self) -> Iterable[RecordedCommand]:
        return iter(self.commands)

    def iter_formatted(self, *, workspace: Path | None = None, secrets: Iterable[str] = ()) -> Iterable[str]:
        default_cwd = str(workspace) if workspace else None
        hidden = list(secrets)
        for record in self.commands:
            cmd = self.format_command(record.command, secrets=hidden)
            cwd = record.cwd or default_cwd
            parts: List[str] = ["[dry-run]"]
            if record.note:
                parts.append(record.note)
            if cwd:
                parts.append(f"(cwd={cwd})")
            parts.append(cmd)
            parts.append(f"{'>>' if record.append else '>'} {record.log_path}")
            yield " ".join(parts)
