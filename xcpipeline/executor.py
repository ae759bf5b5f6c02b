"""Runs one step through the command runner and reports its outcome."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Sequence, Tuple
import logging
import shutil

from .command_runner import CommandRunner
from .steps import StepSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PostProcessor:
    """A program that reads the combined output of a step on stdin."""

    name: str
    command: Tuple[str, ...]

    @classmethod
    def discover(cls, name: str, *args: str) -> "PostProcessor | None":
        """Return a post-processor for ``name`` if it is installed, otherwise ``None``."""
        executable = shutil.which(name)
        if executable is None:
            logger.debug("%s not found on PATH; output will not be formatted", name)
            return None
        return cls(name=name, command=(executable, *args))


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    status: int
    log_path: Path
    command: Tuple[str, ...]
    log_complete: bool = True

    @property
    def success(self) -> bool:
        return self.status == 0


class PipedExecutor:
    def __init__(self, runner: CommandRunner, *, dry_run: bool = False) -> None:
        self._runner = runner
        self._dry_run = dry_run

    @property
    def runner(self) -> CommandRunner:
        return self._runner

    def run(
        self,
        step: StepSpec,
        log_path: Path,
        post_processors: Sequence[PostProcessor] = (),
        *,
        append: bool = False,
    ) -> ExecutionResult:
        if not self._dry_run:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            for directory in step.directories:
                directory.mkdir(parents=True, exist_ok=True)
            for stale in step.clean_paths:
                self._remove(stale)

        rendered = self._runner.format_command(step.command, secrets=step.secrets)
        logger.info("Executing %s command:", step.description.lower())
        logger.info("%s", rendered)

        result = self._runner.run(
            step.command,
            log_path=log_path,
            append=append,
            post_processors=[processor.command for processor in post_processors],
            cwd=step.cwd,
            env=dict(step.env) if step.env else None,
            note=step.description,
        )
        if not result.log_complete:
            logger.warning("Log file %s is incomplete", log_path)
        return ExecutionResult(
            status=result.returncode,
            log_path=log_path,
            command=tuple(step.command),
            log_complete=result.log_complete,
        )

    @staticmethod
    def _remove(path: Path) -> None:
        if path.is_dir() and not path.is_symlink():
            logger.debug("Removing stale %s", path)
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            logger.debug("Removing stale %s", path)
            path.unlink()
