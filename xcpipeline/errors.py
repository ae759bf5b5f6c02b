"""Error taxonomy shared by configuration, command building and execution."""
from __future__ import annotations

from pathlib import Path
from typing import Sequence
import shlex


class PipelineError(RuntimeError):
    """Base class for every error surfaced by the pipeline core."""


class ValidationError(PipelineError):
    """Raised when configuration is missing or invalid before any step runs."""


class MissingRequiredField(ValidationError):
    def __init__(self, field: str) -> None:
        super().__init__(f"Missing required configuration field '{field}'")
        self.field = field


class UnsupportedPlatform(ValidationError):
    def __init__(self, value: str, supported: Sequence[str] = ()) -> None:
        message = f"Unsupported platform: {value}"
        if supported:
            message = f"{message}. Supported platforms: {', '.join(supported)}"
        super().__init__(message)
        self.value = value


class InsufficientInputs(ValidationError):
    def __init__(self, count: int, minimum: int = 2) -> None:
        super().__init__(f"At least {minimum} input files are required, got {count}")
        self.count = count
        self.minimum = minimum


class ToolExecutionFailure(PipelineError):
    """A step's external tool exited with a non-zero status."""

    def __init__(self, step: str, command: Sequence[str], status: int, log_path: Path | None) -> None:
        rendered = " ".join(shlex.quote(part) for part in command)
        message = f"{step} failed with exit code {status}: {rendered}"
        if log_path is not None:
            message = f"{message}\nLog file: {log_path}"
        super().__init__(message)
        self.step = step
        self.command = list(command)
        self.status = status
        self.log_path = log_path


class ArtifactNotFound(PipelineError):
    """A step finished but the artifact a later step needs is missing."""

    def __init__(
        self,
        root: Path,
        extension: str,
        *,
        step: str | None = None,
        command: Sequence[str] = (),
        log_path: Path | None = None,
    ) -> None:
        message = f"No *{extension} file found in {root}"
        if step is not None:
            rendered = " ".join(shlex.quote(part) for part in command)
            message = f"{message} after {step}: {rendered}"
        if log_path is not None:
            message = f"{message}\nLog file: {log_path}"
        super().__init__(message)
        self.root = root
        self.extension = extension
        self.step = step
        self.command = list(command)
        self.log_path = log_path
