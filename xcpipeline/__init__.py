"""Orchestrates Xcode build, archive, export, upload and signing pipelines."""
from __future__ import annotations

from .cli import main
from .config_loader import ResolvedConfig, resolve
from .errors import (
    ArtifactNotFound,
    InsufficientInputs,
    MissingRequiredField,
    PipelineError,
    ToolExecutionFailure,
    UnsupportedPlatform,
    ValidationError,
)

__all__ = [
    "ArtifactNotFound",
    "InsufficientInputs",
    "MissingRequiredField",
    "PipelineError",
    "ResolvedConfig",
    "ToolExecutionFailure",
    "UnsupportedPlatform",
    "ValidationError",
    "main",
    "resolve",
]
