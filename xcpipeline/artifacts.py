"""Locates artifacts produced by a finished step."""
from __future__ import annotations

from pathlib import Path
import logging

from .errors import ArtifactNotFound

logger = logging.getLogger(__name__)


def normalize_extension(extension: str) -> str:
    text = extension.strip().lstrip("*")
    if not text.startswith("."):
        text = f".{text}"
    return text


def locate(root: Path, extension: str) -> Path:
    """Return the first file below ``root`` whose name ends with ``extension``.

    Candidates are ordered lexically by their path relative to ``root`` so the
    result does not depend on directory listing order.
    """

    suffix = normalize_extension(extension)
    if not root.is_dir():
        raise ArtifactNotFound(root, suffix)
    candidates = sorted(
        (path for path in root.rglob(f"*{suffix}") if path.is_file()),
        key=lambda path: path.relative_to(root).as_posix(),
    )
    if not candidates:
        raise ArtifactNotFound(root, suffix)
    logger.debug("Located %s", candidates[0])
    return candidates[0]
