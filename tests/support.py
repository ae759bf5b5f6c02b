"""Test doubles shared by the pipeline and signing tests."""
from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, List, Mapping, Sequence

from xcpipeline.command_runner import CommandResult, CommandRunner


class ScriptedCommandRunner(CommandRunner):
    """Returns a scripted status per step description and records each call."""

    def __init__(
        self,
        statuses: Mapping[str, int] | None = None,
        effects: Mapping[str, Callable[[], None]] | None = None,
    ) -> None:
        self.statuses = dict(statuses or {})
        self.effects = dict(effects or {})
        self.calls: List[Dict[str, object]] = []

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
        self.calls.append(
            {
                "note": note,
                "command": list(command),
                "log_path": log_path,
                "append": append,
                "post_processors": [list(processor) for processor in post_processors],
            }
        )
        effect = self.effects.get(note or "")
        if effect is not None:
            effect()
        return CommandResult(command=command, returncode=self.statuses.get(note or "", 0), log_path=log_path)

    @property
    def notes(self) -> List[str | None]:
        return [call["note"] for call in self.calls]
