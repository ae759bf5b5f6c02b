from __future__ import annotations

from pathlib import Path
import sys
import tempfile
import textwrap
import unittest
from unittest.mock import patch

from xcpipeline.command_runner import RecordingCommandRunner, SubprocessCommandRunner
from xcpipeline.executor import PipedExecutor, PostProcessor
from xcpipeline.steps import StepKind, StepSpec


def _python(code: str) -> tuple:
    return (sys.executable, "-c", textwrap.dedent(code))


class _FailingLog:
    """Stands in for a log file on a full disk."""

    def write(self, data: bytes) -> int:
        raise OSError(28, "No space left on device")

    def close(self) -> None:
        pass


class PipedExecutorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.log_path = self.root / "logs" / "App_build.log"
        self.executor = PipedExecutor(SubprocessCommandRunner())

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _step(self, command: tuple, **kwargs) -> StepSpec:
        return StepSpec(
            kind=kwargs.pop("kind", StepKind.BUILD),
            description="Build",
            command=command,
            log_path=self.log_path,
            **kwargs,
        )

    def test_success_writes_combined_log(self) -> None:
        step = self._step(
            _python(
                """
                import sys
                print("to stdout", flush=True)
                print("to stderr", file=sys.stderr, flush=True)
                """
            )
        )
        with patch.object(SubprocessCommandRunner, "_echo"):
            result = self.executor.run(step, self.log_path)
        self.assertEqual(result.status, 0)
        self.assertTrue(result.success)
        self.assertEqual(result.log_path, self.log_path)
        content = self.log_path.read_text()
        self.assertIn("to stdout", content)
        self.assertIn("to stderr", content)

    def test_primary_status_reported(self) -> None:
        step = self._step(_python("import sys; print('boom'); sys.exit(65)"))
        with patch.object(SubprocessCommandRunner, "_echo"):
            result = self.executor.run(step, self.log_path)
        self.assertEqual(result.status, 65)
        self.assertFalse(result.success)
        self.assertIn("boom", self.log_path.read_text())

    def test_post_processor_failure_does_not_change_status(self) -> None:
        step = self._step(_python("print('hello')"))
        formatter = PostProcessor(
            name="formatter",
            command=_python("import sys; sys.stdin.read(); sys.exit(7)"),
        )
        result = self.executor.run(step, self.log_path, [formatter])
        self.assertEqual(result.status, 0)
        self.assertIn("hello", self.log_path.read_text())

    def test_primary_failure_survives_successful_post_processor(self) -> None:
        step = self._step(_python("import sys; print('x'); sys.exit(3)"))
        formatter = PostProcessor(name="cat", command=_python("import sys; sys.stdin.read()"))
        result = self.executor.run(step, self.log_path, [formatter])
        self.assertEqual(result.status, 3)

    def test_post_processor_exiting_early_does_not_block_primary(self) -> None:
        step = self._step(
            _python(
                """
                import sys
                for index in range(20000):
                    sys.stdout.write("line %d of build output\\n" % index)
                """
            )
        )
        formatter = PostProcessor(name="quitter", command=_python("import sys; sys.exit(7)"))
        result = self.executor.run(step, self.log_path, [formatter])
        self.assertEqual(result.status, 0)
        self.assertIn("line 19999 of build output", self.log_path.read_text())

    def test_post_processors_are_chained(self) -> None:
        marker = self.root / "seen.txt"
        upper = PostProcessor(name="upper", command=_python("import sys; sys.stdout.write(sys.stdin.read().upper())"))
        sink = PostProcessor(
            name="sink",
            command=_python(f"import sys; open({str(marker)!r}, 'w').write(sys.stdin.read())"),
        )
        step = self._step(_python("print('quiet')"))
        result = self.executor.run(step, self.log_path, [upper, sink])
        self.assertEqual(result.status, 0)
        self.assertEqual(marker.read_text().strip(), "QUIET")
        self.assertEqual(self.log_path.read_text().strip(), "quiet")

    def test_log_write_failure_does_not_change_status(self) -> None:
        step = self._step(_python("import sys; print('output'); sys.exit(0)"))
        with patch.object(SubprocessCommandRunner, "_open_log", return_value=_FailingLog()), patch.object(
            SubprocessCommandRunner, "_echo"
        ):
            result = self.executor.run(step, self.log_path)
        self.assertEqual(result.status, 0)
        self.assertFalse(result.log_complete)

    def test_log_write_failure_keeps_failure_status(self) -> None:
        step = self._step(_python("import sys; print('output'); sys.exit(2)"))
        with patch.object(SubprocessCommandRunner, "_open_log", return_value=_FailingLog()), patch.object(
            SubprocessCommandRunner, "_echo"
        ):
            result = self.executor.run(step, self.log_path)
        self.assertEqual(result.status, 2)

    def test_missing_program_reports_not_found(self) -> None:
        step = self._step(("definitely-not-a-real-tool-xyz", "--version"))
        result = self.executor.run(step, self.log_path)
        self.assertEqual(result.status, 127)
        self.assertIn("definitely-not-a-real-tool-xyz", self.log_path.read_text())

    def test_missing_post_processor_is_skipped(self) -> None:
        step = self._step(_python("print('still runs')"))
        formatter = PostProcessor(name="ghost", command=("definitely-not-a-formatter-xyz",))
        with patch.object(SubprocessCommandRunner, "_echo"):
            result = self.executor.run(step, self.log_path, [formatter])
        self.assertEqual(result.status, 0)
        self.assertIn("still runs", self.log_path.read_text())

    def test_append_mode_keeps_previous_output(self) -> None:
        with patch.object(SubprocessCommandRunner, "_echo"):
            self.executor.run(self._step(_python("print('first')")), self.log_path)
            self.executor.run(self._step(_python("print('second')")), self.log_path, append=True)
        self.assertEqual(self.log_path.read_text().split(), ["first", "second"])

    def test_truncate_mode_replaces_previous_output(self) -> None:
        with patch.object(SubprocessCommandRunner, "_echo"):
            self.executor.run(self._step(_python("print('first')")), self.log_path)
            self.executor.run(self._step(_python("print('second')")), self.log_path)
        self.assertEqual(self.log_path.read_text().split(), ["second"])

    def test_stale_outputs_removed_and_directories_created(self) -> None:
        stale_bundle = self.root / "App_build.xcresult"
        (stale_bundle / "Data").mkdir(parents=True)
        (stale_bundle / "Data" / "old").write_text("old")
        stale_file = self.root / "Info.plist"
        stale_file.write_text("old")
        derived = self.root / "DerivedData"
        check = _python(
            f"""
            import os, sys
            sys.exit(1 if os.path.exists({str(stale_bundle)!r}) or os.path.exists({str(stale_file)!r}) else 0)
            """
        )
        step = self._step(check, clean_paths=(stale_bundle, stale_file, self.root / "absent"), directories=(derived,))
        with patch.object(SubprocessCommandRunner, "_echo"):
            result = self.executor.run(step, self.log_path)
        self.assertEqual(result.status, 0)
        self.assertTrue(derived.is_dir())
        self.assertTrue(self.log_path.parent.is_dir())

    def test_step_environment_and_cwd_passed_through(self) -> None:
        step = self._step(
            _python("import os; print(os.environ['PIPELINE_MARKER']); print(os.getcwd())"),
            env={"PIPELINE_MARKER": "marker-value"},
            cwd=self.root,
        )
        with patch.object(SubprocessCommandRunner, "_echo"):
            self.executor.run(step, self.log_path)
        content = self.log_path.read_text()
        self.assertIn("marker-value", content)
        self.assertIn(str(self.root.resolve()), str(Path(content.split()[-1]).resolve()))


class DryRunExecutorTests(unittest.TestCase):
    def test_dry_run_records_without_touching_disk(self) -> None:
        with tempfile.TemporaryDirectory() as temp:
            root = Path(temp)
            stale = root / "App.xcarchive"
            stale.mkdir()
            runner = RecordingCommandRunner()
            executor = PipedExecutor(runner, dry_run=True)
            step = StepSpec(
                kind=StepKind.ARCHIVE,
                description="Archive",
                command=("xcodebuild", "archive"),
                log_path=root / "logs" / "App_archive.log",
                clean_paths=(stale,),
                directories=(root / "DerivedData",),
            )
            result = executor.run(step, step.log_path, [PostProcessor(name="fmt", command=("fmt",))])
            self.assertTrue(result.success)
            self.assertTrue(stale.exists())
            self.assertFalse((root / "logs").exists())
            self.assertFalse((root / "DerivedData").exists())
            recorded = runner.commands[0]
            self.assertEqual(recorded.command, ["xcodebuild", "archive"])
            self.assertEqual(recorded.post_processors, [["fmt"]])
            self.assertFalse(recorded.append)

    def test_formatted_output_masks_secrets(self) -> None:
        runner = RecordingCommandRunner()
        runner.run(["security", "unlock-keychain", "-p", "hunter2", "build.keychain"], log_path=Path("signing.log"), append=True)
        lines = list(runner.iter_formatted(secrets=["hunter2"]))
        self.assertEqual(lines, ["[dry-run] security unlock-keychain -p **** build.keychain >> signing.log"])


class PostProcessorDiscoveryTests(unittest.TestCase):
    def test_discover_returns_none_when_absent(self) -> None:
        with patch("xcpipeline.executor.shutil.which", return_value=None):
            self.assertIsNone(PostProcessor.discover("xcbeautify"))

    def test_discover_uses_resolved_executable(self) -> None:
        with patch("xcpipeline.executor.shutil.which", return_value="/opt/bin/xcbeautify"):
            processor = PostProcessor.discover("xcbeautify", "--quiet")
        self.assertEqual(processor.command, ("/opt/bin/xcbeautify", "--quiet"))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
