from __future__ import annotations

from pathlib import Path
import base64
import tempfile
import unittest

from xcpipeline.command_runner import RecordingCommandRunner
from xcpipeline.config_loader import resolve
from xcpipeline.errors import MissingRequiredField, ValidationError
from xcpipeline.executor import PipedExecutor
from xcpipeline.pipeline import PipelineRun, StepOrchestrator
from xcpipeline.signing import SigningSetup, decode_blob

from support import ScriptedCommandRunner


CERTIFICATE = b"\x30\x82certificate-bytes"
PROFILE_A = b"<plist>profile-a</plist>"
PROFILE_B = b"<plist>profile-b</plist>"


def _encode(payload: bytes) -> str:
    return base64.b64encode(payload).decode("ascii")


class SigningSetupTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.work = self.root / "signing"
        self.profiles_dir = self.root / "profiles"

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _setup(self, **overrides) -> SigningSetup:
        explicit = {
            "certificate": _encode(CERTIFICATE),
            "certificate_password": "p12-secret",
            "profiles": [_encode(PROFILE_A), _encode(PROFILE_B)],
            "temp_dir": str(self.work),
        }
        explicit.update(overrides)
        return SigningSetup(
            resolve(explicit, [], {}),
            profiles_dir=self.profiles_dir,
            keychain_password="keychain-secret",
        )

    def test_keychain_commands(self) -> None:
        setup = self._setup()
        specs = [factory(PipelineRun()) for factory in setup.steps()]
        keychain = str(self.work / "build.keychain")
        self.assertEqual(
            [spec.command[1] for spec in specs],
            [
                "create-keychain",
                "set-keychain-settings",
                "unlock-keychain",
                "import",
                "set-key-partition-list",
                "list-keychain",
            ],
        )
        self.assertTrue(all(spec.command[0] == "security" for spec in specs))
        self.assertTrue(all(spec.command[-1] == keychain for spec in specs if spec.command[1] != "import"))
        self.assertEqual(specs[1].command[2:5], ("-lut", "3600", "-u"))
        self.assertIn("apple-tool:,apple:", specs[4].command)
        self.assertEqual(specs[3].command[specs[3].command.index("-P") + 1], "p12-secret")
        self.assertEqual(specs[3].command[2], str(self.work / "distribution.p12"))
        self.assertTrue(all(spec.log_path == self.work / "signing.log" for spec in specs))

    def test_secrets_are_masked(self) -> None:
        setup = self._setup()
        runner = RecordingCommandRunner()
        StepOrchestrator(PipedExecutor(runner, dry_run=True)).run(setup.steps())
        output = "\n".join(runner.iter_formatted(secrets=setup.masked_values))
        self.assertNotIn("keychain-secret", output)
        self.assertNotIn("p12-secret", output)
        self.assertIn("****", output)

    def test_prepare_writes_decoded_certificate(self) -> None:
        self.work.mkdir()
        (self.work / "build.keychain").write_bytes(b"stale")
        setup = self._setup()
        setup.prepare()
        self.assertEqual((self.work / "distribution.p12").read_bytes(), CERTIFICATE)
        self.assertFalse((self.work / "build.keychain").exists())

    def test_execute_installs_profiles_after_success(self) -> None:
        setup = self._setup()
        runner = ScriptedCommandRunner()
        run = setup.execute(StepOrchestrator(PipedExecutor(runner)))
        self.assertTrue(run.success)
        self.assertEqual(len(runner.calls), 6)
        installed = sorted(self.profiles_dir.glob("profile_*.mobileprovision"))
        self.assertEqual(len(installed), 2)
        self.assertEqual(sorted(path.read_bytes() for path in installed), sorted([PROFILE_A, PROFILE_B]))

    def test_failed_keychain_step_skips_profiles(self) -> None:
        setup = self._setup()
        runner = ScriptedCommandRunner(statuses={"Import certificate": 1})
        run = setup.execute(StepOrchestrator(PipedExecutor(runner)))
        self.assertFalse(run.success)
        self.assertEqual(run.exit_status, 1)
        self.assertEqual(len(runner.calls), 4)
        self.assertFalse(self.profiles_dir.exists())

    def test_invalid_certificate_fails_before_commands(self) -> None:
        setup = self._setup(certificate="not base64!!")
        runner = ScriptedCommandRunner()
        with self.assertRaises(ValidationError):
            setup.execute(StepOrchestrator(PipedExecutor(runner)))
        self.assertEqual(runner.calls, [])

    def test_invalid_profile_fails_before_commands(self) -> None:
        setup = self._setup(profiles=[_encode(PROFILE_A), "%%%"])
        runner = ScriptedCommandRunner()
        with self.assertRaises(ValidationError):
            setup.execute(StepOrchestrator(PipedExecutor(runner)))
        self.assertEqual(runner.calls, [])

    def test_dry_run_touches_nothing(self) -> None:
        config = resolve(
            {
                "certificate": _encode(CERTIFICATE),
                "certificate_password": "p12-secret",
                "profiles": [_encode(PROFILE_A)],
                "temp_dir": str(self.work),
            },
            [],
            {},
        )
        setup = SigningSetup(config, profiles_dir=self.profiles_dir, dry_run=True)
        runner = RecordingCommandRunner()
        run = setup.execute(StepOrchestrator(PipedExecutor(runner, dry_run=True)))
        self.assertTrue(run.success)
        self.assertEqual(len(runner.commands), 6)
        self.assertFalse(self.work.exists())
        self.assertFalse(self.profiles_dir.exists())

    def test_missing_password_rejected(self) -> None:
        config = resolve({"certificate": _encode(CERTIFICATE), "temp_dir": str(self.work)}, [], {})
        with self.assertRaises(MissingRequiredField) as ctx:
            SigningSetup(config)
        self.assertEqual(ctx.exception.field, "certificate_password")


class DecodeBlobTests(unittest.TestCase):
    def test_whitespace_is_ignored(self) -> None:
        encoded = _encode(PROFILE_A)
        wrapped = "\n".join(encoded[index : index + 8] for index in range(0, len(encoded), 8))
        self.assertEqual(decode_blob(wrapped, label="profile"), PROFILE_A)

    def test_invalid_input_names_the_blob(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            decode_blob("abc", label="provisioning profile")
        self.assertIn("provisioning profile", str(ctx.exception))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
