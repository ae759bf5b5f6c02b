"""Code signing setup: a temporary keychain plus installed provisioning profiles."""
from __future__ import annotations

from pathlib import Path
from typing import List, Tuple
import base64
import binascii
import logging
import secrets

from .config_loader import ResolvedConfig
from .errors import MissingRequiredField, ValidationError
from .pipeline import PipelineRun, StepFactory, StepOrchestrator
from .steps import StepKind, StepSpec

logger = logging.getLogger(__name__)

SECURITY = "security"
KEYCHAIN_LOCK_TIMEOUT = 3600
DEFAULT_PROFILES_DIR = Path("~/Library/MobileDevice/Provisioning Profiles")


def decode_blob(value: str, *, label: str) -> bytes:
    compact = "".join(value.split())
    try:
        return base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"Failed to decode {label}: {exc}") from exc


class SigningSetup:
    def __init__(
        self,
        config: ResolvedConfig,
        *,
        profiles_dir: Path | None = None,
        keychain_password: str | None = None,
        dry_run: bool = False,
    ) -> None:
        for name in ("certificate", "certificate_password", "profiles", "temp_dir"):
            if not getattr(config, name):
                raise MissingRequiredField(name)
        self._config = config
        self._temp_dir = Path(config.temp_dir)
        self._profiles_dir = (profiles_dir or DEFAULT_PROFILES_DIR).expanduser()
        self._keychain_password = keychain_password or secrets.token_urlsafe(32)
        self._dry_run = dry_run
        self._decoded_profiles: List[bytes] = []

    @property
    def certificate_path(self) -> Path:
        return self._temp_dir / "distribution.p12"

    @property
    def keychain_path(self) -> Path:
        return self._temp_dir / "build.keychain"

    @property
    def log_path(self) -> Path:
        return self._temp_dir / "signing.log"

    @property
    def masked_values(self) -> Tuple[str, ...]:
        return (self._keychain_password, self._config.certificate_password or "")

    def prepare(self) -> None:
        """Write the decoded certificate, replacing files left by an earlier run.

        Profiles are decoded here as well so a bad blob fails before any
        keychain command runs.
        """
        certificate = decode_blob(self._config.certificate or "", label="distribution certificate")
        self._decoded_profiles = [
            decode_blob(profile, label="provisioning profile") for profile in self._config.profiles
        ]
        self._temp_dir.mkdir(parents=True, exist_ok=True)
        for stale in (self.certificate_path, self.keychain_path):
            stale.unlink(missing_ok=True)
        logger.info("Setting up distribution certificate...")
        self.certificate_path.write_bytes(certificate)

    def _step(self, description: str, *args: str) -> StepSpec:
        return StepSpec(
            kind=StepKind.KEYCHAIN,
            description=description,
            command=(SECURITY, *args),
            log_path=self.log_path,
            secrets=self.masked_values,
        )

    def steps(self) -> List[StepFactory]:
        password = self._keychain_password
        keychain = str(self.keychain_path)
        specs = [
            self._step("Create keychain", "create-keychain", "-p", password, keychain),
            self._step(
                "Set keychain settings",
                "set-keychain-settings",
                "-lut",
                str(KEYCHAIN_LOCK_TIMEOUT),
                "-u",
                keychain,
            ),
            self._step("Unlock keychain", "unlock-keychain", "-p", password, keychain),
            self._step(
                "Import certificate",
                "import",
                str(self.certificate_path),
                "-k",
                keychain,
                "-P",
                self._config.certificate_password or "",
                "-A",
                "-t",
                "cert",
                "-f",
                "pkcs12",
            ),
            self._step(
                "Set key partition list",
                "set-key-partition-list",
                "-S",
                "apple-tool:,apple:",
                "-k",
                password,
                keychain,
            ),
            self._step("List keychain", "list-keychain", "-d", "user", "-s", keychain),
        ]
        return [lambda run, spec=spec: spec for spec in specs]

    def install_profiles(self) -> List[Path]:
        logger.info("Installing provisioning profiles...")
        self._profiles_dir.mkdir(parents=True, exist_ok=True)
        installed: List[Path] = []
        for payload in self._decoded_profiles:
            target = self._profiles_dir / f"profile_{secrets.token_hex(4)}.mobileprovision"
            logger.info("Installing profile %s", target.name)
            target.write_bytes(payload)
            installed.append(target)
        return installed

    def execute(self, orchestrator: StepOrchestrator) -> PipelineRun:
        if not self._dry_run:
            self.prepare()
        run = orchestrator.run(self.steps())
        if run.success and not self._dry_run:
            self.install_profiles()
            logger.info("Code signing setup completed successfully")
        return run
