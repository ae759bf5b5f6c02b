"""Renders tool invocations for each pipeline step from a resolved configuration."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Sequence, Tuple

from .config_loader import ResolvedConfig
from .errors import InsufficientInputs, MissingRequiredField, ValidationError


XCODEBUILD = "xcodebuild"
PLIST_BUDDY = "/usr/libexec/PlistBuddy"


class StepKind(str, Enum):
    BUILD = "build"
    BUILD_FOR_TESTING = "build-for-testing"
    TEST = "test"
    TEST_WITHOUT_BUILDING = "test-without-building"
    ARCHIVE = "archive"
    EXPORT = "export"
    UPLOAD = "upload"
    MERGE_PLIST = "merge-plist"
    KEYCHAIN = "keychain"

    @property
    def formattable(self) -> bool:
        return self in _FORMATTABLE_KINDS

    @property
    def label(self) -> str:
        return self.value.replace("-", " ").capitalize()

    @classmethod
    def from_action(cls, value: str) -> "StepKind":
        for kind in BUILD_ACTIONS:
            if kind.value == value:
                return kind
        choices = ", ".join(kind.value for kind in BUILD_ACTIONS)
        raise ValidationError(f"Action must be one of: {choices} (got '{value}')")


BUILD_ACTIONS: Tuple[StepKind, ...] = (
    StepKind.BUILD,
    StepKind.BUILD_FOR_TESTING,
    StepKind.TEST,
    StepKind.TEST_WITHOUT_BUILDING,
)

_FORMATTABLE_KINDS = frozenset({*BUILD_ACTIONS, StepKind.ARCHIVE})


@dataclass(frozen=True, slots=True)
class StepContext:
    """Values produced by earlier steps, or given by the caller, for one step."""

    archive_path: Path | None = None
    artifact_path: Path | None = None
    output: Path | None = None
    inputs: Tuple[Path, ...] = ()


@dataclass(frozen=True, slots=True)
class StepSpec:
    kind: StepKind
    description: str
    command: Tuple[str, ...]
    log_path: Path
    cwd: Path | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    directories: Tuple[Path, ...] = ()
    clean_paths: Tuple[Path, ...] = ()
    artifacts: Tuple[Path, ...] = ()
    secrets: Tuple[str, ...] = ()

    @property
    def program(self) -> str:
        return self.command[0]

    @property
    def arguments(self) -> Tuple[str, ...]:
        return self.command[1:]


class CommandBuilder:
    """Builds :class:`StepSpec` values for one resolved configuration.

    Output layout under the resolved build path::

        DerivedData/                 intermediate build products
        SwiftPM/                     package cache
        <scheme>.xcarchive/          archive, exported products in Products/
        <scheme>_<action>.xcresult   result bundle of build and test actions
        <scheme>_<action>.log        combined output of each step
    """

    def __init__(self, config: ResolvedConfig) -> None:
        self._config = config
        self._builders: Dict[StepKind, Callable[[StepKind, StepContext], StepSpec]] = {
            StepKind.BUILD: self._build_test_step,
            StepKind.BUILD_FOR_TESTING: self._build_test_step,
            StepKind.TEST: self._build_test_step,
            StepKind.TEST_WITHOUT_BUILDING: self._build_test_step,
            StepKind.ARCHIVE: self._archive_step,
            StepKind.EXPORT: self._export_step,
            StepKind.UPLOAD: self._upload_step,
            StepKind.MERGE_PLIST: self._merge_step,
        }

    @property
    def config(self) -> ResolvedConfig:
        return self._config

    @property
    def output_root(self) -> Path:
        return self._config.output_root

    @property
    def derived_data_path(self) -> Path:
        return self.output_root / "DerivedData"

    @property
    def package_cache_path(self) -> Path:
        return (self.output_root / "SwiftPM").absolute()

    @property
    def archive_path(self) -> Path:
        return self.output_root / f"{self._require('scheme')}.xcarchive"

    def products_path(self, archive_path: Path | None = None) -> Path:
        return (archive_path or self.archive_path) / "Products"

    def result_bundle_path(self, action: str) -> Path:
        return self.output_root / f"{self._output_name()}_{action}.xcresult"

    def log_path(self, action: str) -> Path:
        return self.output_root / f"{self._output_name()}_{action}.log"

    def build(self, kind: StepKind, context: StepContext | None = None) -> StepSpec:
        builder = self._builders.get(kind)
        if builder is None:
            raise ValueError(f"No command builder for step kind '{kind.value}'")
        return builder(kind, context or StepContext())

    def _require(self, name: str) -> str:
        value = getattr(self._config, name)
        if not value:
            raise MissingRequiredField(name)
        return value

    def _output_name(self) -> str:
        if self._config.scheme:
            return self._config.scheme
        if self._config.test_products_path:
            return Path(self._config.test_products_path).stem
        raise MissingRequiredField("scheme")

    def _auth_key_locations(self) -> Tuple[str, str]:
        """Return the key file handed to xcodebuild and the directory altool searches."""
        key_path = Path(self._require("auth_key_path"))
        if key_path.suffix == ".p8":
            return str(key_path), str(key_path.parent)
        key_id = self._require("auth_key_id")
        return str(key_path / f"AuthKey_{key_id}.p8"), str(key_path)

    def _auth_args(self) -> List[str]:
        key_file, _ = self._auth_key_locations()
        return [
            "-authenticationKeyPath",
            key_file,
            "-authenticationKeyID",
            self._require("auth_key_id"),
            "-authenticationKeyIssuerID",
            self._require("auth_key_issuer"),
        ]

    def _build_test_step(self, kind: StepKind, context: StepContext) -> StepSpec:
        config = self._config
        prebuilt = kind is StepKind.TEST_WITHOUT_BUILDING and bool(config.test_products_path)
        result_bundle = self.result_bundle_path(kind.value)

        args: List[str] = [XCODEBUILD, kind.value, "-disableAutomaticPackageResolution"]
        if prebuilt:
            args.extend(["-testProductsPath", str(config.test_products_path)])
        else:
            if config.project:
                args.extend(["-project", config.project])
            args.extend(["-scheme", self._require("scheme")])
        args.extend(["-destination", self._require("destination")])
        args.extend(["-resultBundlePath", str(result_bundle)])
        args.extend(["-derivedDataPath", str(self.derived_data_path)])
        args.extend(["-packageCachePath", str(self.package_cache_path)])
        if not prebuilt:
            args.extend(["-configuration", self._require("configuration")])
            if kind is StepKind.TEST and config.test_plan:
                args.extend(["-testPlan", config.test_plan])
        args.extend(config.xcode_args)

        return StepSpec(
            kind=kind,
            description=kind.label,
            command=tuple(args),
            log_path=self.log_path(kind.value),
            directories=(self.output_root, self.derived_data_path, self.package_cache_path),
            clean_paths=(result_bundle,),
            artifacts=(result_bundle,),
        )

    def _archive_step(self, kind: StepKind, context: StepContext) -> StepSpec:
        config = self._config
        archive_path = context.archive_path or self.archive_path
        destination = config.generic_destination
        if not destination:
            raise MissingRequiredField("platform")

        args: List[str] = [
            XCODEBUILD,
            "archive",
            "-project",
            self._require("project"),
            "-scheme",
            self._require("scheme"),
            "-destination",
            destination,
            "-derivedDataPath",
            str(self.derived_data_path),
            "-packageCachePath",
            str(self.package_cache_path),
            "-archivePath",
            str(archive_path),
            "-configuration",
            self._require("configuration"),
        ]
        args.extend(self._auth_args())
        args.extend(config.archive_args)

        return StepSpec(
            kind=kind,
            description="Archive",
            command=tuple(args),
            log_path=self.log_path("archive"),
            directories=(self.output_root, self.derived_data_path, self.package_cache_path),
            clean_paths=(archive_path,),
            artifacts=(archive_path,),
        )

    def _export_step(self, kind: StepKind, context: StepContext) -> StepSpec:
        archive_path = context.archive_path or self.archive_path
        export_path = self.products_path(archive_path)

        args: List[str] = [
            XCODEBUILD,
            "-exportArchive",
            "-archivePath",
            str(archive_path),
            "-exportOptionsPlist",
            self._require("export_options_plist"),
            "-exportPath",
            str(export_path),
        ]
        args.extend(self._auth_args())
        args.extend(self._config.export_args)

        return StepSpec(
            kind=kind,
            description="Export",
            command=tuple(args),
            log_path=self.log_path("export"),
            artifacts=(export_path,),
        )

    def _upload_step(self, kind: StepKind, context: StepContext) -> StepSpec:
        if context.artifact_path is None:
            raise ValidationError("Upload step requires the path of an exported artifact")
        upload_type = self._config.upload_platform
        if not upload_type:
            raise MissingRequiredField("platform")
        _, key_dir = self._auth_key_locations()

        args: List[str] = [
            "xcrun",
            "altool",
            "--upload-app",
            "--type",
            upload_type,
            "--file",
            str(context.artifact_path),
            "--apiKey",
            self._require("auth_key_id"),
            "--apiIssuer",
            self._require("auth_key_issuer"),
            "-API_PRIVATE_KEYS_DIR",
            key_dir,
        ]
        args.extend(self._config.upload_args)

        return StepSpec(
            kind=kind,
            description="Upload",
            command=tuple(args),
            log_path=self.log_path("upload"),
        )

    def _merge_step(self, kind: StepKind, context: StepContext) -> StepSpec:
        inputs: Sequence[Path] = context.inputs
        if len(inputs) < 2:
            raise InsufficientInputs(len(inputs))
        if context.output is None:
            raise ValidationError("Merge step requires an output path")

        args: List[str] = [PLIST_BUDDY]
        for path in inputs:
            args.extend(["-c", f"Merge '{path}'"])
        args.append(str(context.output))

        return StepSpec(
            kind=kind,
            description="Merge plists",
            command=tuple(args),
            log_path=self.output_root / f"{context.output.stem}_merge.log",
            clean_paths=(context.output,),
            artifacts=(context.output,),
        )
