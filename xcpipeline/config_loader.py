"""Configuration loading, precedence merging and validation."""
from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Protocol, Sequence, Tuple
import json
import shlex
import tomllib

import yaml

from .errors import MissingRequiredField, ValidationError
from .platforms import map_platform


ConfigLoader = Callable[[Any], Any]


_FILE_LOADERS: Dict[str, ConfigLoader] = {
    ".toml": lambda stream: tomllib.load(stream),
    ".json": lambda stream: json.load(stream),
    ".yaml": lambda stream: yaml.safe_load(stream),
    ".yml": lambda stream: yaml.safe_load(stream),
}


def load_config_file(path: Path) -> Mapping[str, Any]:
    suffix = path.suffix.lower()
    loader = _FILE_LOADERS.get(suffix)
    if loader is None:
        raise ValidationError(f"Unsupported configuration file extension: {suffix}")
    if not path.is_file():
        raise ValidationError(f"Configuration file not found: {path}")
    mode = "rb" if suffix == ".toml" else "r"
    kwargs: Dict[str, Any] = {}
    if mode == "r":
        kwargs["encoding"] = "utf-8"
    try:
        with path.open(mode, **kwargs) as handle:
            data = loader(handle)
    except (tomllib.TOMLDecodeError, json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ValidationError(f"Configuration file '{path}' could not be parsed: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValidationError(f"Configuration file '{path}' must contain a mapping at the root")
    return data


_STRING_FIELDS: Tuple[str, ...] = (
    "project",
    "scheme",
    "action",
    "configuration",
    "build_path",
    "destination",
    "platform",
    "test_plan",
    "test_products_path",
    "export_options_plist",
    "auth_key_path",
    "auth_key_id",
    "auth_key_issuer",
    "certificate",
    "certificate_password",
    "temp_dir",
)

# Passthrough flags are split like an unquoted shell expansion, profiles on whitespace.
_SHELL_LIST_FIELDS: Tuple[str, ...] = ("xcode_args", "archive_args", "export_args", "upload_args")
_WORD_LIST_FIELDS: Tuple[str, ...] = ("profiles",)
_BOOL_FIELDS: Tuple[str, ...] = ("disable_formatter",)

FIELD_NAMES: Tuple[str, ...] = (*_STRING_FIELDS, *_SHELL_LIST_FIELDS, *_WORD_LIST_FIELDS, *_BOOL_FIELDS)

_SECRET_FIELDS = frozenset({"certificate", "certificate_password", "profiles"})

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


class FallbackSource(Protocol):
    name: str

    def get(self, field: str) -> Any:
        ...


@dataclass(frozen=True, slots=True)
class ResolvedConfig:
    project: str | None = None
    scheme: str | None = None
    action: str | None = None
    configuration: str | None = None
    build_path: str | None = None
    destination: str | None = None
    platform: str | None = None
    test_plan: str | None = None
    test_products_path: str | None = None
    export_options_plist: str | None = None
    auth_key_path: str | None = None
    auth_key_id: str | None = None
    auth_key_issuer: str | None = None
    certificate: str | None = None
    certificate_password: str | None = None
    temp_dir: str | None = None
    profiles: Tuple[str, ...] = ()
    xcode_args: Tuple[str, ...] = ()
    archive_args: Tuple[str, ...] = ()
    export_args: Tuple[str, ...] = ()
    upload_args: Tuple[str, ...] = ()
    disable_formatter: bool = False
    generic_destination: str | None = None
    upload_platform: str | None = None
    artifact_extension: str | None = None

    @property
    def output_root(self) -> Path:
        return Path(self.build_path or ".build")

    def to_mapping(self, *, redact: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if value is None or value == ():
                continue
            if redact and item.name in _SECRET_FIELDS:
                value = "<redacted>"
            elif isinstance(value, tuple):
                value = list(value)
            data[item.name] = value
        return data

    def require(self, names: Iterable[str]) -> None:
        """Raise :class:`MissingRequiredField` for the first field in ``names`` left unset."""
        for name in names:
            if name not in FIELD_NAMES:
                raise ValueError(f"Unknown required field: {name}")
            if _is_unset(getattr(self, name)):
                raise MissingRequiredField(name)


def _is_unset(value: Any) -> bool:
    return value is None or value == "" or value == ()


def _normalize_string_list(value: Any, *, field_name: str, splitter: Callable[[str], List[str]]) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        try:
            return tuple(splitter(value))
        except ValueError as exc:
            raise ValidationError(f"{field_name} could not be split: {exc}") from exc
    if isinstance(value, Sequence):
        result: List[str] = []
        for item in value:
            if not isinstance(item, str):
                raise ValidationError(f"{field_name} entries must be strings")
            # List entries are passthrough values and are kept verbatim.
            if item:
                result.append(item)
        return tuple(result)
    raise ValidationError(f"{field_name} must be a string or sequence of strings")


def _normalize_bool(value: Any, *, field_name: str) -> bool | None:
    if value is None or isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if not text:
        return None
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ValidationError(f"{field_name} must be a boolean, got '{value}'")


def _normalize(field_name: str, value: Any) -> Any:
    if field_name in _SHELL_LIST_FIELDS:
        return _normalize_string_list(value, field_name=field_name, splitter=shlex.split)
    if field_name in _WORD_LIST_FIELDS:
        return _normalize_string_list(value, field_name=field_name, splitter=str.split)
    if field_name in _BOOL_FIELDS:
        return _normalize_bool(value, field_name=field_name)
    if value is None:
        return None
    if isinstance(value, (Mapping, list, tuple)):
        raise ValidationError(f"{field_name} must be a scalar value")
    return str(value).strip()


def _reject_unknown(values: Mapping[str, Any], *, origin: str) -> None:
    unknown = sorted(str(key) for key in values if key not in FIELD_NAMES)
    if unknown:
        raise ValidationError(f"Unknown configuration fields in {origin}: {', '.join(unknown)}")


def resolve(
    explicit: Mapping[str, Any] | None,
    sources: Iterable[FallbackSource] = (),
    defaults: Mapping[str, Any] | None = None,
    *,
    required: Sequence[str] = (),
) -> ResolvedConfig:
    """Merge explicit options, fallback sources and builtin defaults.

    Explicit options win over every fallback source, which in turn win over
    the builtin defaults. Empty values count as unset at every layer. The
    fields named in ``required`` are checked in order and the first one left
    unset raises :class:`MissingRequiredField`.
    """

    explicit = explicit or {}
    defaults = defaults or {}
    _reject_unknown(explicit, origin="explicit options")
    _reject_unknown(defaults, origin="builtin defaults")
    for name in required:
        if name not in FIELD_NAMES:
            raise ValueError(f"Unknown required field: {name}")
    source_list = list(sources)

    values: Dict[str, Any] = {}
    for name in FIELD_NAMES:
        value = _normalize(name, explicit.get(name))
        if _is_unset(value):
            for source in source_list:
                value = _normalize(name, source.get(name))
                if not _is_unset(value):
                    break
        if _is_unset(value):
            value = _normalize(name, defaults.get(name))
        if not _is_unset(value):
            values[name] = value

    platform = values.get("platform")
    if platform:
        info = map_platform(platform)
        values["generic_destination"] = info.generic_destination
        values["upload_platform"] = info.upload_type
        values["artifact_extension"] = info.artifact_extension

    config = ResolvedConfig(**values)
    config.require(required)
    return config
