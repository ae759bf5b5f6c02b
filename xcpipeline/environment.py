"""Named fallback sources consulted when an option is not given explicitly."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Mapping
import os

from .config_loader import FIELD_NAMES, load_config_file
from .errors import ValidationError


ENVIRONMENT_NAMES: Dict[str, str] = {
    "action": "XCODE_ACTION",
    "build_path": "XCODE_BUILD_PATH",
    "configuration": "XCODE_CONFIG",
    "destination": "XCODE_DESTINATION",
    "platform": "XCODE_PLATFORM",
    "project": "XCODE_PROJECT",
    "scheme": "XCODE_SCHEME",
    "test_plan": "XCODE_TEST_PLAN",
    "test_products_path": "XCODE_TEST_PRODUCTS_PATH",
    "export_options_plist": "XCODE_EXPORT_OPTIONS_PLIST",
    "auth_key_path": "APP_STORE_CONNECT_API_KEY_PATH",
    "auth_key_id": "APP_STORE_CONNECT_API_KEY_ID",
    "auth_key_issuer": "APP_STORE_CONNECT_API_ISSUER_ID",
    "certificate": "DISTRIBUTION_CERTIFICATE",
    "certificate_password": "DISTRIBUTION_CERTIFICATE_PASSWORD",
    "profiles": "PROVISIONING_PROFILES",
    "temp_dir": "SIGNING_TEMP_DIR",
    "xcode_args": "OTHER_XCODE_ARGS",
    "archive_args": "OTHER_ARCHIVE_ARGS",
    "export_args": "OTHER_EXPORT_ARGS",
    "upload_args": "OTHER_UPLOAD_ARGS",
    "disable_formatter": "XCODE_DISABLE_FORMATTER",
}


class EnvironmentSource:
    """Reads fields from process environment variables via a fixed name mapping."""

    name = "environment"

    def __init__(
        self,
        environ: Mapping[str, str] | None = None,
        *,
        names: Mapping[str, str] = ENVIRONMENT_NAMES,
    ) -> None:
        self._environ = dict(environ) if environ is not None else dict(os.environ)
        self._names = dict(names)

    def variable_for(self, field: str) -> str | None:
        return self._names.get(field)

    def get(self, field: str) -> Any:
        variable = self._names.get(field)
        if variable is None:
            return None
        return self._environ.get(variable)


class FileSource:
    """Reads fields from a TOML, JSON or YAML file.

    The file either maps field names at its root or nests them under a
    ``pipeline`` table.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.name = str(path)
        data = load_config_file(path)
        section = data.get("pipeline", data)
        if not isinstance(section, Mapping):
            raise ValidationError(f"Configuration file '{path}' has a non-table 'pipeline' entry")
        unknown = sorted(str(key) for key in section if str(key) not in FIELD_NAMES)
        if unknown:
            raise ValidationError(
                f"Configuration file '{path}' contains unknown fields: {', '.join(unknown)}"
            )
        self._values: Dict[str, Any] = {str(key): value for key, value in section.items()}

    def get(self, field: str) -> Any:
        return self._values.get(field)
