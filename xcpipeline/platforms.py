"""Closed mapping from Apple platform names to tool-specific tokens."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from .errors import UnsupportedPlatform


@dataclass(frozen=True, slots=True)
class PlatformInfo:
    name: str
    upload_type: str
    artifact_extension: str

    @property
    def generic_destination(self) -> str:
        return f"generic/platform={self.name}"


_PLATFORMS: Dict[str, PlatformInfo] = {
    "iOS": PlatformInfo(name="iOS", upload_type="ios", artifact_extension=".ipa"),
    "macOS": PlatformInfo(name="macOS", upload_type="macos", artifact_extension=".pkg"),
    "tvOS": PlatformInfo(name="tvOS", upload_type="appletvos", artifact_extension=".ipa"),
    "visionOS": PlatformInfo(name="visionOS", upload_type="visionos", artifact_extension=".ipa"),
}

SUPPORTED_PLATFORMS = tuple(_PLATFORMS)


def map_platform(value: str) -> PlatformInfo:
    """Return the platform entry for ``value`` or raise :class:`UnsupportedPlatform`."""
    info = _PLATFORMS.get(value)
    if info is None:
        raise UnsupportedPlatform(value, SUPPORTED_PLATFORMS)
    return info
