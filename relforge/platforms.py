"""Host-dependent native libraries and feature flags."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterable, Mapping
import platform

from core.config_loader import normalize_string_list

from .errors import ConfigurationError


class HostOS(str, Enum):
    LINUX = "linux"
    MACOS = "macos"
    OTHER = "other"


def detect_host(system: str | None = None) -> HostOS:
    """Map ``platform.system()`` (or ``system``) onto a supported OS family."""
    name = (system if system is not None else platform.system()).lower()
    if name == "linux":
        return HostOS.LINUX
    if name == "darwin":
        return HostOS.MACOS
    return HostOS.OTHER


@dataclass(frozen=True, slots=True)
class PlatformProfile:
    host: HostOS
    native_libraries: frozenset[str]
    frameworks: frozenset[str] = frozenset()
    extra_features: frozenset[str] = frozenset()
    native_build_tools: frozenset[str] = field(default_factory=lambda: frozenset({"pkg-config"}))

    def to_mapping(self) -> dict[str, Any]:
        return {
            "host": self.host.value,
            "native_libraries": sorted(self.native_libraries),
            "frameworks": sorted(self.frameworks),
            "extra_features": sorted(self.extra_features),
            "native_build_tools": sorted(self.native_build_tools),
        }


BASELINE_LIBRARIES = frozenset({"openssl", "dbus", "sqlite"})

_PROFILES: dict[HostOS, PlatformProfile] = {
    HostOS.LINUX: PlatformProfile(host=HostOS.LINUX, native_libraries=BASELINE_LIBRARIES),
    HostOS.MACOS: PlatformProfile(
        host=HostOS.MACOS,
        native_libraries=BASELINE_LIBRARIES | {"libiconv"},
        frameworks=frozenset({"Security", "SystemConfiguration"}),
    ),
    HostOS.OTHER: PlatformProfile(host=HostOS.OTHER, native_libraries=BASELINE_LIBRARIES),
}


def profile_for(host: HostOS) -> PlatformProfile:
    """Return the built-in profile for ``host``; never fails."""
    return _PROFILES.get(host, _PROFILES[HostOS.OTHER])


def merge_profile(profile: PlatformProfile, overrides: Mapping[str, Any] | None) -> PlatformProfile:
    """Union configured additions (``[platforms.<host>]``) into ``profile``."""
    if not overrides:
        return profile

    def _extend(current: frozenset[str], key: str) -> frozenset[str]:
        try:
            values = normalize_string_list(overrides.get(key), field_name=f"platforms.{profile.host.value}.{key}")
        except TypeError as exc:
            raise ConfigurationError(str(exc)) from exc
        return current | frozenset(values)

    return replace(
        profile,
        native_libraries=_extend(profile.native_libraries, "native_libraries"),
        frameworks=_extend(profile.frameworks, "frameworks"),
        extra_features=_extend(profile.extra_features, "features"),
        native_build_tools=_extend(profile.native_build_tools, "native_build_tools"),
    )


class FeatureSet(frozenset):
    """Cargo feature flags compiled in on top of an empty default set."""

    @classmethod
    def resolve(cls, explicit: Iterable[str], profile: PlatformProfile) -> "FeatureSet":
        return cls({*explicit, *profile.extra_features})

    def render(self) -> str:
        return ",".join(sorted(self))
