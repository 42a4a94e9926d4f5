"""Reproducible build and release orchestration for a command-line binary."""
from __future__ import annotations

from .build import BuildArtifact, BuildEngine, BuildType
from .config_loader import ReleaseConfig
from .derive import ArtifactDeriver, DerivedArtifact, DerivedKind
from .lockfile import DependencyLock, resolve_lock
from .pipeline import ReleasePipeline
from .platforms import FeatureSet, HostOS, PlatformProfile, profile_for
from .source_filter import ExclusionPatternSet, SourceTree, filter_source
from .verify import VerificationResult, VerificationRunner


def main(argv=None) -> int:
    from .cli import main as cli_main

    return cli_main(argv)


__all__ = [
    "ArtifactDeriver",
    "BuildArtifact",
    "BuildEngine",
    "BuildType",
    "DependencyLock",
    "DerivedArtifact",
    "DerivedKind",
    "ExclusionPatternSet",
    "FeatureSet",
    "HostOS",
    "PlatformProfile",
    "ReleaseConfig",
    "ReleasePipeline",
    "SourceTree",
    "VerificationResult",
    "VerificationRunner",
    "filter_source",
    "main",
    "profile_for",
    "resolve_lock",
]
