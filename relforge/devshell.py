"""Developer environment description and availability report."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List
import shutil

from .config_loader import DevShellSettings


@dataclass(frozen=True, slots=True)
class ToolInvocation:
    name: str
    command: str
    purpose: str
    required: bool
    available: bool


_TOOL_PURPOSES = {
    "cargo-deny": "dependency license and advisory linter",
    "cargo-insta": "snapshot test review",
    "cargo-nextest": "parallel test runner",
    "cargo-watch": "rebuild on file changes",
    "openssl": "TLS backend headers and libraries",
    "pkg-config": "locates native libraries",
}

# Tools shipped as cargo subcommands are invoked as ``cargo <suffix>``.
_CARGO_SUBCOMMAND_PREFIX = "cargo-"


def _command_for(tool: str) -> str:
    if tool.startswith(_CARGO_SUBCOMMAND_PREFIX):
        return f"cargo {tool[len(_CARGO_SUBCOMMAND_PREFIX):]}"
    return tool


def toolchain_components(spec: DevShellSettings) -> List[ToolInvocation]:
    """The pinned toolchain entries, before availability is known."""
    entries = [
        ToolInvocation("cargo", "cargo", f"Rust {spec.toolchain} ({spec.profile} profile)", True, False),
        ToolInvocation("rustc", "rustc", f"Rust {spec.toolchain} compiler", True, False),
    ]
    if "clippy" in spec.extensions:
        entries.append(ToolInvocation("cargo-clippy", "cargo clippy", "lints", True, False))
    if "rust-src" in spec.extensions:
        entries.append(ToolInvocation("rust-src", "rustc --print sysroot", "sources for rust-analyzer", False, False))
    if spec.nightly_rustfmt:
        entries.append(ToolInvocation("rustfmt", "cargo +nightly fmt", "nightly formatter used by CI", False, False))
    return entries


def provision(spec: DevShellSettings, *, which: Callable[[str], str | None] = shutil.which) -> List[ToolInvocation]:
    """Resolve the dev shell into tool invocations and mark what is on PATH."""

    entries = toolchain_components(spec)
    for dependency in spec.build_dependencies:
        entries.append(ToolInvocation(dependency, dependency, _TOOL_PURPOSES.get(dependency, "build dependency"), True, False))
    for tool in spec.tools:
        entries.append(ToolInvocation(tool, _command_for(tool), _TOOL_PURPOSES.get(tool, "developer tool"), False, False))

    resolved: List[ToolInvocation] = []
    for entry in entries:
        executable = "rustc" if entry.name == "rust-src" else entry.name
        available = which(executable) is not None
        resolved.append(
            ToolInvocation(entry.name, entry.command, entry.purpose, entry.required, available)
        )
    return resolved


def install_commands(spec: DevShellSettings) -> List[str]:
    """``rustup``/``cargo install`` commands that would reproduce the shell."""
    commands = [
        f"rustup toolchain install {spec.toolchain} --profile {spec.profile}"
        + "".join(f" --component {extension}" for extension in spec.extensions)
    ]
    if spec.nightly_rustfmt:
        commands.append("rustup toolchain install nightly --profile minimal --component rustfmt")
    for tool in spec.tools:
        commands.append(f"cargo install --locked {tool}")
    return commands
