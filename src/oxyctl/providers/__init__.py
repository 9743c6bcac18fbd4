"""Provider interfaces for oxyctl."""
from __future__ import annotations

from .git import GitError, GitProvider
from .toolchain import ToolchainProvider, ToolVersion, parse_release

__all__ = [
    "GitError",
    "GitProvider",
    "ToolVersion",
    "ToolchainProvider",
    "parse_release",
]
