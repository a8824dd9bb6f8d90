"""
soarpy - a package manager for portable, self-contained binaries.

Installs, updates and removes single-file executables and AppImage-like
bundles published by remote repositories, and downloads ad-hoc assets from
URLs, GitHub/GitLab releases and OCI registries.

Modules:
- cli: Command-line interface entry point.
- operations: Operation facade used by the CLI.
- metadata_manager: Repository metadata syncing.
- db_manager: SQLite database interactions.
- config: Configuration management.
- downloader: Verified, resumable HTTP transfers.
- providers / filters: Asset discovery and selection.
- install / update / remove / health / run: Package lifecycle engines.
"""

from .cli import main

__all__ = ["main"]
