"""patchkit CLI: Typer-based command-line interface.

Provides the ``patchkit`` command with subcommands for upgrading,
analyzing, rolling back, inspecting status and available versions,
nightly admission, the post-update version check, and detached health
monitoring.

All output uses Rich for formatted terminal display.
"""
