"""Command-line surface for case-forge."""

from case_forge.ui.cli import CLIError, build_parser, run_cli

__all__ = ["CLIError", "build_parser", "run_cli"]
