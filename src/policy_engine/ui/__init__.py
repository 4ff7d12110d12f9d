"""Command-line surface for policy-engine."""

from policy_engine.ui.cli import CLIError, build_parser, run_cli

__all__ = ["CLIError", "build_parser", "run_cli"]
