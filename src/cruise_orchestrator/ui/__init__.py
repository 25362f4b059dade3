"""UI package exports for the CLI and terminal rendering."""

from cruise_orchestrator.ui.cli import CLIError, build_parser, main, run_cli
from cruise_orchestrator.ui.render import CLIRenderer, create_renderer

__all__ = [
    "CLIError",
    "CLIRenderer",
    "build_parser",
    "create_renderer",
    "main",
    "run_cli",
]
