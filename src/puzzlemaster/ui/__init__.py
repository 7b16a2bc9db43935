"""UI package exports for the CLI and its plain-text renderer."""

from puzzlemaster.ui.cli import build_parser, main, run_cli
from puzzlemaster.ui.render import CLIRenderer, create_renderer

__all__ = [
    "CLIRenderer",
    "build_parser",
    "create_renderer",
    "main",
    "run_cli",
]
