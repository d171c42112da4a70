"""Command-line surface: argparse router and output rendering."""

from agent_foreman.ui.cli import CLIError, build_parser, run_cli
from agent_foreman.ui.render import CLIRenderer, create_renderer

__all__ = ["CLIError", "CLIRenderer", "build_parser", "create_renderer", "run_cli"]
