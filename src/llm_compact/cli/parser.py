"""Argument parsing for the llm-compact CLI."""

import argparse
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from ..utils.config import Config


def parse_arguments(config_obj: "Config", argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        config_obj: Configuration object for defaults
        argv: Arguments to parse (defaults to ``sys.argv[1:]``)

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog="llm-compact",
        description="Compact long AI-assistant conversations and build structured overviews",
    )
    parser.add_argument("--verbose", action="store_true", help="Show INFO logs and the pipeline event tree")
    parser.add_argument("--debug", action="store_true", help="Show DEBUG logs and write a rotating debug log file")
    parser.add_argument(
        "--db-url",
        type=str,
        default=None,
        help=f"SQLAlchemy database URL (default: {config_obj.DATABASE_URL})",
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    compact = subparsers.add_parser("compact", help="Compact a transcript file")
    compact.add_argument("file", help="JSON transcript file")
    compact.add_argument("--workspace", type=str, default=None, help="Workspace id (overrides the file)")
    compact.add_argument("--conversation", type=str, default=None, help="Conversation id (overrides the file)")
    compact.add_argument("--title", type=str, default=None, help="Conversation title (overrides the file)")
    compact.add_argument(
        "--chunk-tokens",
        type=int,
        default=config_obj.CHUNK_TARGET_TOKENS,
        help=f"Target tokens per chunk (default: {config_obj.CHUNK_TARGET_TOKENS})",
    )
    compact.add_argument(
        "--map-concurrency",
        type=int,
        default=config_obj.MAP_CONCURRENCY,
        help="Concurrent map calls; 1 maps chunks sequentially in order (default: %(default)s)",
    )
    compact.add_argument("--suggest", action="store_true", help="Also suggest follow-up questions")

    overview = subparsers.add_parser("overview", help="Generate a structured overview of a transcript file")
    overview.add_argument("file", help="JSON transcript file")
    overview.add_argument("--no-diagrams", action="store_true", help="Skip diagram generation")
    overview.add_argument("--max-sections", type=int, default=None, help="Generate at most N sections")
    overview.add_argument(
        "--parallel",
        type=int,
        default=config_obj.SECTION_CONCURRENCY,
        help="Concurrent section generation calls (default: %(default)s)",
    )
    overview.add_argument(
        "--token-budget",
        type=int,
        default=config_obj.STRUCTURE_INPUT_TOKENS,
        help="Input token budget for the outline call (default: %(default)s)",
    )
    overview.add_argument("--resources", action="store_true", help="Also recommend learning resources")

    learnings = subparsers.add_parser("learnings", help="Extract reusable programming concepts from a transcript file")
    learnings.add_argument("file", help="JSON transcript file")

    resources = subparsers.add_parser("resources", help="Recommend learning resources for a transcript file")
    resources.add_argument("file", help="JSON transcript file")
    resources.add_argument("--more", action="store_true", help="Add to the stored resources instead of replacing them")

    session = subparsers.add_parser("session", help="Show a compaction session and its log")
    session.add_argument("session_id", help="Session id")

    result = subparsers.add_parser("result", help="Show the stored compaction of a conversation")
    result.add_argument("workspace_id")
    result.add_argument("conversation_id")

    subparsers.add_parser("providers", help="List credentialed providers and their default models")
    subparsers.add_parser("usage", help="Show recorded token usage and cost")

    config_set = subparsers.add_parser("config-set", help="Set a configuration value in the .env file")
    config_set.add_argument("key")
    config_set.add_argument("value")
    subparsers.add_parser("config-list", help="List the effective configuration")

    return parser.parse_args(argv)
