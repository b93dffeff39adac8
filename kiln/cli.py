"""
Main CLI for kiln.

Running `kiln` with no command builds the project in the current directory
(or the one given with -C). `kiln init <name>` scaffolds a new project.
"""

from __future__ import annotations

import argparse
import logging
import sys
import traceback

from kiln.core.errors import KilnError
from kiln.core.utils import log


# =============================================================================
# Version
# =============================================================================

__version__ = "0.1.0"


# =============================================================================
# Argument Parsing
# =============================================================================


def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog="kiln",
        description="Incremental build orchestrator for components and bundles",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  build       Build the project (default)
  init        Create a new project

Examples:
  kiln                         # Build the project in the current directory
  kiln -C site --debug         # Unminified build of ./site
  kiln init site               # Create ./site with an empty entry point
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "-C",
        dest="directory",
        metavar="PATH",
        help="Run as if kiln was started in PATH",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Debug build: no minification, runtime warnings (overrides debugMode)",
    )

    parser.add_argument(
        "--strict-maps",
        action="store_true",
        help="Fail the build if source maps cannot be merged",
    )

    parser.add_argument(
        "--jobs", "-j",
        type=int,
        metavar="N",
        help="Entry points built concurrently (default: one per CPU)",
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose debug output",
    )

    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        metavar="<command>",
    )

    subparsers.add_parser(
        "build",
        help="Build the project (default)",
        description="Compile components, bundle entry points and merge source maps.",
    )

    init_parser = subparsers.add_parser(
        "init",
        help="Create a new project",
        description="Create <name>/package.json and <name>/src/index.js.",
    )
    init_parser.add_argument(
        "name",
        help="Directory name of the new project",
    )

    return parser


# =============================================================================
# Command Dispatch
# =============================================================================


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.no_color:
        log.set_color(False)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    if args.jobs is not None and args.jobs < 1:
        parser.error("--jobs must be at least 1")

    try:
        if args.command == "init":
            from kiln.commands.init import cmd_init
            return cmd_init(args)

        from kiln.commands.build import cmd_build
        return cmd_build(args)

    except KeyboardInterrupt:
        log.warning("Interrupted")
        return 130
    except KilnError as e:
        log.error(str(e))
        return 1
    except Exception as e:
        log.error(f"Unexpected error: {e}")
        if args.verbose:
            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
