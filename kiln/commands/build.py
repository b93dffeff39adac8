"""
`kiln` build command.

Loads the project configuration, applies command-line overrides and runs
the orchestrator with the default capabilities.
"""

from __future__ import annotations

import argparse
from pathlib import Path

from kiln.build.capabilities import default_capabilities
from kiln.build.config import load_config
from kiln.build.orchestrator import BuildOrchestrator
from kiln.core.errors import BuildFailed
from kiln.core.utils import log


def cmd_build(args: argparse.Namespace) -> int:
    """Handle a build run."""
    project_root = Path(args.directory or ".").resolve()

    config = load_config(
        project_root,
        debug_mode=True if args.debug else None,
        strict_source_maps=True if args.strict_maps else None,
        verbose=args.verbose,
    )
    if args.jobs:
        config.jobs = args.jobs

    orchestrator = BuildOrchestrator(config, default_capabilities(config.project_root))
    try:
        orchestrator.run()
    except BuildFailed as e:
        log.header("BUILD FAILED")
        for name, error in sorted(e.failures.items()):
            log.error(f"{name}: {error}")
        return 1

    log.success("Done!")
    return 0
