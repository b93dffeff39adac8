"""
Project scaffolding for kiln.

`kiln init <name>` creates a minimal project: a source directory with an
empty entry module and a package.json declaring it as the only entry point.
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path

from kiln.build.config import MANIFEST_FILE, MANIFEST_KEY
from kiln.core.errors import FilesystemError
from kiln.core.utils import log

ENTRY_NAME = "index.js"
ENTRY_SOURCE = "src/index.js"


def project_manifest(name: str) -> dict:
    """package.json contents for a new project."""
    return {
        "name": name,
        "version": "0.1.0",
        "private": True,
        MANIFEST_KEY: {
            "entryPoints": {ENTRY_NAME: ENTRY_SOURCE},
        },
    }


def scaffold_project(name: str, parent: Path) -> Path:
    """Create project `name` under parent and return its directory.

    Refuses to touch an existing directory.
    """
    project = parent / name
    try:
        project.mkdir()
    except FileExistsError as e:
        raise FilesystemError(project, "Failed to create project (directory exists)") from e
    except OSError as e:
        raise FilesystemError(project, f"Failed to create project ({e.strerror})") from e

    try:
        (project / "src").mkdir()
        (project / MANIFEST_FILE).write_text(
            json.dumps(project_manifest(name), indent=4) + "\n", encoding="utf-8"
        )
        (project / ENTRY_SOURCE).write_text("", encoding="utf-8")
    except OSError as e:
        raise FilesystemError(project, f"Failed to write project files ({e.strerror})") from e

    return project


def cmd_init(args: argparse.Namespace) -> int:
    """Handle `kiln init`."""
    parent = Path(args.directory).resolve() if args.directory else Path.cwd()
    project = scaffold_project(args.name, parent)
    log.success(f"Created {project}")
    log.info(f"Build it with: kiln -C {args.name}")
    return 0
