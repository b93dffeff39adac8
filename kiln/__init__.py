"""
kiln - incremental build orchestrator for UI components and JavaScript bundles.

Compiles components into JavaScript modules, bundles entry points into
self-executing scripts and flattens their source maps, skipping work whose
outputs are already up to date.

Usage:
    python -m kiln [-C PATH] [--debug]
    python -m kiln init <name>
"""

from .cli import __version__, main

__all__ = ["__version__", "main"]
