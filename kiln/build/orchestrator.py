"""
Build orchestrator for kiln.

Coordinates one build run: output preparation, up-front component
compilation, then concurrent bundling of every entry point with source-map
merging, with per-phase timing.
"""

from __future__ import annotations

import os
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from kiln.build.capabilities import Capabilities, default_capabilities
from kiln.build.config import BuildConfig
from kiln.build.context import BuildContext
from kiln.build.phases import build_entry_point, build_stages, prepare_output_dir
from kiln.build.stages import Stage
from kiln.core.errors import BuildFailed, CompileError, FilesystemError
from kiln.core.timing import BuildTimer, format_duration
from kiln.core.utils import log

# Errors that stop every entry point, not just the one that hit them
FATAL_ERRORS = (CompileError, FilesystemError)


@dataclass
class BuildReport:
    """What a successful build run produced."""

    outputs: dict[str, Path]
    """Entry point name -> written bundle, in manifest order."""

    compiled: list[Path] = field(default_factory=list)
    """Components compiled this run; fresh artifacts are not listed."""

    map_warnings: list[str] = field(default_factory=list)
    phase_timings: dict[str, float] = field(default_factory=dict)
    entry_timings: dict[str, float] = field(default_factory=dict)


# =============================================================================
# Build Orchestrator
# =============================================================================


class BuildOrchestrator:
    """Orchestrates a single build of one project."""

    def __init__(self, config: BuildConfig, capabilities: Optional[Capabilities] = None):
        self.config = config
        self.capabilities = capabilities or default_capabilities(config.project_root)
        self.context: Optional[BuildContext] = None
        self.timer = BuildTimer()

    def _worker_count(self) -> int:
        if self.config.jobs:
            return self.config.jobs
        return max(1, min(len(self.config.entry_points), os.cpu_count() or 1))

    def compile_components(self) -> list[Path]:
        """Compile the components listed in the manifest, one after another."""
        assert self.context is not None
        outputs = []
        for component in self.config.components:
            path = self.config.project_root / component
            outputs.append(self.context.cache.get_or_compile(path))
        return outputs

    def _build_one(self, stages: list[Stage], name: str, entry: str) -> Path:
        assert self.context is not None
        with self.timer.entry(name):
            return build_entry_point(self.context, stages, name, entry)

    def build_entry_points(self, stages: list[Stage]) -> dict[str, Path]:
        """Bundle every entry point concurrently.

        A compile or filesystem error cancels the entry points that have not
        started, waits for the running ones and is re-raised. Any other
        failure is collected; once every entry point has settled they are
        raised together as BuildFailed.
        """
        outputs: dict[str, Path] = {}
        failures: dict[str, Exception] = {}
        fatal: Optional[BaseException] = None

        with ThreadPoolExecutor(
            max_workers=self._worker_count(), thread_name_prefix="kiln-entry"
        ) as pool:
            futures: dict[Future, str] = {
                pool.submit(self._build_one, stages, name, entry): name
                for name, entry in self.config.entry_points.items()
            }

            for future in as_completed(futures):
                name = futures[future]
                if future.cancelled():
                    continue

                error = future.exception()
                if error is None:
                    outputs[name] = future.result()
                elif isinstance(error, FATAL_ERRORS):
                    if fatal is None:
                        fatal = error
                        for other in futures:
                            other.cancel()
                elif isinstance(error, Exception):
                    failures[name] = error
                else:
                    fatal = fatal or error

        if fatal is not None:
            raise fatal
        if failures:
            raise BuildFailed(failures)

        return {name: outputs[name] for name in self.config.entry_points if name in outputs}

    def run(self) -> BuildReport:
        """Run the full build process."""
        self.timer = BuildTimer()
        config = self.config

        log.header(f"{config.project_root.name} ({config.build_mode} build)")

        self.context = BuildContext(config, self.capabilities)
        stages = build_stages(self.context)

        with self.timer.phase("prepare_output"):
            prepare_output_dir(config)

        if config.components:
            with self.timer.phase("compile_components"):
                self.compile_components()

        with self.timer.phase("bundle"):
            outputs = self.build_entry_points(stages)

        report = BuildReport(
            outputs=outputs,
            compiled=list(self.context.compiled),
            map_warnings=[str(e) for e in self.context.map_warnings],
            phase_timings=dict(self.timer.phases),
            entry_timings=dict(self.timer.entries),
        )

        log.header("BUILD COMPLETE")
        log.info(f"Output: {config.output}")
        log.info(
            f"{len(outputs)} bundle(s), {len(report.compiled)} component(s) compiled, "
            f"{len(self.context.table) - len(report.compiled)} up to date"
        )
        if report.map_warnings:
            log.warning(f"{len(report.map_warnings)} bundle(s) kept unmerged source maps")

        log.info(f"Total time: {format_duration(self.timer.elapsed)}")
        if config.verbose:
            log.dim(self.timer.summary())
            for name, duration in report.entry_timings.items():
                log.dim(f"  {name}: {format_duration(duration)}")

        return report
