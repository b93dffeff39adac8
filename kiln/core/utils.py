"""
Shared utilities for kiln.
"""

from __future__ import annotations

import os
import subprocess
import sys
import tempfile
import threading
from pathlib import Path
from typing import Optional

from kiln.core.errors import FilesystemError


# =============================================================================
# Logging
# =============================================================================


class Logger:
    """Simple colored logger with --no-color support.

    Entry points are built on worker threads, so every write goes through a
    lock to keep lines from interleaving.
    """

    COLORS = {
        "reset": "\033[0m",
        "red": "\033[91m",
        "green": "\033[92m",
        "yellow": "\033[93m",
        "blue": "\033[94m",
        "magenta": "\033[95m",
        "cyan": "\033[96m",
        "bold": "\033[1m",
        "dim": "\033[2m",
    }

    def __init__(self, use_color: Optional[bool] = None):
        if use_color is None:
            self._use_color = sys.stdout.isatty()
        else:
            self._use_color = use_color
        self._lock = threading.Lock()

    def set_color(self, use_color: bool) -> None:
        """Set whether to use color output."""
        self._use_color = use_color

    def _color(self, text: str, color: str) -> str:
        if not self._use_color:
            return text
        return f"{self.COLORS.get(color, '')}{text}{self.COLORS['reset']}"

    def _write(self, line: str) -> None:
        with self._lock:
            print(line, flush=True)

    def header(self, message: str) -> None:
        """Print a section header."""
        self._write(f"\n{self._color('===', 'cyan')} {self._color(message, 'bold')} {self._color('===', 'cyan')}")

    def info(self, message: str) -> None:
        """Print an info message."""
        self._write(f"  {message}")

    def success(self, message: str) -> None:
        """Print a success message."""
        self._write(f"  {self._color('[OK]', 'green')} {message}")

    def warning(self, message: str) -> None:
        """Print a warning message."""
        self._write(f"  {self._color('[WARN]', 'yellow')} {message}")

    def error(self, message: str) -> None:
        """Print an error message."""
        self._write(f"  {self._color('[ERROR]', 'red')} {message}")

    def dim(self, message: str) -> None:
        """Print a dim/secondary message."""
        self._write(f"  {self._color(message, 'dim')}")


# Global logger instance
log = Logger()


# =============================================================================
# Filesystem Utilities
# =============================================================================


def file_exists(path: Path) -> Optional[Path]:
    """Return path if it names an existing regular file, else None."""
    return path if path.is_file() else None


def ensure_dir(path: Path) -> Path:
    """Create a directory and its parents.

    An existing directory is fine. Anything else in the way, or any other
    OS failure, raises FilesystemError.
    """
    try:
        path.mkdir(parents=True, exist_ok=True)
    except FileExistsError as e:
        raise FilesystemError(path, "Path exists and is not a directory") from e
    except OSError as e:
        raise FilesystemError(path, f"Failed to create directory ({e.strerror})") from e
    return path


def replace_file(path: Path, text: str) -> None:
    """Write text to path atomically.

    The content goes to a temporary file in the same directory which then
    replaces the target, so concurrent readers see either the old or the new
    file and never a partial write.
    """
    ensure_dir(path.parent)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(text)
        os.replace(tmp_name, path)
    except OSError as e:
        Path(tmp_name).unlink(missing_ok=True)
        raise FilesystemError(path, f"Failed to write file ({e.strerror})") from e


# =============================================================================
# Runtime Utilities
# =============================================================================


def run_cmd(
    cmd: list[str],
    cwd: Optional[Path] = None,
    capture: bool = False,
    check: bool = True,
    input: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """Run a command with proper error handling."""
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            check=check,
            input=input,
        )
        return result
    except subprocess.CalledProcessError as e:
        if capture:
            log.error(f"Command failed: {' '.join(cmd)}")
            if e.stdout:
                log.error(f"stdout: {e.stdout}")
            if e.stderr:
                log.error(f"stderr: {e.stderr}")
        raise
