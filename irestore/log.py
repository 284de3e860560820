"""Console output channels (info, error, debug) shared by the restore tools."""

from __future__ import annotations

import plistlib
import sys
from dataclasses import dataclass
from typing import Any, Callable, Optional, TextIO

_MAX_PRINT_LEN = 64 * 1024
_ERROR_BUFFER_SIZE = 256
_BAR_WIDTH = 50


@dataclass
class _Channel:
    """One output channel with an optional explicit stream."""

    default: Callable[[], TextIO]
    stream: Optional[TextIO] = None
    disabled: bool = False

    @property
    def target(self) -> TextIO:
        if self.stream is not None:
            return self.stream
        return self.default()

    def write(self, message: str) -> None:
        if not self.disabled:
            self.target.write(message)

    def configure(self, stream: Optional[TextIO]) -> None:
        if stream is None:
            self.disabled = True
        else:
            self.disabled = False
            self.stream = stream


def _stdout() -> TextIO:
    return sys.stdout


def _stderr() -> TextIO:
    return sys.stderr


_info = _Channel(_stdout)
_error = _Channel(_stderr)
_debug = _Channel(_stderr)
_debug_enabled = False
_last_error = ""


def info(message: str) -> None:
    """Write an informational message."""
    _info.write(message)


def error(message: str) -> None:
    """Record a message as the last error and write it to the error channel."""
    global _last_error
    _last_error = message[: _ERROR_BUFFER_SIZE - 1]
    _error.write(message)


def debug(message: str) -> None:
    """Write a message to the debug channel if debugging is enabled."""
    if _debug.disabled or not _debug_enabled:
        return
    _debug.write(message)


def set_debug(enabled: bool) -> None:
    """Turn debug output on or off."""
    global _debug_enabled
    _debug_enabled = bool(enabled)


def is_debug() -> bool:
    """Return whether debug output is enabled."""
    return _debug_enabled


def set_info_stream(stream: Optional[TextIO]) -> None:
    """Send info output to ``stream``; ``None`` silences it."""
    _info.configure(stream)


def set_error_stream(stream: Optional[TextIO]) -> None:
    """Send error output to ``stream``; ``None`` silences it."""
    _error.configure(stream)


def set_debug_stream(stream: Optional[TextIO]) -> None:
    """Send debug output to ``stream``; ``None`` silences it."""
    _debug.configure(stream)


def get_error() -> Optional[str]:
    """Return the last error message up to its first newline, or None."""
    if not _last_error:
        return None
    return _last_error.split("\n", 1)[0]


def debug_plist(plist: Any) -> None:
    """Print a property list as XML on the info channel, unless it is too large."""
    data = plistlib.dumps(plist, fmt=plistlib.FMT_XML)
    size = len(data)
    if size <= _MAX_PRINT_LEN:
        info(f"printing {size} bytes plist:\n{data.decode('utf-8')}")
    else:
        info(f"supressed printing {size} bytes plist...\n")


def print_progress_bar(progress: float) -> None:
    """Draw a 50-column progress bar for ``progress`` percent on the info channel."""
    if _info.disabled or progress < 0:
        return
    progress = min(progress, 100.0)
    filled = "".join("=" if i < progress / 2 else " " for i in range(_BAR_WIDTH))
    info(f"\r[{filled}] {progress:5.1f}%")
    if progress >= 100:
        info("\n")
    _info.target.flush()