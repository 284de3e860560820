"""Shared helpers: device modes, file access, temp names and plist value coercion."""

from __future__ import annotations

import enum
import os
import secrets
import string
import struct
import sys
from typing import Any, Mapping, Optional

from irestore.log import debug, error

FLAG_QUIT = 1

CPFM_FLAG_SECURITY_MODE = 1 << 0
CPFM_FLAG_PRODUCTION_MODE = 1 << 1

IBOOT_FLAG_IMAGE4_AWARE = 1 << 2
IBOOT_FLAG_EFFECTIVE_SECURITY_MODE = 1 << 3
IBOOT_FLAG_EFFECTIVE_PRODUCTION_MODE = 1 << 4

USER_AGENT_STRING = "InetURL/1.0"

UINT64_MAX = (1 << 64) - 1

_GUID_CHARS = "ABCDEF0123456789"
_GUID_DASHES = (8, 13, 18, 23)
_TEMP_LETTERS = string.ascii_letters + string.digits
_TEMP_ATTEMPTS = 62 * 62 * 62
_TMP_VARS = ("TMPDIR", "TMP", "TEMP", "TEMPDIR")
_BACKSPACE = ("\x7f", "\b")


class Mode(enum.Enum):
    """Operating mode a device can be found in."""

    UNKNOWN = 0
    WTF = 1
    DFU = 2
    RECOVERY = 3
    RESTORE = 4
    NORMAL = 5

    @property
    def label(self) -> str:
        return _MODE_LABELS[self]


_MODE_LABELS = {
    Mode.UNKNOWN: "Unknown",
    Mode.WTF: "WTF",
    Mode.DFU: "DFU",
    Mode.RECOVERY: "Recovery",
    Mode.RESTORE: "Restore",
    Mode.NORMAL: "Normal",
}


def read_file(filename: str | os.PathLike) -> bytes:
    """Return the whole contents of ``filename``."""
    debug(f"Reading data from {filename}\n")
    try:
        with open(filename, "rb") as handle:
            length = os.fstat(handle.fileno()).st_size
            data = handle.read()
    except OSError as exc:
        error(f"read_file: cannot open {filename}: {exc.strerror}\n")
        raise
    if len(data) != length:
        error("ERROR: Unable to read entire file\n")
        raise OSError(f"short read from {filename}: {len(data)} of {length} bytes")
    return data


def write_file(filename: str | os.PathLike, data: bytes) -> int:
    """Write ``data`` to ``filename`` and return the number of bytes written."""
    debug(f"Writing data to {filename}\n")
    try:
        handle = open(filename, "wb")
    except OSError:
        error(f"write_file: Unable to open file {filename}\n")
        raise
    with handle:
        written = handle.write(data)
    if written != len(data):
        error(f"ERROR: Unable to write entire file: {filename}: {written} of {len(data)}\n")
        raise OSError(f"short write to {filename}: {written} of {len(data)} bytes")
    return len(data)


def generate_guid() -> str:
    """Return a random upper-case GUID of the form XXXXXXXX-XXXX-XXXX-XXXX-XXXXXXXXXXXX."""
    return "".join(
        "-" if i in _GUID_DASHES else secrets.choice(_GUID_CHARS) for i in range(36)
    )


def mkdir_with_parents(path: str | os.PathLike, mode: int = 0o755) -> None:
    """Create ``path`` and any missing parents; an existing entry is accepted."""
    path = os.fspath(path)
    if not path:
        raise ValueError("empty directory path")
    try:
        os.mkdir(path, mode)
        return
    except FileExistsError:
        return
    except FileNotFoundError:
        pass
    parent = os.path.dirname(path.rstrip("/\\") or path) or "."
    if parent in (".", path):
        raise FileNotFoundError(f"cannot create directory {path}")
    mkdir_with_parents(parent, mode)
    try:
        os.mkdir(path, mode)
    except FileExistsError:
        pass


def _usable_dir(path: Optional[str]) -> bool:
    return bool(path) and os.access(path, os.W_OK | os.X_OK)


def _temp_dir() -> str:
    tmpdir = next((os.environ[v] for v in _TMP_VARS if v in os.environ), None)
    if not _usable_dir(tmpdir):
        tmpdir = "C:\\WINDOWS\\TEMP" if sys.platform == "win32" else "/tmp"
    if not _usable_dir(tmpdir):
        raise OSError("no writable temporary directory available")
    return tmpdir


def get_temp_filename(prefix: Optional[str] = None) -> str:
    """Create a new empty file named ``prefix`` plus six random characters in the temp dir."""
    if prefix is None:
        prefix = "tmp_"
    separators = "/\\" if sys.platform == "win32" else "/"
    if any(sep in prefix for sep in separators):
        raise ValueError(f"prefix must not contain a path separator: {prefix!r}")
    tmpdir = _temp_dir()
    for _ in range(_TEMP_ATTEMPTS):
        suffix = "".join(secrets.choice(_TEMP_LETTERS) for _ in range(6))
        candidate = os.path.join(tmpdir, prefix + suffix)
        try:
            fd = os.open(candidate, os.O_RDWR | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            continue
        os.close(fd)
        return candidate
    raise FileExistsError(f"unable to create a unique temporary file in {tmpdir}")


def _read_char() -> str:
    """Read one character from stdin without echo; empty string at end of input."""
    stdin = sys.stdin
    if not stdin.isatty():
        return stdin.read(1)
    if sys.platform == "win32":
        import msvcrt

        return msvcrt.getwch()
    import termios

    fd = stdin.fileno()
    old = termios.tcgetattr(fd)
    new = termios.tcgetattr(fd)
    new[3] &= ~(termios.ICANON | termios.ECHO)
    termios.tcsetattr(fd, termios.TCSANOW, new)
    try:
        return os.read(fd, 1).decode("latin-1")
    finally:
        termios.tcsetattr(fd, termios.TCSANOW, old)


def get_user_input(maxlen: int, secure: bool = False) -> str:
    """Read a line from the terminal, echoing ``*`` when ``secure``; keeps ``maxlen - 1`` chars."""
    out = sys.stdout
    chars: list[str] = []
    aborted = False
    while True:
        c = _read_char()
        if not c:
            aborted = True
            break
        if c in ("\r", "\n", "\0"):
            break
        if " " <= c <= "~":
            if len(chars) < maxlen - 1:
                chars.append(c)
            out.write("*" if secure else c)
        elif c in _BACKSPACE:
            if chars:
                out.write("\b \b")
                chars.pop()
        elif sys.platform == "win32" and c in ("\x03", "\x1b"):
            aborted = True
            break
    out.write("\n")
    out.flush()
    return "" if aborted else "".join(chars)


def _strtoull(text: str) -> int:
    """Parse an unsigned integer prefix like strtoull with base 0."""
    s = text.lstrip(" \t\n\v\f\r")
    negative = False
    if s and s[0] in "+-":
        negative = s[0] == "-"
        s = s[1:]
    if s[:2].lower() == "0x" and len(s) > 2 and s[2] in string.hexdigits:
        base, valid, s = 16, string.hexdigits, s[2:]
    elif s.startswith("0"):
        base, valid = 8, string.octdigits
    else:
        base, valid = 10, string.digits
    end = next((i for i, ch in enumerate(s) if ch not in valid), len(s))
    if end == 0:
        return 0
    value = int(s[:end], base)
    if value > UINT64_MAX:
        return UINT64_MAX
    return (-value) % (1 << 64) if negative else value


_DATA_INT_FORMATS = {8: "<Q", 4: "<I", 2: "<H", 1: "<B"}


def dict_get_uint(mapping: Mapping[str, Any], key: str) -> int:
    """Return ``mapping[key]`` as an unsigned 64-bit integer.

    Integers are taken as is, strings are parsed as C integer literals and
    1, 2, 4 or 8 byte data is read little endian. A missing key gives the
    all-ones value; anything else gives 0.
    """
    if key not in mapping:
        return UINT64_MAX
    value = mapping[key]
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value & UINT64_MAX
    if isinstance(value, str):
        return _strtoull(value)
    if isinstance(value, (bytes, bytearray)):
        fmt = _DATA_INT_FORMATS.get(len(value))
        if fmt is None:
            error(f"dict_get_uint: ERROR: invalid size {len(value)} for data to integer conversion\n")
            return 0
        return struct.unpack(fmt, value)[0]
    return 0


def dict_get_bool(mapping: Mapping[str, Any], key: str) -> bool:
    """Return ``mapping[key]`` as a boolean; a missing key gives False."""
    if key not in mapping:
        return False
    value = mapping[key]
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return (value & 0xFF) != 0
    if isinstance(value, str):
        return value == "true"
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 1:
            error(f"dict_get_bool: ERROR: invalid size {len(value)} for data to boolean conversion\n")
            return False
        return value[0] != 0
    return False