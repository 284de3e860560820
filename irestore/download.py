"""Fetching files over HTTP(S) into memory or onto disk."""

from __future__ import annotations

import contextlib
import http.client
import os
import ssl
import urllib.error
import urllib.request
from typing import BinaryIO

from irestore.common import USER_AGENT_STRING
from irestore.log import debug, error, info, is_debug

_READ_SIZE = 65536
_TRANSFER_ERRORS = (OSError, ValueError, http.client.HTTPException)


class DownloadError(RuntimeError):
    """Raised when a download yields no data."""


def _build_opener() -> urllib.request.OpenerDirector:
    # Certificates are not verified so that untrusted https locations still work.
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    level = 1 if is_debug() else 0
    return urllib.request.build_opener(
        urllib.request.HTTPHandler(debuglevel=level),
        urllib.request.HTTPSHandler(context=context, debuglevel=level),
    )


def _open(url: str):
    """Open ``url``; an HTTP error status still yields its response body."""
    request = urllib.request.Request(url, headers={"User-Agent": USER_AGENT_STRING})
    try:
        return _build_opener().open(request)
    except urllib.error.HTTPError as exc:
        return exc


def download_to_buffer(url: str) -> bytes:
    """Return the body found at ``url``; raise DownloadError if it is empty."""
    try:
        with contextlib.closing(_open(url)) as response:
            content = response.read()
    except _TRANSFER_ERRORS as exc:
        debug(f"download of {url} failed: {exc}\n")
        content = b""
    if not content:
        raise DownloadError(f"no data received from {url}")
    return content


def _content_length(response) -> int:
    value = response.headers.get("Content-Length") if response.headers else None
    try:
        return int(value) if value is not None else 0
    except ValueError:
        return 0


def _stream(url: str, handle: BinaryIO, progress: bool) -> int:
    written = 0
    last = 0
    try:
        with contextlib.closing(_open(url)) as response:
            total = _content_length(response)
            while chunk := response.read(_READ_SIZE):
                handle.write(chunk)
                written += len(chunk)
                if progress and total > 0:
                    percent = written / total * 100
                    if percent < 100.0 and int(percent) > last:
                        info(f"downloading: {int(percent)}%\n")
                        last = int(percent)
    except _TRANSFER_ERRORS as exc:
        debug(f"download of {url} failed: {exc}\n")
    return written


def download_to_file(url: str, filename: str | os.PathLike, progress: bool = False) -> None:
    """Save the body found at ``url`` to ``filename``.

    With ``progress`` set, whole-percent steps are reported on the info
    channel. An empty result removes the file and raises DownloadError.
    """
    try:
        handle = open(filename, "wb")
    except OSError as exc:
        error(f"ERROR: cannot open '{filename}' for writing\n")
        raise DownloadError(f"cannot open {filename} for writing") from exc
    with handle:
        written = _stream(url, handle, progress)
    if written == 0:
        with contextlib.suppress(OSError):
            os.remove(filename)
        raise DownloadError(f"no data received from {url}")