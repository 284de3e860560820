"""Client for the ASR service that streams a filesystem image to a device."""

from __future__ import annotations

import hashlib
import os
import plistlib
import time
from typing import Any, BinaryIO, Callable, Optional, Protocol
from xml.parsers.expat import ExpatError

from irestore.log import debug, debug_plist, error, info, is_debug

ASR_VERSION = 1
ASR_STREAM_ID = 1
ASR_PORT = 12345
ASR_BUFFER_SIZE = 65536
ASR_FEC_SLICE_STRIDE = 40
ASR_PACKETS_PER_FEC = 25
ASR_PAYLOAD_PACKET_SIZE = 1450
ASR_PAYLOAD_CHUNK_SIZE = 131072
ASR_CHECKSUM_CHUNK_SIZE = 131072

_CONNECT_ATTEMPTS = 10
_CONNECT_DELAY = 2
_RECEIVE_RETRIES = 5
_SEND_RETRIES = 3

ProgressCallback = Callable[[float], None]


class Connection(Protocol):
    """A byte stream to a service on the device."""

    def send(self, data: bytes) -> int: ...

    def receive(self, size: int) -> bytes: ...

    def close(self) -> None: ...


class Device(Protocol):
    """Something that can open a connection to a port on the device."""

    def connect(self, port: int) -> Connection: ...


class AsrError(RuntimeError):
    """Raised when talking to the ASR service fails."""


def _is_uint(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class AsrClient:
    """An open connection to the ASR service."""

    def __init__(self, connection: Connection, checksum_chunks: bool = False) -> None:
        self.connection: Optional[Connection] = connection
        self.checksum_chunks = checksum_chunks
        self._progress_cb: Optional[ProgressCallback] = None
        self._last_progress = 0

    @classmethod
    def open(cls, device: Device) -> "AsrClient":
        """Connect to ASR on ``device`` and wait for its Initiate message."""
        if device is None:
            raise AsrError("no device given")
        debug("Connecting to ASR\n")
        for attempt in range(1, _CONNECT_ATTEMPTS + 1):
            try:
                connection = device.connect(ASR_PORT)
                break
            except OSError as exc:
                if attempt >= _CONNECT_ATTEMPTS:
                    error("ERROR: Unable to connect to ASR client\n")
                    raise AsrError("unable to connect to ASR") from exc
                time.sleep(_CONNECT_DELAY)
                debug("Retrying connection...\n")

        client = cls(connection)
        try:
            data = client.receive()
        except AsrError:
            error("ERROR: Unable to receive data from ASR\n")
            client.close()
            raise
        if not isinstance(data, dict):
            data = {}
        command = data.get("Command")
        if isinstance(command, str) and command != "Initiate":
            error("ERROR: unexpected ASR plist received:\n")
            debug_plist(data)
            client.close()
            raise AsrError(f"unexpected ASR command {command!r}")
        checksum = data.get("Checksum Chunks")
        if isinstance(checksum, bool):
            client.checksum_chunks = checksum
        return client

    def __enter__(self) -> "AsrClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def set_progress_callback(self, callback: Optional[ProgressCallback]) -> None:
        """Call ``callback`` with the sent fraction (0..1) during send_payload."""
        self._progress_cb = callback

    def _require_connection(self) -> Connection:
        if self.connection is None:
            raise AsrError("ASR connection is closed")
        return self.connection

    def receive(self) -> Any:
        """Receive one XML property list; None if the data does not parse."""
        connection = self._require_connection()
        try:
            raw = connection.receive(ASR_BUFFER_SIZE)
        except OSError as exc:
            error("ERROR: Unable to receive data from ASR\n")
            raise AsrError("unable to receive data from ASR") from exc
        try:
            request = plistlib.loads(raw, fmt=plistlib.FMT_XML)
        except (plistlib.InvalidFileException, ValueError, ExpatError):
            request = None
        debug(f"Received {len(raw)} bytes:\n")
        if is_debug() and request is not None:
            debug_plist(request)
        return request

    def send(self, plist: Any) -> None:
        """Send ``plist`` encoded as XML."""
        try:
            self.send_buffer(plistlib.dumps(plist, fmt=plistlib.FMT_XML))
        except AsrError:
            error("ERROR: Unable to send plist to ASR\n")
            raise

    def send_buffer(self, data: bytes) -> None:
        """Send raw bytes; anything short of a complete send raises AsrError."""
        connection = self._require_connection()
        try:
            sent = connection.send(data)
        except OSError:
            sent = 0
        if sent != len(data):
            error(f"ERROR: Unable to send data to ASR. Sent {sent} of {len(data)} bytes.\n")
            raise AsrError(f"sent {sent} of {len(data)} bytes")

    def close(self) -> None:
        """Disconnect from the service."""
        if self.connection is not None:
            connection, self.connection = self.connection, None
            connection.close()

    def perform_validation(self, filesystem: str | os.PathLike) -> None:
        """Announce the image and answer out-of-band reads until ASR asks for the payload."""
        try:
            file = open(filesystem, "rb")
        except OSError as exc:
            raise AsrError(f"unable to open filesystem image {filesystem}") from exc
        with file:
            length = file.seek(0, os.SEEK_END)
            file.seek(0)
            packet_info: dict[str, Any] = {}
            if self.checksum_chunks:
                packet_info["Checksum Chunk Size"] = ASR_CHECKSUM_CHUNK_SIZE
            packet_info.update(
                {
                    "FEC Slice Stride": ASR_FEC_SLICE_STRIDE,
                    "Packet Payload Size": ASR_PAYLOAD_PACKET_SIZE,
                    "Packets Per FEC": ASR_PACKETS_PER_FEC,
                    "Payload": {"Port": 1, "Size": length},
                    "Stream ID": ASR_STREAM_ID,
                    "Version": ASR_VERSION,
                }
            )
            try:
                self.send(packet_info)
            except AsrError:
                error("ERROR: Unable to sent packet information to ASR\n")
                raise

            attempts = 0
            while True:
                try:
                    packet = self.receive()
                except AsrError:
                    error("ERROR: Unable to receive validation packet\n")
                    raise
                if packet is None and attempts < _RECEIVE_RETRIES:
                    info(f"Retrying to receive validation packet... {attempts}\n")
                    attempts += 1
                    time.sleep(1)
                    continue
                attempts = 0

                command = packet.get("Command") if isinstance(packet, dict) else None
                if not isinstance(command, str):
                    error("ERROR: Unable to find command node in validation request\n")
                    raise AsrError("validation request has no command")
                if command == "OOBData":
                    self.handle_oob_data_request(packet, file)
                elif command == "Payload":
                    return
                else:
                    error("ERROR: Unknown command received from ASR\n")
                    raise AsrError(f"unknown ASR command {command!r}")

    def handle_oob_data_request(self, packet: dict, file: BinaryIO) -> None:
        """Send the slice of ``file`` that an OOBData request asks for."""
        length = packet.get("OOB Length")
        if not _is_uint(length):
            error("ERROR: Unable to find OOB data length\n")
            raise AsrError("OOB request without length")
        offset = packet.get("OOB Offset")
        if not _is_uint(offset):
            error("ERROR: Unable to find OOB data offset\n")
            raise AsrError("OOB request without offset")
        try:
            file.seek(offset)
            data = file.read(length)
        except (OSError, ValueError) as exc:
            error(f"ERROR: Unable to read OOB data from filesystem offset: {exc}\n")
            raise AsrError("unable to read OOB data") from exc
        if len(data) != length:
            error("ERROR: Unable to read OOB data from filesystem offset: short read\n")
            raise AsrError(f"read {len(data)} of {length} OOB bytes at offset {offset}")
        try:
            self.send_buffer(data)
        except AsrError:
            error("ERROR: Unable to send OOB data to ASR\n")
            raise

    def send_payload(self, filesystem: str | os.PathLike) -> None:
        """Stream the whole image in chunks, each followed by its SHA-1 when checksumming."""
        try:
            file = open(filesystem, "rb")
        except OSError as exc:
            error(f"ERROR: Unable to open filesystem image {filesystem}: {exc.strerror}\n")
            raise AsrError(f"unable to open filesystem image {filesystem}") from exc
        with file:
            length = file.seek(0, os.SEEK_END)
            sent = 0
            retries = _SEND_RETRIES
            while sent < length:
                size = min(ASR_PAYLOAD_CHUNK_SIZE, length - sent)
                file.seek(sent)
                chunk = file.read(size)
                if len(chunk) != size:
                    error("Error reading filesystem\n")
                    retries -= 1
                    if retries < 0:
                        raise AsrError("unable to read filesystem image")
                    continue
                buffer = chunk + hashlib.sha1(chunk).digest() if self.checksum_chunks else chunk
                try:
                    self.send_buffer(buffer)
                except AsrError:
                    error("ERROR: Unable to send filesystem payload\n")
                    retries -= 1
                    if retries < 0:
                        raise
                    continue
                sent += size
                progress = sent / length
                percent = int(progress * 100)
                if self._progress_cb is not None and percent > self._last_progress:
                    self._progress_cb(progress)
                    self._last_progress = percent