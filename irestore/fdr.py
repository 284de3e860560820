"""Connection proxy service used by the device's FDR (factory data reset) agent."""

from __future__ import annotations

import enum
import plistlib
import socket
import struct
import threading
import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from irestore.log import debug, debug_plist, error, info, is_debug

CTRL_PORT = 0x43A  # 1082
CTRL_CMD = b"BeginCtrl\0"
HELLO_CTRL_CMD = b"HelloCtrl\0"
HELLO_CMD = b"HelloConn\0"

SYNC_MSG = 0x1
PROXY_MSG = 0x105
PLIST_MSG = 0xBBAA

_CONNECT_ATTEMPTS = 10
_CONNECT_DELAY = 2
_POLL_TIMEOUT = 20.0
_PROXY_TIMEOUT = 0.1
_PROXY_BUFFER = 1048576
_SYNC_BUFFER = 4096
_PROXY_ACK = 5

_CMD = struct.Struct("<H")
_LEN = struct.Struct("<I")
_PLIST_ERRORS = (ValueError, IndexError, struct.error, OverflowError)


class Connection(Protocol):
    """A byte stream to a service on the device.

    ``receive`` returns at most ``size`` bytes and raises TimeoutError when
    nothing arrives within ``timeout`` seconds.
    """

    def send(self, data: bytes) -> int: ...

    def receive(self, size: int, timeout: Optional[float] = None) -> bytes: ...

    def close(self) -> None: ...


class Device(Protocol):
    """Something that can open a connection to a port on the device."""

    def connect(self, port: int) -> Connection: ...


class FdrError(RuntimeError):
    """Raised when the FDR protocol fails."""


class FdrType(enum.Enum):
    """Kind of FDR connection: the control channel or a data connection."""

    CTRL = 0
    CONN = 1


@dataclass
class _ProtocolState:
    """What the control handshake learned; data connections rely on it."""

    conn_port: int = 0
    ctrl_proto_version: int = 2


_state = _ProtocolState()


class FdrClient:
    """One FDR connection, either the control channel or a proxied data connection."""

    def __init__(
        self,
        connection: Connection,
        device: Optional[Device] = None,
        fdr_type: FdrType = FdrType.CTRL,
    ) -> None:
        self.connection: Optional[Connection] = connection
        self.device = device
        self.type = FdrType(fdr_type)

    @classmethod
    def connect(cls, device: Device, fdr_type: FdrType) -> "FdrClient":
        """Connect to FDR on ``device`` and perform the handshake for ``fdr_type``."""
        fdr_type = FdrType(fdr_type)
        port = _state.conn_port if fdr_type is FdrType.CONN else CTRL_PORT
        debug(f"Connecting to FDR client at port {port}\n")
        for attempt in range(1, _CONNECT_ATTEMPTS + 1):
            try:
                connection = device.connect(port)
                break
            except OSError as exc:
                if attempt >= _CONNECT_ATTEMPTS:
                    error(f"ERROR: Unable to connect to FDR client ({exc})\n")
                    raise FdrError(f"unable to connect to FDR at port {port}") from exc
                time.sleep(_CONNECT_DELAY)
                debug("Retrying connection...\n")

        client = cls(connection, device, fdr_type)
        try:
            if fdr_type is FdrType.CTRL:
                client._ctrl_handshake()
            else:
                client._sync_handshake()
        except FdrError:
            client.disconnect()
            raise
        return client

    def __enter__(self) -> "FdrClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.disconnect()

    def disconnect(self) -> None:
        """Close the connection; later calls do nothing."""
        if self.connection is not None:
            connection, self.connection = self.connection, None
            connection.close()

    @property
    def _conn(self) -> Connection:
        connection = self.connection
        if connection is None:
            raise FdrError("FDR connection is closed")
        return connection

    def _send(self, data: bytes) -> int:
        try:
            return self._conn.send(data)
        except OSError:
            return 0

    # -- message loop -------------------------------------------------------

    def poll_and_handle_message(self) -> bool:
        """Wait for one command and handle it.

        Returns True when the connection may be polled again (including a
        timeout), False when a proxied peer closed its end. Raises FdrError
        on failure.
        """
        connection = self._conn
        try:
            raw = connection.receive(_CMD.size, _POLL_TIMEOUT)
        except TimeoutError:
            raw = b""
        except OSError as exc:
            if self.connection is not None:
                error(f"ERROR: Unable to receive message from FDR {id(self):#x} ({exc}).\n")
            raise FdrError("unable to receive FDR message") from exc
        if len(raw) != _CMD.size:
            debug(f"FDR {id(self):#x} timeout waiting for command\n")
            return True

        (cmd,) = _CMD.unpack(raw)
        if cmd == SYNC_MSG:
            debug(f"FDR {id(self):#x} got sync message\n")
            return self._handle_sync_cmd()
        if cmd == PROXY_MSG:
            debug(f"FDR {id(self):#x} got proxy message\n")
            return self._handle_proxy_cmd()
        if cmd == PLIST_MSG:
            debug(f"FDR {id(self):#x} got plist message\n")
            return self._handle_plist_cmd()

        error(f"WARNING: FDR {id(self):#x} received unknown packet {cmd:#x} of size {len(raw)}\n")
        return True

    def listen(self) -> None:
        """Handle messages until the connection ends, then disconnect.

        The control channel keeps polling after every non-failing message;
        a data connection stops as soon as its proxied peer goes away.
        """
        while self.connection is not None:
            debug(f"FDR {id(self):#x} waiting for message...\n")
            try:
                keep_going = self.poll_and_handle_message()
            except FdrError:
                break
            if self.type is FdrType.CTRL:
                continue
            if not keep_going:
                break
        debug(f"FDR {id(self):#x} terminating...\n")
        self.disconnect()

    # -- plist framing ------------------------------------------------------

    def _receive_plist(self) -> Any:
        connection = self._conn
        try:
            head = connection.receive(_LEN.size)
        except OSError as exc:
            error(f"ERROR: Unable to receive packet length from FDR ({exc})\n")
            raise FdrError("unable to receive FDR packet length") from exc
        if len(head) != _LEN.size:
            error("ERROR: Unable to receive packet length from FDR\n")
            raise FdrError("short FDR packet length")
        (length,) = _LEN.unpack(head)
        try:
            body = connection.receive(length)
        except OSError as exc:
            error("ERROR: Unable to receive data from FDR\n")
            raise FdrError("unable to receive FDR data") from exc
        try:
            data = plistlib.loads(body, fmt=plistlib.FMT_BINARY)
        except _PLIST_ERRORS:
            data = None
        debug(f"FDR Received {len(body)} bytes\n")
        return data

    def _send_plist(self, data: Any) -> None:
        buf = plistlib.dumps(data, fmt=plistlib.FMT_BINARY)
        debug(f"FDR sending {len(buf)} bytes:\n")
        if is_debug():
            debug_plist(data)
        sent = self._send(_LEN.pack(len(buf)))
        if sent != _LEN.size:
            error(f"ERROR: FDR unable to send data length. Sent {sent} of {_LEN.size} bytes.\n")
            raise FdrError("unable to send FDR data length")
        sent = self._send(buf)
        if sent != len(buf):
            error(f"ERROR: FDR unable to send data. Sent {sent} of {len(buf)} bytes.\n")
            raise FdrError("unable to send FDR data")
        debug(f"FDR Sent {sent} bytes\n")

    def _receive_hello(self, expected: bytes) -> None:
        try:
            reply = self._conn.receive(len(expected))
        except OSError as exc:
            error(f"ERROR: Could not receive reply to {expected[:-1].decode()} command\n")
            raise FdrError("no reply to hello") from exc
        padded = reply.ljust(len(expected), b"\0")[: len(expected)]
        if padded != expected:
            shown = padded[:-1].split(b"\0", 1)[0].decode("latin-1")
            error(f"ERROR: Did not receive {expected[:-1].decode()} as reply, but {shown}\n")
            raise FdrError(f"unexpected hello reply {reply!r}")

    # -- handshakes ---------------------------------------------------------

    def _ctrl_handshake(self) -> None:
        debug("About to do ctrl handshake\n")
        _state.ctrl_proto_version = 2
        if self._send(CTRL_CMD) != len(CTRL_CMD):
            debug("Hmm... looks like the device doesn't like the newer protocol, using the old one\n")
            _state.ctrl_proto_version = 1
            sent = self._send(HELLO_CTRL_CMD)
            if sent != len(HELLO_CTRL_CMD):
                error(f"ERROR: FDR unable to send BeginCtrl. Sent {sent} of {len(HELLO_CTRL_CMD)} bytes.\n")
                raise FdrError("unable to send control hello")

        if _state.ctrl_proto_version == 2:
            request = {"Command": CTRL_CMD[:-1].decode(), "CtrlProtoVersion": 2}
            try:
                self._send_plist(request)
            except FdrError:
                error("ERROR: FDR could not send Begin command.\n")
                raise
            try:
                reply = self._receive_plist()
            except FdrError:
                error("ERROR: FDR did not get Begin command reply.\n")
                raise
            if is_debug() and reply is not None:
                debug_plist(reply)
            port = reply.get("ConnPort") if isinstance(reply, dict) else None
            if not isinstance(port, int) or isinstance(port, bool):
                error("ERROR: Could not get FDR ConnPort value\n")
                raise FdrError("no ConnPort in control reply")
            _state.conn_port = port
        else:
            self._receive_hello(HELLO_CTRL_CMD)
            try:
                raw = self._conn.receive(2)
            except OSError as exc:
                error("ERROR: Failed to receive conn port\n")
                raise FdrError("unable to receive conn port") from exc
            if len(raw) != 2:
                error("ERROR: Failed to receive conn port\n")
                raise FdrError("short conn port")
            _state.conn_port = int.from_bytes(raw, "little")

        debug(f"Ctrl handshake done (ConnPort = {_state.conn_port})\n")

    def _sync_handshake(self) -> None:
        sent = self._send(HELLO_CMD)
        if sent != len(HELLO_CMD):
            error(f"ERROR: FDR unable to send Hello. Sent {sent} of {len(HELLO_CMD)} bytes.\n")
            raise FdrError("unable to send hello")

        if _state.ctrl_proto_version == 2:
            try:
                reply = self._receive_plist()
            except FdrError:
                error("ERROR: FDR did not get HelloConn reply.\n")
                raise
            if not isinstance(reply, dict):
                reply = {}
            command = reply.get("Command")
            identifier = reply.get("Identifier")
            if command != HELLO_CMD[:-1].decode():
                error("ERROR: Did not receive HelloConn reply...\n")
                raise FdrError(f"unexpected hello reply {command!r}")
            if isinstance(identifier, str):
                debug(f"Got device identifier {identifier}\n")
        else:
            self._receive_hello(HELLO_CMD)

    # -- command handlers ---------------------------------------------------

    def _handle_sync_cmd(self) -> bool:
        try:
            data = self._conn.receive(_SYNC_BUFFER)
        except OSError as exc:
            error("ERROR: Unexpected data from FDR\n")
            raise FdrError("unable to receive sync data") from exc
        if len(data) != 2:
            error("ERROR: Unexpected data from FDR\n")
            raise FdrError(f"unexpected sync data of {len(data)} bytes")
        try:
            conn = FdrClient.connect(self.device, FdrType.CONN)
        except FdrError:
            error("ERROR: Failed to connect to FDR port\n")
            raise
        debug("FDR connected in reply to sync message, starting command thread\n")
        worker = threading.Thread(target=conn.listen, name="fdr-conn", daemon=True)
        try:
            worker.start()
        except RuntimeError as exc:
            error("ERROR: Failed to start FDR command thread\n")
            conn.disconnect()
            raise FdrError("unable to start FDR command thread") from exc
        return True

    def _handle_plist_cmd(self) -> bool:
        try:
            request = self._receive_plist()
        except FdrError:
            error(f"ERROR: FDR {id(self):#x} could not receive plist command.\n")
            raise
        command = request.get("Command") if isinstance(request, dict) else None
        if not isinstance(command, str):
            error(f"ERROR: FDR {id(self):#x} Could not find Command in plist command\n")
            raise FdrError("plist command without Command")
        if command != "Ping":
            error(f"WARNING: FDR {id(self):#x} received unknown plist command: {command}\n")
            raise FdrError(f"unknown plist command {command!r}")
        try:
            self._send_plist({"Pong": True})
        except FdrError:
            error(f"ERROR: FDR {id(self):#x} could not send Ping command reply.\n")
            raise
        # The device closes the connection afterwards; the next receive fails.
        return True

    def _handle_proxy_cmd(self) -> bool:
        try:
            buf = self._conn.receive(_PROXY_BUFFER)
        except OSError as exc:
            error(f"ERROR: FDR {id(self):#x} failed to read data for proxy command\n")
            raise FdrError("unable to read proxy command") from exc
        debug(f"Got proxy command with {len(buf)} bytes\n")

        # Always acknowledge; a failure further on aborts the restore anyway.
        ack = _CMD.pack(_PROXY_ACK)
        sent = self._send(ack)
        if sent != len(ack):
            error(f"ERROR: FDR {id(self):#x} unable to send ack. Sent {sent} of {len(ack)} bytes.\n")
            raise FdrError("unable to send proxy ack")

        if len(buf) < 3:
            debug(f"FDR {id(self):#x} proxy command data too short, retrying\n")
            return self.poll_and_handle_message()

        sent = self._send(buf)
        if sent != len(buf):
            error(f"ERROR: FDR {id(self):#x} unable to send data. Sent {sent} of {len(buf)} bytes.\n")
            raise FdrError("unable to acknowledge proxy command data")

        # Connect request: 0 3 hostlen <host> <port, big endian>
        host: Optional[str] = None
        port = 0
        if buf[0] == 0 and buf[1] == 3:
            port = int.from_bytes(buf[-2:], "big")
            host = buf[3:-2].split(b"\0", 1)[0].decode("latin-1")
            debug(f"FDR {id(self):#x} Proxy connect request to {host}:{port}\n")
        if host is None or buf[2] == 0:
            return True

        try:
            sock = socket.create_connection((host, port))
        except OSError as exc:
            error(f"ERROR: Failed to connect socket: {exc}\n")
            raise FdrError(f"unable to connect to {host}:{port}") from exc
        with sock:
            sock.settimeout(_PROXY_TIMEOUT)
            return self._proxy(sock)

    def _proxy(self, sock: socket.socket) -> bool:
        while True:
            try:
                payload = self._conn.receive(_PROXY_BUFFER, _PROXY_TIMEOUT)
            except TimeoutError:
                payload = b""
            except OSError as exc:
                error(f"ERROR: FDR {id(self):#x} Unable to receive proxy payload ({exc})\n")
                raise FdrError("unable to receive proxy payload") from exc
            if payload:
                debug(f"FDR {id(self):#x} got payload of {len(payload)} bytes, now try to proxy it\n")
                try:
                    sock.sendall(payload)
                except OSError as exc:
                    error(f"ERROR: Sending proxy payload failed: {exc}.\n")
                    raise FdrError("unable to forward proxy payload") from exc

            try:
                reply = sock.recv(_PROXY_BUFFER)
            except TimeoutError:
                continue
            except OSError as exc:
                error(f"ERROR: FDR {id(self):#x} receiving proxy payload failed: {exc}\n")
                return True
            if not reply:
                return False

            debug(f"FDR {id(self):#x} Received {len(reply)} bytes reply data, sending to device\n")
            sent = 0
            while sent < len(reply):
                count = self._send(reply[sent:])
                if count <= 0:
                    break
                sent += count
            if sent != len(reply):
                error(f"ERROR: FDR {id(self):#x} unable to send data. Sent {sent} of {len(reply)} bytes.\n")
                raise FdrError("unable to forward proxy reply")


__all__ = ["FdrClient", "FdrError", "FdrType", "CTRL_PORT", "info"]