import io
import plistlib
import socket
import struct
import sys
import threading

import pytest

from irestore import fdr
from irestore.fdr import CTRL_PORT, FdrClient, FdrError, FdrType
from irestore.log import set_error_stream


class FakeConnection:
    def __init__(self, items=(), refuse=(), on_empty=ConnectionResetError):
        self.items = list(items)
        self.refuse = set(refuse)
        self.on_empty = on_empty
        self.sent = []
        self.closed = threading.Event()

    def send(self, data):
        data = bytes(data)
        if data in self.refuse:
            return 0
        self.sent.append(data)
        return len(data)

    def receive(self, size, timeout=None):
        if not self.items:
            raise self.on_empty()
        item = self.items.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def close(self):
        self.closed.set()


class FakeDevice:
    def __init__(self, connections):
        self.connections = list(connections)
        self.ports = []

    def connect(self, port):
        self.ports.append(port)
        if not self.connections:
            raise ConnectionRefusedError("no service")
        return self.connections.pop(0)


def plist_items(obj):
    body = plistlib.dumps(obj, fmt=plistlib.FMT_BINARY)
    return [struct.pack("<I", len(body)), body]


def cmd(value):
    return struct.pack("<H", value)


@pytest.fixture(autouse=True)
def quiet_errors():
    set_error_stream(io.StringIO())
    yield
    set_error_stream(sys.stderr)


def make_ctrl(device, ctrl_conn):
    return FdrClient.connect(device, FdrType.CTRL)


def test_ctrl_handshake_v2_then_conn():
    ctrl_conn = FakeConnection(plist_items({"ConnPort": 4242}))
    conn_conn = FakeConnection(plist_items({"Command": "HelloConn", "Identifier": "device-id"}))
    device = FakeDevice([ctrl_conn, conn_conn])

    ctrl = FdrClient.connect(device, FdrType.CTRL)
    assert ctrl.type is FdrType.CTRL
    assert ctrl_conn.sent[0] == b"BeginCtrl\0"
    assert struct.unpack("<I", ctrl_conn.sent[1])[0] == len(ctrl_conn.sent[2])
    assert plistlib.loads(ctrl_conn.sent[2]) == {"Command": "BeginCtrl", "CtrlProtoVersion": 2}

    conn = FdrClient.connect(device, FdrType.CONN)
    assert conn.type is FdrType.CONN
    assert conn_conn.sent == [b"HelloConn\0"]
    assert device.ports == [CTRL_PORT, 4242]
    assert CTRL_PORT == 1082


def test_ctrl_handshake_falls_back_to_v1():
    ctrl_conn = FakeConnection(
        [b"HelloCtrl\0", struct.pack("<H", 5000)], refuse=[b"BeginCtrl\0"]
    )
    conn_conn = FakeConnection([b"HelloConn\0"])
    device = FakeDevice([ctrl_conn, conn_conn])

    FdrClient.connect(device, FdrType.CTRL)
    assert ctrl_conn.sent == [b"HelloCtrl\0"]
    FdrClient.connect(device, FdrType.CONN)
    assert device.ports == [CTRL_PORT, 5000]
    assert conn_conn.sent == [b"HelloConn\0"]


def test_ctrl_v1_wrong_reply_raises():
    ctrl_conn = FakeConnection([b"Nonsense\0\0"], refuse=[b"BeginCtrl\0"])
    device = FakeDevice([ctrl_conn])
    with pytest.raises(FdrError):
        FdrClient.connect(device, FdrType.CTRL)
    assert ctrl_conn.closed.is_set()


def test_ctrl_without_conn_port_raises_and_closes():
    ctrl_conn = FakeConnection(plist_items({"Other": 1}))
    device = FakeDevice([ctrl_conn])
    with pytest.raises(FdrError):
        FdrClient.connect(device, FdrType.CTRL)
    assert ctrl_conn.closed.is_set()


def test_conn_with_wrong_hello_reply_raises():
    device = FakeDevice(
        [
            FakeConnection(plist_items({"ConnPort": 7})),
            FakeConnection(plist_items({"Command": "Goodbye"})),
        ]
    )
    FdrClient.connect(device, FdrType.CTRL)
    with pytest.raises(FdrError):
        FdrClient.connect(device, FdrType.CONN)


def test_connect_gives_up_after_ten_attempts(monkeypatch):
    delays = []
    monkeypatch.setattr(fdr.time, "sleep", delays.append)
    device = FakeDevice([])
    with pytest.raises(FdrError):
        FdrClient.connect(device, FdrType.CTRL)
    assert device.ports == [CTRL_PORT] * 10
    assert len(delays) == 9


def test_poll_timeout_keeps_going():
    client = FdrClient(FakeConnection([TimeoutError()]))
    assert client.poll_and_handle_message() is True


def test_poll_short_command_is_treated_as_timeout():
    client = FdrClient(FakeConnection([b"\x01"]))
    assert client.poll_and_handle_message() is True


def test_poll_receive_failure_raises():
    client = FdrClient(FakeConnection([ConnectionResetError()]))
    with pytest.raises(FdrError):
        client.poll_and_handle_message()


def test_unknown_packet_is_ignored():
    connection = FakeConnection([cmd(0x77)])
    client = FdrClient(connection)
    assert client.poll_and_handle_message() is True
    assert connection.sent == []


def test_ping_gets_pong():
    connection = FakeConnection([cmd(0xBBAA)] + plist_items({"Command": "Ping"}))
    client = FdrClient(connection)
    assert client.poll_and_handle_message() is True
    assert plistlib.loads(connection.sent[-1]) == {"Pong": True}
    assert struct.unpack("<I", connection.sent[-2])[0] == len(connection.sent[-1])


def test_unknown_plist_command_raises():
    connection = FakeConnection([cmd(0xBBAA)] + plist_items({"Command": "Dance"}))
    with pytest.raises(FdrError):
        FdrClient(connection).poll_and_handle_message()
    assert connection.sent == []


def test_plist_without_command_raises():
    connection = FakeConnection([cmd(0xBBAA)] + plist_items({"Other": "x"}))
    with pytest.raises(FdrError):
        FdrClient(connection).poll_and_handle_message()


def test_short_proxy_command_acks_and_polls_again():
    connection = FakeConnection([cmd(0x105), b"\x00\x01", TimeoutError()])
    client = FdrClient(connection)
    assert client.poll_and_handle_message() is True
    assert connection.sent == [b"\x05\x00"]


def test_non_connect_proxy_command_is_echoed():
    payload = b"\x01\x02\x03\x04"
    connection = FakeConnection([cmd(0x105), payload])
    client = FdrClient(connection)
    assert client.poll_and_handle_message() is True
    assert connection.sent == [b"\x05\x00", payload]


def test_proxy_forwards_between_device_and_socket():
    server = socket.create_server(("127.0.0.1", 0))
    port = server.getsockname()[1]
    received = []

    def serve():
        peer, _ = server.accept()
        with peer:
            received.append(peer.recv(1024))
            peer.sendall(b"world")

    worker = threading.Thread(target=serve, daemon=True)
    worker.start()

    host = b"127.0.0.1"
    payload = b"\x00\x03" + bytes([len(host)]) + host + port.to_bytes(2, "big")
    connection = FakeConnection(
        [cmd(0x105), payload, b"hello"], on_empty=TimeoutError
    )
    client = FdrClient(connection)
    try:
        assert client.poll_and_handle_message() is False
    finally:
        worker.join(5)
        server.close()
    assert received == [b"hello"]
    assert connection.sent[:2] == [b"\x05\x00", payload]
    assert b"".join(connection.sent[2:]) == b"world"


def test_sync_message_starts_data_connection():
    ctrl_conn = FakeConnection(plist_items({"ConnPort": 4242}) + [cmd(1), b"\x00\x00"])
    conn_conn = FakeConnection(plist_items({"Command": "HelloConn"}))
    device = FakeDevice([ctrl_conn, conn_conn])

    ctrl = FdrClient.connect(device, FdrType.CTRL)
    assert ctrl.poll_and_handle_message() is True
    assert device.ports == [CTRL_PORT, 4242]
    assert conn_conn.closed.wait(5)
    assert conn_conn.sent == [b"HelloConn\0"]


def test_sync_message_with_wrong_size_raises():
    connection = FakeConnection([cmd(1), b"\x00\x00\x00"])
    with pytest.raises(FdrError):
        FdrClient(connection, FakeDevice([])).poll_and_handle_message()


def test_listen_on_data_connection_stops_on_failure():
    connection = FakeConnection([cmd(0xBBAA)] + plist_items({"Command": "Ping"}))
    client = FdrClient(connection, fdr_type=FdrType.CONN)
    client.listen()
    assert client.connection is None
    assert connection.closed.is_set()
    assert plistlib.loads(connection.sent[-1]) == {"Pong": True}


def test_listen_on_ctrl_continues_after_timeouts():
    connection = FakeConnection([TimeoutError(), cmd(0x77), TimeoutError()])
    client = FdrClient(connection, fdr_type=FdrType.CTRL)
    client.listen()
    assert connection.items == []
    assert client.connection is None


def test_disconnect_is_idempotent_and_context_manager_closes():
    connection = FakeConnection()
    with FdrClient(connection) as client:
        assert client.connection is connection
    assert connection.closed.is_set()
    client.disconnect()
    assert client.connection is None
    with pytest.raises(FdrError):
        client.poll_and_handle_message()