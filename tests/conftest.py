import socket
import threading
from pathlib import Path

import pytest

from file_server import FileServer, WorkerPool

PUBLIC_DIR = Path(__file__).resolve().parent.parent / "public"


def read_all(sock: socket.socket) -> bytes:
    """Read from the socket until the peer closes it."""
    chunks = []
    while True:
        data = sock.recv(65536)
        if not data:
            break
        chunks.append(data)
    return b"".join(chunks)


def split_response(raw: bytes):
    """Split a raw response into (status line, header dict, body)."""
    head, _, body = raw.partition(b"\r\n\r\n")
    lines = head.decode("ascii").split("\r\n")
    headers = {}
    for line in lines[1:]:
        key, _, value = line.partition(": ")
        headers[key] = value
    return lines[0], headers, body


@pytest.fixture
def public_dir():
    return PUBLIC_DIR


@pytest.fixture
def make_server():
    """Build a FileServer over a given root without binding it."""
    pools = []

    def factory(root, request_timeout=5.0):
        pool = WorkerPool(1)
        pools.append(pool)
        return FileServer(pool, host="127.0.0.1", port=0, root=str(root),
                          request_timeout=request_timeout, log_file=None)

    yield factory
    for pool in pools:
        pool.shutdown()


@pytest.fixture
def exchange():
    """Send raw bytes to FileServer.handle_connection over a socket pair."""

    def run(server: FileServer, request: bytes) -> bytes:
        server_side, client_side = socket.socketpair()
        worker = threading.Thread(target=server.handle_connection, args=(server_side, ("test", 0)))
        worker.start()
        with client_side:
            client_side.settimeout(10)
            client_side.sendall(request)
            response = read_all(client_side)
        worker.join(timeout=10)
        assert not worker.is_alive()
        return response

    return run


@pytest.fixture
def running_server(public_dir):
    """A live server on an ephemeral port, backed by an 8-thread pool."""
    pool = WorkerPool(8)
    pool.start()
    server = FileServer(pool, host="127.0.0.1", port=0, root=str(public_dir),
                        request_timeout=5.0, log_file=None)
    server.bind()
    thread = threading.Thread(target=server.serve_forever, name="Acceptor")
    thread.start()

    yield server

    server.stop()
    thread.join(timeout=5)
    pool.shutdown()


def http_request(address, request: bytes) -> bytes:
    with socket.create_connection(address, timeout=10) as sock:
        sock.sendall(request)
        return read_all(sock)
