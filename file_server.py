#!/usr/bin/env python3
"""
Whitelisted Static File Server

A minimal HTTP/1.1 server built directly on sockets. Every connection carries
exactly one request line; the requested path is checked against a fixed
whitelist and the matching file under ``public/`` is sent back, followed by
closing the connection. One path (``/classic.html``) is a template: every
``{time}`` token in it is replaced with the current wall-clock time before it
is sent.

The whitelist is the only protection against path traversal. Whitelisted
paths are mapped literally onto the root directory without canonicalization,
so every entry must be a known-safe relative path.

Python Version: 3.8+
"""

import datetime
import logging
import mimetypes
import os
import queue
import signal
import socket
import sys
import threading
from typing import Callable, List, NamedTuple, Optional, Tuple

THREAD_POOL_SIZE = 64
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 9999
PUBLIC_DIR = "public"
LOG_FILE = "logs/server.log"

MAX_REQUEST_LINE = 8192
REQUEST_TIMEOUT = 30.0
ACCEPT_POLL_INTERVAL = 0.5

ALLOWED_PATHS = frozenset([
    "/index.html",
    "/spring.svg",
    "/spring.png",
    "/resources.html",
    "/styles.css",
    "/app.js",
    "/links.html",
    "/forms.html",
    "/classic.html",
    "/events.html",
    "/events.js",
])

DYNAMIC_PATH = "/classic.html"
TIME_PLACEHOLDER = "{time}"

LOGGER_NAME = "FileServer"


def is_allowed_path(path: str) -> bool:
    """Return True iff ``path`` is exactly one of the whitelisted paths."""
    return path in ALLOWED_PATHS


class ResponseHeader(NamedTuple):
    """Status line and headers of a single response."""

    status_code: int
    reason: str
    content_type: Optional[str]
    content_length: int

    def to_bytes(self) -> bytes:
        """
        Frame the header block, terminated by an empty line.

        The Content-Type line is left out when the type is unknown.
        """
        lines = [f"HTTP/1.1 {self.status_code} {self.reason}"]
        if self.content_type:
            lines.append(f"Content-Type: {self.content_type}")
        lines.append(f"Content-Length: {self.content_length}")
        lines.append("Connection: close")
        return ("\r\n".join(lines) + "\r\n\r\n").encode("ascii")


def ok_header(content_type: Optional[str], content_length: int) -> ResponseHeader:
    return ResponseHeader(200, "OK", content_type, content_length)


def not_found_header() -> ResponseHeader:
    return ResponseHeader(404, "Not Found", None, 0)


def setup_logging(log_file: Optional[str] = LOG_FILE) -> logging.Logger:
    """
    Configure the server logger.

    Handlers are attached only once per process, so constructing several
    servers does not duplicate log lines.

    Args:
        log_file: Path of the log file, or None to log to the console only

    Returns:
        The configured logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger

    log_format = "%(asctime)s [%(levelname)s] [%(threadName)s] %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"
    formatter = logging.Formatter(log_format, date_format)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode='a')
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger


class WorkerPool:
    """
    Fixed-size pool of worker threads fed from one FIFO queue.

    The queue is unbounded: when every worker is busy, submitted work waits
    for a free worker instead of being dropped. Shutting down enqueues one
    stop marker per worker behind the pending work, so everything submitted
    before shutdown still runs.
    """

    _STOP = None

    def __init__(self, size: int = THREAD_POOL_SIZE):
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self.size = size
        self.logger = logging.getLogger(LOGGER_NAME)
        self._tasks = queue.Queue()
        self._threads = []
        self._lock = threading.Lock()
        self._started = False
        self._closed = False

    def __enter__(self) -> "WorkerPool":
        self.start()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.shutdown(wait=True)

    def start(self):
        """Spawn the worker threads. Calling it again is a no-op."""
        with self._lock:
            if self._started:
                return
            if self._closed:
                raise RuntimeError("cannot start a pool that was shut down")
            for i in range(self.size):
                thread = threading.Thread(target=self._worker_thread, name=f"Worker-{i+1}")
                thread.daemon = True
                thread.start()
                self._threads.append(thread)
            self._started = True
        self.logger.info(f"Worker pool started with {self.size} threads")

    def submit(self, fn: Callable, *args):
        """Queue ``fn(*args)`` for execution on a worker thread."""
        with self._lock:
            if self._closed:
                raise RuntimeError("cannot submit work to a pool that was shut down")
            self._tasks.put((fn, args))

    def pending(self) -> int:
        return self._tasks.qsize()

    def shutdown(self, wait: bool = True):
        """
        Stop accepting work and let the workers drain the queue.

        Args:
            wait: Block until every worker thread has exited
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            for _ in self._threads:
                self._tasks.put(self._STOP)

        if wait:
            for thread in self._threads:
                thread.join()
            self.logger.info("Worker pool stopped")

    def _worker_thread(self):
        """Run queued units of work until the stop marker arrives."""
        thread_name = threading.current_thread().name

        while True:
            task = self._tasks.get()
            try:
                if task is self._STOP:
                    return
                fn, args = task
                fn(*args)
            except Exception:
                self.logger.exception(f"[{thread_name}] Unhandled error in worker thread")
            finally:
                self._tasks.task_done()


class FileServer:
    """
    Accepts connections and serves whitelisted files, one request per connection.

    The worker pool is owned by the caller: it must be started before the
    server accepts connections and shut down after the accept loop returns.
    """

    def __init__(self, pool: WorkerPool, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT,
                 root: str = PUBLIC_DIR, request_timeout: Optional[float] = REQUEST_TIMEOUT,
                 log_file: Optional[str] = LOG_FILE):
        """
        Args:
            pool: Worker pool running the request handler
            host: Address to listen on
            port: Port to listen on (0 picks a free port)
            root: Directory the whitelisted paths are mapped onto
            request_timeout: Per-connection socket timeout in seconds, None for no timeout
            log_file: Log file path, None to log to the console only
        """
        self.pool = pool
        self.host = host
        self.port = port
        self.root = root
        self.request_timeout = request_timeout
        self.server_socket = None
        self.server_address = None
        self.running = False
        self.total_connections = 0

        self.logger = setup_logging(log_file)

        if not os.path.isdir(self.root):
            self.logger.warning(f"Root directory does not exist: {self.root}")

        self.logger.info(f"File server initialized: {host}:{port}, root={root}")

    def install_signal_handlers(self):
        """Stop the server on SIGINT and SIGTERM. Must be called from the main thread."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        self.logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.stop()

    def bind(self) -> Tuple[str, int]:
        """
        Create the listening socket.

        Returns:
            The address actually bound

        Raises:
            OSError: The address is in use or cannot be bound
        """
        server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            server_socket.bind((self.host, self.port))
            server_socket.listen(128)
            server_socket.settimeout(ACCEPT_POLL_INTERVAL)
        except OSError:
            server_socket.close()
            raise

        self.server_socket = server_socket
        self.server_address = server_socket.getsockname()[:2]
        self.running = True
        self.logger.info(f"Server listening on {self.server_address[0]}:{self.server_address[1]}")
        return self.server_address

    def start(self):
        """Bind and run the accept loop until stop() is called."""
        self.bind()
        self.serve_forever()

    def serve_forever(self):
        """
        Accept connections and hand each one to the worker pool.

        Accept errors are logged and never end the loop. It returns after
        stop(), or when the pool refuses new work.
        """
        if self.server_socket is None:
            raise RuntimeError("bind() must be called before serve_forever()")

        self.logger.info("Server ready to accept connections...")
        try:
            while self.running:
                try:
                    client_socket, client_address = self.server_socket.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    if self.running:
                        self.logger.error(f"Error accepting connection: {e}")
                    continue

                self.total_connections += 1
                self.logger.info(f"New connection from {client_address[0]}:{client_address[1]}")
                try:
                    self.pool.submit(self.handle_connection, client_socket, client_address)
                except RuntimeError as e:
                    self.logger.error(f"Cannot dispatch connection: {e}")
                    client_socket.close()
                    break
                self.logger.debug(f"Connection queued for processing. Queue size: {self.pool.pending()}")
        finally:
            self.running = False
            self.server_socket.close()
            self.logger.info(f"Server stopped. Total connections: {self.total_connections}")

    def stop(self):
        """Ask the accept loop to exit; it closes the listening socket itself."""
        self.running = False

    def handle_connection(self, client_socket: socket.socket, client_address: Tuple[str, int]) -> bool:
        """
        Serve a single request and close the connection.

        Every failure is contained here: a malformed request line closes the
        connection silently, a path outside the whitelist gets a 404, and I/O
        errors are logged before the connection is closed.

        Args:
            client_socket: Accepted client connection, owned by this call
            client_address: Client address tuple (host, port)

        Returns:
            True if a complete response was written, False otherwise
        """
        connection_id = f"{client_address[0]}:{client_address[1]}" if client_address else "local"

        with client_socket:
            if self.request_timeout is not None:
                client_socket.settimeout(self.request_timeout)

            sent = self._respond(client_socket, connection_id)

        if not sent:
            self.logger.info(f"Closed {connection_id} without a complete response")
        return sent

    def _respond(self, client_socket: socket.socket, connection_id: str) -> bool:
        request_line = self._read_request_line(client_socket, connection_id)
        if request_line is None:
            return False

        parts = request_line.split(" ")
        if len(parts) != 3 or not all(parts):
            self.logger.warning(f"Malformed request line from {connection_id}: {request_line!r}")
            return False

        path = parts[1]
        if not is_allowed_path(path):
            self.logger.info(f"404 {path} -> {connection_id}")
            return self._send(client_socket, not_found_header().to_bytes(), connection_id)

        file_path = self._resolve(path)
        content_type, _ = mimetypes.guess_type(file_path)

        if path == DYNAMIC_PATH:
            return self._serve_template(client_socket, file_path, content_type, connection_id)
        return self._serve_file(client_socket, file_path, content_type, connection_id)

    def _read_request_line(self, client_socket: socket.socket, connection_id: str) -> Optional[str]:
        """
        Read the first line of the request without its terminator.

        The line ends at ``\\r\\n``, a bare ``\\n``, a bare ``\\r``, or at EOF
        when the client half-closes after sending it.

        Returns:
            The decoded line, or None when the client sent nothing usable
        """
        raw = bytearray()
        char = b""
        try:
            with client_socket.makefile("rb") as rfile:
                while len(raw) <= MAX_REQUEST_LINE:
                    char = rfile.read(1)
                    if not char or char in b"\r\n":
                        break
                    raw += char
        except OSError as e:
            self.logger.error(f"Error reading request from {connection_id}: {e}")
            return None

        if not raw and not char:
            self.logger.info(f"Connection closed by client before sending a request: {connection_id}")
            return None
        if len(raw) > MAX_REQUEST_LINE:
            self.logger.warning(f"Request line too long from {connection_id}")
            return None

        return raw.decode("iso-8859-1")

    def _resolve(self, path: str) -> str:
        # Literal mapping onto the root; safety relies on the whitelist.
        return os.path.join(self.root, path.lstrip("/"))

    def _serve_template(self, client_socket: socket.socket, file_path: str,
                        content_type: Optional[str], connection_id: str) -> bool:
        """Send the template with every placeholder replaced by the current time."""
        content = self._render_template(file_path, connection_id)
        if content is None:
            return False

        header = ok_header(content_type, len(content)).to_bytes()
        if not self._send(client_socket, header + content, connection_id):
            return False

        self.logger.info(f"200 {file_path} ({len(content)} bytes, rendered) -> {connection_id}")
        return True

    def _render_template(self, file_path: str, connection_id: str) -> Optional[bytes]:
        # Line endings are kept as stored.
        try:
            with open(file_path, "r", encoding="utf-8", newline="") as f:
                template = f.read()
        except (OSError, UnicodeDecodeError) as e:
            self.logger.error(f"Error reading template {file_path} for {connection_id}: {e}")
            return None

        now = datetime.datetime.now().isoformat()
        return template.replace(TIME_PLACEHOLDER, now).encode("utf-8")

    def _serve_file(self, client_socket: socket.socket, file_path: str,
                    content_type: Optional[str], connection_id: str) -> bool:
        """
        Stream a file verbatim after its header.

        The size is taken from the open file, so the header is only sent once
        the file is known to be readable.
        """
        try:
            with open(file_path, "rb") as f:
                file_size = os.fstat(f.fileno()).st_size
                client_socket.sendall(ok_header(content_type, file_size).to_bytes())
                client_socket.sendfile(f)
        except OSError as e:
            self.logger.error(f"Error serving file {file_path} to {connection_id}: {e}")
            return False

        self.logger.info(f"200 {file_path} ({file_size} bytes) -> {connection_id}")
        return True

    def _send(self, client_socket: socket.socket, data: bytes, connection_id: str) -> bool:
        try:
            client_socket.sendall(data)
        except OSError as e:
            self.logger.error(f"Error sending response to {connection_id}: {e}")
            return False
        return True


def parse_args(argv: List[str]) -> Tuple[int, str, int]:
    """
    Read ``[port] [host] [max_threads]`` from the command line arguments.

    Raises:
        ValueError: An argument is not a number or is out of range
    """
    values = list(argv) + [None] * (3 - len(argv))
    port_arg, host_arg, threads_arg = values[:3]

    try:
        port = DEFAULT_PORT if port_arg is None else int(port_arg)
    except ValueError:
        raise ValueError(f"port must be an integer, got {port_arg!r}") from None
    if not (1 <= port <= 65535):
        raise ValueError(f"port must be between 1 and 65535, got {port}")

    try:
        max_threads = THREAD_POOL_SIZE if threads_arg is None else int(threads_arg)
    except ValueError:
        raise ValueError(f"max_threads must be an integer, got {threads_arg!r}") from None
    if max_threads < 1:
        raise ValueError("max_threads must be at least 1")

    return port, host_arg or DEFAULT_HOST, max_threads


def main():
    """
    Main entry point for the file server.

    Usage: file_server.py [port] [host] [max_threads]
    """
    try:
        port, host, max_threads = parse_args(sys.argv[1:])
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    with WorkerPool(max_threads) as pool:
        server = FileServer(pool, host, port)
        server.install_signal_handlers()
        try:
            server.bind()
        except OSError as e:
            server.logger.error(f"Failed to start server on {host}:{port}: {e}")
            print(f"Error starting server: {e}")
            sys.exit(1)

        print(f"Serving {PUBLIC_DIR}/ on {host}:{port} with {max_threads} threads...")
        print("Press Ctrl+C to stop the server")
        server.serve_forever()


if __name__ == "__main__":
    main()
