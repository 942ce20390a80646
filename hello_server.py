#!/usr/bin/env python3
"""
Simple HTTP service (using the standard library): every path answers 200
with a static HTML page.

SIGINT / SIGTERM trigger a graceful shutdown: the listener is closed, idle
keep-alive connections are dropped and in-flight requests get a bounded
grace period to finish. If they don't, the process exits non-zero.

Run with ``python -m hello_server`` (address from $PORT, default :8888) or
``python -m hello_server --fixed`` (always :8080).
"""

import contextlib
import dataclasses
import enum
import http.server
import os
import signal
import socket
import socketserver
import sys
import threading
import time

# ================================
# Defaults
# ================================
DEFAULT_ADDRESS = ":8888"
FIXED_ADDRESS = ":8080"
PORT_ENV_VAR = "PORT"

READ_TIMEOUT = 5.0
WRITE_TIMEOUT = 10.0
IDLE_TIMEOUT = 120.0
SHUTDOWN_TIMEOUT = 5.0

# serve_forever() poll interval, and how often the main thread wakes up to
# run Python signal handlers while it waits for shutdown
POLL_INTERVAL = 0.1

# Request bodies are ignored; up to this many bytes are read and dropped so
# the keep-alive stream stays in sync, anything larger closes the connection.
MAX_DISCARD_BODY = 256 << 10

PAGE = b"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Hello from Python!</title>
</head>
<body>
    <p> Hello from Docker! I'm a Python server. </p>
</body>
</html>
"""


def _log_error(msg):
    print(f"{time.strftime('%Y/%m/%d %H:%M:%S')} {msg}", file=sys.stderr)


# ================================
# Errors
# ================================
class HelloServerError(Exception):
    pass


class StartupError(HelloServerError):
    """The listener could not be bound (bad address, port in use...)."""


class ServeError(HelloServerError):
    """The accept loop died without being asked to stop."""


class ShutdownTimeout(HelloServerError):
    """In-flight requests were still running when the grace period ran out."""


# ================================
# Config
# ================================
@dataclasses.dataclass(frozen=True)
class ServerConfig:
    address: str
    read_timeout: float = READ_TIMEOUT
    write_timeout: float = WRITE_TIMEOUT
    idle_timeout: float = IDLE_TIMEOUT
    shutdown_timeout: float = SHUTDOWN_TIMEOUT

    @classmethod
    def from_env(cls, environ=None, default_address=DEFAULT_ADDRESS,
                 port_env_var=PORT_ENV_VAR, **timeouts):
        """
        Build the config from the environment.

        ``environ[port_env_var]`` (a bare port number) wins over
        ``default_address``; pass ``port_env_var=None`` to always bind the
        default. Never fails: a bad port only shows up when binding.
        """
        environ = os.environ if environ is None else environ
        port = environ.get(port_env_var, "") if port_env_var else ""
        if port:
            address = ":" + port
            print(f"Using port from environment variable {port_env_var}: {address}")
        else:
            address = default_address
            print(f"Using default port: {address}")
        return cls(address, **timeouts)


def parse_address(address):
    """':8888' -> ('', 8888), '127.0.0.1:0' -> ('127.0.0.1', 0)"""
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {address!r}")
    if not (port.isascii() and port.isdigit()):
        raise ValueError(f"invalid port {port!r}")
    port_num = int(port)
    if port_num > 65535:
        raise ValueError(f"invalid port {port!r}")
    return host, port_num


# ================================
# Handler
# ================================
def build_handler(config, page=PAGE):
    """Return a handler class that serves ``page`` for any path and method."""

    class HelloHandler(http.server.BaseHTTPRequestHandler):
        protocol_version = "HTTP/1.1"
        server_version = "HelloServer/1.0"
        # applied by StreamRequestHandler.setup(): wait for the first request
        timeout = config.read_timeout

        def setup(self):
            super().setup()
            self._served = False

        def handle(self):
            if not self.server.track(self.connection):
                return
            try:
                super().handle()
            finally:
                self.server.untrack(self.connection)

        def handle_one_request(self):
            if self._served:
                self.connection.settimeout(config.idle_timeout)
            try:
                super().handle_one_request()
            finally:
                self._served = True
                if not self.server.mark_idle(self.connection):
                    self.close_connection = True

        def parse_request(self):
            # request line is in, the rest of the request is on the read clock
            self.connection.settimeout(config.read_timeout)
            if not self.server.mark_active(self.connection):
                self.close_connection = True
                return False
            return super().parse_request()

        # ---------------------------
        # helpers
        # ---------------------------
        def _discard_body(self):
            if self.headers.get("Transfer-Encoding"):
                self.close_connection = True
                return
            try:
                length = int(self.headers.get("Content-Length") or 0)
            except ValueError:
                self.close_connection = True
                return
            if length <= 0:
                return
            if length > MAX_DISCARD_BODY:
                self.close_connection = True
                return
            try:
                self.rfile.read(length)
            except OSError as e:
                self.close_connection = True
                self.log_error("Error reading request body: %s", e)

        def _send_page(self, body=True):
            self._discard_body()
            self.connection.settimeout(config.write_timeout)
            try:
                self.send_response(200)
                self.send_header("Content-Type", "text/html")
                self.send_header("Content-Length", str(len(page)))
                if self.close_connection or self.server.draining:
                    self.send_header("Connection", "close")
                self.end_headers()
                if body:
                    self.wfile.write(page)
            except OSError as e:
                # client is gone or too slow; it gets whatever made it out
                self.close_connection = True
                self.log_error("Error writing response: %s", e)

        # ---------------------------
        # Routes
        # ---------------------------
        def do_GET(self):
            self._send_page()

        def do_HEAD(self):
            self._send_page(body=False)

        def __getattr__(self, name):
            # POST, PUT, TRACE, made-up verbs...: every other method gets the page
            if name.startswith("do_"):
                return self.do_GET
            raise AttributeError(name)

        def log_message(self, fmt, *args):
            print(f"{self.client_address[0]} - - [{self.log_date_time_string()}] {fmt % args}")

        def log_error(self, fmt, *args):
            _log_error("http: " + fmt % args)

    return HelloHandler


# ================================
# Threading HTTP Server
# ================================
IDLE, ACTIVE, CLOSED = "idle", "active", "closed"


class HelloHTTPServer(socketserver.ThreadingMixIn, http.server.HTTPServer):
    """
    HTTPServer with one thread per connection that knows which connections
    are mid-request, so shutdown can drop the idle ones and wait on the rest.

    Created unbound; ``server_bind()`` resolves ``address`` when called.
    """
    daemon_threads = True
    block_on_close = False
    allow_reuse_address = True

    def __init__(self, address, handler_cls):
        self.address = address
        self._conns = {}
        self._conns_cond = threading.Condition()
        self._draining = False
        super().__init__(None, handler_cls, bind_and_activate=False)

    def server_bind(self):
        self.server_address = parse_address(self.address)
        super().server_bind()

    def handle_error(self, request, client_address):
        _log_error(f"http: error serving {client_address[0]}: {sys.exc_info()[1]!r}")

    # ---------------------------
    # connection states
    # ---------------------------
    def track(self, conn):
        with self._conns_cond:
            if self._draining:
                return False
            self._conns[conn] = IDLE
            return True

    def untrack(self, conn):
        with self._conns_cond:
            self._conns.pop(conn, None)
            self._conns_cond.notify_all()

    def mark_active(self, conn):
        with self._conns_cond:
            if self._conns.get(conn) != IDLE:
                return False
            self._conns[conn] = ACTIVE
            return True

    def mark_idle(self, conn):
        """False means the connection must close instead of waiting for more."""
        with self._conns_cond:
            if conn not in self._conns:
                return False
            if self._draining:
                self._conns[conn] = CLOSED
                self._conns_cond.notify_all()
                return False
            self._conns[conn] = IDLE
            return True

    @property
    def draining(self):
        return self._draining

    def active_count(self):
        with self._conns_cond:
            return sum(1 for state in self._conns.values() if state == ACTIVE)

    def drain(self, timeout):
        """
        Close idle connections and wait up to ``timeout`` seconds for the
        active ones to finish. Raises ShutdownTimeout if some are left.
        """
        deadline = time.monotonic() + timeout
        with self._conns_cond:
            self._draining = True
            for conn, state in self._conns.items():
                if state == IDLE:
                    self._conns[conn] = CLOSED
                    # wakes the handler thread blocked in readline()
                    with contextlib.suppress(OSError):
                        conn.shutdown(socket.SHUT_RDWR)
            while True:
                active = sum(1 for state in self._conns.values() if state == ACTIVE)
                if not active:
                    return
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ShutdownTimeout(
                        f"context deadline exceeded: {active} request(s) still in flight")
                self._conns_cond.wait(remaining)


def build_server(config, handler_cls=None):
    """Inert server for ``config``: nothing is bound until the Lifecycle starts it."""
    if handler_cls is None:
        handler_cls = build_handler(config)
    return HelloHTTPServer(config.address, handler_cls)


# ================================
# Lifecycle
# ================================
class State(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting down"
    STOPPED = "stopped"


class Lifecycle:
    """
    Owns the server: binds it, runs the accept loop on its own thread and
    stops it exactly once after shutdown has been requested.

    States only move forward: IDLE -> RUNNING -> SHUTTING_DOWN -> STOPPED.
    """

    def __init__(self, server, config):
        self.server = server
        self.config = config
        self.state = State.IDLE
        # reentrant: request_shutdown() may run as a signal handler on the
        # main thread while that thread holds the lock
        self._lock = threading.RLock()
        self._wakeup = threading.Event()
        self._shutdown_requested = False
        self._serve_error = None
        self._thread = None

    @property
    def port(self):
        return self.server.server_address[1]

    def start(self):
        with self._lock:
            if self.state is not State.IDLE:
                raise RuntimeError(f"cannot start server in state {self.state.value!r}")
            try:
                self.server.server_bind()
                self.server.server_activate()
            except (OSError, ValueError) as e:
                self.server.server_close()
                self.state = State.STOPPED
                raise StartupError(f"listen tcp {self.config.address}: {e}") from e

            print(f"Server listening on {self.config.address}")
            self._thread = threading.Thread(target=self._serve, name="accept-loop")
            self._thread.start()
            self.state = State.RUNNING

    def _serve(self):
        try:
            self.server.serve_forever(poll_interval=POLL_INTERVAL)
        except Exception as e:
            self._serve_error = e
            self._wakeup.set()
            return
        print("Server stopped.")

    def request_shutdown(self, signum=None, frame=None):
        """Signal-handler compatible. Only the first call does anything."""
        with self._lock:
            if self._shutdown_requested:
                return False
            self._shutdown_requested = True
        self._wakeup.set()
        return True

    def install_signal_handlers(self):
        signal.signal(signal.SIGINT, self.request_shutdown)
        signal.signal(signal.SIGTERM, self.request_shutdown)

    def wait(self):
        """Block until shutdown is requested; raise ServeError if serving broke first."""
        # Signals may land on a worker thread; Python only runs the handler on
        # the main thread, and only between bytecodes, so never block untimed.
        while not self._wakeup.wait(POLL_INTERVAL):
            pass
        if self._serve_error is not None:
            raise ServeError(str(self._serve_error)) from self._serve_error

    def shutdown(self):
        with self._lock:
            if self.state is not State.RUNNING:
                return
            self.state = State.SHUTTING_DOWN

        print("Shutting down server...")
        deadline = time.monotonic() + self.config.shutdown_timeout
        try:
            self.server.shutdown()
            # stop taking connections before waiting on the ones we have
            self.server.server_close()
            self.server.drain(max(0.0, deadline - time.monotonic()))
            self._thread.join(max(0.0, deadline - time.monotonic()))
            if self._thread.is_alive():
                raise ShutdownTimeout("context deadline exceeded: accept loop still running")
        finally:
            self.state = State.STOPPED


# ================================
# Start Server
# ================================
def run_server(config, handler_cls=None):
    """Serve until SIGINT / SIGTERM, then shut down. Returns the exit status."""
    lifecycle = Lifecycle(build_server(config, handler_cls), config)
    lifecycle.install_signal_handlers()
    try:
        lifecycle.start()
        lifecycle.wait()
    except (StartupError, ServeError) as e:
        _log_error(f"HTTP server ListenAndServe: {e}")
        return 1

    try:
        lifecycle.shutdown()
    except (ShutdownTimeout, OSError) as e:
        _log_error(f"Server shutdown failed: {e}")
        return 1

    print("Server gracefully stopped.")
    return 0


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if "--fixed" in argv:
        config = ServerConfig.from_env(default_address=FIXED_ADDRESS, port_env_var=None)
    else:
        config = ServerConfig.from_env()
    return run_server(config)


def main_fixed():
    return main(["--fixed"])


if __name__ == "__main__":
    sys.exit(main())
