import socket
import time

import pytest

import hello_server


def find_free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def wait_port(host, port, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            with socket.create_connection((host, port), timeout=0.2):
                return
        except OSError:
            time.sleep(0.05)
    raise TimeoutError(f"{host}:{port} not accepting connections after {timeout}s")


@pytest.fixture
def start_server():
    """Start an in-process server on an ephemeral port; stopped at teardown."""
    started = []

    def _start(handler_cls=None, **config_kwargs):
        config = hello_server.ServerConfig("127.0.0.1:0", **config_kwargs)
        lifecycle = hello_server.Lifecycle(hello_server.build_server(config, handler_cls), config)
        lifecycle.start()
        started.append(lifecycle)
        return lifecycle

    yield _start

    for lifecycle in started:
        try:
            lifecycle.shutdown()
        except hello_server.ShutdownTimeout:
            pass
