import http.client

import pytest
import requests

import hello_server


def _url(lifecycle, path="/"):
    return f"http://127.0.0.1:{lifecycle.port}{path}"


@pytest.mark.parametrize("method", [
    "GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "TRACE", "PROPFIND", "PURGE", "FOO",
])
def test_root_serves_page_for_any_method(start_server, method):
    lifecycle = start_server()
    r = requests.request(method, _url(lifecycle), timeout=2)
    assert r.status_code == 200
    assert r.headers["Content-Type"] == "text/html"
    assert r.content == hello_server.PAGE


@pytest.mark.parametrize("path", ["/index.html", "/a/b/c", "/?q=1"])
def test_every_path_serves_page(start_server, path):
    lifecycle = start_server()
    r = requests.get(_url(lifecycle, path), timeout=2)
    assert r.status_code == 200
    assert r.content == hello_server.PAGE


def test_head_has_headers_only(start_server):
    lifecycle = start_server()
    r = requests.head(_url(lifecycle), timeout=2)
    assert r.status_code == 200
    assert r.headers["Content-Type"] == "text/html"
    assert r.headers["Content-Length"] == str(len(hello_server.PAGE))
    assert r.content == b""


def test_request_body_is_ignored_and_connection_reused(start_server):
    lifecycle = start_server()
    conn = http.client.HTTPConnection("127.0.0.1", lifecycle.port, timeout=2)
    try:
        conn.request("POST", "/", body=b'{"hello": "world"}',
                     headers={"Content-Type": "application/json"})
        resp = conn.getresponse()
        assert resp.status == 200
        assert resp.read() == hello_server.PAGE

        conn.request("GET", "/")
        resp = conn.getresponse()
        assert resp.status == 200
        assert resp.read() == hello_server.PAGE
    finally:
        conn.close()


def test_chunked_body_gets_page(start_server):
    lifecycle = start_server()
    conn = http.client.HTTPConnection("127.0.0.1", lifecycle.port, timeout=2)
    try:
        conn.request("POST", "/", body=iter([b"abc"]), encode_chunked=True)
        resp = conn.getresponse()
        assert resp.status == 200
        assert resp.read() == hello_server.PAGE
    finally:
        conn.close()


def test_custom_page():
    config = hello_server.ServerConfig("127.0.0.1:0")
    handler_cls = hello_server.build_handler(config, page=b"<p>hi</p>")
    lifecycle = hello_server.Lifecycle(hello_server.build_server(config, handler_cls), config)
    lifecycle.start()
    try:
        r = requests.get(_url(lifecycle), timeout=2)
        assert r.content == b"<p>hi</p>"
        assert r.headers["Content-Length"] == "9"
    finally:
        lifecycle.shutdown()


def test_write_failure_is_logged_and_swallowed(start_server, capsys):
    base = hello_server.build_handler(hello_server.ServerConfig("127.0.0.1:0"))

    class FlakyHandler(base):
        failures = 1

        def end_headers(self):
            if FlakyHandler.failures:
                FlakyHandler.failures -= 1
                raise BrokenPipeError("client went away")
            super().end_headers()

    lifecycle = start_server(FlakyHandler)

    with pytest.raises(requests.ConnectionError):
        requests.get(_url(lifecycle), timeout=2)
    assert "http: Error writing response: client went away" in capsys.readouterr().err

    # the server keeps serving other requests
    r = requests.get(_url(lifecycle), timeout=2)
    assert r.status_code == 200
    assert r.content == hello_server.PAGE


def test_access_log_goes_to_stdout(start_server, capsys):
    lifecycle = start_server()
    requests.get(_url(lifecycle, "/logged"), timeout=2)
    lifecycle.shutdown()
    out = capsys.readouterr().out
    assert '"GET /logged HTTP/1.1" 200' in out


def test_idle_timeout_closes_keepalive_connection(start_server):
    lifecycle = start_server(idle_timeout=0.2)
    conn = http.client.HTTPConnection("127.0.0.1", lifecycle.port, timeout=2)
    try:
        conn.request("GET", "/")
        assert conn.getresponse().read() == hello_server.PAGE
        # server drops the connection once it sits idle past the timeout
        assert conn.sock.recv(1) == b""
    finally:
        conn.close()
