"""Health probe: bounded retries with a fixed interval."""

import threading
import urllib.error
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from kvlink.errors import ProbeError
from kvlink.testserver import fetch_url, random_port


class _Resp:
    def __init__(self, status: int, body: bytes = b"ok"):
        self.status = status
        self.body = body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def read(self) -> bytes:
        return self.body


class _Opener:
    """Replays a script of outcomes: an int is a status, an exception is raised."""

    def __init__(self, script):
        self.script = list(script)
        self.calls = 0

    def __call__(self, url, timeout=None):
        outcome = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if isinstance(outcome, BaseException):
            raise outcome
        return _Resp(outcome)


@pytest.mark.parametrize("retries", [1, 2, 3, 5])
def test_never_responding_uses_retries_plus_one_attempts(retries):
    sleeps = []
    refused = ConnectionRefusedError("connection refused")
    opener = _Opener([refused])
    with pytest.raises(ProbeError) as exc:
        fetch_url("http://127.0.0.1:1", retries, sleep=sleeps.append, urlopen=opener)
    assert opener.calls == retries + 1
    assert sleeps == [1.0] * retries
    assert exc.value.__cause__ is refused


@pytest.mark.parametrize("n", [1, 2, 4])
def test_success_on_nth_attempt_stops(n):
    sleeps = []
    opener = _Opener([OSError("down")] * (n - 1) + [200])
    resp = fetch_url("http://x", 3, sleep=sleeps.append, urlopen=opener)
    assert resp.status == 200
    assert resp.body == b"ok"
    assert opener.calls == n
    assert len(sleeps) == n - 1


def test_bad_status_is_retried():
    opener = _Opener([503, urllib.error.HTTPError("http://x", 500, "boom", {}, None), 200])
    resp = fetch_url("http://x", 3, sleep=lambda _: None, urlopen=opener)
    assert resp.status == 200
    assert opener.calls == 3


def test_bad_status_exhausts_budget():
    opener = _Opener([503])
    with pytest.raises(ProbeError, match="503"):
        fetch_url("http://x", 2, sleep=lambda _: None, urlopen=opener)
    assert opener.calls == 3


def test_abort_ends_polling_early():
    crashed = RuntimeError("server crashed")
    state = {"failed": None}
    opener = _Opener([OSError("down")])

    def sleep(_):
        state["failed"] = crashed

    with pytest.raises(ProbeError) as exc:
        fetch_url("http://x", 10, sleep=sleep, urlopen=opener, abort=lambda: state["failed"])
    assert opener.calls == 1
    assert exc.value.__cause__ is crashed


def test_real_endpoint():
    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            self.send_response(200)
            self.send_header("Content-Length", "2")
            self.end_headers()
            self.wfile.write(b"ok")

        def log_message(self, format, *args):
            pass

    port = random_port()
    httpd = HTTPServer(("127.0.0.1", port), Handler)
    t = threading.Thread(target=httpd.serve_forever, daemon=True)
    t.start()
    try:
        resp = fetch_url(f"http://127.0.0.1:{port}/", 1, interval=0.05)
        assert resp.status == 200
        assert resp.body == b"ok"
    finally:
        httpd.shutdown()
        httpd.server_close()


def test_real_closed_port():
    port = random_port()
    with pytest.raises(ProbeError):
        fetch_url(f"http://127.0.0.1:{port}/", 1, interval=0.05)
