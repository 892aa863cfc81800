"""Server lifecycle and the control/HTTP protocols, driven directly (no harness)."""

import json
import socket
import threading
import urllib.error
import urllib.request

import pytest

from kvlink import keygen
from kvlink.errors import KVLinkError, ServerClosedError
from kvlink.server import Server, ServerConfig
from kvlink.testserver import fetch_url, random_port


@pytest.fixture
def server_cfg(data_dir):
    kp = keygen.new_with_write(f"{data_dir}/.ssh", "kvlink_server")
    cfg = ServerConfig(
        ssh_port=random_port(),
        http_port=random_port(),
        health_port=random_port(),
        data_dir=f"{data_dir}/.data",
    )
    return cfg.with_keys(kp.public_key, kp.private_key_pem)


@pytest.fixture
def running(server_cfg):
    srv = Server(server_cfg)
    t = threading.Thread(target=srv.start, daemon=True)
    t.start()
    fetch_url(f"http://127.0.0.1:{server_cfg.health_port}", 5, interval=0.1)
    yield srv
    try:
        srv.close()
    except ServerClosedError:
        pass
    t.join(timeout=5)


def _control(port: int, req: dict) -> dict:
    with socket.create_connection(("127.0.0.1", port), timeout=5) as s:
        s.sendall(json.dumps(req).encode() + b"\n")
        with s.makefile("rb") as f:
            return json.loads(f.readline())


def test_requires_keys(data_dir):
    with pytest.raises(KVLinkError):
        Server(ServerConfig(data_dir=data_dir))


def test_health(running, server_cfg):
    resp = fetch_url(f"http://127.0.0.1:{server_cfg.health_port}", 0)
    assert resp.body == b"ok"


def test_identity_is_configured_key(running, server_cfg):
    assert _control(server_cfg.ssh_port, {"op": "identity"})["public_key"] == server_cfg.public_key


def test_auth_rejects_bad_signature(running, server_cfg):
    ch = _control(server_cfg.ssh_port, {"op": "challenge"})
    other = keygen.new()
    reply = _control(server_cfg.ssh_port, {
        "op": "auth",
        "public_key": other.public_key,
        "nonce": ch["nonce"],
        "signature": "AAAA",
    })
    assert "error" in reply


def test_nonce_is_single_use(running, server_cfg):
    import base64

    kp = keygen.new()
    ch = _control(server_cfg.ssh_port, {"op": "challenge"})
    req = {
        "op": "auth",
        "public_key": kp.public_key,
        "nonce": ch["nonce"],
        "signature": base64.b64encode(kp.private_key.sign(ch["nonce"].encode())).decode(),
    }
    assert "token" in _control(server_cfg.ssh_port, req)
    assert "error" in _control(server_cfg.ssh_port, req)


def test_http_requires_token(running, server_cfg):
    url = f"http://127.0.0.1:{server_cfg.http_port}/v1/kv/keys?ns=x"
    with pytest.raises(urllib.error.HTTPError) as exc:
        urllib.request.urlopen(url, timeout=5)
    assert exc.value.code == 401


def _login(port: int) -> str:
    import base64

    kp = keygen.new()
    ch = _control(port, {"op": "challenge"})
    reply = _control(port, {
        "op": "auth",
        "public_key": kp.public_key,
        "nonce": ch["nonce"],
        "signature": base64.b64encode(kp.private_key.sign(ch["nonce"].encode())).decode(),
    })
    return reply["token"]


@pytest.mark.parametrize("body", [
    b"[]",
    b'"just a string"',
    b"\xff\xfe",
    json.dumps({"ns": 1, "key": "k", "value": "dg=="}).encode(),
    json.dumps({"ns": "x", "key": ["k"], "value": "dg=="}).encode(),
])
def test_malformed_post_body_is_bad_request(running, server_cfg, body):
    token = _login(server_cfg.ssh_port)
    req = urllib.request.Request(
        f"http://127.0.0.1:{server_cfg.http_port}/v1/kv/set",
        data=body,
        method="POST",
        headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
    )
    with pytest.raises(urllib.error.HTTPError) as exc:
        urllib.request.urlopen(req, timeout=5)
    assert exc.value.code == 400

    # the server is still serving afterwards
    assert fetch_url(f"http://127.0.0.1:{server_cfg.health_port}", 0).status == 200


def test_close_twice_reports_error(running):
    running.close()
    with pytest.raises(ServerClosedError):
        running.close()


def test_close_without_start(server_cfg):
    srv = Server(server_cfg)
    srv.close()
    with pytest.raises(ServerClosedError):
        srv.start()


def test_port_in_use_fails_start(server_cfg):
    with socket.socket() as s:
        s.bind(("127.0.0.1", server_cfg.http_port))
        s.listen()
        srv = Server(server_cfg)
        with pytest.raises(OSError):
            srv.start()
        srv.close()
