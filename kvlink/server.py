"""
kvlink server. Three listeners, each on its own port:
  - control (ssh_port): newline-delimited JSON; key challenge/auth handshake
  - HTTP KV API (http_port): per-user, per-namespace key/value storage
  - health (health_port): GET / answers 200 once every listener is bound
"""

import base64
import binascii
import hashlib
import json
import logging
import os
import secrets
import socketserver
import threading
from dataclasses import dataclass, replace
from http.server import BaseHTTPRequestHandler, HTTPServer, ThreadingHTTPServer
from typing import Optional
from urllib.parse import parse_qs, urlparse

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from . import keygen
from .errors import AuthError, KeygenError, KVLinkError, ServerClosedError
from .store import KVStore

logger = logging.getLogger(__name__)

DEFAULT_HOST = "localhost"
DEFAULT_SSH_PORT = 35353
DEFAULT_HTTP_PORT = 35354
DEFAULT_HEALTH_PORT = 35356


@dataclass(frozen=True)
class ServerConfig:
    host: str = DEFAULT_HOST
    bind_addr: str = "127.0.0.1"
    ssh_port: int = DEFAULT_SSH_PORT
    http_port: int = DEFAULT_HTTP_PORT
    health_port: int = DEFAULT_HEALTH_PORT
    data_dir: str = "data"
    public_key: str = ""
    private_key_pem: bytes = b""

    def with_keys(self, public_key: str, private_key_pem: bytes) -> "ServerConfig":
        return replace(self, public_key=public_key, private_key_pem=private_key_pem)


def default_config() -> ServerConfig:
    return ServerConfig()


def user_id_for(public_key: ed25519.Ed25519PublicKey) -> str:
    raw = public_key.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)
    return hashlib.sha256(raw).hexdigest()[:16]


class Authenticator:
    """Issues single-use nonces and trades signed nonces for session tokens."""

    def __init__(self, private_key: ed25519.Ed25519PrivateKey):
        self._key = private_key
        self._nonces: set[str] = set()
        self._tokens: dict[str, str] = {}
        self._lock = threading.Lock()

    @property
    def public_key(self) -> str:
        return keygen.public_key_openssh(self._key)

    def challenge(self) -> dict:
        nonce = secrets.token_hex(32)
        with self._lock:
            self._nonces.add(nonce)
        sig = self._key.sign(nonce.encode("ascii"))
        return {"nonce": nonce, "signature": base64.b64encode(sig).decode()}

    def authenticate(self, public_key: str, nonce: str, signature: str) -> tuple[str, str]:
        with self._lock:
            if nonce not in self._nonces:
                raise AuthError("unknown or reused nonce")
            self._nonces.discard(nonce)
        try:
            key = keygen.parse_public_key(public_key)
            key.verify(base64.b64decode(signature), nonce.encode("ascii"))
        except (KeygenError, InvalidSignature, binascii.Error) as e:
            raise AuthError("signature verification failed") from e
        user_id = user_id_for(key)
        token = secrets.token_urlsafe(32)
        with self._lock:
            self._tokens[token] = user_id
        return token, user_id

    def user_for_token(self, token: str) -> Optional[str]:
        with self._lock:
            return self._tokens.get(token)


class ControlHandler(socketserver.StreamRequestHandler):
    """One JSON request per line, one JSON reply per line."""

    def handle(self) -> None:
        auth: Authenticator = self.server.auth
        for raw in self.rfile:
            if not raw.strip():
                continue
            try:
                req = json.loads(raw.decode("utf-8"))
                if not isinstance(req, dict):
                    raise ValueError("request must be a JSON object")
                reply = self._dispatch(auth, req)
            except ValueError:
                reply = {"error": "malformed request"}
            except AuthError as e:
                reply = {"error": str(e)}
            self.wfile.write(json.dumps(reply).encode("utf-8") + b"\n")
            self.wfile.flush()

    def _dispatch(self, auth: Authenticator, req: dict) -> dict:
        op = req.get("op")
        if op == "identity":
            return {"public_key": auth.public_key}
        if op == "challenge":
            return auth.challenge()
        if op == "auth":
            token, user_id = auth.authenticate(
                str(req.get("public_key", "")),
                str(req.get("nonce", "")),
                str(req.get("signature", "")),
            )
            return {"token": token, "user_id": user_id}
        return {"error": f"unknown op: {op}"}


class ControlServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, server_address, auth: Authenticator):
        super().__init__(server_address, ControlHandler)
        self.auth = auth


def _b64(data: str) -> str:
    return base64.urlsafe_b64encode(data.encode("utf-8")).decode("ascii")


class KVHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the KV API. Values and keys travel as base64."""

    def _parse_body(self) -> dict:
        content_length = int(self.headers.get("Content-Length", 0))
        if content_length == 0:
            return {}
        raw = self.rfile.read(content_length)
        try:
            body = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return {}
        return body if isinstance(body, dict) else {}

    def _send_json(self, status: int, body: dict) -> None:
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        data = json.dumps(body).encode("utf-8")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def _user(self) -> Optional[str]:
        header = self.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            return None
        return self.server.auth.user_for_token(header[len("Bearer "):])

    def _prefix(self, user: str, ns: str) -> str:
        return f"{user}/{_b64(ns)}/"

    def do_GET(self) -> None:
        user = self._user()
        if user is None:
            self._send_json(401, {"error": "unauthorized"})
            return
        parsed = urlparse(self.path)
        qs = parse_qs(parsed.query)
        ns = qs.get("ns", [None])[0]
        if ns is None:
            self._send_json(400, {"error": "missing ns"})
            return
        prefix = self._prefix(user, ns)
        if parsed.path == "/v1/kv/get":
            key = qs.get("key", [None])[0]
            if not key:
                self._send_json(400, {"error": "missing key"})
                return
            value = self.server.kv.get(prefix + key)
            if value is None:
                self._send_json(404, {"found": False})
                return
            self._send_json(200, {"found": True, "value": value})
        elif parsed.path == "/v1/kv/keys":
            keys = [k[len(prefix):] for k in self.server.kv.keys(prefix)]
            self._send_json(200, {"keys": keys})
        else:
            self._send_json(404, {"error": "not found"})

    def do_POST(self) -> None:
        user = self._user()
        if user is None:
            self._send_json(401, {"error": "unauthorized"})
            return
        parsed = urlparse(self.path)
        body = self._parse_body()
        ns = body.get("ns")
        key = body.get("key")
        if not isinstance(ns, str) or not isinstance(key, str) or not key:
            self._send_json(400, {"error": "missing ns or key"})
            return
        prefix = self._prefix(user, ns)

        if parsed.path == "/v1/kv/set":
            value = body.get("value")
            if not isinstance(value, str):
                self._send_json(400, {"error": "value must be base64 string"})
                return
            self.server.kv.set(prefix + key, value)
            self._send_json(200, {"ok": True})
        elif parsed.path == "/v1/kv/delete":
            existed = self.server.kv.delete(prefix + key)
            self._send_json(200, {"ok": True, "existed": existed})
        else:
            self._send_json(404, {"error": "not found"})

    def log_message(self, format, *args):
        logger.debug("http %s - %s", self.address_string(), format % args)


class KVHTTPServer(ThreadingHTTPServer):
    """HTTPServer that holds the KV store and the authenticator."""

    daemon_threads = True

    def __init__(self, server_address, kv: KVStore, auth: Authenticator):
        super().__init__(server_address, KVHandler)
        self.kv = kv
        self.auth = auth


class HealthHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:
        data = b"ok"
        self.send_response(200)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, format, *args):
        pass


class Server:
    """
    A kvlink server instance. start() blocks until close() is called from
    another thread; close() may be called once.
    """

    def __init__(self, cfg: ServerConfig):
        if not cfg.public_key or not cfg.private_key_pem:
            raise KVLinkError("server keys are not configured")
        try:
            key = serialization.load_ssh_private_key(cfg.private_key_pem, password=None)
        except ValueError as e:
            raise KeygenError(f"invalid server private key: {e}") from e
        if not isinstance(key, ed25519.Ed25519PrivateKey):
            raise KeygenError("server key must be ed25519")
        self.config = cfg
        self.auth = Authenticator(key)
        self._lock = threading.Lock()
        self._started = False
        self._closed = False
        self._store: Optional[KVStore] = None
        self._listeners: list[socketserver.BaseServer] = []
        self._threads: list[threading.Thread] = []

    def _bind(self) -> None:
        cfg = self.config
        self._store = KVStore(data_dir=os.path.join(cfg.data_dir, "kv"))
        try:
            self._listeners.append(ControlServer((cfg.bind_addr, cfg.ssh_port), self.auth))
            self._listeners.append(KVHTTPServer((cfg.bind_addr, cfg.http_port), self._store, self.auth))
            # health is bound last: answering it implies the others are up
            self._listeners.append(HTTPServer((cfg.bind_addr, cfg.health_port), HealthHandler))
        except OSError:
            for listener in self._listeners:
                listener.server_close()
            self._listeners = []
            self._store.close()
            raise

    def start(self) -> None:
        with self._lock:
            if self._closed:
                raise ServerClosedError("server is closed")
            if self._started:
                raise KVLinkError("server already started")
            self._started = True
            self._bind()
            control, http, health = self._listeners
            for listener in (control, http):
                t = threading.Thread(target=listener.serve_forever, daemon=True)
                t.start()
                self._threads.append(t)
        logger.debug(
            "server listening: ssh=%d http=%d health=%d",
            self.config.ssh_port, self.config.http_port, self.config.health_port,
        )
        health.serve_forever()
        for t in self._threads:
            t.join()
        logger.debug("server stopped")

    def close(self) -> None:
        with self._lock:
            if self._closed:
                raise ServerClosedError("server already closed")
            self._closed = True
            listeners = list(reversed(self._listeners))
            store = self._store
        for listener in listeners:
            listener.shutdown()
            listener.server_close()
        if store is not None:
            store.close()


def load_or_create_keys(data_dir: str) -> keygen.KeyPair:
    path = os.path.join(data_dir, "ssh", "kvlink_server")
    if os.path.exists(path):
        return keygen.load(path)
    return keygen.new_with_write(os.path.dirname(path), "kvlink_server")


def run_server(cfg: ServerConfig) -> None:
    """Run a kvlink server (blocking)."""
    kp = load_or_create_keys(cfg.data_dir)
    server = Server(cfg.with_keys(kp.public_key, kp.private_key_pem))
    try:
        server.start()
    except KeyboardInterrupt:
        pass
    finally:
        server.close()


if __name__ == "__main__":
    import argparse
    p = argparse.ArgumentParser()
    p.add_argument("--host", default=DEFAULT_HOST)
    p.add_argument("--bind", default="127.0.0.1")
    p.add_argument("--ssh-port", type=int, default=DEFAULT_SSH_PORT)
    p.add_argument("--http-port", type=int, default=DEFAULT_HTTP_PORT)
    p.add_argument("--health-port", type=int, default=DEFAULT_HEALTH_PORT)
    p.add_argument("--data-dir", default="data")
    args = p.parse_args()
    logging.basicConfig(level=logging.INFO)
    run_server(ServerConfig(
        host=args.host,
        bind_addr=args.bind,
        ssh_port=args.ssh_port,
        http_port=args.http_port,
        health_port=args.health_port,
        data_dir=args.data_dir,
    ))
