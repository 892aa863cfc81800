"""
A fake signing agent: holds Ed25519 keys in memory and signs on request over
a Unix socket, so tests can exercise agent-backed authentication without a
real external agent.

Protocol: one JSON object per line each way.
    {"op": "identities"}                          -> {"identities": [pub, ...]}
    {"op": "sign", "public_key": pub, "data": b64} -> {"signature": b64}
"""

import base64
import binascii
import json
import logging
import os
import shutil
import socket
import socketserver
import tempfile
import threading
from typing import Optional

from cryptography.hazmat.primitives.asymmetric import ed25519

from .errors import AgentError
from .keygen import public_key_openssh

logger = logging.getLogger(__name__)


class _AgentHandler(socketserver.StreamRequestHandler):
    def handle(self) -> None:
        keys: dict[str, ed25519.Ed25519PrivateKey] = self.server.keys
        for raw in self.rfile:
            if not raw.strip():
                continue
            try:
                req = json.loads(raw.decode("utf-8"))
            except ValueError:
                req = None
            if isinstance(req, dict):
                reply = self._dispatch(keys, req)
            else:
                reply = {"error": "malformed request"}
            self.wfile.write(json.dumps(reply).encode("utf-8") + b"\n")
            self.wfile.flush()

    def _dispatch(self, keys: dict, req: dict) -> dict:
        op = req.get("op")
        if op == "identities":
            return {"identities": list(keys)}
        if op == "sign":
            key = keys.get(req.get("public_key", ""))
            if key is None:
                return {"error": "unknown key"}
            try:
                data = base64.b64decode(req.get("data", ""))
            except binascii.Error:
                return {"error": "data must be base64"}
            return {"signature": base64.b64encode(key.sign(data)).decode()}
        return {"error": f"unknown op: {op}"}


class _AgentServer(socketserver.ThreadingUnixStreamServer):
    daemon_threads = True

    def __init__(self, path: str, keys: dict):
        super().__init__(path, _AgentHandler)
        self.keys = keys


class Agent:
    """
    In-process agent. start() blocks while serving; run it on a thread and
    wait_ready() from the caller.
    """

    def __init__(self, *signers: ed25519.Ed25519PrivateKey):
        self._keys = {public_key_openssh(s): s for s in signers}
        # set once start() either binds its socket or fails
        self._settled = threading.Event()
        self._ready = False
        self._failure: Optional[BaseException] = None
        self._lock = threading.Lock()
        self._server: Optional[_AgentServer] = None
        self._dir: Optional[str] = None
        self._socket = ""
        self._closed = False

    def _fail(self, err: BaseException) -> None:
        self._failure = err
        self._settled.set()

    def start(self) -> None:
        with self._lock:
            if self._closed:
                err = AgentError("agent is closed")
                self._fail(err)
                raise err
            if self._server is not None:
                raise AgentError("agent already started")
            try:
                self._dir = tempfile.mkdtemp(prefix="kvlink-agent-")
                path = os.path.join(self._dir, "agent.sock")
                self._server = _AgentServer(path, self._keys)
            except OSError as e:
                self._fail(e)
                raise
            self._socket = path
            self._ready = True
            self._settled.set()
        logger.debug("agent listening on %s with %d keys", path, len(self._keys))
        self._server.serve_forever()

    def ready(self) -> bool:
        return self._ready

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the agent is ready. Returns False on timeout; raises
        AgentError if start() failed.
        """
        self._settled.wait(timeout)
        if self._failure is not None:
            raise AgentError(f"agent failed to start: {self._failure}") from self._failure
        return self._ready

    def socket(self) -> str:
        return self._socket

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._ready = False
            server = self._server
        if server is not None:
            server.shutdown()
            server.server_close()
        if self._dir is not None:
            shutil.rmtree(self._dir, ignore_errors=True)


class AgentClient:
    """Talks to an agent listening on a Unix socket."""

    def __init__(self, addr: str, timeout: float = 5.0):
        self.addr = addr
        self.timeout = timeout

    def _call(self, req: dict) -> dict:
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
                s.settimeout(self.timeout)
                s.connect(self.addr)
                s.sendall(json.dumps(req).encode("utf-8") + b"\n")
                with s.makefile("rb") as f:
                    line = f.readline()
        except OSError as e:
            raise AgentError(f"agent at {self.addr} unreachable: {e}") from e
        if not line:
            raise AgentError("agent closed the connection")
        try:
            reply = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise AgentError(f"malformed agent reply: {e}") from e
        if not isinstance(reply, dict):
            raise AgentError("malformed agent reply: not an object")
        if "error" in reply:
            raise AgentError(reply["error"])
        return reply

    def identities(self) -> list[str]:
        return self._call({"op": "identities"})["identities"]

    def sign(self, public_key: str, data: bytes) -> bytes:
        reply = self._call({
            "op": "sign",
            "public_key": public_key,
            "data": base64.b64encode(data).decode(),
        })
        return base64.b64decode(reply["signature"])
