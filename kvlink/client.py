"""
Client for a kvlink server: key auth over the control port, KV over HTTP.
"""

import base64
import json
import logging
import os
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from cryptography.exceptions import InvalidSignature

from . import keygen
from .agent import AgentClient
from .errors import AgentError, AuthError, ClientConfigError, ClientError, KeygenError
from .server import DEFAULT_HEALTH_PORT, DEFAULT_HOST, DEFAULT_HTTP_PORT, DEFAULT_SSH_PORT

logger = logging.getLogger(__name__)

ENV_HOST = "KVLINK_HOST"
ENV_SSH_PORT = "KVLINK_SSH_PORT"
ENV_HTTP_PORT = "KVLINK_HTTP_PORT"
ENV_HEALTH_PORT = "KVLINK_HEALTH_PORT"
ENV_DATA_DIR = "KVLINK_DATA_DIR"
ENV_USE_SSH_AGENT = "KVLINK_USE_SSH_AGENT"
ENV_SSH_AGENT_ADDR = "KVLINK_SSH_AGENT_ADDR"

CLIENT_KEY_NAME = "kvlink_ed25519"


def _default_data_dir() -> str:
    return os.path.join(os.path.expanduser("~"), ".local", "share", "kvlink")


@dataclass
class ClientConfig:
    host: str = DEFAULT_HOST
    ssh_port: int = DEFAULT_SSH_PORT
    http_port: int = DEFAULT_HTTP_PORT
    health_port: int = DEFAULT_HEALTH_PORT
    data_dir: str = field(default_factory=_default_data_dir)
    use_ssh_agent: bool = False
    ssh_agent_addr: str = ""


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ClientConfigError(f"{name} must be an integer, got {raw!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    val = raw.strip().lower()
    if val in ("1", "true", "yes", "on"):
        return True
    if val in ("0", "false", "no", "off"):
        return False
    raise ClientConfigError(f"{name} must be a boolean, got {raw!r}")


def config_from_env() -> ClientConfig:
    """Build a ClientConfig from KVLINK_* environment variables."""
    return ClientConfig(
        host=os.environ.get(ENV_HOST) or DEFAULT_HOST,
        ssh_port=_env_int(ENV_SSH_PORT, DEFAULT_SSH_PORT),
        http_port=_env_int(ENV_HTTP_PORT, DEFAULT_HTTP_PORT),
        health_port=_env_int(ENV_HEALTH_PORT, DEFAULT_HEALTH_PORT),
        data_dir=os.environ.get(ENV_DATA_DIR) or _default_data_dir(),
        use_ssh_agent=_env_bool(ENV_USE_SSH_AGENT, False),
        ssh_agent_addr=os.environ.get(ENV_SSH_AGENT_ADDR, ""),
    )


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii")


class Client:
    """
    A kvlink client. Signs auth challenges with a local key from data_dir,
    or through an agent when config.use_ssh_agent is set.
    """

    def __init__(self, config: ClientConfig):
        self.config = config
        self._token: Optional[str] = None
        self._user_id: Optional[str] = None
        self._agent: Optional[AgentClient] = None
        self._key: Optional[keygen.KeyPair] = None
        try:
            Path(config.data_dir).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ClientConfigError(f"could not create data dir {config.data_dir}: {e}") from e
        if config.use_ssh_agent:
            self._public_key = self._agent_identity()
        else:
            self._key = self._local_key()
            self._public_key = self._key.public_key

    def _agent_identity(self) -> str:
        if not self.config.ssh_agent_addr:
            raise ClientConfigError("use_ssh_agent is set but ssh_agent_addr is empty")
        self._agent = AgentClient(self.config.ssh_agent_addr)
        try:
            identities = self._agent.identities()
        except AgentError as e:
            raise ClientConfigError(str(e)) from e
        if not identities:
            raise ClientConfigError("agent holds no identities")
        return identities[0]

    def _local_key(self) -> keygen.KeyPair:
        key_dir = Path(self.config.data_dir) / "keys"
        path = key_dir / CLIENT_KEY_NAME
        try:
            if path.exists():
                return keygen.load(path)
            return keygen.new_with_write(key_dir, CLIENT_KEY_NAME)
        except (OSError, KeygenError) as e:
            raise ClientConfigError(f"client key: {e}") from e

    @property
    def public_key(self) -> str:
        return self._public_key

    def _sign(self, data: bytes) -> bytes:
        if self._agent is not None:
            return self._agent.sign(self._public_key, data)
        return self._key.private_key.sign(data)

    def _control(self, req: dict, timeout: float = 10.0) -> dict:
        cfg = self.config
        with socket.create_connection((cfg.host, cfg.ssh_port), timeout=timeout) as s:
            s.sendall(json.dumps(req).encode("utf-8") + b"\n")
            with s.makefile("rb") as f:
                line = f.readline()
        if not line:
            raise AuthError("control connection closed")
        reply = json.loads(line.decode("utf-8"))
        if "error" in reply:
            raise AuthError(reply["error"])
        return reply

    def server_public_key(self) -> str:
        return self._control({"op": "identity"})["public_key"]

    def authenticate(self) -> str:
        """Run the challenge/sign/auth handshake. Returns the user id."""
        server_key = keygen.parse_public_key(self.server_public_key())
        challenge = self._control({"op": "challenge"})
        nonce = challenge["nonce"]
        try:
            server_key.verify(base64.b64decode(challenge["signature"]), nonce.encode("ascii"))
        except InvalidSignature as e:
            raise AuthError("server signature does not match its identity") from e
        sig = self._sign(nonce.encode("ascii"))
        reply = self._control({
            "op": "auth",
            "public_key": self._public_key,
            "nonce": nonce,
            "signature": base64.b64encode(sig).decode(),
        })
        self._token = reply["token"]
        self._user_id = reply["user_id"]
        logger.debug("authenticated as %s", self._user_id)
        return self._user_id

    def user_id(self) -> str:
        if self._user_id is None:
            self.authenticate()
        return self._user_id

    def _request(
        self,
        method: str,
        path: str,
        body: Optional[dict] = None,
        timeout: float = 30.0,
        retry_auth: bool = True,
    ) -> tuple[int, dict]:
        if self._token is None:
            self.authenticate()
        url = f"http://{self.config.host}:{self.config.http_port}{path}"
        data = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
        req = urllib.request.Request(url, data=data, method=method)
        req.add_header("Content-Type", "application/json")
        req.add_header("Authorization", f"Bearer {self._token}")
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                return resp.status, json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            if e.code == 401 and retry_auth:
                self._token = None
                return self._request(method, path, body, timeout, retry_auth=False)
            raw = e.read().decode("utf-8")
            try:
                return e.code, json.loads(raw)
            except json.JSONDecodeError:
                return e.code, {"error": raw}

    def _check(self, status: int, out: dict, *ok: int) -> dict:
        if status not in ok:
            raise ClientError(out.get("error", f"unexpected status {status}"), status)
        return out

    def kv_get(self, ns: str, key: bytes) -> Optional[bytes]:
        """Get value for key in namespace. Returns None if key does not exist."""
        path = f"/v1/kv/get?ns={quote(ns, safe='')}&key={quote(_b64(key), safe='')}"
        status, out = self._request("GET", path)
        if status == 404 and out.get("found") is False:
            return None
        self._check(status, out, 200)
        return base64.b64decode(out["value"])

    def kv_set(self, ns: str, key: bytes, value: bytes) -> None:
        body = {"ns": ns, "key": _b64(key), "value": base64.b64encode(value).decode()}
        self._check(*self._request("POST", "/v1/kv/set", body=body), 200)

    def kv_delete(self, ns: str, key: bytes) -> bool:
        """Delete key. Returns whether it existed on the server."""
        body = {"ns": ns, "key": _b64(key)}
        out = self._check(*self._request("POST", "/v1/kv/delete", body=body), 200)
        return bool(out.get("existed"))

    def kv_keys(self, ns: str) -> list[bytes]:
        status, out = self._request("GET", f"/v1/kv/keys?ns={quote(ns, safe='')}")
        self._check(status, out, 200)
        return [base64.urlsafe_b64decode(k) for k in out.get("keys", [])]

    def kv_items(self, ns: str) -> dict[bytes, bytes]:
        items: dict[bytes, bytes] = {}
        for key in self.kv_keys(ns):
            value = self.kv_get(ns, key)
            if value is not None:
                items[key] = value
        return items


def new_client_with_defaults() -> Client:
    """Client from the environment, with defaults for anything unset."""
    return Client(config_from_env())
