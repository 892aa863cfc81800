"""
Ephemeral kvlink server for tests.

setup_test_server_with_agent() starts a server on free ports with fresh
keys, optionally starts a fake signing agent, publishes the settings as
KVLINK_* environment variables so clients built from the environment pick
them up, and returns ready clients. Teardown is registered with pytest and
runs whatever the test outcome.

Unless you only use the returned clients, this is not thread safe: the
environment variables are process-global.
"""

import http.client
import logging
import os
import shutil
import socket
import tempfile
import threading
import time
import urllib.error
import urllib.request
from concurrent.futures import Future
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Optional

import pytest
from cryptography.hazmat.primitives.asymmetric import ed25519

from . import client as kvclient
from . import keygen
from .agent import Agent
from .errors import AgentError, CleanupError, KVLinkError, ProbeError
from .server import Server, ServerConfig, default_config

logger = logging.getLogger(__name__)

HEALTH_RETRIES = 3
PROBE_INTERVAL = 1.0
AGENT_TIMEOUT = 10.0


def random_port() -> int:
    """A TCP port that was free on the loopback interface a moment ago."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            return s.getsockname()[1]
    except OSError as e:
        pytest.fail(f"could not get a random port: {e}", pytrace=False)


def random_ports(n: int) -> list[int]:
    """n distinct free ports: all n listeners are held until every port is known."""
    socks = []
    try:
        for _ in range(n):
            s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            socks.append(s)
            s.bind(("127.0.0.1", 0))
        return [s.getsockname()[1] for s in socks]
    except OSError as e:
        pytest.fail(f"could not get a random port: {e}", pytrace=False)
    finally:
        for s in socks:
            s.close()


@dataclass
class HealthResponse:
    status: int
    body: bytes


def fetch_url(
    url: str,
    retries: int,
    *,
    interval: float = PROBE_INTERVAL,
    sleep: Callable[[float], None] = time.sleep,
    urlopen: Callable = urllib.request.urlopen,
    abort: Optional[Callable[[], Optional[BaseException]]] = None,
    timeout: float = 2.0,
) -> HealthResponse:
    """
    GET url, retrying up to `retries` more times `interval` seconds apart.
    Transport errors and any status other than 200 count as failures.
    abort, when given, is checked before each attempt; an exception it
    returns ends polling early.
    """
    last_err: Optional[BaseException] = None
    for attempt in range(retries + 1):
        if attempt > 0:
            sleep(interval)
        if abort is not None:
            failure = abort()
            if failure is not None:
                raise ProbeError(f"gave up on {url}: {failure}") from failure
        try:
            with urlopen(url, timeout=timeout) as resp:
                status = resp.status
                body = resp.read()
            if status == 200:
                return HealthResponse(status, body)
            last_err = ProbeError(f"bad http status code: {status}")
        except urllib.error.HTTPError as e:
            last_err = ProbeError(f"bad http status code: {e.code}")
        except (OSError, http.client.HTTPException) as e:
            last_err = e
    raise ProbeError(f"{url} not healthy after {retries + 1} attempts: {last_err}") from last_err


class EnvChannel:
    """
    Publishes KVLINK_* variables and remembers which ones it set, so that
    unset() removes exactly those. Writes are serialized process-wide.
    """

    _lock = threading.Lock()

    def __init__(self):
        self._set: dict[str, list[str]] = {}

    def set(self, group: str, values: dict[str, str]) -> None:
        with EnvChannel._lock:
            for name, value in values.items():
                os.environ[name] = value
                self._set.setdefault(group, []).append(name)

    def unset(self, group: str) -> None:
        with EnvChannel._lock:
            for name in self._set.pop(group, []):
                os.environ.pop(name, None)

    def names(self, group: str) -> list[str]:
        return list(self._set.get(group, []))


class Supervisor:
    """Runs a Server on a background thread and records how that thread ended."""

    def __init__(self, server: Server):
        self.server = server
        self.outcome: Future = Future()
        self._thread: Optional[threading.Thread] = None

    def _run(self) -> None:
        try:
            self.server.start()
        except BaseException as e:
            logger.debug("server thread failed: %s", e)
            self.outcome.set_exception(e)
        else:
            self.outcome.set_result(None)

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="kvlink-server", daemon=True)
        self._thread.start()

    def failure(self) -> Optional[BaseException]:
        if not self.outcome.done():
            return None
        err = self.outcome.exception()
        if err is None:
            return KVLinkError("server stopped unexpectedly")
        return err

    def close(self) -> None:
        self.server.close()
        if self._thread is not None:
            self._thread.join(timeout=5)


class Cleanup:
    """
    Ordered teardown. run() executes every step once, in registration order,
    even if earlier steps fail; failures are raised together afterwards.
    """

    def __init__(self):
        self._steps: list[tuple[str, Callable[[], None]]] = []
        self._ran = False
        self._lock = threading.Lock()

    def add(self, name: str, fn: Callable[[], None]) -> None:
        self._steps.append((name, fn))

    @property
    def steps(self) -> list[str]:
        return [name for name, _ in self._steps]

    def run(self) -> None:
        with self._lock:
            if self._ran:
                return
            self._ran = True
        errors = []
        for name, fn in self._steps:
            logger.info("cleanup: %s", name)
            try:
                fn()
            except Exception as e:
                logger.error("cleanup step %s failed: %s", name, e)
                errors.append((name, e))
        if errors:
            raise CleanupError(errors)

    __call__ = run


@dataclass
class Clients:
    """The clients wired to one test server."""

    # always set: a client signing with its own local key
    no_agent: Optional[kvclient.Client] = None
    # signs through the fake agent; only set when signers were given
    full: Optional[kvclient.Client] = None
    server_config: Optional[ServerConfig] = None
    agent: Optional[Agent] = None
    cleanup: Cleanup = field(default_factory=Cleanup)


def start_agent(signers, timeout: float = AGENT_TIMEOUT) -> Optional[Agent]:
    """Start a fake agent holding signers, or return None if there are none."""
    if not signers:
        return None
    agt = Agent(*signers)

    def _run() -> None:
        try:
            agt.start()
        except Exception as e:
            logger.debug("agent thread failed: %s", e)

    threading.Thread(target=_run, name="kvlink-agent", daemon=True).start()
    try:
        ready = agt.wait_ready(timeout)
    except AgentError:
        agt.close()
        raise
    if not ready:
        agt.close()
        raise AgentError(f"agent not ready after {timeout}s")
    return agt


def build_client(cfg: ServerConfig, data_dir: str, agent: Optional[Agent] = None) -> kvclient.Client:
    """A client configured from the environment, with the server's settings forced in."""
    ccfg = kvclient.config_from_env()
    ccfg.host = cfg.host
    ccfg.ssh_port = cfg.ssh_port
    ccfg.http_port = cfg.http_port
    ccfg.health_port = cfg.health_port
    ccfg.data_dir = data_dir
    ccfg.use_ssh_agent = agent is not None
    ccfg.ssh_agent_addr = agent.socket() if agent is not None else ""
    return kvclient.Client(ccfg)


def setup_test_server_with_agent(
    request,
    *signers: ed25519.Ed25519PrivateKey,
    retries: int = HEALTH_RETRIES,
    agent_timeout: float = AGENT_TIMEOUT,
) -> Clients:
    """
    Start a test server, plus a fake agent when signers are given, and set
    the environment so clients pick them up. request is anything with
    addfinalizer(), normally pytest's request fixture; finalizers are
    expected to run last-registered first.
    """
    td = Path(tempfile.mkdtemp(prefix="kvlink-test-"))
    request.addfinalizer(lambda: shutil.rmtree(td, ignore_errors=True))
    clients = Clients()
    cleanup = clients.cleanup
    request.addfinalizer(cleanup.run)

    client_data = str(td / ".client-data")
    ssh_port, http_port, health_port = random_ports(3)
    cfg = replace(
        default_config(),
        ssh_port=ssh_port,
        http_port=http_port,
        health_port=health_port,
        data_dir=str(td / ".data"),
    )
    try:
        kp = keygen.new_with_write(td / ".ssh", "kvlink_server")
    except (OSError, KVLinkError) as e:
        pytest.fail(f"keygen error: {e}", pytrace=False)
    cfg = cfg.with_keys(kp.public_key, kp.private_key_pem)
    clients.server_config = cfg

    try:
        srv = Server(cfg)
    except KVLinkError as e:
        pytest.fail(f"new server error: {e}", pytrace=False)
    supervisor = Supervisor(srv)
    env = EnvChannel()
    cleanup.add("close server", supervisor.close)
    cleanup.add("unset env", lambda: env.unset("core"))

    env.set("core", {
        kvclient.ENV_HOST: cfg.host,
        kvclient.ENV_SSH_PORT: str(cfg.ssh_port),
        kvclient.ENV_HTTP_PORT: str(cfg.http_port),
        kvclient.ENV_HEALTH_PORT: str(cfg.health_port),
        kvclient.ENV_DATA_DIR: client_data,
    })
    supervisor.start()

    try:
        fetch_url(f"http://{cfg.host}:{cfg.health_port}", retries, abort=supervisor.failure)
    except ProbeError as e:
        pytest.fail(f"server likely failed to start: {e}", pytrace=False)
    logger.info(
        "server ready: ssh=%d http=%d health=%d",
        cfg.ssh_port, cfg.http_port, cfg.health_port,
    )

    try:
        clients.no_agent = build_client(cfg, client_data)
    except KVLinkError as e:
        pytest.fail(f"new client error: {e}", pytrace=False)

    if not signers:
        return clients

    try:
        agt = start_agent(signers, agent_timeout)
    except (AgentError, OSError) as e:
        pytest.fail(f"fake agent failed to start: {e}", pytrace=False)
    clients.agent = agt

    cleanup.add("close agent", lambda: agt.close())
    cleanup.add("unset agent env", lambda: env.unset("agent"))
    env.set("agent", {
        kvclient.ENV_SSH_AGENT_ADDR: agt.socket(),
        kvclient.ENV_USE_SSH_AGENT: "true",
    })
    logger.info("fake agent ready with %d keys", len(signers))

    try:
        clients.full = build_client(cfg, client_data, agt)
    except KVLinkError as e:
        pytest.fail(f"new client error: {e}", pytrace=False)
    return clients


def setup_test_server(request, **kwargs) -> kvclient.Client:
    """Start a test server and return a client wired to it."""
    return setup_test_server_with_agent(request, **kwargs).no_agent
