"""Fake signing agent: readiness, signing over the socket, close."""

import os
import socket
import threading

import pytest
from cryptography.hazmat.primitives.asymmetric import ed25519

from kvlink.agent import Agent, AgentClient
from kvlink.errors import AgentError
from kvlink.keygen import public_key_openssh
from kvlink.testserver import start_agent


def _start(agent: Agent) -> threading.Thread:
    t = threading.Thread(target=agent.start, daemon=True)
    t.start()
    return t


def test_ready_and_sign(signers):
    agent = Agent(*signers)
    assert not agent.ready()
    assert agent.socket() == ""
    _start(agent)
    try:
        assert agent.wait_ready(5)
        assert agent.ready()
        assert os.path.exists(agent.socket())

        ac = AgentClient(agent.socket())
        ids = ac.identities()
        assert ids == [public_key_openssh(s) for s in signers]
        sig = ac.sign(ids[1], b"nonce")
        signers[1].public_key().verify(sig, b"nonce")
    finally:
        agent.close()


def test_sign_with_unknown_key(signers):
    agent = Agent(signers[0])
    _start(agent)
    try:
        assert agent.wait_ready(5)
        other = public_key_openssh(ed25519.Ed25519PrivateKey.generate())
        with pytest.raises(AgentError, match="unknown key"):
            AgentClient(agent.socket()).sign(other, b"x")
    finally:
        agent.close()


def test_close_releases_socket(signers):
    agent = Agent(*signers)
    t = _start(agent)
    assert agent.wait_ready(5)
    path = agent.socket()
    agent.close()
    t.join(timeout=5)
    assert not t.is_alive()
    assert not os.path.exists(path)
    assert not agent.ready()
    with pytest.raises(AgentError):
        AgentClient(path).identities()


def test_close_before_start_is_safe(signers):
    agent = Agent(*signers)
    agent.close()
    agent.close()
    with pytest.raises(AgentError):
        agent.start()
    with pytest.raises(AgentError):
        agent.wait_ready(1)


def test_wait_ready_times_out_when_never_started(signers):
    assert Agent(*signers).wait_ready(0.1) is False


def test_start_agent_skipped_without_signers():
    assert start_agent([]) is None


def test_start_agent(signers):
    agent = start_agent(signers, timeout=5)
    try:
        assert agent.ready()
        assert len(AgentClient(agent.socket()).identities()) == 2
    finally:
        agent.close()


def test_start_agent_gives_up_when_never_ready(monkeypatch, signers):
    real_start = Agent.start
    release = threading.Event()
    seen = []

    def stuck(self):
        seen.append(self)
        release.wait(5)

    monkeypatch.setattr(Agent, "start", stuck)
    try:
        with pytest.raises(AgentError, match="not ready after"):
            start_agent(signers, timeout=0.1)
    finally:
        release.set()
    assert len(seen) == 1
    assert not seen[0].ready()
    # the agent was closed, so it can no longer be started
    with pytest.raises(AgentError, match="closed"):
        real_start(seen[0])


def _one_reply_server(path: str, reply: bytes) -> threading.Thread:
    srv = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    srv.bind(path)
    srv.listen(1)

    def serve():
        conn, _ = srv.accept()
        with conn, srv:
            conn.makefile("rb").readline()
            conn.sendall(reply)

    t = threading.Thread(target=serve, daemon=True)
    t.start()
    return t


@pytest.mark.parametrize("reply", [b"not json\n", b"[1, 2]\n", b"\xff\n"])
def test_malformed_agent_reply(data_dir, reply):
    path = os.path.join(data_dir, "agent.sock")
    t = _one_reply_server(path, reply)
    with pytest.raises(AgentError, match="malformed agent reply"):
        AgentClient(path).identities()
    t.join(timeout=5)
