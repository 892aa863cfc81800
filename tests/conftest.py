"""Pytest fixtures: ephemeral kvlink server, clients, and agent signers."""

import shutil
import tempfile

import pytest
from cryptography.hazmat.primitives.asymmetric import ed25519

from kvlink.testserver import setup_test_server, setup_test_server_with_agent


@pytest.fixture
def data_dir():
    d = tempfile.mkdtemp(prefix="kvlink_test_")
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def signers():
    return [ed25519.Ed25519PrivateKey.generate() for _ in range(2)]


@pytest.fixture
def kvlink_client(request):
    """A client wired to a fresh server; no agent."""
    return setup_test_server(request)


@pytest.fixture
def kvlink_clients(request, signers):
    """Both clients, with a fake agent holding `signers`."""
    return setup_test_server_with_agent(request, *signers)
