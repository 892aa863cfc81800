"""kvlink: key-authenticated key/value server and client, with an ephemeral test server."""

from .client import Client, ClientConfig
from .kv import KV, Options, open_kv
from .server import Server, ServerConfig
from .store import KVStore

__all__ = ["Client", "ClientConfig", "KV", "KVStore", "Options", "Server", "ServerConfig", "open_kv"]
