"""
Namespaced key/value storage for kvlink clients.

A KV keeps a local copy of one namespace (a WAL-backed KVStore on disk, or
memory only) and writes through to the server. sync() replaces the local
copy with the server's contents. With an encryption key, values are sealed
with AES-GCM before they leave the process, so the server only ever stores
ciphertext.
"""

import base64
import io
import logging
import os
from dataclasses import dataclass, replace
from typing import BinaryIO, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .client import Client
from .errors import EmptyKeyError, InvalidEncryptionKeyError, KeyNotFoundError, KVLinkError
from .store import KVStore

logger = logging.getLogger(__name__)

VALID_KEY_SIZES = (16, 24, 32)
NONCE_SIZE = 12


@dataclass(frozen=True)
class Options:
    dir: Optional[str] = None
    in_memory: bool = False
    encryption_key: Optional[bytes] = None

    @classmethod
    def default(cls, dir: str) -> "Options":
        return cls(dir=dir)

    @classmethod
    def in_memory_store(cls) -> "Options":
        return cls(in_memory=True)

    def with_in_memory(self, in_memory: bool) -> "Options":
        return replace(self, in_memory=in_memory)

    def with_encryption_key(self, key: bytes) -> "Options":
        """AES-128/192/256: the key must be 16, 24 or 32 bytes."""
        if len(key) not in VALID_KEY_SIZES:
            raise InvalidEncryptionKeyError(
                f"encryption key must be 16, 24 or 32 bytes, got {len(key)}"
            )
        return replace(self, encryption_key=bytes(key))


def _check_key(key: bytes) -> str:
    if not key:
        raise EmptyKeyError()
    return base64.b64encode(key).decode("ascii")


def _namespace_dir(namespace: str) -> str:
    # urlsafe base64 never contains a path separator or a dot
    return base64.urlsafe_b64encode(namespace.encode("utf-8")).decode("ascii").rstrip("=")


class KV:
    """One namespace of a user's key/value data."""

    def __init__(self, client: Client, namespace: str, options: Options):
        self.client = client
        self.namespace = namespace
        self.options = options
        data_dir = None
        if not options.in_memory:
            base = options.dir or os.path.join(client.config.data_dir, "kv")
            data_dir = os.path.join(base, _namespace_dir(namespace))
        self._local = KVStore(data_dir=data_dir)
        self._aead = AESGCM(options.encryption_key) if options.encryption_key else None

    def _seal(self, value: bytes) -> bytes:
        if self._aead is None:
            return value
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, value, self.namespace.encode("utf-8"))

    def _open(self, sealed: bytes) -> bytes:
        if self._aead is None:
            return sealed
        try:
            return self._aead.decrypt(sealed[:NONCE_SIZE], sealed[NONCE_SIZE:], self.namespace.encode("utf-8"))
        except InvalidTag as e:
            raise KVLinkError("could not decrypt value: wrong encryption key?") from e

    def get(self, key: bytes) -> bytes:
        enc = self._local.get(_check_key(key))
        if enc is None:
            raise KeyNotFoundError(key)
        return self._open(base64.b64decode(enc))

    def set(self, key: bytes, value: bytes) -> None:
        local_key = _check_key(key)
        sealed = self._seal(value)
        self.client.kv_set(self.namespace, key, sealed)
        self._local.set(local_key, base64.b64encode(sealed).decode("ascii"))

    def set_reader(self, key: bytes, reader: Union[BinaryIO, io.TextIOBase]) -> None:
        data = reader.read()
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.set(key, data)

    def delete(self, key: bytes) -> None:
        local_key = _check_key(key)
        self.client.kv_delete(self.namespace, key)
        self._local.delete(local_key)

    def keys(self) -> list[bytes]:
        return [base64.b64decode(k) for k in self._local.keys()]

    def sync(self) -> None:
        """Replace the local copy with the server's contents."""
        remote = self.client.kv_items(self.namespace)
        self._local.replace_all({
            base64.b64encode(k).decode("ascii"): base64.b64encode(v).decode("ascii")
            for k, v in remote.items()
        })
        logger.debug("synced %d keys in namespace %s", len(remote), self.namespace)

    def close(self) -> None:
        self._local.close()

    def __enter__(self) -> "KV":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def open_kv(client: Client, namespace: str, options: Optional[Options] = None) -> KV:
    """Open a namespace and pull its current contents from the server."""
    if not namespace:
        raise KVLinkError("namespace cannot be empty")
    kv = KV(client, namespace, options or Options())
    try:
        kv.sync()
    except Exception:
        kv.close()
        raise
    return kv
