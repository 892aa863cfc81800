"""
Ed25519 key generation and loading, in OpenSSH formats.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from .errors import KeygenError

ED25519 = "ed25519"


@dataclass(frozen=True)
class KeyPair:
    """A private key plus the paths it was written to."""

    private_key: ed25519.Ed25519PrivateKey
    private_key_pem: bytes
    public_key: str
    path: Optional[Path] = None

    @property
    def public_key_path(self) -> Optional[Path]:
        if self.path is None:
            return None
        return self.path.with_name(self.path.name + ".pub")


def public_key_openssh(key: Union[ed25519.Ed25519PrivateKey, ed25519.Ed25519PublicKey]) -> str:
    """Return the authorized_keys form ("ssh-ed25519 AAAA...") of a key."""
    if isinstance(key, ed25519.Ed25519PrivateKey):
        key = key.public_key()
    return key.public_bytes(
        serialization.Encoding.OpenSSH,
        serialization.PublicFormat.OpenSSH,
    ).decode("ascii")


def parse_public_key(text: str) -> ed25519.Ed25519PublicKey:
    try:
        key = serialization.load_ssh_public_key(text.strip().encode("ascii"))
    except (ValueError, UnicodeEncodeError) as e:
        raise KeygenError(f"invalid public key: {e}") from e
    if not isinstance(key, ed25519.Ed25519PublicKey):
        raise KeygenError("only ed25519 public keys are supported")
    return key


def _private_pem(key: ed25519.Ed25519PrivateKey, passphrase: bytes) -> bytes:
    if passphrase:
        enc = serialization.BestAvailableEncryption(passphrase)
    else:
        enc = serialization.NoEncryption()
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.OpenSSH,
        enc,
    )


def new(passphrase: bytes = b"", key_type: str = ED25519) -> KeyPair:
    """Generate a keypair in memory."""
    if key_type != ED25519:
        raise KeygenError(f"unsupported key type: {key_type}")
    key = ed25519.Ed25519PrivateKey.generate()
    return KeyPair(
        private_key=key,
        private_key_pem=_private_pem(key, passphrase),
        public_key=public_key_openssh(key),
    )


def new_with_write(
    directory: Union[str, Path],
    name: str,
    passphrase: bytes = b"",
    key_type: str = ED25519,
) -> KeyPair:
    """
    Generate a keypair and write it to directory/name (private, 0600) and
    directory/name.pub. The directory is created if needed.
    """
    kp = new(passphrase, key_type)
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True, mode=0o700)
    path = directory / name
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(kp.private_key_pem)
    with open(path.with_name(name + ".pub"), "w", encoding="ascii") as f:
        f.write(kp.public_key + "\n")
    return KeyPair(kp.private_key, kp.private_key_pem, kp.public_key, path)


def load(path: Union[str, Path], passphrase: bytes = b"") -> KeyPair:
    """Load a private key written by new_with_write."""
    path = Path(path)
    pem = path.read_bytes()
    try:
        key = serialization.load_ssh_private_key(pem, password=passphrase or None)
    except (ValueError, TypeError) as e:
        raise KeygenError(f"could not load {path}: {e}") from e
    if not isinstance(key, ed25519.Ed25519PrivateKey):
        raise KeygenError(f"{path} is not an ed25519 key")
    return KeyPair(key, pem, public_key_openssh(key), path)
