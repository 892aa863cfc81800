"""
Exceptions raised by kvlink. Everything derives from KVLinkError.
"""


class KVLinkError(Exception):
    """Base class for kvlink errors."""


class KeygenError(KVLinkError):
    pass


class ServerClosedError(KVLinkError):
    """Raised by Server.close() when the server was already closed."""


class AuthError(KVLinkError):
    pass


class AgentError(KVLinkError):
    pass


class ClientConfigError(KVLinkError):
    pass


class ClientError(KVLinkError):
    """Unexpected response from the server's HTTP API."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


class EmptyKeyError(KVLinkError, ValueError):
    def __init__(self):
        super().__init__("key cannot be empty")


class KeyNotFoundError(KVLinkError, KeyError):
    def __init__(self, key: bytes):
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"key not found: {self.key!r}"


class InvalidEncryptionKeyError(KVLinkError, ValueError):
    pass


class ProbeError(KVLinkError):
    """Health probe did not succeed within its retry budget."""


class CleanupError(KVLinkError):
    """One or more teardown steps failed. Holds every collected error."""

    def __init__(self, errors: list):
        self.errors = list(errors)
        joined = "; ".join(f"{name}: {err}" for name, err in self.errors)
        super().__init__(f"cleanup failed: {joined}")
