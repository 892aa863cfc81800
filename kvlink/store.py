"""
Persistent key-value store with Write-Ahead Log (WAL) for durability.
Every write is fsync'd to the WAL before it is applied in memory.
With data_dir=None the store is memory-only and keeps no WAL.
"""

import os
import json
import base64
import threading
from pathlib import Path
from typing import Any, Optional


def _encode_value(v: Any) -> str:
    """Encode value for WAL (JSON + base64 for binary safety)."""
    return base64.b64encode(json.dumps(v).encode()).decode()


def _decode_value(s: str) -> Any:
    """Decode value from WAL."""
    return json.loads(base64.b64decode(s.encode()).decode())


class KVStore:
    """
    In-memory KV store with an optional persistent WAL.
    Keys are strings; values are anything JSON-serializable.
    """

    def __init__(self, data_dir: Optional[str] = "data", wal_filename: str = "wal.log"):
        self._store: dict[str, Any] = {}
        self._lock = threading.RLock()
        self._wal_file = None
        self._wal_path: Optional[Path] = None
        if data_dir is not None:
            data_path = Path(data_dir)
            data_path.mkdir(parents=True, exist_ok=True)
            self._wal_path = data_path / wal_filename
            self._replay_wal()
            self._open_wal()

    @property
    def in_memory(self) -> bool:
        return self._wal_path is None

    def _open_wal(self) -> None:
        """Open WAL in append mode."""
        self._wal_file = open(self._wal_path, "a", encoding="utf-8")

    def _wal_append_sync(self, line: str) -> None:
        """Append line to WAL and fsync (synchronous, for durability)."""
        if self._wal_path is None:
            return
        with self._lock:
            if self._wal_file is None:
                raise ValueError("store is closed")
            self._wal_file.write(line + "\n")
            self._wal_file.flush()
            os.fsync(self._wal_file.fileno())

    def _replay_wal(self) -> None:
        """Replay WAL to rebuild in-memory state."""
        if not self._wal_path.exists():
            return
        with open(self._wal_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.rstrip("\n")
                if not line:
                    continue
                parts = line.split("\t", 2)
                op, rest = parts[0], parts[1:]
                if op == "SET" and len(rest) == 2:
                    self._store[rest[0]] = _decode_value(rest[1])
                elif op == "DEL" and len(rest) == 1:
                    self._store.pop(rest[0], None)
                elif op == "REPLACE" and len(rest) == 1:
                    try:
                        self._store = dict(_decode_value(rest[0]))
                    except (json.JSONDecodeError, ValueError, TypeError):
                        pass

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._store.get(key)

    def set(self, key: str, value: Any) -> None:
        wal_line = f"SET\t{key}\t{_encode_value(value)}"
        with self._lock:
            self._wal_append_sync(wal_line)
            self._store[key] = value

    def delete(self, key: str) -> bool:
        """Delete key. Returns whether the key existed."""
        with self._lock:
            self._wal_append_sync(f"DEL\t{key}")
            return self._store.pop(key, None) is not None

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._store if k.startswith(prefix))

    def replace_all(self, items: dict[str, Any]) -> None:
        """
        Atomically replace the whole contents. One WAL record (one fsync):
        either the old or the new contents survive a crash.
        """
        wal_line = "REPLACE\t" + _encode_value(items)
        with self._lock:
            self._wal_append_sync(wal_line)
            self._store = dict(items)

    def close(self) -> None:
        if self._wal_file:
            self._wal_file.close()
            self._wal_file = None
