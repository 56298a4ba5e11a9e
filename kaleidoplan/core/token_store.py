#!/usr/bin/env python3
"""
💾 Token persistence backends
Key/value storage of the OAuth token bundle and the authorization state
nonce, JSON encoded. Three backends share one contract:

- MemoryTokenStore: process lifetime only (tests, kiosk sessions)
- JsonFileTokenStore: plain JSON file written atomically
- EncryptedFileTokenStore: same file, Fernet encrypted at rest
"""

import asyncio
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional

from ..utils.token_encryption import TokenEncryption

logger = logging.getLogger("kaleidoplan.token_store")


class TokenStore:
    """Base class; subclasses implement ``_read``/``_write`` on a whole mapping.

    The async methods hand each read-modify-write to ``_call`` as one unit.
    File backends run it on the default executor under a thread lock.
    """

    def _read(self) -> Dict[str, Any]:
        raise NotImplementedError

    def _write(self, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        return func(*args)

    def _merge(self, values: Dict[str, Any]) -> None:
        data = self._read()
        for key, value in values.items():
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
        self._write(data)

    def _discard(self, keys: Iterable[str]) -> None:
        data = self._read()
        changed = False
        for key in keys:
            if key in data:
                data.pop(key)
                changed = True
        if changed:
            self._write(data)

    async def load(self) -> Dict[str, Any]:
        return dict(await self._call(self._read))

    async def get(self, key: str) -> Any:
        return (await self._call(self._read)).get(key)

    async def save(self, values: Dict[str, Any]) -> None:
        """Merge ``values`` into the stored mapping; None values delete their key."""
        await self._call(self._merge, dict(values))

    async def set(self, key: str, value: Any) -> None:
        await self.save({key: value})

    async def remove(self, keys: Iterable[str]) -> None:
        await self._call(self._discard, list(keys))


class MemoryTokenStore(TokenStore):
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})

    def _read(self) -> Dict[str, Any]:
        return dict(self._data)

    def _write(self, data: Dict[str, Any]) -> None:
        self._data = dict(data)


class JsonFileTokenStore(TokenStore):
    """Plain JSON file; unreadable files are treated as empty."""

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._locked, func, args)

    def _locked(self, func: Callable[..., Any], args: tuple) -> Any:
        with self._lock:
            return func(*args)

    def _decode(self, raw: str) -> Optional[Dict[str, Any]]:
        return json.loads(raw)

    def _encode(self, data: Dict[str, Any]) -> str:
        return json.dumps(data, indent=2, sort_keys=True)

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = self._decode(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Could not load token store %s: %s", self.path.name, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Any]) -> None:
        """Persist atomically to avoid a torn token file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        try:
            with tmp_path.open("w", encoding="utf-8") as handle:
                handle.write(self._encode(data))
            os.replace(tmp_path, self.path)
            os.chmod(self.path, 0o600)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise


class EncryptedFileTokenStore(JsonFileTokenStore):
    """Fernet encrypted token file; the key material sits beside it in ``.<name>.key``.

    The key is derived on first read or write, which already runs off the
    event loop.
    """

    def __init__(self, path: Path, key_path: Optional[Path] = None):
        super().__init__(path)
        if key_path is None:
            key_path = self.path.with_name(f".{self.path.stem}.key")
        self.key_path = Path(key_path)
        self._encryption: Optional[TokenEncryption] = None

    @property
    def encryption(self) -> TokenEncryption:
        if self._encryption is None:
            self._encryption = TokenEncryption(self.key_path)
        return self._encryption

    def _decode(self, raw: str) -> Optional[Dict[str, Any]]:
        return self.encryption.decrypt(raw.strip())

    def _encode(self, data: Dict[str, Any]) -> str:
        return self.encryption.encrypt(data)


def create_token_store(kind: str, path: Optional[str] = None) -> TokenStore:
    """Build the configured backend (``memory``, ``json`` or ``encrypted``)."""
    if kind == "memory":
        return MemoryTokenStore()
    if not path:
        raise ValueError(f"token store '{kind}' needs a path")
    if kind == "json":
        return JsonFileTokenStore(Path(path))
    if kind == "encrypted":
        return EncryptedFileTokenStore(Path(path))
    raise ValueError(f"Unknown token store: {kind}")
