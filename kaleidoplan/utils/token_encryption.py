#!/usr/bin/env python3
"""
🔐 Token Encryption for Kaleidoplan Player
Encrypts the persisted token bundle at rest with Fernet.
The key is derived from a stable machine identifier plus a random salt that
lives next to the token file (0600), so a copied token file is useless on
another machine.
"""

import base64
import hashlib
import json
import logging
import os
import platform
import secrets
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger("kaleidoplan.token_encryption")

ENCRYPTED_PREFIX = "ENC:1:"
KDF_ITERATIONS = 200_000


def _get_machine_id() -> str:
    """Stable machine identifier: /etc/machine-id, hostname and user."""
    components = []

    machine_id_path = Path("/etc/machine-id")
    if machine_id_path.exists():
        try:
            components.append(machine_id_path.read_text().strip())
        except OSError:
            pass

    components.append(str(platform.node()))
    components.append(os.getenv("USER", os.getenv("USERNAME", "default")))

    return hashlib.sha256(":".join(components).encode()).hexdigest()


def _derive_key(machine_id: str, salt: bytes) -> bytes:
    """Derive a Fernet key (urlsafe base64, 32 bytes) from machine id and salt."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(machine_id.encode()))


def _load_or_create_key(key_path: Path) -> bytes:
    machine_id = _get_machine_id()
    machine_hash = hashlib.sha256(machine_id.encode()).hexdigest()[:16]

    if key_path.exists():
        try:
            key_data = json.loads(key_path.read_text())
            if key_data.get("machine_hash") != machine_hash:
                raise ValueError("machine changed")
            return _derive_key(machine_id, bytes.fromhex(key_data["salt"]))
        except (json.JSONDecodeError, KeyError, ValueError) as exc:
            logger.warning("Invalid token key file, regenerating: %s", exc)

    salt = secrets.token_bytes(32)
    key_data = {"salt": salt.hex(), "machine_hash": machine_hash, "version": 1}

    key_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = key_path.with_suffix(".tmp")
    try:
        tmp_path.write_text(json.dumps(key_data))
        os.replace(tmp_path, key_path)
        os.chmod(key_path, 0o600)
    except OSError as exc:
        logger.error("Failed to write token key file: %s", exc)
        tmp_path.unlink(missing_ok=True)

    return _derive_key(machine_id, salt)


class TokenEncryption:
    """Encrypts/decrypts JSON token payloads with a machine-bound Fernet key."""

    def __init__(self, key_path: Path):
        self._fernet = Fernet(_load_or_create_key(Path(key_path)))

    def encrypt(self, data: Dict[str, Any]) -> str:
        json_bytes = json.dumps(data, sort_keys=True).encode("utf-8")
        return ENCRYPTED_PREFIX + self._fernet.encrypt(json_bytes).decode("utf-8")

    def decrypt(self, encrypted_data: str) -> Optional[Dict[str, Any]]:
        """Decrypt a payload; plain JSON is accepted and re-encrypted on the next save.

        Returns:
            Dict or None if the payload cannot be read (wrong machine, corrupt file)
        """
        try:
            if encrypted_data.startswith(ENCRYPTED_PREFIX):
                decrypted = self._fernet.decrypt(encrypted_data[len(ENCRYPTED_PREFIX):].encode("utf-8"))
                return json.loads(decrypted.decode("utf-8"))
            return json.loads(encrypted_data)
        except (InvalidToken, ValueError) as exc:
            logger.warning("Token decryption failed: %s", exc.__class__.__name__)
            return None
