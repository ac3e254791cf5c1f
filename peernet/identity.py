from __future__ import annotations

import hashlib
import os
import secrets
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from peernet.substrate import PeerID

PEER_ID_LEN = 32


def sha256_hex(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()


def peer_id_from_public_bytes(raw: bytes) -> PeerID:
    return sha256_hex(raw)[:PEER_ID_LEN]


def new_peer_id() -> PeerID:
    """Random identity for substrates that do not authenticate peers."""
    return sha256_hex(secrets.token_bytes(32))[:PEER_ID_LEN]


def short_id(peer_id: PeerID) -> str:
    return peer_id[-8:]


class Identity:
    """Ed25519 keypair; the peer id is derived from the public key."""

    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._key = private_key
        self.public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self.peer_id: PeerID = peer_id_from_public_bytes(self.public_bytes)

    @classmethod
    def generate(cls) -> Identity:
        return cls(Ed25519PrivateKey.generate())

    def sign(self, data: bytes) -> bytes:
        return self._key.sign(data)

    def private_pem(self) -> bytes:
        return self._key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )


def verify_signature(public_bytes: bytes, signature: bytes, data: bytes) -> bool:
    try:
        Ed25519PublicKey.from_public_bytes(public_bytes).verify(signature, data)
    except (InvalidSignature, ValueError):
        return False
    return True


def load_or_create_identity(path: Optional[Path]) -> Identity:
    """Load a PEM key from *path*, creating it on first use.

    ``None`` yields an ephemeral identity that lives for this process only.
    """
    if path is None:
        return Identity.generate()
    path = Path(path).expanduser()
    if path.exists():
        key = serialization.load_pem_private_key(path.read_bytes(), password=None)
        if not isinstance(key, Ed25519PrivateKey):
            raise ValueError(f"{path} does not hold an Ed25519 key")
        return Identity(key)

    identity = Identity.generate()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_bytes(identity.private_pem())
    os.chmod(tmp, 0o600)
    tmp.replace(path)
    return identity
