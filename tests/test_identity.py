import os
import stat

import pytest

from peernet.identity import (
    Identity,
    load_or_create_identity,
    new_peer_id,
    peer_id_from_public_bytes,
    short_id,
    verify_signature,
)


def test_peer_id_is_derived_from_public_key():
    ident = Identity.generate()
    assert ident.peer_id == peer_id_from_public_bytes(ident.public_bytes)
    assert len(ident.peer_id) == 32


def test_random_peer_ids_differ():
    assert new_peer_id() != new_peer_id()


def test_short_id_is_last_eight_chars():
    assert short_id("0123456789abcdef") == "89abcdef"


def test_signature_round_trip_and_tamper():
    ident = Identity.generate()
    sig = ident.sign(b"payload")
    assert verify_signature(ident.public_bytes, sig, b"payload")
    assert not verify_signature(ident.public_bytes, sig, b"payload!")
    assert not verify_signature(Identity.generate().public_bytes, sig, b"payload")
    assert not verify_signature(b"short", sig, b"payload")


def test_identity_file_is_created_once(tmp_path):
    path = tmp_path / "keys" / "identity.pem"
    first = load_or_create_identity(path)
    assert path.exists()
    if os.name == "posix":
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert load_or_create_identity(path).peer_id == first.peer_id


def test_no_path_gives_ephemeral_identity():
    assert load_or_create_identity(None).peer_id != load_or_create_identity(None).peer_id


def test_non_ed25519_key_is_rejected(tmp_path):
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric import ec

    key = ec.generate_private_key(ec.SECP256R1())
    path = tmp_path / "ec.pem"
    path.write_bytes(key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ))
    with pytest.raises(ValueError):
        load_or_create_identity(path)
