"""Ephemeral signing keys.

A key is generated for exactly one signing operation and never written
anywhere. ``ephemeral_key()`` is the only supported way to obtain one: the
key is destroyed when the block exits, whether it signed, failed or was
cancelled. cryptography keeps private key material inside OpenSSL, so
destruction drops the only reference and lets OpenSSL free (and clear) it.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed

from ..errors import SigningFailure


class EphemeralKey:
    def __init__(self) -> None:
        self._key: Optional[ec.EllipticCurvePrivateKey] = ec.generate_private_key(ec.SECP256R1())
        self.public_key = self._key.public_key()
        self._used = False

    @property
    def destroyed(self) -> bool:
        return self._key is None

    @property
    def used(self) -> bool:
        return self._used

    def _live(self) -> ec.EllipticCurvePrivateKey:
        if self._key is None:
            raise SigningFailure("ephemeral key already destroyed")
        return self._key

    def prove_possession(self, challenge: bytes) -> bytes:
        """Sign the CA's proof-of-possession challenge. Does not consume the key."""
        return self._live().sign(challenge, ec.ECDSA(hashes.SHA256()))

    def sign(self, data: bytes, prehashed: Optional[hashes.HashAlgorithm] = None) -> bytes:
        key = self._live()
        if self._used:
            raise SigningFailure("ephemeral key already used for a signature")
        algorithm = ec.ECDSA(Prehashed(prehashed)) if prehashed is not None else ec.ECDSA(hashes.SHA256())
        self._used = True
        try:
            return key.sign(data, algorithm)
        except ValueError as e:
            raise SigningFailure(f"signing failed: {e}") from e

    def destroy(self) -> None:
        self._key = None


@contextmanager
def ephemeral_key() -> Iterator[EphemeralKey]:
    key = EphemeralKey()
    try:
        yield key
    finally:
        key.destroy()
