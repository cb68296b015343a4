"""Signer.

Signs an artifact digest (or a DSSE envelope about it) with an ephemeral key
whose public half is bound by an identity certificate. Artifact signatures
are ECDSA over the digest as a prehashed value, so they verify equally
against the manifest bytes themselves.
"""
from __future__ import annotations

import base64
import time
from typing import Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed

from ..crypto.digest import Digest, parse_digest
from ..errors import SigningFailure
from ..identity.certificate import IdentityCertificate
from ..obs.prom import SIGNING_OPS
from ..provenance.envelope import Envelope
from ..utils.logging import get_logger
from .keys import EphemeralKey
from .model import KIND_SIGNATURE, KIND_ATTESTATION, SignatureRecord

log = get_logger("attestor.signing")

_PREHASH = {"sha256": hashes.SHA256, "sha512": hashes.SHA512}


def prehash_for(d: Digest) -> hashes.HashAlgorithm:
    return _PREHASH[d.algorithm]()


def verify_record_signature(record: SignatureRecord, public_key) -> bool:
    """True when ``record.signature`` verifies under ``public_key``."""
    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        return False
    try:
        sig = record.signature_bytes()
        if record.kind == KIND_ATTESTATION:
            if record.envelope is None:
                return False
            public_key.verify(sig, record.envelope.pae(), ec.ECDSA(hashes.SHA256()))
        else:
            d = parse_digest(record.artifact_digest)
            public_key.verify(sig, d.raw, ec.ECDSA(Prehashed(prehash_for(d))))
    except (InvalidSignature, ValueError):
        return False
    return True


class Signer:
    def _check_binding(self, certificate: IdentityCertificate, key: EphemeralKey) -> None:
        if key.destroyed:
            raise SigningFailure("ephemeral key already destroyed")
        if not certificate.binds_key(key.public_key):
            raise SigningFailure("certificate does not bind the signing key")

    def sign(
        self,
        artifact_digest: Union[Digest, str],
        certificate: IdentityCertificate,
        key: EphemeralKey,
        now: Optional[int] = None,
    ) -> SignatureRecord:
        d = parse_digest(str(artifact_digest))
        try:
            self._check_binding(certificate, key)
            sig = key.sign(d.raw, prehashed=prehash_for(d))
        except SigningFailure:
            SIGNING_OPS.labels(kind=KIND_SIGNATURE, result="fail").inc()
            raise
        SIGNING_OPS.labels(kind=KIND_SIGNATURE, result="ok").inc()
        log.info("signed %s as %s", d, certificate.subject_identity)
        return SignatureRecord(
            kind=KIND_SIGNATURE,
            artifact_digest=str(d),
            signature=base64.b64encode(sig).decode(),
            certificate_chain=certificate.pem_chain(),
            signed_at=int(now if now is not None else time.time()),
        )

    def sign_envelope(
        self,
        envelope: Envelope,
        certificate: IdentityCertificate,
        key: EphemeralKey,
        artifact_digest: Union[Digest, str],
        predicate_type: str,
        now: Optional[int] = None,
    ) -> SignatureRecord:
        d = parse_digest(str(artifact_digest))
        try:
            self._check_binding(certificate, key)
            sig = key.sign(envelope.pae())
        except SigningFailure:
            SIGNING_OPS.labels(kind=KIND_ATTESTATION, result="fail").inc()
            raise
        SIGNING_OPS.labels(kind=KIND_ATTESTATION, result="ok").inc()
        log.info("signed %s attestation for %s as %s", predicate_type, d, certificate.subject_identity)
        return SignatureRecord(
            kind=KIND_ATTESTATION,
            artifact_digest=str(d),
            signature=base64.b64encode(sig).decode(),
            certificate_chain=certificate.pem_chain(),
            signed_at=int(now if now is not None else time.time()),
            predicate_type=predicate_type,
            envelope=envelope.with_signature(sig, keyid=certificate.fingerprint()),
        )
