import base64

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec

from attestor.crypto.digest import digest_bytes
from attestor.errors import SigningFailure
from attestor.identity.certificate import IdentityCertificate
from attestor.provenance.envelope import Envelope, build_statement
from attestor.signing.keys import ephemeral_key
from attestor.signing.signer import Signer, verify_record_signature

from conftest import IDENTITY_X

MANIFEST = b'{"schemaVersion":2}'


def test_key_destroyed_on_every_exit_path():
    with ephemeral_key() as key:
        assert not key.destroyed
    assert key.destroyed
    with pytest.raises(RuntimeError):
        with ephemeral_key() as failing:
            raise RuntimeError("boom")
    assert failing.destroyed
    with pytest.raises(SigningFailure):
        failing.sign(b"data")


def test_key_signs_once():
    with ephemeral_key() as key:
        key.prove_possession(b"challenge")
        sig = key.sign(b"data")
        key.public_key.verify(sig, b"data", ec.ECDSA(hashes.SHA256()))
        with pytest.raises(SigningFailure):
            key.sign(b"data")


def test_artifact_signature(pki):
    d = digest_bytes(MANIFEST)
    with ephemeral_key() as key:
        cert = IdentityCertificate.from_pem_chain(pki.issue(key.public_key, IDENTITY_X))
        record = Signer().sign(d, cert, key, now=1700000000)
    assert record.kind == "signature"
    assert record.artifact_digest == str(d)
    assert record.signed_at == 1700000000
    assert record.certificate().subject_identity == IDENTITY_X
    assert verify_record_signature(record, cert.public_key)
    # Prehashed: verifies against the manifest bytes themselves.
    cert.public_key.verify(record.signature_bytes(), MANIFEST, ec.ECDSA(hashes.SHA256()))
    forged = record.model_copy(update={"artifact_digest": str(digest_bytes(b"other"))})
    assert not verify_record_signature(forged, cert.public_key)


def test_certificate_must_bind_key(pki):
    other = ec.generate_private_key(ec.SECP256R1())
    cert = IdentityCertificate.from_pem_chain(pki.issue(other.public_key(), IDENTITY_X))
    with ephemeral_key() as key:
        with pytest.raises(SigningFailure):
            Signer().sign(digest_bytes(MANIFEST), cert, key)
        assert not key.used


def test_envelope_signature(pki):
    d = digest_bytes(MANIFEST)
    env = Envelope.for_statement(build_statement([str(d)], "https://example.com/predicate", {"x": 1}))
    with ephemeral_key() as key:
        cert = IdentityCertificate.from_pem_chain(pki.issue(key.public_key, IDENTITY_X))
        record = Signer().sign_envelope(env, cert, key, d, "https://example.com/predicate")
    assert record.kind == "attestation"
    assert record.predicate_type == "https://example.com/predicate"
    assert len(record.envelope.signatures) == 1
    assert record.envelope.signatures[0].keyid == cert.fingerprint()
    assert base64.b64decode(record.envelope.signatures[0].sig) == record.signature_bytes()
    assert verify_record_signature(record, cert.public_key)
    tampered = record.model_copy(update={
        "envelope": Envelope.for_statement(build_statement([str(d)], "https://example.com/predicate", {"x": 2})),
    })
    assert not verify_record_signature(tampered, cert.public_key)


def test_log_body_excludes_log_entry(pki):
    with ephemeral_key() as key:
        cert = IdentityCertificate.from_pem_chain(pki.issue(key.public_key, IDENTITY_X))
        record = Signer().sign(digest_bytes(MANIFEST), cert, key)
    body = record.log_body()
    assert set(body) == {"kind", "artifact_digest", "signature", "certificate", "signed_at"}
    assert len(record.leaf_hash()) == 32
