import time
from datetime import datetime, timedelta, timezone

import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from attestor.errors import CAUnavailable, IdentityRejected, MalformedArtifact
from attestor.identity.ca import CertificateClient
from attestor.identity.certificate import IdentityCertificate
from attestor.identity.token import IdentityToken
from attestor.signing.keys import ephemeral_key

from conftest import GITHUB_ISSUER, IDENTITY_X


def _client(fake_ca, **kw):
    return CertificateClient("https://ca.test", transport=fake_ca.transport(), **kw)


def test_token_claims(token_factory):
    token = IdentityToken.parse(token_factory())
    assert token.issuer == GITHUB_ISSUER
    assert token.identity == IDENTITY_X
    token.validate([GITHUB_ISSUER])
    assert "c2lnbmF0dXJl" not in repr(token)


def test_token_identity_falls_back_to_subject(token_factory):
    token = IdentityToken.parse(token_factory(email=None))
    assert token.identity == "repo:example/app:ref:refs/heads/main"
    unverified = IdentityToken.parse(token_factory(email_verified=False))
    assert unverified.identity == "repo:example/app:ref:refs/heads/main"


@pytest.mark.parametrize("claims", [
    {"iss": "https://evil.example.com"},
    {"exp": int(time.time()) - 10},
    {"exp": None},
    {"nbf": int(time.time()) + 3600},
    {"email": None, "sub": None},
])
def test_token_rejected(token_factory, claims):
    with pytest.raises(IdentityRejected):
        IdentityToken.parse(token_factory(**claims)).validate([GITHUB_ISSUER])


@pytest.mark.parametrize("raw", ["", "a.b", "not-a-jwt", "aGVsbG8.!!!.sig"])
def test_malformed_token(raw):
    with pytest.raises(IdentityRejected):
        IdentityToken.parse(raw)


def test_certificate_fields(pki):
    key = ec.generate_private_key(ec.SECP256R1())
    cert = IdentityCertificate.from_pem_chain(pki.issue(key.public_key(), IDENTITY_X))
    assert cert.subject_identity == IDENTITY_X
    assert cert.issuer == GITHUB_ISSUER
    assert cert.binds_key(key.public_key())
    assert cert.validity == timedelta(minutes=10)
    assert len(cert.chain) == 1
    assert cert.pem_chain()[0].startswith("-----BEGIN CERTIFICATE-----")

    uri = "https://github.com/example/app/.github/workflows/build.yml@refs/heads/main"
    legacy = IdentityCertificate.from_pem_chain(pki.issue(key.public_key(), uri, uri=True, legacy_issuer=True))
    assert legacy.subject_identity == uri
    assert legacy.issuer == GITHUB_ISSUER

    bundled = IdentityCertificate.from_pem_chain(["".join(pki.issue(key.public_key(), IDENTITY_X))])
    assert bundled.subject_identity == IDENTITY_X
    assert bundled.chain == (pki.intermediate,)
    with pytest.raises(MalformedArtifact):
        IdentityCertificate.from_pem_chain(["not a pem"])


@pytest.mark.anyio
async def test_issue_certificate(fake_ca, token_factory):
    with ephemeral_key() as key:
        token = IdentityToken.parse(token_factory())
        cert = await _client(fake_ca).issue_certificate(token, key.public_key,
                                                       key.prove_possession(token.identity.encode()))
        assert cert.binds_key(key.public_key)
        assert cert.subject_identity == IDENTITY_X
        assert cert.is_valid_at(datetime.now(timezone.utc))


@pytest.mark.anyio
async def test_untrusted_issuer_never_reaches_ca(fake_ca, token_factory):
    with ephemeral_key() as key, pytest.raises(IdentityRejected):
        await _client(fake_ca).issue_certificate(token_factory(iss="https://evil.example.com"), key.public_key, b"p")
    assert fake_ca.requests == 0


@pytest.mark.anyio
@pytest.mark.parametrize("status", [400, 401, 403, 422])
async def test_rejection_is_not_retried(fake_ca, token_factory, status):
    fake_ca.fail_with = [status]
    with ephemeral_key() as key, pytest.raises(IdentityRejected):
        await _client(fake_ca).issue_certificate(token_factory(), key.public_key, b"p")
    assert fake_ca.requests == 1


@pytest.mark.anyio
async def test_transient_failures_are_retried(fake_ca, token_factory):
    fake_ca.fail_with = [503, 429]
    with ephemeral_key() as key:
        cert = await _client(fake_ca).issue_certificate(token_factory(), key.public_key, b"p")
    assert fake_ca.requests == 3
    assert cert.subject_identity == IDENTITY_X


@pytest.mark.anyio
async def test_ca_unavailable_after_bounded_retries(fake_ca, token_factory):
    fake_ca.fail_with = [502] * 10
    with ephemeral_key() as key, pytest.raises(CAUnavailable):
        await _client(fake_ca).issue_certificate(token_factory(), key.public_key, b"p")
    assert fake_ca.requests == 4


@pytest.mark.anyio
async def test_certificate_must_match_request(fake_ca, token_factory):
    client = _client(fake_ca)
    fake_ca.swap_key = True
    with ephemeral_key() as key, pytest.raises(IdentityRejected, match="public key"):
        await client.issue_certificate(token_factory(), key.public_key, b"p")
    fake_ca.swap_key = False
    fake_ca.identity_override = "someone-else@example.com"
    with ephemeral_key() as key, pytest.raises(IdentityRejected, match="identity"):
        await client.issue_certificate(token_factory(), key.public_key, b"p")
    fake_ca.identity_override = None
    fake_ca.validity = timedelta(hours=2)
    with ephemeral_key() as key, pytest.raises(IdentityRejected, match="validity"):
        await client.issue_certificate(token_factory(), key.public_key, b"p")
