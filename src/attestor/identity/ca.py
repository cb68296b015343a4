"""Identity / Certificate Client.

Exchanges an OIDC identity token and an ephemeral public key for a
short-lived certificate from a Fulcio-compatible CA. The returned
certificate is checked locally before anyone signs with it: it must bind
the key we sent, name the token's identity and issuer, and be short-lived.
"""
from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Union

import httpx
from cryptography.hazmat.primitives import serialization

from .. import config
from ..errors import CAUnavailable, IdentityRejected, MalformedArtifact
from ..utils.logging import get_logger
from ..utils.retry import retry_async
from .certificate import IdentityCertificate
from .token import IdentityToken

log = get_logger("attestor.identity")

SIGNING_CERT_PATH = "/api/v2/signingCert"
_REJECT_STATUSES = {400, 401, 403, 422}


def _chain_from_response(body: dict) -> List[str]:
    for key in ("signedCertificateEmbeddedSct", "signedCertificateDetachedSct"):
        block = body.get(key)
        if isinstance(block, dict):
            certs = (block.get("chain") or {}).get("certificates")
            if isinstance(certs, list) and certs:
                return [str(c) for c in certs]
    raise CAUnavailable("CA response carries no certificate chain")


class CertificateClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        allowed_issuers: Optional[Iterable[str]] = None,
        max_validity: Optional[int] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or config.CA_URL).rstrip("/")
        self.allowed_issuers = list(allowed_issuers if allowed_issuers is not None else config.ALLOWED_ISSUERS)
        self.max_validity = timedelta(seconds=max_validity if max_validity is not None else config.MAX_CERT_VALIDITY)
        self.timeout = timeout if timeout is not None else config.HTTP_TIMEOUT
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def _request(self, token: IdentityToken, public_key, proof_of_possession: bytes) -> List[str]:
        pem = public_key.public_bytes(
            encoding=serialization.Encoding.PEM, format=serialization.PublicFormat.SubjectPublicKeyInfo
        ).decode()
        payload = {
            "credentials": {"oidcIdentityToken": token.raw},
            "publicKeyRequest": {
                "publicKey": {"algorithm": "ECDSA", "content": pem},
                "proofOfPossession": base64.b64encode(proof_of_possession).decode(),
            },
        }
        try:
            async with self._client() as client:
                resp = await client.post(SIGNING_CERT_PATH, json=payload)
        except httpx.TransportError as e:
            raise CAUnavailable(f"CA unreachable: {e.__class__.__name__}") from e
        if resp.status_code in _REJECT_STATUSES:
            raise IdentityRejected(f"CA rejected identity token ({resp.status_code})")
        if resp.status_code == 429 or resp.status_code >= 500:
            raise CAUnavailable(f"CA returned {resp.status_code}")
        if resp.status_code >= 400:
            raise IdentityRejected(f"CA refused request ({resp.status_code})")
        try:
            body = resp.json()
        except ValueError as e:
            raise CAUnavailable("CA response is not JSON") from e
        if not isinstance(body, dict):
            raise CAUnavailable("CA response is not an object")
        return _chain_from_response(body)

    def check_certificate(self, cert: IdentityCertificate, token: IdentityToken, public_key,
                          now: Optional[datetime] = None) -> None:
        now = now or datetime.now(timezone.utc)
        if not cert.binds_key(public_key):
            raise IdentityRejected("certificate does not bind the submitted public key")
        if cert.subject_identity != token.identity:
            raise IdentityRejected(f"certificate identity {cert.subject_identity!r} != token identity {token.identity!r}")
        if cert.issuer.rstrip("/") != token.issuer.rstrip("/"):
            raise IdentityRejected(f"certificate issuer {cert.issuer!r} != token issuer {token.issuer!r}")
        if cert.validity > self.max_validity:
            raise IdentityRejected(f"certificate validity {cert.validity} exceeds {self.max_validity}")
        skew = timedelta(seconds=config.CLOCK_SKEW)
        if not (cert.not_before - skew <= now <= cert.not_after):
            raise IdentityRejected("certificate is not valid at issuance time")

    async def issue_certificate(
        self,
        token: Union[IdentityToken, str],
        public_key,
        proof_of_possession: bytes,
        now: Optional[datetime] = None,
    ) -> IdentityCertificate:
        """Request a certificate for ``public_key`` on behalf of ``token``.

        Retries CAUnavailable with bounded backoff; IdentityRejected surfaces
        immediately.
        """
        if isinstance(token, str):
            token = IdentityToken.parse(token)
        token.validate(self.allowed_issuers, now=now)

        pems = await retry_async(lambda: self._request(token, public_key, proof_of_possession), op="ca.issue")
        try:
            cert = IdentityCertificate.from_pem_chain(pems)
        except MalformedArtifact as e:
            raise CAUnavailable(f"CA returned an unreadable chain: {e}") from e
        self.check_certificate(cert, token, public_key, now=now)
        log.info("certificate issued for %s by %s (valid until %s)",
                 cert.subject_identity, cert.issuer, cert.not_after.isoformat())
        return cert
