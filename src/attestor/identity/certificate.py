from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import ExtensionOID, ObjectIdentifier

from ..errors import MalformedArtifact

# Fulcio OIDC issuer extensions: v1 holds raw UTF-8, v2 a DER UTF8String.
OID_ISSUER_V1 = ObjectIdentifier("1.3.6.1.4.1.57264.1.1")
OID_ISSUER_V2 = ObjectIdentifier("1.3.6.1.4.1.57264.1.8")


def _der_utf8_string(data: bytes) -> str:
    if len(data) < 2 or data[0] != 0x0C:
        raise ValueError("not a DER UTF8String")
    length = data[1]
    offset = 2
    if length & 0x80:
        n = length & 0x7F
        length = int.from_bytes(data[2:2 + n], "big")
        offset = 2 + n
    return data[offset:offset + length].decode("utf-8")


def public_key_bytes(key) -> bytes:
    return key.public_bytes(encoding=serialization.Encoding.DER, format=serialization.PublicFormat.SubjectPublicKeyInfo)


@dataclass(frozen=True)
class IdentityCertificate:
    """Short-lived leaf certificate binding an ephemeral key to an OIDC identity.

    ``chain`` holds the intermediates the CA returned, leaf excluded.
    """

    certificate: x509.Certificate
    chain: Tuple[x509.Certificate, ...] = ()

    @classmethod
    def from_pem_chain(cls, pems: List[str]) -> "IdentityCertificate":
        if not pems:
            raise MalformedArtifact("empty certificate chain")
        certs = [c for p in pems for c in load_certificates(p)]
        return cls(certificate=certs[0], chain=tuple(certs[1:]))

    def pem_chain(self) -> List[str]:
        return [c.public_bytes(serialization.Encoding.PEM).decode() for c in (self.certificate, *self.chain)]

    @property
    def public_key(self):
        return self.certificate.public_key()

    @property
    def subject_identity(self) -> str:
        try:
            san = self.certificate.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME).value
        except x509.ExtensionNotFound:
            return ""
        emails = san.get_values_for_type(x509.RFC822Name)
        if emails:
            return emails[0]
        uris = san.get_values_for_type(x509.UniformResourceIdentifier)
        return uris[0] if uris else ""

    @property
    def issuer(self) -> str:
        """OIDC issuer that vouched for the subject (not the X.509 issuer DN)."""
        for oid, decode in ((OID_ISSUER_V2, _der_utf8_string), (OID_ISSUER_V1, bytes.decode)):
            try:
                ext = self.certificate.extensions.get_extension_for_oid(oid)
            except x509.ExtensionNotFound:
                continue
            try:
                return decode(ext.value.value)
            except (ValueError, UnicodeDecodeError):
                return ""
        return ""

    @property
    def not_before(self) -> datetime:
        return self.certificate.not_valid_before_utc

    @property
    def not_after(self) -> datetime:
        return self.certificate.not_valid_after_utc

    @property
    def validity(self) -> timedelta:
        return self.not_after - self.not_before

    def is_valid_at(self, when: datetime) -> bool:
        return self.not_before <= when <= self.not_after

    def binds_key(self, public_key) -> bool:
        return public_key_bytes(self.public_key) == public_key_bytes(public_key)

    def fingerprint(self) -> str:
        return self.certificate.fingerprint(hashes.SHA256()).hex()


def load_certificates(pem_bundle: Union[str, bytes]) -> List[x509.Certificate]:
    """Every certificate in a PEM bundle, in order. Raises MalformedArtifact."""
    data = pem_bundle.encode() if isinstance(pem_bundle, str) else pem_bundle
    try:
        return x509.load_pem_x509_certificates(data)
    except ValueError as e:
        raise MalformedArtifact(f"invalid certificate PEM: {e}") from e
