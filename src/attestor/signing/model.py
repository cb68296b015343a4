from __future__ import annotations

import base64
import hashlib
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..crypto.jcs import jcs_canonicalize
from ..identity.certificate import IdentityCertificate
from ..provenance.envelope import Envelope
from ..transparency.merkle import leaf_hash
from ..transparency.model import LogEntry

KIND_SIGNATURE = "signature"
KIND_ATTESTATION = "attestation"


class SignatureRecord(BaseModel):
    """One signature over an artifact digest (or over an attestation about it).

    ``certificate_chain`` is leaf first. ``log_entry`` is set once the record
    has been accepted by the transparency log.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["signature", "attestation"] = KIND_SIGNATURE
    artifact_digest: str
    signature: str
    certificate_chain: List[str] = Field(min_length=1)
    signed_at: int
    predicate_type: str = ""
    envelope: Optional[Envelope] = None
    log_entry: Optional[LogEntry] = None

    def signature_bytes(self) -> bytes:
        return base64.b64decode(self.signature)

    def certificate(self) -> IdentityCertificate:
        return IdentityCertificate.from_pem_chain(self.certificate_chain)

    def log_body(self) -> dict:
        """What the log commits to: everything except the log entry itself."""
        body = {
            "kind": self.kind,
            "artifact_digest": self.artifact_digest,
            "signature": self.signature,
            "certificate": self.certificate_chain[0],
            "signed_at": self.signed_at,
        }
        if self.kind == KIND_ATTESTATION:
            body["predicate_type"] = self.predicate_type
            if self.envelope is not None:
                body["payload_sha256"] = hashlib.sha256(self.envelope.pae()).hexdigest()
        return body

    def leaf_bytes(self) -> bytes:
        return jcs_canonicalize(self.log_body())

    def leaf_hash(self) -> bytes:
        return leaf_hash(self.leaf_bytes())

    def with_log_entry(self, entry: LogEntry) -> "SignatureRecord":
        return self.model_copy(update={"log_entry": entry})
