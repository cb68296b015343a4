"""DSSE envelope (v1) carrying in-toto statements.

Structure:
{
  "payloadType": "application/vnd.in-toto+json",
  "payload": "<base64 of canonical statement JSON>",
  "signatures": [{"keyid": "...", "sig": "<base64>"}]
}

Signatures cover the pre-authentication encoding (PAE) of payloadType and
payload bytes, never the JSON envelope itself, so re-serializing the envelope
cannot change what was signed. Envelopes are immutable; adding a signature
returns a new envelope.
"""
from __future__ import annotations

import base64
import json
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field

from ..crypto.jcs import jcs_canonicalize
from ..errors import MalformedArtifact

PAYLOAD_TYPE_INTOTO = "application/vnd.in-toto+json"
STATEMENT_TYPE = "https://in-toto.io/Statement/v1"


def pae(payload_type: str, payload: bytes) -> bytes:
    t = payload_type.encode("utf-8")
    return b"DSSEv1 %d %s %d %s" % (len(t), t, len(payload), payload)


class EnvelopeSignature(BaseModel):
    model_config = ConfigDict(frozen=True)

    keyid: str = ""
    sig: str


class Envelope(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    payload_type: str = Field(alias="payloadType")
    payload: str
    signatures: List[EnvelopeSignature] = Field(default_factory=list)

    @classmethod
    def for_statement(cls, statement: Dict[str, Any]) -> "Envelope":
        body = jcs_canonicalize(statement)
        return cls(payload_type=PAYLOAD_TYPE_INTOTO, payload=base64.b64encode(body).decode())

    def payload_bytes(self) -> bytes:
        return base64.b64decode(self.payload)

    def pae(self) -> bytes:
        return pae(self.payload_type, self.payload_bytes())

    def statement(self) -> Dict[str, Any]:
        try:
            obj = json.loads(self.payload_bytes())
        except ValueError as e:
            raise MalformedArtifact("envelope payload is not JSON") from e
        if not isinstance(obj, dict) or obj.get("_type") != STATEMENT_TYPE:
            raise MalformedArtifact("envelope payload is not an in-toto statement")
        return obj

    def with_signature(self, signature: bytes, keyid: str = "") -> "Envelope":
        sigs = [*self.signatures, EnvelopeSignature(keyid=keyid, sig=base64.b64encode(signature).decode())]
        return self.model_copy(update={"signatures": sigs})


def build_statement(subject_digests: List[str], predicate_type: str, predicate: Dict[str, Any], name: str = "") -> Dict[str, Any]:
    subject = []
    for d in subject_digests:
        alg, _, hexd = d.partition(":")
        entry: Dict[str, Any] = {"digest": {alg: hexd}}
        if name:
            entry["name"] = name
        subject.append(entry)
    return {
        "_type": STATEMENT_TYPE,
        "subject": subject,
        "predicateType": predicate_type,
        "predicate": predicate,
    }


def statement_subject_digests(statement: Dict[str, Any]) -> List[str]:
    """``alg:hex`` strings named by the statement subject. Raises MalformedArtifact."""
    subject = statement.get("subject")
    if not isinstance(subject, list):
        raise MalformedArtifact("statement subject is not a list")
    out = []
    for s in subject:
        digests = s.get("digest") if isinstance(s, dict) else None
        if not isinstance(digests, dict):
            raise MalformedArtifact("statement subject entry has no digest mapping")
        for alg, hexd in digests.items():
            out.append(f"{alg}:{hexd}")
    return out
