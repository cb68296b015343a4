from __future__ import annotations

import base64
import hashlib
from typing import List, Mapping

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from pydantic import BaseModel, ConfigDict, Field

from ..crypto.jcs import jcs_canonicalize
from ..errors import ProofInvalid


def log_key_id(public_key: Ed25519PublicKey) -> str:
    raw = public_key.public_bytes(encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw)
    return hashlib.sha256(raw).hexdigest()[:16]


class InclusionProof(BaseModel):
    model_config = ConfigDict(frozen=True)

    log_index: int = Field(ge=0)
    tree_size: int = Field(ge=1)
    root_hash: str
    hashes: List[str] = Field(default_factory=list)

    def path(self) -> List[bytes]:
        return [bytes.fromhex(h) for h in self.hashes]


class Checkpoint(BaseModel):
    """Signed tree head: the log's commitment to a tree size and root."""

    model_config = ConfigDict(frozen=True)

    origin: str
    tree_size: int = Field(ge=0)
    root_hash: str
    timestamp: int
    key_id: str = ""
    signature: str = ""

    def body_bytes(self) -> bytes:
        return jcs_canonicalize({
            "origin": self.origin,
            "tree_size": self.tree_size,
            "root_hash": self.root_hash,
            "timestamp": self.timestamp,
        })


class LogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    entry_index: int = Field(ge=0)
    leaf_hash: str
    integrated_time: int
    inclusion_proof: InclusionProof
    checkpoint: Checkpoint


class ConsistencyProof(BaseModel):
    model_config = ConfigDict(frozen=True)

    old_size: int
    new_size: int
    hashes: List[str] = Field(default_factory=list)


def verify_checkpoint(checkpoint: Checkpoint, log_keys: Mapping[str, Ed25519PublicKey]) -> None:
    """Raise ProofInvalid unless a pinned log key signed ``checkpoint``."""
    key = log_keys.get(checkpoint.key_id)
    if key is None:
        raise ProofInvalid(f"checkpoint signed by unknown log key {checkpoint.key_id!r}")
    try:
        key.verify(base64.b64decode(checkpoint.signature), checkpoint.body_bytes())
    except (InvalidSignature, ValueError) as e:
        raise ProofInvalid("checkpoint signature invalid") from e
