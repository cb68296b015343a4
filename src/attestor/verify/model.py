from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

# Reason codes. Each failing check maps to exactly one.
TAG_NOT_DIGEST = "tag_not_digest"
DIGEST_MISMATCH = "digest_mismatch"
NO_RECORDS = "no_records"
CERTIFICATE_CHAIN = "certificate_chain"
CERTIFICATE_EXPIRED = "certificate_expired"
CERTIFICATE_NOT_YET_VALID = "certificate_not_yet_valid"
IDENTITY_MISMATCH = "identity_mismatch"
ISSUER_MISMATCH = "issuer_mismatch"
SIGNATURE_INVALID = "signature_invalid"
SUBJECT_MISMATCH = "subject_mismatch"
LOG_ENTRY_MISSING = "log_entry_missing"
PROOF_INVALID = "proof_invalid"
CHECKPOINT_STALE = "checkpoint_stale"
PREDICATE_MISSING = "predicate_missing"
CANCELLED = "cancelled"
TIMEOUT = "timeout"


class Check(BaseModel):
    name: str
    passed: bool
    reason: Optional[str] = None
    detail: str = ""


class Reason(BaseModel):
    code: str
    severity: Literal["fatal", "error"] = "error"
    record_index: Optional[int] = None
    message: str = ""


class RecordVerdict(BaseModel):
    index: int
    kind: str
    identity: str = ""
    issuer: str = ""
    predicate_type: str = ""
    passed: bool = False
    checks: List[Check] = Field(default_factory=list)

    def fail(self, name: str, reason: str, detail: str = "") -> None:
        self.checks.append(Check(name=name, passed=False, reason=reason, detail=detail))

    def ok(self, name: str, detail: str = "") -> None:
        self.checks.append(Check(name=name, passed=True, detail=detail))

    @property
    def failures(self) -> List[Check]:
        return [c for c in self.checks if not c.passed]


class VerificationResult(BaseModel):
    ok: bool = False
    reference: str = ""
    digest: Optional[str] = None
    cancelled: bool = False
    reasons: List[Reason] = Field(default_factory=list)
    records: List[RecordVerdict] = Field(default_factory=list)

    @property
    def reason_codes(self) -> List[str]:
        return [r.code for r in self.reasons]
