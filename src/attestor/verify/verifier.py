"""Verifier.

Answers one question for a digest reference: does at least one published
record satisfy the caller's trust policy? Every check of every record is
reported, so a failed verification says exactly what was wrong. A proof that
does not verify is treated as tampering: verification stops and the result
fails closed.
"""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

import anyio
import anyio.lowlevel

from .. import config
from ..artifact.model import Artifact, ArtifactReference
from ..crypto.digest import Digest, digest, digest_bytes, digests_equal, parse_digest
from ..errors import AttestorError, LogUnavailable, MalformedArtifact, ProofInvalid
from ..obs.prom import observe_verification
from ..provenance.envelope import PAYLOAD_TYPE_INTOTO, statement_subject_digests
from ..registry.store import Registry, fetch_artifact
from ..signing.model import KIND_ATTESTATION, SignatureRecord
from ..signing.signer import verify_record_signature
from ..transparency.client import TransparencyLogClient, verify_proof
from ..transparency.model import LogEntry
from ..utils.logging import get_logger
from . import model as m
from .model import Reason, RecordVerdict, VerificationResult
from .trust import TrustedRoot, TrustPolicy

log = get_logger("attestor.verify")


class _Fatal(Exception):
    def __init__(self, reason: Reason, verdict: RecordVerdict):
        super().__init__(reason.message)
        self.reason = reason
        self.verdict = verdict


def _utc(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class Verifier:
    def __init__(
        self,
        trusted_root: TrustedRoot,
        registry: Optional[Registry] = None,
        log_client: Optional[TransparencyLogClient] = None,
        *,
        checkpoint_max_age: Optional[int] = None,
    ):
        self.trusted_root = trusted_root
        self.registry = registry
        self.log_client = log_client
        self.checkpoint_max_age = checkpoint_max_age if checkpoint_max_age is not None else config.CHECKPOINT_MAX_AGE

    async def verify(
        self,
        reference: str,
        policy: TrustPolicy,
        *,
        artifact: Optional[Artifact] = None,
        records: Optional[Sequence[SignatureRecord]] = None,
        cancel: Optional[anyio.Event] = None,
        timeout: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> VerificationResult:
        """Verify ``reference`` (which must carry ``@digest``) against ``policy``.

        ``records`` bypasses the registry lookup. Setting ``cancel`` or
        exceeding ``timeout`` returns a cancelled result instead of raising.
        """
        started = time.perf_counter()
        outcome: Dict[str, VerificationResult] = {}
        errors: List[BaseException] = []

        with anyio.move_on_after(timeout) as deadline:
            async with anyio.create_task_group() as tg:

                async def run() -> None:
                    if cancel is not None and cancel.is_set():
                        return
                    try:
                        outcome["result"] = await self._verify(reference, policy, artifact, records, now)
                    except Exception as e:
                        # re-raised below, outside the task group
                        errors.append(e)
                    tg.cancel_scope.cancel()

                async def watch() -> None:
                    await cancel.wait()
                    tg.cancel_scope.cancel()

                tg.start_soon(run)
                if cancel is not None:
                    tg.start_soon(watch)

        if errors:
            log.error("verification of %s raised %s", reference, errors[0].__class__.__name__)
            raise errors[0]
        result = outcome.get("result")
        if result is None:
            code = m.TIMEOUT if deadline.cancelled_caught else m.CANCELLED
            log.warning("verification of %s %s", reference, code)
            result = VerificationResult(ok=False, reference=reference, cancelled=True,
                                        reasons=[Reason(code=code, message=f"verification {code}")])
        observe_verification(result.ok, result.reason_codes, (time.perf_counter() - started) * 1000.0)
        return result

    async def _verify(
        self,
        reference: str,
        policy: TrustPolicy,
        artifact: Optional[Artifact],
        records: Optional[Sequence[SignatureRecord]],
        now: Optional[datetime],
    ) -> VerificationResult:
        now = now or datetime.now(timezone.utc)
        result = VerificationResult(reference=reference)
        try:
            ref = ArtifactReference.parse(reference)
        except MalformedArtifact as e:
            result.reasons.append(Reason(code=e.code, message=str(e)))
            return self._finish(result)
        if ref.is_bare_tag:
            result.reasons.append(Reason(code=m.TAG_NOT_DIGEST,
                                         message=f"{reference} names a tag; verification needs @digest"))
            return self._finish(result)
        result.digest = str(ref.digest)

        try:
            mismatch = await self._check_content(ref.digest, artifact)
            if mismatch:
                result.reasons.append(Reason(code=m.DIGEST_MISMATCH, message=mismatch))
                return self._finish(result)
            if records is None:
                records = await self.registry.get_records(str(ref.digest)) if self.registry is not None else []
        except AttestorError as e:
            result.reasons.append(Reason(code=e.code, message=str(e)))
            return self._finish(result)
        if not records:
            result.reasons.append(Reason(code=m.NO_RECORDS, message=f"no signature records for {ref.digest}"))
            return self._finish(result)

        try:
            for index, record in enumerate(records):
                await anyio.lowlevel.checkpoint()
                result.records.append(await self._verify_record(index, record, ref.digest, policy, now))
        except _Fatal as fatal:
            result.records.append(fatal.verdict)
            result.reasons.insert(0, fatal.reason)
            result.ok = False
            self._collect_reasons(result)
            return self._finish(result, fatal=True)

        self._collect_reasons(result)
        passing = [v for v in result.records if v.passed]
        result.ok = bool(passing)
        for ptype in policy.required_predicate_types:
            if not any(v.kind == KIND_ATTESTATION and v.predicate_type == ptype for v in passing):
                result.ok = False
                result.reasons.append(Reason(code=m.PREDICATE_MISSING,
                                             message=f"no passing attestation of type {ptype}"))
        return self._finish(result)

    async def _check_content(self, expected: Digest, artifact: Optional[Artifact]) -> Optional[str]:
        """Re-derive the digest from held content; a message when it disagrees."""
        if artifact is None and self.registry is not None:
            try:
                artifact = await fetch_artifact(self.registry, str(expected))
            except MalformedArtifact as e:
                return str(e)
        if artifact is None:
            return None
        try:
            actual = digest(artifact)
        except MalformedArtifact as e:
            return str(e)
        if actual.algorithm != expected.algorithm:
            actual = digest_bytes(artifact.manifest_bytes, expected.algorithm)
        if not digests_equal(actual.raw, expected.raw):
            return f"content digest {actual} != reference digest {expected}"
        return None

    def _collect_reasons(self, result: VerificationResult) -> None:
        for verdict in result.records:
            for check in verdict.failures:
                if check.reason is None or check.reason == m.PROOF_INVALID:
                    continue
                result.reasons.append(Reason(code=check.reason, record_index=verdict.index, message=check.detail))

    def _finish(self, result: VerificationResult, fatal: bool = False) -> VerificationResult:
        if result.ok:
            log.info("verified %s: %d/%d record(s) pass", result.digest,
                     sum(1 for v in result.records if v.passed), len(result.records))
        else:
            log.warning("verification of %s failed%s: %s", result.reference,
                        " (fatal)" if fatal else "", ",".join(result.reason_codes))
        return result

    async def _verify_record(self, index: int, record: SignatureRecord, expected: Digest,
                             policy: TrustPolicy, now: datetime) -> RecordVerdict:
        verdict = RecordVerdict(index=index, kind=record.kind, predicate_type=record.predicate_type)
        try:
            cert = record.certificate()
        except MalformedArtifact as e:
            verdict.fail("certificate_chain", m.CERTIFICATE_CHAIN, str(e))
            return verdict
        verdict.identity = cert.subject_identity
        verdict.issuer = cert.issuer

        if cert.subject_identity == policy.expected_identity:
            verdict.ok("identity")
        else:
            verdict.fail("identity", m.IDENTITY_MISMATCH,
                         f"{cert.subject_identity!r} != expected {policy.expected_identity!r}")
        if cert.issuer.rstrip("/") == policy.expected_issuer.rstrip("/"):
            verdict.ok("issuer")
        else:
            verdict.fail("issuer", m.ISSUER_MISMATCH, f"{cert.issuer!r} != expected {policy.expected_issuer!r}")

        try:
            same_digest = parse_digest(record.artifact_digest) == expected
        except MalformedArtifact:
            same_digest = False
        if same_digest:
            verdict.ok("digest")
        else:
            verdict.fail("digest", m.DIGEST_MISMATCH, f"record names {record.artifact_digest}, not {expected}")

        if verify_record_signature(record, cert.public_key):
            verdict.ok("signature")
        else:
            verdict.fail("signature", m.SIGNATURE_INVALID, "signature does not verify under the certificate key")

        if record.kind == KIND_ATTESTATION:
            self._check_statement(verdict, record, expected)

        if policy.require_log_inclusion:
            logged = await self._check_log(verdict, record, now)
        else:
            logged = self._committed(record)

        # signed_at is part of the leaf, so it is authenticated only by a
        # verified inclusion proof. Without one the certificate must be
        # valid at verification time.
        if logged:
            when, what = _utc(record.signed_at), "signed at"
        else:
            when, what = now, "checked at"
        if self.trusted_root.chains_to_root(cert, when):
            verdict.ok("certificate_chain")
        else:
            verdict.fail("certificate_chain", m.CERTIFICATE_CHAIN, "certificate does not chain to a trusted CA")
        if when < cert.not_before:
            verdict.fail("certificate_validity", m.CERTIFICATE_NOT_YET_VALID,
                         f"{what} {when.isoformat()} before {cert.not_before.isoformat()}")
        elif when > cert.not_after:
            verdict.fail("certificate_validity", m.CERTIFICATE_EXPIRED,
                         f"{what} {when.isoformat()} after {cert.not_after.isoformat()}")
        else:
            verdict.ok("certificate_validity", f"{what} {when.isoformat()}")

        verdict.passed = not verdict.failures
        return verdict

    def _committed(self, record: SignatureRecord) -> bool:
        """True when the record's own log entry proves inclusion under a pinned log key."""
        entry = record.log_entry
        if entry is None:
            return False
        leaf = record.leaf_hash()
        if entry.leaf_hash != leaf.hex():
            return False
        try:
            verify_proof(entry.inclusion_proof, entry.checkpoint, leaf, self.trusted_root.log_keys)
        except ProofInvalid as e:
            log.info("record log entry %d does not verify: %s", entry.entry_index, e)
            return False
        return True

    def _check_statement(self, verdict: RecordVerdict, record: SignatureRecord, expected: Digest) -> None:
        if record.envelope is None or record.envelope.payload_type != PAYLOAD_TYPE_INTOTO:
            verdict.fail("subject", m.SUBJECT_MISMATCH, "attestation carries no in-toto envelope")
            return
        try:
            statement = record.envelope.statement()
            subjects = statement_subject_digests(statement)
        except MalformedArtifact as e:
            verdict.fail("subject", m.SUBJECT_MISMATCH, str(e))
            return
        if str(expected) not in subjects:
            verdict.fail("subject", m.SUBJECT_MISMATCH, f"statement subject does not name {expected}")
        elif statement.get("predicateType") != record.predicate_type:
            verdict.fail("subject", m.SUBJECT_MISMATCH,
                         f"statement predicate {statement.get('predicateType')!r} != record {record.predicate_type!r}")
        else:
            verdict.ok("subject")

    async def _check_log(self, verdict: RecordVerdict, record: SignatureRecord, now: datetime) -> bool:
        """Log inclusion and checkpoint freshness; True once inclusion is proven."""
        leaf = record.leaf_hash()
        entry: Optional[LogEntry] = record.log_entry
        if entry is None and self.log_client is not None:
            try:
                entry = await self.log_client.find_entry(leaf)
            except LogUnavailable as e:
                verdict.fail("log_inclusion", m.LOG_ENTRY_MISSING, f"log lookup failed: {e}")
                return False
        if entry is None:
            verdict.fail("log_inclusion", m.LOG_ENTRY_MISSING, "record has no transparency log entry")
            return False

        keys = self.trusted_root.log_keys
        try:
            if entry.leaf_hash != leaf.hex():
                raise ProofInvalid("log entry does not commit to this record")
            verify_proof(entry.inclusion_proof, entry.checkpoint, leaf, keys)
        except ProofInvalid as e:
            verdict.fail("log_inclusion", m.PROOF_INVALID, str(e))
            raise _Fatal(Reason(code=m.PROOF_INVALID, severity="fatal", record_index=verdict.index,
                                message=str(e)), verdict)
        verdict.ok("log_inclusion", f"entry {entry.entry_index}")

        checkpoint = entry.checkpoint
        if now.timestamp() - checkpoint.timestamp <= self.checkpoint_max_age:
            verdict.ok("checkpoint_freshness")
            return True
        if self.log_client is None:
            verdict.fail("checkpoint_freshness", m.CHECKPOINT_STALE,
                         f"checkpoint from {_utc(checkpoint.timestamp).isoformat()} exceeds max age")
            return True
        try:
            proof, fresh = await self.log_client.fetch_inclusion_proof(entry.entry_index)
            verify_proof(proof, fresh, leaf, keys)
            await self.log_client.verify_consistency(checkpoint, fresh)
        except ProofInvalid as e:
            verdict.fail("checkpoint_freshness", m.PROOF_INVALID, str(e))
            raise _Fatal(Reason(code=m.PROOF_INVALID, severity="fatal", record_index=verdict.index,
                                message=f"refreshed proof: {e}"), verdict)
        except LogUnavailable as e:
            verdict.fail("checkpoint_freshness", m.CHECKPOINT_STALE, f"stale checkpoint, refresh failed: {e}")
            return True
        if now.timestamp() - fresh.timestamp > self.checkpoint_max_age:
            verdict.fail("checkpoint_freshness", m.CHECKPOINT_STALE, "log has no fresh checkpoint")
        else:
            verdict.ok("checkpoint_freshness", f"refreshed to tree size {fresh.tree_size}")
        return True
