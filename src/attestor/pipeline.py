"""Signing pipeline.

digest -> SBOM + provenance -> three keyless signing operations (the artifact
itself, the SBOM attestation, the provenance attestation) -> log -> registry.

Each signing operation gets its own ephemeral key and certificate, and runs
issuance, signing and log submission strictly in that order. The key never
outlives the signature: it is destroyed before the record is submitted.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple, Union

import anyio
from pydantic import BaseModel, ConfigDict

from .artifact.model import Artifact
from .crypto.digest import Digest, digest
from .errors import AttestorError, Cancelled
from .identity.ca import CertificateClient
from .identity.certificate import IdentityCertificate
from .identity.token import IdentityToken
from .provenance.builder import ProvenanceBuilder
from .provenance.envelope import Envelope, build_statement
from .provenance.model import BuildContext, ProvenanceAttestation
from .registry.store import Registry, put_artifact
from .sbom.generator import SBOMGenerator
from .sbom.model import SBOMDocument
from .signing.keys import EphemeralKey, ephemeral_key
from .signing.model import SignatureRecord
from .signing.signer import Signer
from .transparency.client import TransparencyLogClient
from .utils.logging import get_logger

log = get_logger("attestor.pipeline")

SignFn = Callable[[IdentityCertificate, EphemeralKey], SignatureRecord]


class AttestationBundle(BaseModel):
    model_config = ConfigDict(frozen=True)

    digest: str
    sbom: SBOMDocument
    provenance: ProvenanceAttestation
    records: List[SignatureRecord]


class Attestor:
    def __init__(
        self,
        ca: CertificateClient,
        log_client: TransparencyLogClient,
        registry: Registry,
        *,
        signer: Optional[Signer] = None,
        sbom_generator: Optional[SBOMGenerator] = None,
        provenance_builder: Optional[ProvenanceBuilder] = None,
    ):
        self.ca = ca
        self.log_client = log_client
        self.registry = registry
        self.signer = signer or Signer()
        self.sbom_generator = sbom_generator or SBOMGenerator()
        self.provenance_builder = provenance_builder or ProvenanceBuilder()

    async def _keyless(self, token: IdentityToken, sign: SignFn) -> SignatureRecord:
        with ephemeral_key() as key:
            proof = key.prove_possession(token.identity.encode())
            cert = await self.ca.issue_certificate(token, key.public_key, proof)
            record = sign(cert, key)
        return await self.log_client.submit(record)

    def _context_for(self, artifact: Artifact, d: Digest, ctx: BuildContext, subject_name: str) -> BuildContext:
        update = {"subject_digest": str(d)}
        if subject_name and not ctx.subject_name:
            update["subject_name"] = subject_name
        created = artifact.config.get("created")
        if ctx.artifact_created is None and isinstance(created, str):
            try:
                update["artifact_created"] = datetime.fromisoformat(created.replace("Z", "+00:00"))
            except ValueError:
                log.warning("ignoring unparseable config created timestamp %r", created)
        return ctx.model_copy(update=update)

    async def attest(
        self,
        artifact: Artifact,
        build_context: BuildContext,
        token: Union[IdentityToken, str],
        subject_name: str = "",
    ) -> AttestationBundle:
        if isinstance(token, str):
            token = IdentityToken.parse(token)
        d = digest(artifact)
        sbom = self.sbom_generator.generate(artifact, subject_name=subject_name)
        provenance = self.provenance_builder.build(self._context_for(artifact, d, build_context, subject_name))
        sbom_envelope = Envelope.for_statement(
            build_statement([str(d)], sbom.predicate_type, sbom.to_cyclonedx(), name=subject_name)
        )

        records = [
            await self._keyless(token, lambda cert, key: self.signer.sign(d, cert, key)),
            await self._keyless(token, lambda cert, key: self.signer.sign_envelope(
                sbom_envelope, cert, key, d, sbom.predicate_type)),
            await self._keyless(token, lambda cert, key: self.signer.sign_envelope(
                provenance.envelope, cert, key, d, provenance.predicate_type)),
        ]

        await put_artifact(self.registry, artifact)
        for record in records:
            await self.registry.put_record(record)
        await self.registry.put_document(str(d), "sbom", sbom.to_cyclonedx())
        await self.registry.put_document(str(d), "provenance", records[2].envelope.model_dump(by_alias=True))
        log.info("attested %s as %s (%d records)", d, token.identity, len(records))
        return AttestationBundle(digest=str(d), sbom=sbom, provenance=provenance, records=records)

    async def sign_many(
        self,
        jobs: Sequence[Tuple[Artifact, BuildContext]],
        token: Union[IdentityToken, str],
        limit: int = 4,
        cancel: Optional[anyio.Event] = None,
    ) -> List[Union[AttestationBundle, AttestorError]]:
        """Attest independent artifacts concurrently.

        Results line up with ``jobs``; an artifact that fails yields its error
        without affecting the others. Once ``cancel`` is set, jobs that have not
        started yield Cancelled; jobs already signing run to completion.
        """
        if isinstance(token, str):
            token = IdentityToken.parse(token)
        results: List[Union[AttestationBundle, AttestorError, None]] = [None] * len(jobs)
        slots = anyio.Semaphore(limit)

        async def one(i: int, artifact: Artifact, ctx: BuildContext) -> None:
            async with slots:
                try:
                    if cancel is not None and cancel.is_set():
                        raise Cancelled(f"attestation {i} cancelled before start")
                    results[i] = await self.attest(artifact, ctx, token)
                except AttestorError as e:
                    log.warning("attestation %d failed: %s: %s", i, e.code, e)
                    results[i] = e

        async with anyio.create_task_group() as tg:
            for i, (artifact, ctx) in enumerate(jobs):
                tg.start_soon(one, i, artifact, ctx)
        return results  # type: ignore[return-value]
