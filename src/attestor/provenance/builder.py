"""Provenance Builder.

Assembles a SLSA Provenance v1 predicate from a BuildContext, wraps it in an
in-toto Statement whose subject is the artifact digest, and places the
statement in an unsigned DSSE envelope ready for the Signer.

Predicate shape::

    buildDefinition:
      buildType, externalParameters, resolvedDependencies[{uri, digest}]
    runDetails:
      builder.id, metadata{invocationId, startedOn, finishedOn}
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from .. import config
from ..crypto.digest import parse_digest
from ..errors import IncompleteBuildContext, InconsistentBuildTimestamps, MalformedArtifact
from ..utils.logging import get_logger
from .envelope import Envelope, build_statement
from .model import SLSA_PROVENANCE_V1, BuildContext, ProvenanceAttestation, iso_utc

log = get_logger("attestor.provenance")


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _check_context(ctx: BuildContext, now: datetime, skew: timedelta) -> None:
    missing = []
    if not ctx.builder_id.strip():
        missing.append("builder identity")
    if not ctx.materials:
        missing.append("materials")
    if not ctx.subject_digest:
        missing.append("subject digest")
    if ctx.finished_on is None:
        missing.append("build finish time")
    if missing:
        raise IncompleteBuildContext("build context missing " + ", ".join(missing))
    for d in [ctx.subject_digest, *ctx.materials]:
        try:
            parse_digest(d)
        except MalformedArtifact as e:
            raise IncompleteBuildContext(str(e)) from e
    finished = _aware(ctx.finished_on)
    if ctx.started_on is not None and _aware(ctx.started_on) > finished:
        raise InconsistentBuildTimestamps("build started after it finished")
    if finished > now + skew:
        raise InconsistentBuildTimestamps(f"build finish time {iso_utc(finished)} is in the future")
    if ctx.artifact_created is not None and _aware(ctx.artifact_created) > finished + skew:
        raise InconsistentBuildTimestamps("build finished before the artifact it produced was created")


def build_predicate(ctx: BuildContext) -> Dict[str, Any]:
    deps = []
    for m in ctx.materials:
        alg, _, hexd = m.partition(":")
        deps.append({"uri": f"oci:{m}", "digest": {alg: hexd}})
    metadata: Dict[str, Any] = {}
    if ctx.invocation_id:
        metadata["invocationId"] = ctx.invocation_id
    if ctx.started_on is not None:
        metadata["startedOn"] = iso_utc(ctx.started_on)
    metadata["finishedOn"] = iso_utc(ctx.finished_on)
    return {
        "buildDefinition": {
            "buildType": ctx.build_type,
            "externalParameters": dict(ctx.parameters),
            "resolvedDependencies": deps,
        },
        "runDetails": {
            "builder": {"id": ctx.builder_id},
            "metadata": metadata,
        },
    }


class ProvenanceBuilder:
    def __init__(self, clock_skew: Optional[int] = None):
        self.clock_skew = timedelta(seconds=config.CLOCK_SKEW if clock_skew is None else clock_skew)

    def build(self, ctx: BuildContext, now: Optional[datetime] = None) -> ProvenanceAttestation:
        now = _aware(now or datetime.now(timezone.utc))
        _check_context(ctx, now, self.clock_skew)
        predicate = build_predicate(ctx)
        statement = build_statement([ctx.subject_digest], SLSA_PROVENANCE_V1, predicate, name=ctx.subject_name)
        att = ProvenanceAttestation(
            artifact_digest=ctx.subject_digest,
            builder_identity=ctx.builder_id,
            build_timestamp=_aware(ctx.finished_on),
            build_parameters=dict(ctx.parameters),
            materials=list(ctx.materials),
            envelope=Envelope.for_statement(statement),
        )
        log.info("provenance built for %s by %s (%d materials)", ctx.subject_digest, ctx.builder_id, len(ctx.materials))
        return att


def build(ctx: BuildContext, now: Optional[datetime] = None) -> ProvenanceAttestation:
    return ProvenanceBuilder().build(ctx, now=now)
