"""Error taxonomy for the attestation engine.

Every error carries a stable ``code`` used in verification reasons and
metrics labels. ``retryable`` kinds are retried with bounded backoff by the
calling layer (see ``attestor.utils.retry``); every other kind surfaces
immediately.
"""
from __future__ import annotations


class AttestorError(Exception):
    code = "attestor_error"
    retryable = False


class ConfigError(AttestorError):
    """Raised when trust material or a policy file cannot be loaded."""

    code = "config_error"


class MalformedArtifact(AttestorError):
    """The manifest cannot be parsed or the reference carries no digest."""

    code = "malformed_artifact"


class DigestMismatch(MalformedArtifact):
    """Content does not hash to the digest that names it."""

    code = "digest_mismatch"


class PartialInventory(AttestorError):
    """SBOM generation skipped at least one layer (degraded, non-fatal)."""

    code = "partial_inventory"

    def __init__(self, message: str, gaps=None):
        super().__init__(message)
        self.gaps = list(gaps or [])


class IncompleteBuildContext(AttestorError):
    code = "incomplete_build_context"


class InconsistentBuildTimestamps(IncompleteBuildContext):
    code = "inconsistent_build_timestamps"


class IdentityRejected(AttestorError):
    """Identity token invalid or expired, or the CA refused it."""

    code = "identity_rejected"


class CAUnavailable(AttestorError):
    code = "ca_unavailable"
    retryable = True


class SigningFailure(AttestorError):
    """Cryptographic failure while signing. Never retried with the same certificate."""

    code = "signing_failure"


class LogUnavailable(AttestorError):
    code = "log_unavailable"
    retryable = True


class RegistryUnavailable(AttestorError):
    code = "registry_unavailable"
    retryable = True


class ProofInvalid(AttestorError):
    """Inclusion proof or checkpoint failed to verify: tampering or a stale checkpoint."""

    code = "proof_invalid"


class Cancelled(AttestorError):
    """Work abandoned because the caller asked to stop."""

    code = "cancelled"


__all__ = [
    "AttestorError",
    "ConfigError",
    "MalformedArtifact",
    "DigestMismatch",
    "PartialInventory",
    "IncompleteBuildContext",
    "InconsistentBuildTimestamps",
    "IdentityRejected",
    "CAUnavailable",
    "SigningFailure",
    "LogUnavailable",
    "RegistryUnavailable",
    "ProofInvalid",
    "Cancelled",
]
