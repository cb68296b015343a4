"""Trust material and verification policy.

``TrustedRoot`` is loaded once at process start and shared read-only by all
verifications. ``TrustPolicy`` is per request and never persisted; it can be
read from YAML (``config/policy.yml`` by default) with environment overrides
applied on top.
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .. import config
from ..errors import ConfigError, MalformedArtifact
from ..identity.certificate import IdentityCertificate, load_certificates
from ..transparency.model import log_key_id


def _is_ca(cert: x509.Certificate) -> bool:
    try:
        return cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    except x509.ExtensionNotFound:
        return False


def _issued_by(cert: x509.Certificate, issuer: x509.Certificate) -> bool:
    try:
        cert.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


def _valid_at(cert: x509.Certificate, when: datetime) -> bool:
    return cert.not_valid_before_utc <= when <= cert.not_valid_after_utc


@dataclass(frozen=True)
class TrustedRoot:
    ca_certificates: Tuple[x509.Certificate, ...] = ()
    log_keys: Mapping[str, Ed25519PublicKey] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_pems(cls, ca_pems: List[str], log_key_pems: List[str]) -> "TrustedRoot":
        try:
            cas = tuple(c for p in ca_pems for c in load_certificates(p))
            keys = {}
            for pem in log_key_pems:
                key = serialization.load_pem_public_key(pem.encode())
                if not isinstance(key, Ed25519PublicKey):
                    raise ConfigError("pinned log keys must be Ed25519")
                keys[log_key_id(key)] = key
        except (MalformedArtifact, ValueError) as e:
            raise ConfigError(f"unreadable trust material: {e}") from e
        return cls(ca_certificates=cas, log_keys=MappingProxyType(keys))

    @classmethod
    def from_file(cls, path: Optional[str] = None) -> "TrustedRoot":
        """``{"certificate_authorities": [PEM...], "transparency_logs": [PEM...]}``"""
        path = path or config.TRUSTED_ROOT
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"cannot load trusted root {path}: {e}") from e
        return cls.from_pems(list(data.get("certificate_authorities") or []),
                             list(data.get("transparency_logs") or []))

    def chains_to_root(self, cert: IdentityCertificate, when: datetime) -> bool:
        """True when ``cert`` chains through its intermediates to a trusted CA valid at ``when``."""
        current = cert.certificate
        pool = list(cert.chain)
        for _ in range(len(pool) + 1):
            for root in self.ca_certificates:
                if _valid_at(root, when) and _issued_by(current, root):
                    return True
            nxt = next((c for c in pool if _is_ca(c) and _valid_at(c, when) and _issued_by(current, c)), None)
            if nxt is None:
                return False
            pool.remove(nxt)
            current = nxt
        return False


class TrustPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    expected_identity: str = Field(min_length=1)
    expected_issuer: str = Field(min_length=1)
    require_log_inclusion: bool = True
    required_predicate_types: List[str] = Field(default_factory=list)


_DEF_POLICY_PATH = os.path.join(os.getcwd(), "config", "policy.yml")

_ENV_MAP = {
    "expected_identity": ("ATTESTOR_POLICY_IDENTITY", str),
    "expected_issuer": ("ATTESTOR_POLICY_ISSUER", str),
    "require_log_inclusion": ("ATTESTOR_POLICY_REQUIRE_LOG", lambda v: v.strip().lower() in {"1", "true", "yes"}),
    "required_predicate_types": ("ATTESTOR_POLICY_PREDICATE_TYPES",
                                 lambda v: [p.strip() for p in v.split(",") if p.strip()]),
}


def load_policy(path: Optional[str] = None) -> TrustPolicy:
    """YAML policy file (optional) with ``ATTESTOR_POLICY_*`` environment overrides."""
    data: Dict[str, Any] = {}
    path = path or _DEF_POLICY_PATH
    if os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"cannot read policy {path}: {e}") from e
        if not isinstance(loaded, dict):
            raise ConfigError(f"policy {path} must be a mapping")
        data.update(loaded)
    for key, (env, cast) in _ENV_MAP.items():
        if env in os.environ:
            data[key] = cast(os.environ[env])
    try:
        return TrustPolicy(**data)
    except (ValidationError, TypeError) as e:
        raise ConfigError(f"invalid trust policy: {e}") from e
