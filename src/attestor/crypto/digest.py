"""Digest Calculator.

An artifact is named by the SHA-256 of its manifest bytes. The manifest lists
every content block (config and layers) by digest and size, so the manifest
digest transitively covers all content. Blobs held alongside the manifest are
checked against their descriptors before the manifest digest is trusted.
"""
from __future__ import annotations

import hashlib
import hmac
import re
from dataclasses import dataclass

from ..errors import DigestMismatch, MalformedArtifact

_ALGORITHMS = {"sha256": 64, "sha512": 128}
_DIGEST_RE = re.compile(r"^(sha256|sha512):([a-f0-9]+)$")


@dataclass(frozen=True, order=True)
class Digest:
    algorithm: str
    hex: str

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.hex}"

    @property
    def raw(self) -> bytes:
        return bytes.fromhex(self.hex)

    def matches(self, data: bytes) -> bool:
        return digests_equal(digest_bytes(data, self.algorithm).raw, self.raw)


def parse_digest(value: str) -> Digest:
    m = _DIGEST_RE.match(value or "")
    if not m or len(m.group(2)) != _ALGORITHMS[m.group(1)]:
        raise MalformedArtifact(f"invalid digest: {value!r}")
    return Digest(m.group(1), m.group(2))


def digest_bytes(data: bytes, algorithm: str = "sha256") -> Digest:
    if algorithm not in _ALGORITHMS:
        raise MalformedArtifact(f"unsupported digest algorithm: {algorithm}")
    return Digest(algorithm, hashlib.new(algorithm, data).hexdigest())


def digests_equal(a: bytes, b: bytes) -> bool:
    if len(a) != len(b):
        return False
    return hmac.compare_digest(a, b)


def verify_blob(descriptor, data: bytes) -> None:
    """Raise DigestMismatch unless ``data`` is exactly the content ``descriptor`` names."""
    expected = parse_digest(descriptor.digest)
    if len(data) != descriptor.size:
        raise DigestMismatch(
            f"blob {descriptor.digest}: size {len(data)} != declared {descriptor.size}"
        )
    if not expected.matches(data):
        raise DigestMismatch(f"blob content does not hash to {descriptor.digest}")


def digest(artifact) -> Digest:
    manifest = artifact.manifest  # parses; MalformedArtifact on failure
    for desc in manifest.descriptors():
        data = artifact.blobs.get(desc.digest)
        if data is not None:
            verify_blob(desc, data)
    return digest_bytes(artifact.manifest_bytes)


__all__ = ["Digest", "parse_digest", "digest_bytes", "digests_equal", "verify_blob", "digest"]
