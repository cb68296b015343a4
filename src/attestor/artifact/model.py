from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..crypto.digest import Digest, digest_bytes, parse_digest
from ..errors import MalformedArtifact

MEDIA_TYPE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
MEDIA_TYPE_CONFIG = "application/vnd.oci.image.config.v1+json"
MEDIA_TYPE_LAYER_TAR = "application/vnd.oci.image.layer.v1.tar"
MEDIA_TYPE_LAYER_GZIP = "application/vnd.oci.image.layer.v1.tar+gzip"
MEDIA_TYPE_DOCKER_LAYER = "application/vnd.docker.image.rootfs.diff.tar.gzip"


class Descriptor(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    media_type: str = Field(alias="mediaType")
    digest: str
    size: int = Field(ge=0)
    annotations: Optional[Dict[str, str]] = None

    @classmethod
    def for_blob(cls, media_type: str, data: bytes, annotations: Optional[Dict[str, str]] = None) -> "Descriptor":
        return cls(media_type=media_type, digest=str(digest_bytes(data)), size=len(data), annotations=annotations)


class Manifest(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    schema_version: int = Field(alias="schemaVersion")
    media_type: str = Field(default=MEDIA_TYPE_MANIFEST, alias="mediaType")
    config: Descriptor
    layers: List[Descriptor] = Field(default_factory=list)
    annotations: Optional[Dict[str, str]] = None

    def descriptors(self) -> List[Descriptor]:
        return [self.config, *self.layers]

    def to_bytes(self) -> bytes:
        # Manifest bytes are what gets digested; serialize deterministically.
        return json.dumps(
            self.model_dump(by_alias=True, exclude_none=True),
            sort_keys=True,
            separators=(",", ":"),
        ).encode()


def parse_manifest(data: bytes) -> Manifest:
    try:
        m = Manifest.model_validate_json(data)
    except (ValidationError, ValueError) as e:
        raise MalformedArtifact(f"cannot parse manifest: {e}") from e
    if m.schema_version != 2:
        raise MalformedArtifact(f"unsupported manifest schemaVersion {m.schema_version}")
    for desc in m.descriptors():
        parse_digest(desc.digest)
    return m


@dataclass(frozen=True)
class Artifact:
    """Manifest bytes plus whatever content blocks are held locally, keyed by digest."""

    manifest_bytes: bytes
    blobs: Mapping[str, bytes] = field(default_factory=dict)

    @cached_property
    def manifest(self) -> Manifest:
        return parse_manifest(self.manifest_bytes)

    @cached_property
    def config(self) -> Dict[str, Any]:
        data = self.blobs.get(self.manifest.config.digest)
        if data is None:
            return {}
        try:
            obj = json.loads(data)
        except ValueError:
            return {}
        return obj if isinstance(obj, dict) else {}

    @classmethod
    def from_layers(
        cls,
        layers: List[bytes],
        config: Optional[Dict[str, Any]] = None,
        layer_media_type: str = MEDIA_TYPE_LAYER_TAR,
        annotations: Optional[Dict[str, str]] = None,
    ) -> "Artifact":
        config_bytes = json.dumps(config or {}, sort_keys=True, separators=(",", ":")).encode()
        blobs = {}
        config_desc = Descriptor.for_blob(MEDIA_TYPE_CONFIG, config_bytes)
        blobs[config_desc.digest] = config_bytes
        layer_descs = []
        for data in layers:
            d = Descriptor.for_blob(layer_media_type, data)
            blobs[d.digest] = data
            layer_descs.append(d)
        manifest = Manifest(schema_version=2, config=config_desc, layers=layer_descs, annotations=annotations)
        return cls(manifest_bytes=manifest.to_bytes(), blobs=blobs)


_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._/:-]*$")


@dataclass(frozen=True)
class ArtifactReference:
    """``[registry/]repository[:tag][@digest]``. Only the digest carries identity."""

    repository: str
    tag: Optional[str] = None
    digest: Optional[Digest] = None

    @classmethod
    def parse(cls, text: str) -> "ArtifactReference":
        name, _, dig = text.partition("@")
        tag = None
        last = name.rsplit("/", 1)[-1]
        if ":" in last:
            name, tag = name.rsplit(":", 1)
        if not name or not _NAME_RE.match(name):
            raise MalformedArtifact(f"invalid artifact reference: {text!r}")
        return cls(repository=name, tag=tag or None, digest=parse_digest(dig) if dig else None)

    @property
    def is_bare_tag(self) -> bool:
        return self.digest is None

    def __str__(self) -> str:
        out = self.repository
        if self.tag:
            out += f":{self.tag}"
        if self.digest:
            out += f"@{self.digest}"
        return out


def resolve_reference(ref: "ArtifactReference | str") -> Digest:
    """Digest named by ``ref``. Tags are aliases without identity and are refused."""
    if isinstance(ref, str):
        ref = ArtifactReference.parse(ref)
    if ref.digest is None:
        raise MalformedArtifact(f"reference {ref} names a tag, not a digest")
    return ref.digest
