"""SBOM Generator.

Walks the artifact's layers in manifest order, overlaying them the way a
container runtime would (later files replace earlier ones, OCI whiteouts
remove them), and catalogues package databases found in the final
filesystem view. A layer that cannot be read is recorded as an
``InventoryGap``; a degraded SBOM is preferred over none.
"""
from __future__ import annotations

import io
import posixpath
import tarfile
import zlib
from typing import Dict, Iterator, List, Optional, Tuple

from .. import config
from ..artifact.model import (
    MEDIA_TYPE_DOCKER_LAYER,
    MEDIA_TYPE_LAYER_GZIP,
    MEDIA_TYPE_LAYER_TAR,
    Artifact,
)
from ..crypto.digest import digest
from ..utils.logging import get_logger
from .catalogers import cataloger_for, declared_components
from .model import Component, InventoryGap, SBOMDocument

log = get_logger("attestor.sbom")

SUPPORTED_LAYER_TYPES = {
    MEDIA_TYPE_LAYER_TAR,
    MEDIA_TYPE_LAYER_GZIP,
    MEDIA_TYPE_DOCKER_LAYER,
    "application/vnd.docker.image.rootfs.diff.tar",
}
WHITEOUT_PREFIX = ".wh."
OPAQUE_MARKER = ".wh..wh..opq"

# (kind, path, content); kind is "file", "whiteout" or "opaque"
LayerEntry = Tuple[str, str, Optional[bytes]]


def _norm(name: str) -> str:
    path = posixpath.normpath(name.lstrip("/"))
    if path == "." or path == ".." or path.startswith("../"):
        return ""
    return path


def read_layer(data: bytes) -> Iterator[LayerEntry]:
    """Yield whiteouts and catalogued files of one layer archive.

    Raises tarfile.TarError / OSError / EOFError / zlib.error on a corrupt archive.
    """
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
        for member in tar:
            path = _norm(member.name)
            if not path:
                continue
            base = posixpath.basename(path)
            parent = posixpath.dirname(path)
            if base == OPAQUE_MARKER:
                yield ("opaque", parent, None)
                continue
            if base.startswith(WHITEOUT_PREFIX):
                yield ("whiteout", posixpath.join(parent, base[len(WHITEOUT_PREFIX):]), None)
                continue
            if not member.isfile():
                continue
            if cataloger_for(path) is None:
                # Still shadows any catalogued file at the same path.
                yield ("file", path, None)
                continue
            f = tar.extractfile(member)
            yield ("file", path, f.read() if f is not None else b"")


def _under(path: str, root: str) -> bool:
    return path == root or path.startswith(root + "/")


class SBOMGenerator:
    def __init__(self, strict: Optional[bool] = None):
        self.strict = config.SBOM_STRICT if strict is None else strict

    def generate(self, artifact: Artifact, subject_name: str = "") -> SBOMDocument:
        art_digest = digest(artifact)
        manifest = artifact.manifest
        files: Dict[str, List[Component]] = {}
        gaps: List[InventoryGap] = []

        for layer in manifest.layers:
            if layer.media_type not in SUPPORTED_LAYER_TYPES:
                gaps.append(InventoryGap(layer_digest=layer.digest, media_type=layer.media_type,
                                         reason="unsupported layer media type"))
                continue
            data = artifact.blobs.get(layer.digest)
            if data is None:
                gaps.append(InventoryGap(layer_digest=layer.digest, media_type=layer.media_type,
                                         reason="layer blob not available"))
                continue
            try:
                entries = list(read_layer(data))
            except (tarfile.TarError, OSError, EOFError, zlib.error) as e:
                gaps.append(InventoryGap(layer_digest=layer.digest, media_type=layer.media_type,
                                         reason=f"unreadable layer: {e}"))
                continue
            # Whiteouts only hide content from lower layers.
            for kind, path, _ in entries:
                if kind == "whiteout":
                    for p in [p for p in files if _under(p, path)]:
                        del files[p]
                elif kind == "opaque":
                    for p in [p for p in files if p != path and _under(p, path)]:
                        del files[p]
            for kind, path, content in entries:
                if kind != "file":
                    continue
                parser = cataloger_for(path)
                if parser is None or content is None:
                    files.pop(path, None)
                    continue
                files[path] = parser(content, f"{layer.digest}:{path}")

        components: List[Component] = []
        labels = ((artifact.config.get("config") or {}).get("Labels")) or {}
        components.extend(declared_components(labels, "config:labels"))
        components.extend(declared_components(manifest.annotations or {}, "manifest:annotations"))
        for found in files.values():
            components.extend(found)
        unique: Dict[Tuple[str, str, str], Component] = {}
        for c in components:
            unique.setdefault((c.name, c.version, c.type), c)
        ordered = sorted(unique.values(), key=Component.sort_key)

        created = artifact.config.get("created")
        doc = SBOMDocument(
            artifact_digest=str(art_digest),
            components=ordered,
            partial=bool(gaps),
            gaps=gaps,
            subject_name=subject_name,
            created=created if isinstance(created, str) else None,
        )
        if gaps:
            log.warning("partial inventory for %s: %d layer(s) skipped", art_digest, len(gaps))
            if self.strict:
                doc.raise_for_partial()
        log.info("sbom generated for %s: %d components", art_digest, len(ordered))
        return doc


def generate(artifact: Artifact, subject_name: str = "") -> SBOMDocument:
    return SBOMGenerator().generate(artifact, subject_name=subject_name)


__all__ = ["SBOMGenerator", "generate", "read_layer"]
