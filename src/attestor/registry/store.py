"""Registry adapters: where artifacts, signature records and documents live.

Everything is keyed by digest. Records are append-only: a record once
published is never rewritten, and a later record for the same digest is
simply appended next to it.

FileRegistry layout under its root directory:

  blobs/<alg>/<hex>                 manifests, configs and layers
  records/<alg>-<hex>.jsonl         one SignatureRecord per line
  documents/<alg>-<hex>/<name>.json SBOM / provenance documents
"""
from __future__ import annotations

import json
import os
import re
import tempfile
from typing import Any, Dict, List, Optional, Protocol

import anyio
import anyio.to_thread
from pydantic import ValidationError

from .. import config
from ..artifact.model import Artifact
from ..crypto.digest import digest_bytes, parse_digest
from ..errors import MalformedArtifact
from ..signing.model import SignatureRecord
from ..utils.logging import get_logger

log = get_logger("attestor.registry")

_DOC_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9._-]*$")


class Registry(Protocol):
    async def put_blob(self, data: bytes) -> str: ...

    async def get_blob(self, digest: str) -> Optional[bytes]: ...

    async def put_manifest(self, data: bytes) -> str: ...

    async def get_manifest(self, digest: str) -> Optional[bytes]: ...

    async def put_record(self, record: SignatureRecord) -> None: ...

    async def get_records(self, digest: str) -> List[SignatureRecord]: ...

    async def put_document(self, digest: str, name: str, document: Dict[str, Any]) -> None: ...

    async def get_document(self, digest: str, name: str) -> Optional[Dict[str, Any]]: ...


async def put_artifact(registry: Registry, artifact: Artifact) -> str:
    for data in artifact.blobs.values():
        await registry.put_blob(data)
    return await registry.put_manifest(artifact.manifest_bytes)


async def fetch_artifact(registry: Registry, digest: str) -> Optional[Artifact]:
    """Manifest named by ``digest`` plus whichever of its blobs the registry holds."""
    manifest_bytes = await registry.get_manifest(digest)
    if manifest_bytes is None:
        return None
    artifact = Artifact(manifest_bytes=manifest_bytes, blobs={})
    blobs = {}
    for desc in artifact.manifest.descriptors():
        data = await registry.get_blob(desc.digest)
        if data is not None:
            blobs[desc.digest] = data
    return Artifact(manifest_bytes=manifest_bytes, blobs=blobs)


def parse_records(lines, source: str = "") -> List[SignatureRecord]:
    out = []
    for n, line in enumerate(lines, 1):
        line = line.strip()
        if not line:
            continue
        try:
            out.append(SignatureRecord.model_validate_json(line))
        except ValidationError:
            # A corrupt record must not hide the valid ones next to it.
            log.warning("skipping unreadable record %s:%d", source, n)
    return out


class FileRegistry:
    """Directory-backed registry. File IO runs in worker threads."""

    def __init__(self, root: Optional[str] = None):
        self.root = root or os.path.join(config.DATA_DIR, "registry")
        os.makedirs(self.root, exist_ok=True)
        self._append_lock = anyio.Lock()

    def _key(self, digest: str) -> str:
        d = parse_digest(digest)
        return f"{d.algorithm}-{d.hex}"

    def _blob_path(self, digest: str) -> str:
        d = parse_digest(digest)
        return os.path.join(self.root, "blobs", d.algorithm, d.hex)

    def _records_path(self, digest: str) -> str:
        return os.path.join(self.root, "records", self._key(digest) + ".jsonl")

    def _document_path(self, digest: str, name: str) -> str:
        if not _DOC_NAME_RE.match(name):
            raise MalformedArtifact(f"invalid document name: {name!r}")
        return os.path.join(self.root, "documents", self._key(digest), name + ".json")

    @staticmethod
    def _write_atomic(path: str, data: bytes) -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        # unique temp name: concurrent writers of one blob must not share it
        fd, tmp = tempfile.mkstemp(dir=os.path.dirname(path), prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    @staticmethod
    def _read(path: str) -> Optional[bytes]:
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None

    @staticmethod
    def _append(path: str, line: str) -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    async def put_blob(self, data: bytes) -> str:
        d = str(digest_bytes(data))
        path = self._blob_path(d)
        if not await anyio.to_thread.run_sync(os.path.exists, path):
            await anyio.to_thread.run_sync(self._write_atomic, path, data)
        return d

    async def get_blob(self, digest: str) -> Optional[bytes]:
        return await anyio.to_thread.run_sync(self._read, self._blob_path(digest))

    async def put_manifest(self, data: bytes) -> str:
        return await self.put_blob(data)

    async def get_manifest(self, digest: str) -> Optional[bytes]:
        return await self.get_blob(digest)

    async def put_record(self, record: SignatureRecord) -> None:
        path = self._records_path(record.artifact_digest)
        async with self._append_lock:
            await anyio.to_thread.run_sync(self._append, path, record.model_dump_json())
        log.info("published %s record for %s", record.kind, record.artifact_digest)

    async def get_records(self, digest: str) -> List[SignatureRecord]:
        path = self._records_path(digest)
        data = await anyio.to_thread.run_sync(self._read, path)
        if data is None:
            return []
        return parse_records(data.decode("utf-8").splitlines(), source=path)

    async def put_document(self, digest: str, name: str, document: Dict[str, Any]) -> None:
        path = self._document_path(digest, name)
        data = json.dumps(document, indent=2, sort_keys=True).encode("utf-8")
        await anyio.to_thread.run_sync(self._write_atomic, path, data)

    async def get_document(self, digest: str, name: str) -> Optional[Dict[str, Any]]:
        data = await anyio.to_thread.run_sync(self._read, self._document_path(digest, name))
        if data is None:
            return None
        return json.loads(data)
