"""OCI distribution registry client.

Content is addressed by digest through the distribution API. Signature
records for an artifact are kept in an OCI manifest tagged
``<alg>-<hex>.att`` whose layers are the records, one JSON blob each;
documents live under ``<alg>-<hex>.<name>``. Appending a record uploads its
blob and re-publishes the tag with one more layer; existing layers are
never rewritten.
"""
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import httpx

from .. import config
from ..artifact.model import MEDIA_TYPE_CONFIG, MEDIA_TYPE_MANIFEST, Descriptor, Manifest, parse_manifest
from ..crypto.digest import digest_bytes, parse_digest, verify_blob
from ..errors import MalformedArtifact, RegistryUnavailable
from ..signing.model import SignatureRecord
from ..utils.logging import get_logger
from ..utils.retry import retry_async
from .store import parse_records

log = get_logger("attestor.registry")

MEDIA_TYPE_RECORD = "application/vnd.attestor.record.v1+json"
MEDIA_TYPE_DOCUMENT = "application/vnd.attestor.document.v1+json"
_EMPTY_CONFIG = b"{}"


def tag_for(digest: str, suffix: str) -> str:
    d = parse_digest(digest)
    return f"{d.algorithm}-{d.hex}.{suffix}"


class OCIRegistryClient:
    def __init__(
        self,
        repository: str,
        base_url: Optional[str] = None,
        *,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not repository:
            raise MalformedArtifact("OCI registry client needs a repository name")
        self.repository = repository.strip("/")
        self.base_url = (base_url or config.REGISTRY_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else config.HTTP_TIMEOUT
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout,
                                 headers=self._headers, transport=self._transport)

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        async def once():
            try:
                async with self._client() as client:
                    resp = await client.request(method, f"/v2/{self.repository}{path}", **kwargs)
            except httpx.TransportError as e:
                raise RegistryUnavailable(f"registry unreachable: {e.__class__.__name__}") from e
            if resp.status_code == 429 or resp.status_code >= 500:
                raise RegistryUnavailable(f"registry returned {resp.status_code} for {method} {path}")
            return resp

        resp = await retry_async(once, op="registry." + method.lower())
        if resp.status_code >= 400 and resp.status_code != 404:
            raise MalformedArtifact(f"registry refused {method} {path} ({resp.status_code})")
        return resp

    async def put_blob(self, data: bytes) -> str:
        d = str(digest_bytes(data))
        head = await self._request("HEAD", f"/blobs/{d}")
        if head.status_code == 200:
            return d
        # Monolithic single-request upload.
        resp = await self._request(
            "POST", "/blobs/uploads/", params={"digest": d}, content=data,
            headers={"Content-Type": "application/octet-stream"},
        )
        if resp.status_code not in (201, 202):
            raise MalformedArtifact(f"blob upload for {d} not accepted ({resp.status_code})")
        return d

    async def get_blob(self, digest: str) -> Optional[bytes]:
        d = parse_digest(digest)
        resp = await self._request("GET", f"/blobs/{d}")
        if resp.status_code == 404:
            return None
        if not d.matches(resp.content):
            raise MalformedArtifact(f"registry returned content that does not hash to {digest}")
        return resp.content

    async def _put_manifest(self, ref: str, data: bytes) -> None:
        await self._request("PUT", f"/manifests/{ref}", content=data,
                            headers={"Content-Type": MEDIA_TYPE_MANIFEST})

    async def put_manifest(self, data: bytes) -> str:
        d = str(digest_bytes(data))
        await self._put_manifest(d, data)
        return d

    async def get_manifest(self, ref: str) -> Optional[bytes]:
        resp = await self._request("GET", f"/manifests/{ref}", headers={"Accept": MEDIA_TYPE_MANIFEST})
        if resp.status_code == 404:
            return None
        if ref.startswith(("sha256:", "sha512:")) and not parse_digest(ref).matches(resp.content):
            raise MalformedArtifact(f"registry returned a manifest that does not hash to {ref}")
        return resp.content

    async def _tagged_layers(self, tag: str) -> List[Descriptor]:
        data = await self.get_manifest(tag)
        return list(parse_manifest(data).layers) if data is not None else []

    async def _publish(self, tag: str, layers: List[Descriptor], annotations: Dict[str, str]) -> None:
        config_digest = await self.put_blob(_EMPTY_CONFIG)
        manifest = Manifest(
            schema_version=2,
            config=Descriptor(media_type=MEDIA_TYPE_CONFIG, digest=config_digest, size=len(_EMPTY_CONFIG)),
            layers=layers,
            annotations=annotations,
        )
        await self._put_manifest(tag, manifest.to_bytes())

    async def put_record(self, record: SignatureRecord) -> None:
        tag = tag_for(record.artifact_digest, "att")
        data = record.model_dump_json().encode()
        layers = await self._tagged_layers(tag)
        await self.put_blob(data)
        layers.append(Descriptor.for_blob(MEDIA_TYPE_RECORD, data, {"attestor.kind": record.kind}))
        await self._publish(tag, layers, {"attestor.subject": record.artifact_digest})
        log.info("published %s record for %s to %s", record.kind, record.artifact_digest, self.repository)

    async def get_records(self, digest: str) -> List[SignatureRecord]:
        lines = []
        for layer in await self._tagged_layers(tag_for(digest, "att")):
            if layer.media_type != MEDIA_TYPE_RECORD:
                continue
            data = await self.get_blob(layer.digest)
            if data is None:
                log.warning("record blob %s missing from %s", layer.digest, self.repository)
                continue
            lines.append(data.decode("utf-8", errors="replace"))
        return parse_records(lines, source=f"{self.repository}:{tag_for(digest, 'att')}")

    async def put_document(self, digest: str, name: str, document: Dict[str, Any]) -> None:
        data = json.dumps(document, sort_keys=True, separators=(",", ":")).encode()
        await self.put_blob(data)
        layer = Descriptor.for_blob(MEDIA_TYPE_DOCUMENT, data, {"attestor.document": name})
        await self._publish(tag_for(digest, name), [layer], {"attestor.subject": digest})

    async def get_document(self, digest: str, name: str) -> Optional[Dict[str, Any]]:
        layers = await self._tagged_layers(tag_for(digest, name))
        if not layers:
            return None
        data = await self.get_blob(layers[0].digest)
        if data is None:
            return None
        verify_blob(layers[0], data)
        return json.loads(data)
