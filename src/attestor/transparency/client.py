"""Transparency Log Client.

Talks to an append-only log over HTTP:

  POST /api/v1/log/entries                 {"body": <b64 leaf bytes>} -> entry
  GET  /api/v1/log/entries/{index}/proof   -> {"inclusion_proof", "checkpoint"}
  GET  /api/v1/log/entries?leaf_hash=<hex> -> entry (404 when absent)
  GET  /api/v1/log/checkpoint              -> checkpoint
  GET  /api/v1/log/proof?first=N&last=M    -> consistency proof

Nothing the log returns is trusted until it verifies against a pinned log key.
"""
from __future__ import annotations

import base64
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from pydantic import ValidationError

from .. import config
from ..errors import LogUnavailable, MalformedArtifact, ProofInvalid
from ..utils.logging import get_logger
from ..utils.retry import retry_async
from .merkle import verify_consistency, verify_inclusion
from .model import Checkpoint, ConsistencyProof, InclusionProof, LogEntry, verify_checkpoint

log = get_logger("attestor.transparency")

ENTRIES_PATH = "/api/v1/log/entries"
CHECKPOINT_PATH = "/api/v1/log/checkpoint"
CONSISTENCY_PATH = "/api/v1/log/proof"


def verify_proof(proof: InclusionProof, checkpoint: Checkpoint, leaf_hash: bytes,
                 log_keys: Optional[Mapping[str, Ed25519PublicKey]] = None) -> bool:
    """Check ``leaf_hash`` is committed to by ``checkpoint``. Raises ProofInvalid.

    With ``log_keys`` the checkpoint signature is checked too.
    """
    if log_keys is not None:
        verify_checkpoint(checkpoint, log_keys)
    if proof.tree_size != checkpoint.tree_size or proof.root_hash != checkpoint.root_hash:
        raise ProofInvalid("inclusion proof was not computed against this checkpoint")
    try:
        root = bytes.fromhex(checkpoint.root_hash)
        path = proof.path()
    except ValueError as e:
        raise ProofInvalid("proof hashes are not hex") from e
    verify_inclusion(proof.log_index, proof.tree_size, leaf_hash, path, root)
    return True


class TransparencyLogClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        log_keys: Optional[Mapping[str, Ed25519PublicKey]] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or config.LOG_URL).rstrip("/")
        self.log_keys = dict(log_keys or {})
        self.timeout = timeout if timeout is not None else config.HTTP_TIMEOUT
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def _call(self, method: str, path: str, *, ok=(200, 201), **kwargs) -> Tuple[int, Any]:
        try:
            async with self._client() as client:
                resp = await client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise LogUnavailable(f"log unreachable: {e.__class__.__name__}") from e
        if resp.status_code == 429 or resp.status_code >= 500:
            raise LogUnavailable(f"log returned {resp.status_code} for {method} {path}")
        if resp.status_code not in ok:
            return resp.status_code, None
        try:
            return resp.status_code, resp.json()
        except ValueError as e:
            raise LogUnavailable(f"log returned non-JSON body for {method} {path}") from e

    @staticmethod
    def _parse(model, data: Any, what: str):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise LogUnavailable(f"log returned a malformed {what}") from e

    def _check_entry(self, entry: LogEntry, expected_leaf: bytes) -> None:
        if entry.leaf_hash != expected_leaf.hex():
            raise ProofInvalid("log entry leaf hash does not match submitted content")
        verify_proof(entry.inclusion_proof, entry.checkpoint, expected_leaf, self.log_keys or None)

    async def _submit_once(self, leaf_bytes: bytes) -> Dict[str, Any]:
        status, body = await self._call(
            "POST", ENTRIES_PATH, ok=(200, 201, 409),
            json={"body": base64.b64encode(leaf_bytes).decode()},
        )
        if body is None:
            raise MalformedArtifact(f"log refused entry ({status})")
        if status == 409:
            log.info("log already holds entry %s", body.get("entry_index"))
        return body

    async def submit(self, record):
        """Append ``record`` to the log; returns the record with its ``log_entry`` set.

        A duplicate submission (409) succeeds when the log's existing entry
        commits to the same leaf.
        """
        leaf = record.leaf_hash()
        body = await retry_async(lambda: self._submit_once(record.leaf_bytes()), op="log.submit")
        entry = self._parse(LogEntry, body, "log entry")
        self._check_entry(entry, leaf)
        log.info("logged %s %s at index %d", record.kind, record.artifact_digest, entry.entry_index)
        return record.with_log_entry(entry)

    async def fetch_inclusion_proof(self, entry_index: int) -> Tuple[InclusionProof, Checkpoint]:
        async def once():
            status, body = await self._call("GET", f"{ENTRIES_PATH}/{entry_index}/proof")
            if body is None:
                raise LogUnavailable(f"no proof for entry {entry_index} ({status})")
            return body

        body = await retry_async(once, op="log.proof")
        proof = self._parse(InclusionProof, body.get("inclusion_proof"), "inclusion proof")
        checkpoint = self._parse(Checkpoint, body.get("checkpoint"), "checkpoint")
        return proof, checkpoint

    async def find_entry(self, leaf_hash: bytes) -> Optional[LogEntry]:
        async def once():
            return await self._call("GET", ENTRIES_PATH, params={"leaf_hash": leaf_hash.hex()})

        status, body = await retry_async(once, op="log.find")
        if body is None:
            return None
        return self._parse(LogEntry, body, "log entry")

    async def get_checkpoint(self) -> Checkpoint:
        async def once():
            status, body = await self._call("GET", CHECKPOINT_PATH)
            if body is None:
                raise LogUnavailable(f"log returned {status} for checkpoint")
            return body

        checkpoint = self._parse(Checkpoint, await retry_async(once, op="log.checkpoint"), "checkpoint")
        if self.log_keys:
            verify_checkpoint(checkpoint, self.log_keys)
        return checkpoint

    async def fetch_consistency_proof(self, old_size: int, new_size: int) -> ConsistencyProof:
        async def once():
            status, body = await self._call("GET", CONSISTENCY_PATH, params={"first": old_size, "last": new_size})
            if body is None:
                raise LogUnavailable(f"log returned {status} for consistency proof")
            return body

        return self._parse(ConsistencyProof, await retry_async(once, op="log.consistency"), "consistency proof")

    async def verify_consistency(self, old: Checkpoint, new: Checkpoint) -> None:
        """Raise ProofInvalid unless ``new`` extends ``old``."""
        hashes = []
        if old.tree_size != new.tree_size:
            hashes = (await self.fetch_consistency_proof(old.tree_size, new.tree_size)).hashes
        try:
            old_root, new_root = bytes.fromhex(old.root_hash), bytes.fromhex(new.root_hash)
            path = [bytes.fromhex(h) for h in hashes]
        except ValueError as e:
            raise ProofInvalid("checkpoint or proof hashes are not hex") from e
        verify_consistency(old.tree_size, new.tree_size, old_root, new_root, path)

    def verify_proof(self, proof: InclusionProof, checkpoint: Checkpoint, leaf_hash: bytes) -> bool:
        return verify_proof(proof, checkpoint, leaf_hash, self.log_keys or None)
