from __future__ import annotations

import argparse
import json
from typing import List

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from pydantic import ValidationError

from ..errors import ProofInvalid
from ..signing.model import SignatureRecord
from .client import verify_proof
from .model import LogEntry, log_key_id


def _load_keys(paths: List[str]) -> dict:
    keys = {}
    for path in paths:
        with open(path, "rb") as f:
            key = serialization.load_pem_public_key(f.read())
        if not isinstance(key, Ed25519PublicKey):
            raise SystemExit(f"{path}: not an Ed25519 public key")
        keys[log_key_id(key)] = key
    return keys


def _load_entry(path: str):
    """A saved SignatureRecord (with ``log_entry``) or a bare LogEntry."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if "log_entry" in data:
        record = SignatureRecord.model_validate(data)
        if record.log_entry is None:
            raise SystemExit(f"{path}: record has no log entry")
        return record.log_entry, record.leaf_hash()
    entry = LogEntry.model_validate(data)
    return entry, bytes.fromhex(entry.leaf_hash)


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="Verify a saved transparency log entry's inclusion proof offline")
    p.add_argument("entry", help="Path to a saved signature record or log entry (JSON)")
    p.add_argument("--log-key", action="append", required=True, help="Pinned log public key (PEM); repeatable")
    args = p.parse_args(argv)

    keys = _load_keys(args.log_key)
    try:
        entry, leaf = _load_entry(args.entry)
    except (ValidationError, ValueError) as e:
        print(json.dumps({"verified": False, "error": f"unreadable entry: {e}"}, indent=2))
        return 1
    out = {
        "entry_index": entry.entry_index,
        "tree_size": entry.checkpoint.tree_size,
        "root_hash": entry.checkpoint.root_hash,
        "leaf_hash": leaf.hex(),
    }
    try:
        if entry.leaf_hash != leaf.hex():
            raise ProofInvalid("log entry does not commit to this record")
        verify_proof(entry.inclusion_proof, entry.checkpoint, leaf, keys)
        out["verified"] = True
    except ProofInvalid as e:
        out["verified"] = False
        out["error"] = str(e)
    print(json.dumps(out, indent=2))
    return 0 if out["verified"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
