# JCS-style canonical JSON (RFC 8785 subset): sorted keys, no whitespace, UTF-8.
# Floats are rejected outright; signed payloads carry integers and strings only.
import json
from typing import Any


def _reject_floats(obj: Any) -> None:
    if isinstance(obj, float):
        raise ValueError("floats not allowed in canonical payloads")
    if isinstance(obj, dict):
        for k, v in obj.items():
            if not isinstance(k, str):
                raise ValueError("canonical object keys must be strings")
            _reject_floats(v)
    elif isinstance(obj, (list, tuple)):
        for v in obj:
            _reject_floats(v)


def jcs_canonicalize(obj: Any) -> bytes:
    _reject_floats(obj)
    text = json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return text.encode("utf-8")
