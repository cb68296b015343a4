"""Package database parsers for files found inside image layers.

Each parser takes the raw file content and a source location string
(``<layer digest>:<path>``) and returns the components it declares. Parsers
are tolerant: a record missing a name or version is skipped, not fatal.
"""
from __future__ import annotations

import json
import re
from email.parser import HeaderParser
from typing import Callable, Dict, List, Optional

from .model import Component

Parser = Callable[[bytes, str], List[Component]]

APK_DB = "lib/apk/db/installed"
DPKG_DB = "var/lib/dpkg/status"
_DIST_INFO_RE = re.compile(r"(?:^|/)[^/]+\.dist-info/METADATA$")
_NPM_RE = re.compile(r"(?:^|/)node_modules/(?:@[^/]+/)?[^/]+/package\.json$")


def _stanzas(text: str) -> List[List[str]]:
    blocks, cur = [], []
    for line in text.splitlines():
        if not line.strip():
            if cur:
                blocks.append(cur)
                cur = []
            continue
        cur.append(line)
    if cur:
        blocks.append(cur)
    return blocks


def parse_apk(data: bytes, location: str) -> List[Component]:
    out = []
    for block in _stanzas(data.decode("utf-8", errors="replace")):
        fields: Dict[str, str] = {}
        for line in block:
            if len(line) > 2 and line[1] == ":":
                fields.setdefault(line[0], line[2:].strip())
        name, version = fields.get("P"), fields.get("V")
        if name and version:
            out.append(Component(name=name, version=version, source_location=location,
                                 purl=f"pkg:apk/alpine/{name}@{version}"))
    return out


def parse_dpkg(data: bytes, location: str) -> List[Component]:
    out = []
    for block in _stanzas(data.decode("utf-8", errors="replace")):
        fields: Dict[str, str] = {}
        for line in block:
            if line[:1] in (" ", "\t") or ":" not in line:
                continue  # continuation lines
            k, v = line.split(":", 1)
            fields[k.strip().lower()] = v.strip()
        status = fields.get("status")
        if status and not status.endswith(" installed"):
            continue
        name, version = fields.get("package"), fields.get("version")
        if name and version:
            out.append(Component(name=name, version=version, source_location=location,
                                 purl=f"pkg:deb/debian/{name}@{version}"))
    return out


def parse_python_metadata(data: bytes, location: str) -> List[Component]:
    headers = HeaderParser().parsestr(data.decode("utf-8", errors="replace"), headersonly=True)
    name, version = headers.get("Name"), headers.get("Version")
    if not name or not version:
        return []
    normalized = re.sub(r"[-_.]+", "-", name.strip()).lower()
    return [Component(name=name.strip(), version=version.strip(), source_location=location,
                      purl=f"pkg:pypi/{normalized}@{version.strip()}")]


def parse_npm_package(data: bytes, location: str) -> List[Component]:
    try:
        obj = json.loads(data)
    except ValueError:
        return []
    if not isinstance(obj, dict):
        return []
    name, version = obj.get("name"), obj.get("version")
    if not isinstance(name, str) or not isinstance(version, str) or not name or not version:
        return []
    purl_name = name.replace("@", "%40", 1) if name.startswith("@") else name
    return [Component(name=name, version=version, source_location=location,
                      purl=f"pkg:npm/{purl_name}@{version}")]


def cataloger_for(path: str) -> Optional[Parser]:
    if path == APK_DB:
        return parse_apk
    if path == DPKG_DB:
        return parse_dpkg
    if _DIST_INFO_RE.search(path):
        return parse_python_metadata
    if _NPM_RE.search(path):
        return parse_npm_package
    return None


def declared_components(labels: Dict[str, str], location: str, prefix: str = "attestor.component.") -> List[Component]:
    """Components declared as ``attestor.component.<name>=<version>`` labels or annotations."""
    out = []
    for key, value in (labels or {}).items():
        if key.startswith(prefix) and value:
            out.append(Component(name=key[len(prefix):], version=str(value), type="application",
                                 source_location=location))
    return out
