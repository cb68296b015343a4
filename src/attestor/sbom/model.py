"""SBOM document model and CycloneDX 1.5 rendering."""
from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..crypto.jcs import jcs_canonicalize
from ..errors import PartialInventory

CYCLONEDX_PREDICATE = "https://cyclonedx.org/bom"
SBOM_TOOL = {"type": "application", "name": "attestor", "version": "0.1.0"}


class Component(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    type: str = "library"
    source_location: str = ""
    purl: str = ""

    def sort_key(self):
        return (self.name, self.version, self.type, self.purl, self.source_location)


class InventoryGap(BaseModel):
    """A layer (or declared source) that could not be catalogued."""

    model_config = ConfigDict(frozen=True)

    layer_digest: str
    media_type: str = ""
    reason: str


class SBOMDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    artifact_digest: str
    components: List[Component] = Field(default_factory=list)
    partial: bool = False
    gaps: List[InventoryGap] = Field(default_factory=list)
    subject_name: str = ""
    created: Optional[str] = None

    @property
    def predicate_type(self) -> str:
        return CYCLONEDX_PREDICATE

    def raise_for_partial(self) -> None:
        if self.partial:
            raise PartialInventory(
                f"{len(self.gaps)} layer(s) of {self.artifact_digest} could not be catalogued",
                gaps=self.gaps,
            )

    def to_cyclonedx(self) -> Dict[str, Any]:
        comps = []
        for c in self.components:
            entry: Dict[str, Any] = {"type": c.type, "name": c.name, "version": c.version}
            if c.purl:
                entry["purl"] = c.purl
                entry["bom-ref"] = f"{c.purl}#{c.source_location}" if c.source_location else c.purl
            if c.source_location:
                entry["properties"] = [{"name": "attestor:source_location", "value": c.source_location}]
            comps.append(entry)
        metadata: Dict[str, Any] = {
            "tools": {"components": [dict(SBOM_TOOL)]},
            "component": {
                "type": "container",
                "name": self.subject_name or self.artifact_digest,
                "version": self.artifact_digest,
            },
        }
        if self.created:
            metadata["timestamp"] = self.created
        props = [{"name": "attestor:partial_inventory", "value": "true" if self.partial else "false"}]
        for g in self.gaps:
            props.append({"name": "attestor:inventory_gap", "value": f"{g.layer_digest} {g.reason}"})
        return {
            "bomFormat": "CycloneDX",
            "specVersion": "1.5",
            # Derived from the artifact digest so regeneration is byte-identical.
            "serialNumber": f"urn:uuid:{uuid.uuid5(uuid.NAMESPACE_URL, self.artifact_digest)}",
            "version": 1,
            "metadata": metadata,
            "components": comps,
            "properties": props,
        }

    def to_bytes(self) -> bytes:
        return jcs_canonicalize(self.to_cyclonedx())
