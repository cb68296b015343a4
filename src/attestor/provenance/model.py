from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .envelope import Envelope

SLSA_PROVENANCE_V1 = "https://slsa.dev/provenance/v1"
DEFAULT_BUILD_TYPE = "https://attestor.dev/container-build/v1"


def iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class BuildContext(BaseModel):
    """Inputs describing one build: who built it, when, and from what."""

    model_config = ConfigDict(frozen=True)

    builder_id: str = ""
    subject_digest: str = ""
    subject_name: str = ""
    started_on: Optional[datetime] = None
    finished_on: Optional[datetime] = None
    materials: List[str] = Field(default_factory=list)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    invocation_id: str = ""
    build_type: str = DEFAULT_BUILD_TYPE
    artifact_created: Optional[datetime] = None

    @classmethod
    def from_env(cls, env: Optional[Dict[str, str]] = None, **overrides: Any) -> "BuildContext":
        """Builder identity and parameters from a GitHub Actions runner environment.

        Outside Actions only ``overrides`` are applied; the caller must still
        supply builder identity and materials.
        """
        env = dict(os.environ if env is None else env)
        data: Dict[str, Any] = {}
        if env.get("GITHUB_ACTIONS") == "true":
            server = env.get("GITHUB_SERVER_URL", "https://github.com")
            repo = env.get("GITHUB_REPOSITORY", "")
            workflow_ref = env.get("GITHUB_WORKFLOW_REF", "")
            data["builder_id"] = f"{server}/{workflow_ref}" if workflow_ref else f"{server}/{repo}"
            run_id = env.get("GITHUB_RUN_ID", "")
            if run_id:
                attempt = env.get("GITHUB_RUN_ATTEMPT", "1")
                data["invocation_id"] = f"{server}/{repo}/actions/runs/{run_id}/attempts/{attempt}"
            params = {
                "repository": repo,
                "ref": env.get("GITHUB_REF", ""),
                "sha": env.get("GITHUB_SHA", ""),
                "event": env.get("GITHUB_EVENT_NAME", ""),
            }
            data["parameters"] = {k: v for k, v in params.items() if v}
        data.update(overrides)
        return cls(**data)


class ProvenanceAttestation(BaseModel):
    model_config = ConfigDict(frozen=True)

    artifact_digest: str
    builder_identity: str
    build_timestamp: datetime
    build_parameters: Dict[str, Any] = Field(default_factory=dict)
    materials: List[str] = Field(default_factory=list)
    envelope: Envelope

    @property
    def predicate_type(self) -> str:
        return SLSA_PROVENANCE_V1
