"""Verification service.

Run with ``uvicorn attestor.app:create_app --factory``.
"""
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from .registry.store import FileRegistry
from .transparency.client import TransparencyLogClient
from .utils.logging import get_logger
from .obs.prom import prometheus_latest
from .verify.trust import TrustedRoot, TrustPolicy
from .verify.verifier import Verifier

log = get_logger()


class VerifyRequest(BaseModel):
    reference: str
    policy: TrustPolicy
    timeout: Optional[float] = Field(default=None, gt=0)


def default_verifier() -> Verifier:
    root = TrustedRoot.from_file()
    return Verifier(root, registry=FileRegistry(), log_client=TransparencyLogClient(log_keys=root.log_keys))


def create_app(verifier: Optional[Verifier] = None) -> FastAPI:
    verifier = verifier or default_verifier()
    app = FastAPI(title="attestor verification service")

    @app.get("/__health")
    async def health():
        return {"status": "ok"}

    @app.post("/verify")
    async def verify(body: VerifyRequest):
        result = await verifier.verify(body.reference, body.policy, timeout=body.timeout)
        return JSONResponse(result.model_dump())

    @app.get("/metrics")
    async def metrics():
        data, content_type = prometheus_latest()
        return Response(content=data, media_type=content_type)

    log.info("verification service ready (%d trusted CA(s), %d log key(s))",
             len(verifier.trusted_root.ca_certificates), len(verifier.trusted_root.log_keys))
    return app
