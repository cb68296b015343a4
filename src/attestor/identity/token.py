"""OIDC identity tokens.

The engine treats the token as an opaque, time-bounded bearer credential:
the certificate authority verifies its signature. Locally we only decode the
claims to refuse tokens from issuers we do not trust and tokens that have
already expired, before they ever leave the process.
"""
from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from ..errors import IdentityRejected


def _b64url_decode(part: str) -> bytes:
    # JWT base64url encoding omits padding.
    return base64.urlsafe_b64decode(part + "=" * (-len(part) % 4))


@dataclass(frozen=True)
class IdentityToken:
    raw: str = field(repr=False)
    claims: Dict[str, Any]

    @classmethod
    def parse(cls, raw: str) -> "IdentityToken":
        parts = (raw or "").strip().split(".")
        if len(parts) != 3 or not all(parts[:2]):
            raise IdentityRejected("malformed identity token: expected 3 base64url parts")
        try:
            claims = json.loads(_b64url_decode(parts[1]))
        except ValueError as e:
            raise IdentityRejected("malformed identity token: claims are not JSON") from e
        if not isinstance(claims, dict):
            raise IdentityRejected("malformed identity token: claims are not an object")
        return cls(raw=raw.strip(), claims=claims)

    @property
    def issuer(self) -> str:
        return str(self.claims.get("iss", ""))

    @property
    def identity(self) -> str:
        email = self.claims.get("email")
        if email and self.claims.get("email_verified", True) is not False:
            return str(email)
        sub = self.claims.get("sub")
        return str(sub) if sub else ""

    @property
    def expires_at(self) -> Optional[datetime]:
        exp = self.claims.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None
        return datetime.fromtimestamp(exp, tz=timezone.utc)

    def validate(self, allowed_issuers: Iterable[str], now: Optional[datetime] = None, leeway: int = 0) -> None:
        now = now or datetime.now(timezone.utc)
        allowed = {i.rstrip("/") for i in allowed_issuers}
        if self.issuer.rstrip("/") not in allowed:
            raise IdentityRejected(f"token issuer {self.issuer!r} is not trusted")
        if not self.identity:
            raise IdentityRejected("token carries no subject or email claim")
        exp = self.expires_at
        if exp is None:
            raise IdentityRejected("token has no usable exp claim")
        if exp.timestamp() <= now.timestamp() - leeway:
            raise IdentityRejected(f"token expired at {exp.isoformat()}")
        nbf = self.claims.get("nbf")
        if isinstance(nbf, (int, float)) and not isinstance(nbf, bool) and nbf > now.timestamp() + leeway:
            raise IdentityRejected("token is not valid yet")
