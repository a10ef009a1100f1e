"""HMAC capabilities binding one HTTP method to one storage path until an expiry."""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import time
from typing import Literal

SIGNATURE_HEADER = "X-Signature"
EXPIRES_HEADER = "X-Expires"
DEFAULT_TTL_SECONDS = 300
DETAIL_VIEW_TTL_SECONDS = 60

DenyReason = Literal["missing", "expired", "invalid"]


@dataclass(frozen=True)
class Capability:
    method: str
    path: str
    signature: str
    expires_at_ms: int

    def headers(self) -> dict[str, str]:
        return {
            SIGNATURE_HEADER: self.signature,
            EXPIRES_HEADER: str(self.expires_at_ms),
        }


@dataclass(frozen=True)
class CapabilityDecision:
    allowed: bool
    reason: DenyReason | None = None


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class CapabilitySigner:
    secret: str

    def __post_init__(self) -> None:
        if not self.secret:
            raise ValueError("signing secret must not be empty")

    def issue(
        self,
        *,
        method: str,
        path: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        now: int | None = None,
    ) -> Capability:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        issued_at = now_ms() if now is None else now
        expires_at_ms = issued_at + ttl_seconds * 1000
        normalized_method = method.upper()
        return Capability(
            method=normalized_method,
            path=path,
            signature=self._sign(normalized_method, path, expires_at_ms),
            expires_at_ms=expires_at_ms,
        )

    def verify(
        self,
        *,
        method: str,
        path: str,
        signature: str | None,
        expires_at_ms: int | str | None,
        now: int | None = None,
    ) -> CapabilityDecision:
        if not signature or expires_at_ms in (None, ""):
            return CapabilityDecision(allowed=False, reason="missing")
        try:
            expiry = int(expires_at_ms)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return CapabilityDecision(allowed=False, reason="invalid")

        current = now_ms() if now is None else now
        if current > expiry:
            return CapabilityDecision(allowed=False, reason="expired")

        expected = self._sign(method.upper(), path, expiry)
        if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
            return CapabilityDecision(allowed=False, reason="invalid")
        return CapabilityDecision(allowed=True)

    def _sign(self, method: str, path: str, expires_at_ms: int) -> str:
        message = f"{method}:{path}:{expires_at_ms}".encode("utf-8")
        return hmac.new(self.secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
