"""Xero OAuth2 token lease: load, refresh with a safety margin, persist.

The lease file is created by the `/xero/callback` handshake and rewritten after
every refresh, so a restart resumes with the newest refresh token (Xero rotates
refresh tokens on every use).
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from invoicemailer.common.config import CommonSettings, settings
from invoicemailer.common.errors import ConfigurationError, CredentialsMissingError, TokenRefreshError
from invoicemailer.common.logging import logger
from invoicemailer.common.metrics import token_refresh_total
from invoicemailer.common.snapshot import write_snapshot


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialLease(BaseModel):
    """One access/refresh token pair as stored in the lease file."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"
    obtained_at: datetime

    def expires_at(self, safety_margin: timedelta) -> datetime:
        obtained_at = self.obtained_at
        if obtained_at.tzinfo is None:
            obtained_at = obtained_at.replace(tzinfo=timezone.utc)
        return obtained_at + timedelta(seconds=self.expires_in) - safety_margin


class CredentialLeaseManager:
    """Hands out a non-expired access token, refreshing it when needed."""

    def __init__(
        self,
        path: Path,
        client_id: str,
        client_secret: str,
        token_url: str = "https://identity.xero.com/connect/token",
        safety_margin: timedelta = timedelta(seconds=60),
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.path = Path(path)
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.safety_margin = safety_margin
        self._transport = transport
        self._timeout = timeout
        self._clock = clock
        self._lease: CredentialLease | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls, cfg: CommonSettings, transport: httpx.AsyncBaseTransport | None = None
    ) -> "CredentialLeaseManager":
        return cls(
            cfg.token_path,
            client_id=cfg.xero_client_id,
            client_secret=cfg.xero_client_secret,
            token_url=cfg.xero_identity_url,
            safety_margin=timedelta(seconds=cfg.token_safety_margin_seconds),
            transport=transport,
            timeout=cfg.http_timeout_seconds,
        )

    @property
    def lease(self) -> CredentialLease | None:
        return self._lease

    def _is_fresh(self, lease: CredentialLease) -> bool:
        return bool(lease.access_token) and self._clock() < lease.expires_at(self.safety_margin)

    async def get_valid_access(self) -> str:
        """Return the cached token if unexpired, otherwise refresh first."""

        lease = self._lease
        if lease is not None and self._is_fresh(lease):
            return lease.access_token
        async with self._lock:
            # Another caller may have refreshed while we waited for the lock.
            lease = self._lease or await self._load()
            if self._is_fresh(lease):
                return lease.access_token
            lease = await self._refresh(lease.refresh_token)
            return lease.access_token

    async def force_refresh(self) -> str:
        """Refresh regardless of expiry, e.g. after a 401 on an unexpired token."""

        async with self._lock:
            lease = self._lease or await self._load()
            lease = await self._refresh(lease.refresh_token)
            return lease.access_token

    async def exchange_authorization_code(self, code: str, redirect_uri: str) -> CredentialLease:
        """Complete the OAuth handshake and store the first lease."""

        async with self._lock:
            return await self._exchange(
                {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri},
                kind="authorization_code",
            )

    def authorize_url(self, authorize_base: str, redirect_uri: str, state: str, scopes: str) -> str:
        self._require_client()
        query = urlencode(
            {
                "response_type": "code",
                "client_id": self.client_id,
                "redirect_uri": redirect_uri,
                "scope": scopes,
                "state": state,
            }
        )
        return f"{authorize_base}?{query}"

    def _require_client(self) -> None:
        if not self.client_id:
            raise ConfigurationError("Xero client id not configured")
        if not self.client_secret:
            raise ConfigurationError("Xero client secret not configured")

    async def _load(self) -> CredentialLease:
        if not self.path.exists():
            raise CredentialsMissingError(
                f"Xero tokens file not found at {self.path}. Authorize the app via /xero/connect."
            )
        raw = await asyncio.to_thread(self.path.read_text, "utf-8")
        try:
            lease = CredentialLease.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise ConfigurationError(f"Xero tokens file {self.path} is unreadable: {exc}") from exc
        self._lease = lease
        return lease

    async def _refresh(self, refresh_token: str) -> CredentialLease:
        return await self._exchange({"grant_type": "refresh_token", "refresh_token": refresh_token}, kind="refresh")

    async def _exchange(self, form: dict[str, str], kind: str) -> CredentialLease:
        self._require_client()
        data = {**form, "client_id": self.client_id, "client_secret": self.client_secret}
        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
            response = await client.post(self.token_url, data=data)
        if not response.is_success:
            token_refresh_total.labels(service=settings.service_name, result="failed").inc()
            logger.error("token exchange failed kind=%s status=%s", kind, response.status_code)
            raise TokenRefreshError(
                f"Token {kind} failed: {response.text}", response.status_code, response.text
            )
        body = response.json()
        lease = CredentialLease(
            access_token=body["access_token"],
            refresh_token=body["refresh_token"],
            expires_in=int(body["expires_in"]),
            token_type=body.get("token_type", "Bearer"),
            obtained_at=self._clock(),
        )
        # Persisted even when unusable: Xero has already rotated the refresh token.
        self._lease = lease
        await asyncio.to_thread(write_snapshot, self.path, lease.model_dump(mode="json"), "credentials")
        if not self._is_fresh(lease):
            token_refresh_total.labels(service=settings.service_name, result="short_lived").inc()
            logger.error(
                "token exchange returned a lease inside the safety margin kind=%s expires_in=%s margin=%s",
                kind,
                lease.expires_in,
                self.safety_margin.total_seconds(),
            )
            raise TokenRefreshError(
                f"Token {kind} returned expires_in={lease.expires_in}, "
                f"not longer than the {self.safety_margin.total_seconds():.0f}s safety margin",
                response.status_code,
                response.text,
            )
        token_refresh_total.labels(service=settings.service_name, result="ok").inc()
        logger.info("token exchange succeeded kind=%s expires_at=%s", kind, lease.expires_at(self.safety_margin))
        return lease
