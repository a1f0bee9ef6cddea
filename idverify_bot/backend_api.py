from __future__ import annotations

import asyncio
import logging
from typing import Final

import requests

from .errors import AuthenticationError, BackendError
from .models import VerifiedMapping

log: Final = logging.getLogger(__name__)

AUTH_EXPIRED_STATUSES: Final = frozenset({401, 403})


class BackendClient:
    """Client for the backend record store.

    The bearer token lives on the instance. Every request goes through
    :meth:`_request`, which attaches the token and, on a 401/403 answer,
    re-authenticates once and replays the call.
    """

    def __init__(
        self,
        base_url: str,
        username: str | None,
        password: str | None,
        *,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._username = username
        self._password = password
        self._timeout = timeout
        self._session = session or requests.Session()
        self._token: str | None = None
        self._reauth_lock = asyncio.Lock()

    @property
    def authenticated(self) -> bool:
        return self._token is not None

    async def authenticate(self) -> None:
        async with self._reauth_lock:
            await self._login()

    async def _login(self) -> None:
        try:
            resp = await asyncio.to_thread(
                self._session.post,
                f"{self._base_url}/api/auth/login",
                json={"username": self._username, "password": self._password},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            log.error("Failed to authenticate with API: %s", exc)
            raise AuthenticationError(f"Login request failed: {exc}") from exc

        if not resp.ok:
            log.error("Failed to authenticate with API: HTTP %s", resp.status_code)
            raise AuthenticationError(
                f"Login rejected with HTTP {resp.status_code}",
                status=resp.status_code,
            )
        try:
            token = resp.json().get("token")
        except ValueError as exc:
            raise AuthenticationError("Login response was not JSON") from exc
        if not token:
            raise AuthenticationError("Login response did not contain a token")
        self._token = token
        log.debug("Successfully authenticated with API")

    async def _reauthenticate(self, stale_token: str | None) -> None:
        async with self._reauth_lock:
            if self._token is not None and self._token != stale_token:
                log.debug("Skipping re-authentication (token already refreshed)")
                return
            await self._login()

    async def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self._base_url}{path}"
        for attempt in range(2):
            token = self._token
            headers = {"Authorization": f"Bearer {token}"} if token else {}
            try:
                resp = await asyncio.to_thread(
                    self._session.request,
                    method,
                    url,
                    headers=headers,
                    timeout=self._timeout,
                    **kwargs,
                )
            except requests.RequestException as exc:
                raise BackendError(f"{method} {path} failed: {exc}") from exc

            if resp.status_code in AUTH_EXPIRED_STATUSES and attempt == 0:
                log.warning(
                    "Backend answered %s for %s %s, re-authenticating",
                    resp.status_code,
                    method,
                    path,
                )
                await self._reauthenticate(token)
                continue
            return resp
        return resp

    @staticmethod
    def _json(resp: requests.Response, what: str) -> dict:
        try:
            data = resp.json()
        except ValueError as exc:
            raise BackendError(f"{what}: response was not JSON") from exc
        if not isinstance(data, dict):
            raise BackendError(f"{what}: unexpected response shape")
        return data

    async def get_recent_verification_count(self) -> int:
        resp = await self._request("GET", "/api/analytics")
        if not resp.ok:
            raise BackendError(
                f"Analytics request failed with HTTP {resp.status_code}",
                status=resp.status_code,
            )
        data = self._json(resp, "analytics")
        try:
            return int(data["recent_verifications"])
        except (KeyError, TypeError, ValueError) as exc:
            raise BackendError("Analytics response missing recent_verifications") from exc

    async def submit_verification(
        self,
        subject_id: str,
        external_key: str,
        *,
        is_debug: bool = False,
        provider_ref: str | None = None,
    ) -> dict:
        flags: dict[str, object] = {
            "byond_verified": True,
            "id_verified": True,
            "scan_ref": provider_ref,
        }
        if is_debug:
            flags["debug"] = True
        payload = {
            "discord_id": subject_id,
            "ckey": external_key,
            "verified_flags": flags,
            "verification_method": "debug" if is_debug else "idenfy",
        }
        resp = await self._request("POST", "/api/v1/verify", json=payload)
        if not resp.ok:
            log.error(
                "Failed to submit verification for %s: HTTP %s",
                subject_id,
                resp.status_code,
            )
            raise BackendError(
                f"Verification submission failed with HTTP {resp.status_code}",
                status=resp.status_code,
            )
        return self._json(resp, "submit verification")

    async def get_verification(self, subject_id: str) -> VerifiedMapping | None:
        resp = await self._request("GET", f"/api/v1/verify/{subject_id}")
        if resp.status_code == 404:
            return None
        if not resp.ok:
            raise BackendError(
                f"Verification lookup failed with HTTP {resp.status_code}",
                status=resp.status_code,
            )
        data = self._json(resp, "get verification")
        if not data:
            return None
        return VerifiedMapping.from_response(data)

    def close(self) -> None:
        self._session.close()
