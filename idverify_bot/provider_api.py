from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Final

import requests

from .errors import ProviderError, StillProcessingError
from .models import ProviderSession, ProviderStatus

log: Final = logging.getLogger(__name__)

DEFAULT_DOCUMENTS: Final[tuple[str, ...]] = ("ID_CARD", "PASSPORT", "DRIVER_LICENSE")
DUMMY_STATUSES: Final = ("APPROVED", "DENIED", "EXPIRED", "SUSPECTED")
STILL_PROCESSING_MARKER: Final = "processing state"


class IdenfyClient:
    """Thin async wrapper over the iDenfy REST API (HTTP basic auth)."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        api_secret: str | None,
        *,
        timeout: float = 10.0,
        session: requests.Session | None = None,
        locale: str = "en",
        expiry_seconds: int = 3600,
        session_length_seconds: int = 600,
        documents: Sequence[str] = DEFAULT_DOCUMENTS,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth = (api_key or "", api_secret or "")
        self._timeout = timeout
        self._session = session or requests.Session()
        self._locale = locale
        self._expiry_seconds = expiry_seconds
        self._session_length_seconds = session_length_seconds
        self._documents = list(documents)

    def redirect_url(self, session_token: str) -> str:
        return f"{self._base_url}/api/v2/redirect?authToken={session_token}"

    async def _post(self, path: str, payload: dict) -> requests.Response:
        try:
            return await asyncio.to_thread(
                self._session.post,
                f"{self._base_url}{path}",
                json=payload,
                auth=self._auth,
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise ProviderError(f"POST {path} failed: {exc}") from exc

    @staticmethod
    def _error_message(resp: requests.Response) -> str:
        try:
            data = resp.json()
        except ValueError:
            return resp.text or "Unknown error"
        if isinstance(data, dict):
            return str(data.get("message") or data.get("identifier") or data)
        return str(data)

    async def create_session(
        self,
        subject_id: str,
        external_key: str,
        *,
        dummy_status: str | None = None,
    ) -> ProviderSession:
        """Create a verification session; ``dummy_status`` requests a test session."""
        client_id = f"discord-{subject_id}"
        external_ref = f"ckey-{external_key}"
        if dummy_status is not None:
            if dummy_status not in DUMMY_STATUSES:
                raise ValueError(f"Unsupported dummy status: {dummy_status}")
            client_id = f"test-{client_id}"
            external_ref = f"test-{external_ref}"

        payload: dict[str, object] = {
            "clientId": client_id,
            "externalRef": external_ref,
            "locale": self._locale,
            "expiryTime": self._expiry_seconds,
            "sessionLength": self._session_length_seconds,
            "documents": self._documents,
            "tokenType": "IDENTIFICATION",
            "generateDigitString": False,
            "showInstructions": True,
        }
        if dummy_status is not None:
            payload["dummyStatus"] = dummy_status

        resp = await self._post("/api/v2/token", payload)
        if not resp.ok:
            message = self._error_message(resp)
            log.error(
                "iDenfy session creation failed (HTTP %s): %s",
                resp.status_code,
                message,
            )
            raise ProviderError(
                f"Session creation failed: {message}", status=resp.status_code
            )
        try:
            data = resp.json()
            session_token = str(data["authToken"])
            scan_ref = str(data["scanRef"])
        except (ValueError, KeyError, TypeError) as exc:
            raise ProviderError("Session creation returned an invalid body") from exc

        log.info("Created iDenfy session %s for %s", scan_ref, subject_id)
        return ProviderSession(
            session_key=scan_ref,
            session_token=session_token,
            redirect_url=self.redirect_url(session_token),
            client_correlation_id=client_id,
        )

    async def get_session_status(self, session_key: str) -> ProviderStatus:
        resp = await self._post("/api/v2/status", {"scanRef": session_key})
        if not resp.ok:
            message = self._error_message(resp)
            log.error("Failed to get iDenfy verification status: %s", message)
            raise ProviderError(
                f"Status lookup failed: {message}", status=resp.status_code
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError("Status lookup returned an invalid body") from exc
        if not isinstance(data, dict):
            raise ProviderError("Status lookup returned an invalid body")

        reasons: list[str] = []
        for name in ("denyReasons", "suspicionReasons"):
            values = data.get(name) or []
            if values:
                reasons = [str(value) for value in values]
                break
        if not reasons and data.get("reasonCode"):
            reasons = [str(data["reasonCode"])]
        return ProviderStatus(
            status=data.get("status"),
            final=bool(data.get("final")),
            reason_codes=tuple(reasons),
        )

    async def delete_session_data(self, session_key: str) -> None:
        """Delete provider-held personal data for ``session_key``.

        Raises :class:`StillProcessingError` while the provider has not
        finished with the session, :class:`ProviderError` otherwise.
        """
        resp = await self._post("/api/v2/delete", {"scanRef": session_key})
        if resp.ok:
            log.info("Successfully deleted iDenfy data for scanRef: %s", session_key)
            return
        message = self._error_message(resp)
        if STILL_PROCESSING_MARKER in message.lower():
            raise StillProcessingError(
                f"iDenfy deletion failed: {message}", status=resp.status_code
            )
        raise ProviderError(f"iDenfy deletion failed: {message}", status=resp.status_code)

    def close(self) -> None:
        self._session.close()
