"""Client for the HTTP agent running inside the guest."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiohttp

from guestvm.core.errors import GuestAPIError
from guestvm.core.logging_utils import get_module_logger
from guestvm.core.models import GuestArchitecture, parse_guest_architecture

logger = get_module_logger("GuestAPI")

FETCH_TIMEOUT = 1.0
VERSION_TIMEOUT = 5.0
UPDATE_TIMEOUT = 120.0


@dataclass(frozen=True)
class GuestServerVersion:
    version: str
    guest_arch: Optional[str] = None

    @property
    def architecture(self) -> Optional[GuestArchitecture]:
        return parse_guest_architecture(self.guest_arch)


class GuestAPIClient:
    """Thin request/response wrapper; every call has its own ClientTimeout."""

    def __init__(self, base_url: str, *, session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "GuestAPIClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        timeout: float = FETCH_TIMEOUT,
        data: Any = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with self._get_session().request(
                method, url, data=data, timeout=aiohttp.ClientTimeout(total=timeout)
            ) as response:
                if response.status != 200:
                    body = await response.text()
                    raise GuestAPIError(f"{method} {path} returned {response.status}: {body[:200]}", response.status)
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise GuestAPIError(f"{method} {path} failed: {e or 'timed out'}") from e

    # ------------------------------------------------------------------
    # Polling endpoints

    async def health(self) -> bool:
        """200 on /health means the guest agent is ready; anything else is offline."""
        try:
            async with self._get_session().get(
                f"{self.base_url}/health", timeout=aiohttp.ClientTimeout(total=FETCH_TIMEOUT)
            ) as response:
                return response.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError):
            return False

    async def metrics(self) -> Dict[str, Any]:
        return await self._request_json("GET", "/metrics")

    async def rdp_status(self) -> bool:
        payload = await self._request_json("GET", "/rdp/status")
        return bool(payload.get("rdpConnected")) if isinstance(payload, dict) else False

    async def version(self) -> GuestServerVersion:
        payload = await self._request_json("GET", "/version", timeout=VERSION_TIMEOUT)
        if not isinstance(payload, dict) or "version" not in payload:
            raise GuestAPIError(f"Malformed /version payload: {payload!r}")
        return GuestServerVersion(version=str(payload["version"]), guest_arch=payload.get("guest_arch"))

    async def apps(self) -> List[Dict[str, Any]]:
        payload = await self._request_json("GET", "/apps", timeout=VERSION_TIMEOUT)
        return payload if isinstance(payload, list) else []

    # ------------------------------------------------------------------
    # Update flow

    async def update_guest_server(self, zip_path: Path, password: str) -> Dict[str, Any]:
        zip_path = Path(zip_path)
        form = aiohttp.FormData()
        form.add_field("updateFile", zip_path.read_bytes(), filename=zip_path.name, content_type="application/zip")
        form.add_field("password", password)
        result = await self._request_json("POST", "/update", timeout=UPDATE_TIMEOUT, data=form)
        logger.info("Sent update payload %s to guest server", zip_path.name)
        return result if isinstance(result, dict) else {}

    async def set_auth_hash(self, auth_hash: str) -> bool:
        """Enroll the password hash. False means a hash was already set (400)."""
        form = aiohttp.FormData()
        form.add_field("authHash", auth_hash)
        try:
            async with self._get_session().post(
                f"{self.base_url}/auth/set-hash", data=form, timeout=aiohttp.ClientTimeout(total=VERSION_TIMEOUT)
            ) as response:
                if response.status == 200:
                    logger.info("Auth hash set")
                    return True
                if response.status == 400:
                    logger.info("Auth hash already set, skipping enrollment")
                    return False
                body = await response.text()
                raise GuestAPIError(f"Unexpected response when setting auth hash: {body[:200]}", response.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise GuestAPIError(f"POST /auth/set-hash failed: {e or 'timed out'}") from e


__all__ = ["GuestAPIClient", "GuestServerVersion", "FETCH_TIMEOUT"]
