"""REST client for the Casambi cloud: login and plain authenticated reads."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import AuthRejected, CloudRequestError, TransientAuthFailure
from .logging import get_logger
from .metrics import observe_cloud_request

KEY_HEADER = "X-Casambi-Key"
SESSION_HEADER = "X-Casambi-Session"

# Responses that mean the credentials will never work as given
AUTH_REJECTED_STATUSES = frozenset({401, 403, 410})


@dataclass(frozen=True)
class AuthToken:
    """Session token authorizing reads and wire opens for one network."""

    network_id: str
    session_id: str
    network_name: Optional[str] = None
    site_id: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"AuthToken(network_id={self.network_id!r}, session_id='***', "
            f"network_name={self.network_name!r}, site_id={self.site_id!r})"
        )


class _NetworkSessionEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    sessionId: str
    name: Optional[str] = None


class _UserNetwork(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[Any] = None
    name: Optional[str] = None


class _UserSite(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    networks: Dict[str, _UserNetwork] = {}


class _UserSession(BaseModel):
    model_config = ConfigDict(extra="allow")

    sessionId: str
    sites: Dict[str, _UserSite] = {}


class CasambiCloudClient:
    """Thin async wrapper around the Casambi REST API.

    Every request carries the application key. Network reads add the
    session token of the network they address. Login failures are split into
    :class:`AuthRejected` (do not retry) and :class:`TransientAuthFailure`
    (retry after a cooldown); read failures raise :class:`CloudRequestError`.
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://door.casambi.com/v1",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.logger = get_logger("casambi.cloud")
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={KEY_HEADER: api_key},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "CasambiCloudClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _send(
        self,
        method: str,
        path: str,
        endpoint: str,
        *,
        session_id: Optional[str] = None,
        json: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> httpx.Response:
        headers = {SESSION_HEADER: session_id} if session_id else None
        started = time.perf_counter()
        try:
            response = await self._client.request(
                method, path, headers=headers, json=json, params=params
            )
        except httpx.HTTPError:
            observe_cloud_request(endpoint, "error", time.perf_counter() - started)
            raise
        result = "ok" if response.is_success else str(response.status_code)
        observe_cloud_request(endpoint, result, time.perf_counter() - started)
        self.logger.debug(
            "Cloud request completed",
            extra={
                "method": method,
                "path": path,
                "status": response.status_code,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        return response

    async def _login_request(self, path: str, endpoint: str, email: str, password: str) -> Any:
        try:
            response = await self._send(
                "POST", path, endpoint, json={"email": email, "password": password}
            )
        except httpx.HTTPError as exc:
            raise TransientAuthFailure(f"Login request failed: {exc}") from exc
        if response.status_code in AUTH_REJECTED_STATUSES:
            raise AuthRejected(response.status_code, _error_detail(response))
        if not response.is_success:
            raise TransientAuthFailure(
                f"Login returned HTTP {response.status_code}: {_error_detail(response)}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise TransientAuthFailure("Login response was not JSON") from exc

    async def create_network_session(self, email: str, password: str) -> List[AuthToken]:
        """Log into a single network with its own credentials."""

        payload = await self._login_request("/networks/session", "network_session", email, password)
        if not isinstance(payload, Mapping) or not payload:
            raise TransientAuthFailure("Network login response had no networks")
        tokens = []
        for network_id, entry in payload.items():
            try:
                parsed = _NetworkSessionEntry.model_validate(entry)
            except ValidationError as exc:
                raise TransientAuthFailure(f"Malformed network session for {network_id}") from exc
            tokens.append(
                AuthToken(network_id=str(network_id), session_id=parsed.sessionId, network_name=parsed.name)
            )
        return tokens

    async def create_user_session(self, email: str, password: str) -> List[AuthToken]:
        """Log in as a site user; one token per network of every site."""

        payload = await self._login_request("/users/session", "user_session", email, password)
        try:
            parsed = _UserSession.model_validate(payload)
        except ValidationError as exc:
            raise TransientAuthFailure("Malformed user session response") from exc
        tokens = []
        for site_id, site in parsed.sites.items():
            for network_key, network in site.networks.items():
                tokens.append(
                    AuthToken(
                        network_id=str(network.id) if network.id else network_key,
                        session_id=parsed.sessionId,
                        network_name=network.name,
                        site_id=str(site_id),
                    )
                )
        return tokens

    async def get_json(
        self,
        path: str,
        endpoint: str,
        *,
        session_id: Optional[str] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """Issue a GET and return the decoded body."""

        try:
            response = await self._send("GET", path, endpoint, session_id=session_id, params=params)
        except httpx.HTTPError as exc:
            raise CloudRequestError(f"GET {path} failed: {exc}") from exc
        if response.status_code in AUTH_REJECTED_STATUSES:
            raise AuthRejected(response.status_code, _error_detail(response))
        if not response.is_success:
            raise CloudRequestError(
                f"GET {path} returned HTTP {response.status_code}", status_code=response.status_code
            )
        try:
            return response.json()
        except ValueError as exc:
            raise CloudRequestError(f"GET {path} returned invalid JSON") from exc

    async def get_network(
        self,
        token: AuthToken,
        path: str = "",
        *,
        endpoint: str = "network",
        params: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        return await self.get_json(
            f"/networks/{token.network_id}{path}",
            endpoint,
            session_id=token.session_id,
            params=params,
        )

    async def get_fixture(self, fixture_id: int) -> Any:
        return await self.get_json(f"/fixtures/{fixture_id}", "fixture")


def _error_detail(response: httpx.Response) -> Optional[str]:
    try:
        payload = response.json()
    except ValueError:
        text = response.text.strip()
        return text[:200] or None
    if isinstance(payload, Mapping):
        for key in ("message", "error", "detail"):
            if payload.get(key):
                return str(payload[key])
    return None
