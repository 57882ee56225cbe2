"""
Fluidkeys API client.

Handles:
- Team rosters: fetch the signed roster for a team as a given key
- Requests to join teams
- Public keys by fingerprint

Errors are mapped onto fk_sync.errors. Nothing is retried here: the periodic
sync is the retry loop.
"""

from __future__ import annotations

import os
from typing import Any
from uuid import UUID

import httpx
import structlog

from . import __version__
from .errors import ApiError, Forbidden, PublicKeyNotFound, TeamNotFound
from .fingerprint import Fingerprint
from .keys import KeyEngine, PublicKey

log = structlog.get_logger()

DEFAULT_BASE_URL = "https://api.fluidkeys.com/v1/"
USER_AGENT = f"fluidkeys-sync-{__version__}"

_NOT_FOUND_MESSAGES: dict[type[ApiError], str] = {
    TeamNotFound: "Team not found",
    PublicKeyNotFound: "Public key not found",
}


def authorization(fingerprint: Fingerprint) -> str:
    return f"tmpfingerprint: {fingerprint.uri()}"


class ApiClient:
    """Async client for the Fluidkeys API."""

    def __init__(
        self,
        base_url: str | None = None,
        verify_tls: bool = True,
        request_timeout: float = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        base_url = base_url or os.environ.get("FLUIDKEYS_API_URL") or DEFAULT_BASE_URL
        if not base_url.endswith("/"):
            base_url += "/"
        self._base_url = base_url
        self._verify_tls = verify_tls
        self._request_timeout = request_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def open(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(self._request_timeout),
            verify=self._verify_tls,
            headers={"User-Agent": USER_AGENT},
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> ApiClient:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # --- Teams ---

    async def get_team_roster(
        self, team_uuid: UUID, requester: Fingerprint,
    ) -> tuple[str, str]:
        """Return ``(roster, signature)`` for the team, as seen by ``requester``."""
        resp = await self._request(
            "GET",
            f"team/{team_uuid}/roster",
            headers={"Authorization": authorization(requester)},
            not_found=TeamNotFound,
        )
        body = _json(resp)
        return body.get("teamRoster", ""), body.get("armoredDetachedSignature", "")

    async def get_team_name(self, team_uuid: UUID) -> str:
        resp = await self._request(
            "GET", f"teams/{team_uuid}", not_found=TeamNotFound,
        )
        return _json(resp).get("name", "")

    async def request_to_join_team(
        self, team_uuid: UUID, fingerprint: Fingerprint, email: str,
    ) -> None:
        await self._request(
            "POST",
            f"teams/{team_uuid}",
            json={"teamEmail": email},
            headers={"Authorization": authorization(fingerprint)},
            not_found=TeamNotFound,
        )
        log.info("api.requested_to_join", team_uuid=str(team_uuid), fingerprint=fingerprint.hex())

    # --- Keys ---

    async def get_public_key_by_fingerprint(
        self, fingerprint: Fingerprint, engine: KeyEngine,
    ) -> PublicKey:
        resp = await self._request(
            "GET",
            f"key/{fingerprint.hex()}.asc",
            not_found=PublicKeyNotFound,
        )
        if not resp.text:
            raise ApiError(f"got http {resp.status_code}, but with empty body", resp.status_code)

        key = engine.load_public_key(resp.text)
        if key.fingerprint != fingerprint:
            log.error(
                "api.key_mismatch",
                requested=fingerprint.hex(),
                got=key.fingerprint.hex(),
            )
            raise ApiError(f"requested key {fingerprint} but got back {key.fingerprint}")
        return key

    # --- Internals ---

    async def _request(
        self,
        method: str,
        path: str,
        not_found: type[ApiError],
        **kwargs: Any,
    ) -> httpx.Response:
        assert self._client
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            log.warning("api.request_failed", method=method, path=path, error=str(exc))
            raise ApiError(f"couldn't reach Fluidkeys API: {exc}") from exc

        if resp.is_success:
            return resp

        if resp.status_code == 404:
            raise not_found(_NOT_FOUND_MESSAGES.get(not_found, "Not found"), 404)
        if resp.status_code == 403:
            raise Forbidden("Forbidden", 403)
        if resp.status_code == 401:
            raise ApiError("Couldn't sign in to API", 401)

        detail = _error_detail(resp)
        log.warning("api.error_response", method=method, path=path, status=resp.status_code)
        if detail:
            raise ApiError(f"API error: {resp.status_code} {detail}", resp.status_code)
        raise ApiError(f"API error: {resp.status_code}", resp.status_code)


def _json(resp: httpx.Response) -> dict[str, Any]:
    try:
        body = resp.json()
    except ValueError as exc:
        raise ApiError(f"invalid JSON in response: {exc}", resp.status_code) from exc
    if not isinstance(body, dict):
        raise ApiError("unexpected JSON in response", resp.status_code)
    return body


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return ""
    if isinstance(body, dict):
        return str(body.get("detail", ""))
    return ""
