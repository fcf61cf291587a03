"""Async client for one pool's remote endpoint using httpx.

Endpoints (relative to the pool's backend URL):
- ``{storage}`` / ``{storage}/{id}``: list, item, create (POST), update (PATCH)
- ``drupal/{api}/{site}/{type}/{bundle}[/{uuid}]``: entity transport
- ``{connection_synchronisation}/{id}/synchronize``: start a pull/push job
- ``{connection_synchronisation}/{id}/synchronize/{job}/status``: poll it
- ``{connection_synchronisation}/{id}/clone/{item}``: pull one entity
- ``{connection}/{id}/login``: ask the remote to log in to this site again
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from contentsync.config import RemoteConfig
from contentsync.errors import RemoteAuthError, RemoteError
from contentsync.policy.models import Action, Pool
from contentsync.remote.storage import (
    ApiStorage,
    ConnectionStorage,
    ConnectionSynchronizationStorage,
    EntityTypeStorage,
    InstanceStorage,
    PreviewEntityStorage,
    RemoteStorageStorage,
    connection_path,
)

log = structlog.get_logger(__name__)

_SUCCESS = frozenset({200, 201, 204})


@dataclass
class SyncJob:
    """Handle of a server-side synchronisation job."""

    id: str
    total: int
    status_url: str


class RemoteStore:
    """Remote endpoint of one pool, with retry and re-authentication."""

    def __init__(
        self,
        pool: Pool,
        settings: RemoteConfig | None = None,
        *,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._pool = pool
        self._settings = settings or RemoteConfig()
        self._transport = _transport
        self._client: httpx.AsyncClient | None = None
        self._authenticated = False

        self.api = ApiStorage(self)
        self.connections = ConnectionStorage(self)
        self.connection_synchronizations = ConnectionSynchronizationStorage(self)
        self.entity_types = EntityTypeStorage(self)
        self.instances = InstanceStorage(self)
        self.remote_storages = RemoteStorageStorage(self)
        self.previews = PreviewEntityStorage(self)

    async def __aenter__(self) -> RemoteStore:
        await self.open()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def open(self) -> None:
        if self._client is not None:
            return
        kw: dict = {"timeout": float(self._settings.timeout_seconds)}
        if self._transport is not None:
            kw["transport"] = self._transport
        if self._pool.authentication == "basic_auth":
            username, password = self._credentials()
            if username:
                kw["auth"] = httpx.BasicAuth(username, password)
        self._client = httpx.AsyncClient(**kw)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
            self._authenticated = False

    @property
    def pool(self) -> Pool:
        return self._pool

    @property
    def base_url(self) -> str:
        return self._pool.backend_url.rstrip("/")

    # -- auth --

    def _credentials(self) -> tuple[str, str]:
        username = self._pool.username or self._settings.username
        password = self._pool.password.get_secret_value() or self._settings.password.get_secret_value()
        return username, password

    async def _authenticate(self) -> None:
        """Open a cookie session; basic auth needs no handshake."""
        if self._pool.authentication != "cookie":
            return
        if self._client is None:
            raise RemoteError("client not opened")
        username, password = self._credentials()
        resp = await self._client.post(
            f"{self.base_url}/login",
            json={"username": username, "password": password},
        )
        if resp.status_code != 200:
            raise RemoteAuthError(f"Login to pool {self._pool.id} failed: {resp.status_code} {resp.text}")
        self._authenticated = True
        log.debug("remote_session_opened", pool=self._pool.id)

    # -- request helper --

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: dict | None = None,
        allow: frozenset[int] = frozenset(),
    ) -> httpx.Response:
        """Send a request; status codes in *allow* are returned instead of raised.

        Logging in again after an expired session does not use up an attempt.
        """
        if self._client is None:
            raise RemoteError("client not opened")
        max_retries = max(1, self._settings.max_retries)

        if self._pool.authentication == "cookie" and not self._authenticated:
            await self._authenticate()

        reauthenticated = False
        attempt = 0
        while attempt < max_retries:
            try:
                resp = await self._client.request(method, url, json=json, params=params)
            except httpx.TransportError as exc:
                if attempt >= max_retries - 1:
                    raise RemoteError(f"Network error after {max_retries} retries: {exc}") from exc
                wait = 2**attempt
                log.warning(
                    "remote_network_error",
                    pool=self._pool.id,
                    error=str(exc),
                    retry_in=wait,
                    attempt=attempt,
                )
                await asyncio.sleep(wait)
                attempt += 1
                continue

            if resp.status_code in allow:
                return resp

            if resp.status_code == 401:
                if reauthenticated or self._pool.authentication != "cookie":
                    raise RemoteAuthError(
                        f"Pool {self._pool.id} rejected our credentials. "
                        "Check the pool's username and password in config.toml."
                    )
                # Session expired mid-run, log in again once
                reauthenticated = True
                await self._authenticate()
                continue

            if resp.status_code == 429:
                retry_after = int(resp.headers.get("Retry-After", str(2**attempt)))
                log.warning(
                    "remote_rate_limited",
                    pool=self._pool.id,
                    retry_after=retry_after,
                    attempt=attempt,
                )
                await asyncio.sleep(retry_after)
                attempt += 1
                continue

            if resp.status_code >= 400:
                raise RemoteError(
                    f"Remote error: {method} {url} -> {resp.status_code} {resp.text}",
                    status_code=resp.status_code,
                )

            return resp

        raise RemoteError(f"Max retries ({max_retries}) exceeded")

    async def get_json(self, url: str, *, params: dict | None = None, allow_missing: bool = False) -> Any:
        resp = await self._request("GET", url, params=params, allow=frozenset({404}) if allow_missing else frozenset())
        if resp.status_code == 404:
            return None
        return resp.json()

    async def send_json(self, method: str, url: str, body: Any) -> Any:
        resp = await self._request(method, url, json=body)
        return resp.json() if resp.content else None

    # -- entity transport --

    def entity_url(self, entity_type: str, bundle: str, uuid: str | None = None) -> str:
        path = connection_path(self._pool.id, self._pool.site_id, entity_type, bundle)
        url = f"{self.base_url}/{path}"
        return f"{url}/{uuid}" if uuid else url

    async def push_entity(
        self,
        entity_type: str,
        bundle: str,
        uuid: str,
        action: Action,
        body: dict[str, Any] | None = None,
    ) -> None:
        """Transmit one entity: POST creates, PUT updates, DELETE deletes.

        An update of an entity the remote side never saw is sent as a create.
        """
        if action == Action.DELETE:
            resp = await self._request("DELETE", self.entity_url(entity_type, bundle, uuid), allow=frozenset({404}))
            if resp.status_code == 404:
                log.info("remote_delete_missing", pool=self._pool.id, entity_type=entity_type, uuid=uuid)
                return
        elif action == Action.UPDATE:
            resp = await self._request(
                "PUT", self.entity_url(entity_type, bundle, uuid), json=body, allow=frozenset({404})
            )
            if resp.status_code == 404:
                log.info("remote_update_fallback_create", pool=self._pool.id, entity_type=entity_type, uuid=uuid)
                resp = await self._request("POST", self.entity_url(entity_type, bundle), json=body)
        else:
            resp = await self._request("POST", self.entity_url(entity_type, bundle), json=body)

        if resp.status_code not in _SUCCESS:
            raise RemoteError(
                f"Unexpected status {resp.status_code} pushing {entity_type} {uuid}",
                status_code=resp.status_code,
            )

    # -- jobs --

    def _sync_url(self, connection_sync_id: str) -> str:
        return f"{self.connection_synchronizations.url}/{connection_sync_id}"

    async def start_sync(self, connection_sync_id: str, *, force: bool = False) -> SyncJob | None:
        """Start a server-side job; returns None if there is nothing to synchronise."""
        params = {"update_all": "true"}
        if force:
            params["force"] = "true"
        url = f"{self._sync_url(connection_sync_id)}/synchronize"
        resp = await self._request("POST", url, params=params)
        data = resp.json() if resp.content else {}
        if not data or not data.get("id"):
            return None
        return SyncJob(
            id=str(data["id"]),
            total=int(data.get("total") or 0),
            status_url=f"{url}/{data['id']}/status",
        )

    async def job_status(self, job: SyncJob) -> dict[str, int]:
        data = await self.get_json(job.status_url) or {}
        return {"processed": int(data.get("processed") or 0), "total": int(data.get("total") or job.total)}

    async def synchronize_single(
        self,
        connection_sync_id: str,
        item_id: str,
        *,
        manual: bool = False,
        dependency: bool = False,
    ) -> bool:
        url = f"{self._sync_url(connection_sync_id)}/clone/{item_id}"
        params = {"manual": str(manual).lower(), "dependency": str(dependency).lower()}
        resp = await self._request("POST", url, params=params, allow=frozenset({404}))
        return resp.status_code == 200

    async def login(self, connection_id: str) -> bool:
        """Ask the remote side to log in to this site for *connection_id* again."""
        url = f"{self.connections.url}/{connection_id}/login"
        try:
            resp = await self._request("POST", url)
        except RemoteError as exc:
            log.warning("remote_login_failed", pool=self._pool.id, connection=connection_id, error=str(exc))
            return False
        data = resp.json() if resp.content else {}
        return bool(data.get("success"))
