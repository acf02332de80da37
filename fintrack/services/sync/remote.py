"""
Remote Store Client

RemoteStore is the narrow slice of the cloud database the sync engine
needs: upsert by id, filtered select, scoped delete and delete-by-ids.
SupabaseRemoteStore implements it over the PostgREST HTTP API.

DESIGN DECISION: The identity collaborator is an interface too. This module
never signs users in; it only asks who the current user is.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from fintrack.config.settings import SyncSettings


logger = structlog.get_logger(__name__)


class RemoteError(Exception):
    """The remote store rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class IdentityProvider(ABC):
    """Supplies the id of the signed-in user."""

    @abstractmethod
    async def current_user_id(self) -> Optional[str]:
        """The user id, or None when nobody is signed in."""
        pass


class StaticIdentity(IdentityProvider):
    """Fixed user id, for scripts and tests."""

    def __init__(self, user_id: Optional[str]):
        self.user_id = user_id

    async def current_user_id(self) -> Optional[str]:
        return self.user_id


class RemoteStore(ABC):
    """
    Abstract interface for the remote collection store.

    Filters are equality filters: {"column": value}.
    """

    @abstractmethod
    async def upsert(self, table: str, row: dict[str, Any]) -> None:
        """
        Insert a row, or overwrite the row with the same id.

        Raises:
            RemoteError: If the request fails
        """
        pass

    @abstractmethod
    async def select(
        self,
        table: str,
        filters: dict[str, Any],
        columns: str = "*",
        order: Optional[list[str]] = None,
    ) -> list[dict[str, Any]]:
        """
        Rows matching every filter.

        Args:
            table: Remote table name
            filters: Column equality filters
            columns: Comma-separated column list
            order: Sort keys such as "date.asc", applied in sequence
        """
        pass

    @abstractmethod
    async def delete(self, table: str, filters: dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def delete_in(
        self,
        table: str,
        column: str,
        values: list[Any],
        filters: Optional[dict[str, Any]] = None,
    ) -> None:
        """Delete rows whose column value is in values (and match filters)."""
        pass

    async def aclose(self) -> None:
        return None


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def _eq_params(filters: dict[str, Any]) -> dict[str, str]:
    params = {}
    for column, value in filters.items():
        operator = "is" if value is None else "eq"
        params[column] = f"{operator}.{_format_value(value)}"
    return params


class SupabaseRemoteStore(RemoteStore):
    """
    RemoteStore over Supabase's PostgREST endpoint.

    Transport errors (connection refused, timeouts) are retried with
    exponential backoff; HTTP error responses are not.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        access_token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
        max_retries: int = 3,
        backoff: float = 1.0,
    ):
        self.rest_url = f"{base_url.rstrip('/')}/rest/v1"
        self.headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {access_token or api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        self._client = client
        self._client_lock = asyncio.Lock()
        self._timeout = timeout
        self._max_retries = max_retries
        self._backoff = backoff

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "SupabaseRemoteStore":
        return cls(
            base_url=settings.supabase_url,
            api_key=settings.supabase_key,
            access_token=settings.access_token,
            client=client,
            timeout=settings.request_timeout_seconds,
            max_retries=settings.max_retries,
        )

    async def aclose(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _get_client(self) -> httpx.AsyncClient:
        client = self._client
        if client is not None and not client.is_closed:
            return client

        async with self._client_lock:
            client = self._client
            if client is None or client.is_closed:
                client = httpx.AsyncClient(timeout=self._timeout)
                self._client = client
            return client

    async def _request(
        self,
        method: str,
        table: str,
        params: Optional[dict[str, str]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> httpx.Response:
        client = await self._get_client()
        headers = dict(self.headers)
        if prefer:
            headers["Prefer"] = prefer

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_retries),
                wait=wait_exponential(
                    multiplier=self._backoff, min=2 * self._backoff, max=10
                ),
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    response = await client.request(
                        method,
                        f"{self.rest_url}/{table}",
                        params=params,
                        json=json,
                        headers=headers,
                        timeout=self._timeout,
                    )
        except httpx.TransportError as e:
            logger.error("remote_unreachable", table=table, method=method, error=str(e))
            raise RemoteError(f"{method} {table} failed: {e}") from e

        if response.status_code >= 400:
            try:
                message = response.json().get("message") or response.text
            except ValueError:
                message = response.text
            logger.warning(
                "remote_request_rejected",
                table=table,
                method=method,
                status=response.status_code,
                message=message,
            )
            raise RemoteError(
                f"{method} {table} returned {response.status_code}: {message}",
                status_code=response.status_code,
            )
        return response

    async def upsert(self, table: str, row: dict[str, Any]) -> None:
        await self._request(
            "POST",
            table,
            params={"on_conflict": "id"},
            json=row,
            prefer="resolution=merge-duplicates,return=minimal",
        )

    async def select(
        self,
        table: str,
        filters: dict[str, Any],
        columns: str = "*",
        order: Optional[list[str]] = None,
    ) -> list[dict[str, Any]]:
        params = {"select": columns, **_eq_params(filters)}
        if order:
            params["order"] = ",".join(order)
        response = await self._request("GET", table, params=params)
        try:
            rows = response.json()
        except ValueError as e:
            raise RemoteError(f"GET {table} returned invalid JSON: {e}") from e
        if not isinstance(rows, list):
            raise RemoteError(f"GET {table} returned {type(rows).__name__}, expected list")
        return rows

    async def delete(self, table: str, filters: dict[str, Any]) -> None:
        if not filters:
            raise ValueError("Refusing to delete without filters")
        await self._request("DELETE", table, params=_eq_params(filters))

    async def delete_in(
        self,
        table: str,
        column: str,
        values: list[Any],
        filters: Optional[dict[str, Any]] = None,
    ) -> None:
        if not values:
            return
        quoted = ",".join(f'"{_format_value(v)}"' for v in values)
        params = {**_eq_params(filters or {}), column: f"in.({quoted})"}
        await self._request("DELETE", table, params=params)
