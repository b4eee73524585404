"""
REST Storage Adapter

Entity storage on a backend-as-a-service (Supabase) through its PostgREST
HTTP API:

    GET    /rest/v1/<collection>?select=*&order=id.asc&<col>=eq.<value>
    POST   /rest/v1/<collection>                 (Prefer: return=representation)
    PATCH  /rest/v1/<collection>?id=eq.<id>      (Prefer: return=representation)
    DELETE /rest/v1/<collection>?id=eq.<id>      (Prefer: return=representation)

Every request carries the service-role key twice, as `apikey` and as a
bearer token, so row-level security does not hide rows from migrations.

DESIGN DECISION: Tables cannot be created over REST. prepare() only checks
that every collection exists and reports the missing ones; the operator
applies the schema through the provider's own tooling.
"""

import asyncio
from typing import Any, Optional

import httpx
import structlog
from pydantic_core import to_jsonable_python

from finance_db.models.entities import EntityCollection, Record, RecordId
from finance_db.services.storage import schema
from finance_db.services.storage.interface import (
    ConflictError,
    CredentialsRejectedError,
    InvalidRecordError,
    NotFoundError,
    ProviderAdapter,
    StorageError,
    UnavailableError,
)


logger = structlog.get_logger(__name__)

# PostgREST / Postgres error codes
_UNIQUE_VIOLATION = "23505"
_UNDEFINED_TABLE = "42P01"
_UNDEFINED_COLUMN = "42703"
_SCHEMA_CACHE_MISSING_TABLE = "PGRST205"
_SCHEMA_CACHE_MISSING_COLUMN = "PGRST204"


def _filter_value(value: Any) -> str:
    if value is None:
        return "is.null"
    jsonable = to_jsonable_python(value)
    if isinstance(jsonable, bool):
        return f"eq.{str(jsonable).lower()}"
    return f"eq.{jsonable}"


class RestAdapter(ProviderAdapter):
    """
    Entity storage over PostgREST.

    Args:
        base_url: Service URL (https://<project>.supabase.co)
        service_key: Service-role API key
        max_connections: Upper bound on concurrent requests
        operation_timeout: Seconds before a request is abandoned
        transport: Optional httpx transport (tests pass httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: str,
        service_key: str,
        max_connections: int = 10,
        operation_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        provider_name: str = "supabase",
    ):
        self._provider_name = provider_name
        self._timeout = operation_timeout
        self.max_concurrency = max_connections
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/rest/v1",
            headers={
                "apikey": service_key,
                "Authorization": f"Bearer {service_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=httpx.Timeout(operation_timeout),
            limits=httpx.Limits(max_connections=max_connections),
            transport=transport,
        )

    @property
    def provider_name(self) -> str:
        return self._provider_name

    # -------------------------------------------------------------------------
    # HTTP plumbing
    # -------------------------------------------------------------------------

    @staticmethod
    def _error_body(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {"message": response.text}
        return body if isinstance(body, dict) else {"message": str(body)}

    def _translate(self, response: httpx.Response) -> StorageError:
        body = self._error_body(response)
        code = str(body.get("code") or "")
        native = body.get("message") or response.reason_phrase or f"HTTP {response.status_code}"
        status = response.status_code

        if status == 409 or code == _UNIQUE_VIOLATION:
            return ConflictError(f"Unique constraint violated: {native}", native_message=native)
        if code in (_UNDEFINED_COLUMN, _SCHEMA_CACHE_MISSING_COLUMN):
            return InvalidRecordError(f"Unknown column: {native}", native_message=native)
        if status in (401, 403):
            return CredentialsRejectedError(
                f"{self._provider_name} rejected credentials: {native}", native_message=native
            )
        if status >= 500:
            return UnavailableError(
                f"{self._provider_name} unavailable (HTTP {status}): {native}",
                native_message=native,
            )
        return StorageError(
            f"{self._provider_name} error (HTTP {status}): {native}", native_message=native
        )

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, str]] = None,
        json: Any = None,
        representation: bool = False,
    ) -> httpx.Response:
        headers = {"Prefer": "return=representation"} if representation else None
        try:
            return await asyncio.wait_for(
                self._client.request(
                    method,
                    path,
                    params=params,
                    json=to_jsonable_python(json) if json is not None else None,
                    headers=headers,
                ),
                timeout=self._timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.warning(
                "rest_request_timeout",
                provider=self._provider_name,
                method=method,
                path=path,
            )
            raise UnavailableError(
                f"{self._provider_name} {method} {path} timed out after {self._timeout}s"
            ) from e
        except httpx.TransportError as e:
            raise UnavailableError(
                f"{self._provider_name} unreachable: {e}", native_message=str(e)
            ) from e

    async def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._request(method, path, **kwargs)
        if response.is_error:
            raise self._translate(response)
        if not response.content:
            return None
        return response.json()

    @staticmethod
    def _path(collection: EntityCollection) -> str:
        return f"/{EntityCollection(collection).value}"

    @staticmethod
    def _check_fields(collection: EntityCollection, record: Record) -> None:
        unknown = schema.unknown_fields(collection, record)
        if unknown:
            raise InvalidRecordError(
                f"Unknown fields for {EntityCollection(collection).value}: {', '.join(unknown)}"
            )

    # -------------------------------------------------------------------------
    # ProviderAdapter
    # -------------------------------------------------------------------------

    async def list(
        self,
        collection: EntityCollection,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[Record]:
        params = {"select": "*", "order": "id.asc"}
        if filter:
            self._check_fields(collection, filter)
            params.update({key: _filter_value(value) for key, value in filter.items()})
        rows = await self._call("GET", self._path(collection), params=params)
        return rows or []

    async def get(self, collection: EntityCollection, id: RecordId) -> Record:
        rows = await self._call(
            "GET",
            self._path(collection),
            params={"select": "*", "id": _filter_value(id)},
        )
        if not rows:
            raise NotFoundError(EntityCollection(collection).value, id)
        return rows[0]

    async def insert(self, collection: EntityCollection, record: Record) -> Record:
        values = {k: v for k, v in record.items() if k != "id"}
        self._check_fields(collection, values)
        rows = await self._call(
            "POST",
            self._path(collection),
            json=values,
            representation=True,
        )
        if not rows:
            raise StorageError(
                f"{self._provider_name} returned no representation for inserted "
                f"{EntityCollection(collection).value} record"
            )
        return rows[0]

    async def update(
        self,
        collection: EntityCollection,
        id: RecordId,
        changes: Record,
    ) -> Record:
        values = {k: v for k, v in changes.items() if k != "id"}
        self._check_fields(collection, values)
        if not values:
            return await self.get(collection, id)
        rows = await self._call(
            "PATCH",
            self._path(collection),
            params={"id": _filter_value(id)},
            json=values,
            representation=True,
        )
        if not rows:
            raise NotFoundError(EntityCollection(collection).value, id)
        return rows[0]

    async def delete(self, collection: EntityCollection, id: RecordId) -> None:
        rows = await self._call(
            "DELETE",
            self._path(collection),
            params={"id": _filter_value(id)},
            representation=True,
        )
        if not rows:
            raise NotFoundError(EntityCollection(collection).value, id)

    async def ping(self) -> str:
        response = await self._request("GET", "/")
        if response.is_error:
            raise self._translate(response)
        server = response.headers.get("server")
        return f"PostgREST ({server})" if server else "PostgREST"

    async def _collection_exists(self, collection: EntityCollection) -> bool:
        response = await self._request(
            "GET",
            self._path(collection),
            params={"select": "id", "limit": "1"},
        )
        if response.is_success:
            return True
        code = str(self._error_body(response).get("code") or "")
        if response.status_code == 404 or code in (_UNDEFINED_TABLE, _SCHEMA_CACHE_MISSING_TABLE):
            return False
        raise self._translate(response)

    async def existing_collections(self) -> set[str]:
        found = set()
        for collection in EntityCollection:
            if await self._collection_exists(collection):
                found.add(collection.value)
        return found

    async def prepare(self) -> None:
        existing = await self.existing_collections()
        missing = sorted(c.value for c in EntityCollection if c.value not in existing)
        if missing:
            raise StorageError(
                f"{self._provider_name} is missing collections {', '.join(missing)}; "
                "apply the schema before migrating"
            )

    async def close(self) -> None:
        await self._client.aclose()
