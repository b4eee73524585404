"""
SQL Storage Adapter

One adapter for every SQL backend: managed and self-hosted Postgres,
managed and self-hosted MySQL, and embedded SQLite. All of them share the
table definitions in schema.py and are driven through SQLAlchemy Core.

DESIGN DECISION: The engine is synchronous. Each operation runs in a
worker thread (asyncio.to_thread) under asyncio.wait_for, so a stalled
server surfaces as UnavailableError after operation_timeout_seconds
instead of hanging the event loop.

Driver exceptions never leave this module untranslated:
- IntegrityError on a unique column -> ConflictError
- authentication failures -> CredentialsRejectedError
- OperationalError, lost connections and timeouts -> UnavailableError
- anything else -> StorageError with the driver's message
"""

import asyncio
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

import structlog
from sqlalchemy import (
    Date,
    DateTime,
    Numeric,
    create_engine,
    delete,
    inspect,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

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

T = TypeVar("T")

_MISSING_TABLE_MARKERS = ("no such table", "does not exist", "doesn't exist")
_UNIQUE_MARKERS = ("unique", "duplicate")
_AUTH_MARKERS = ("password authentication failed", "access denied for user")


# =============================================================================
# VALUE COERCION
# =============================================================================

def _to_date(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    return value


def _to_datetime(value: Any) -> Any:
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day)
    return value


def _to_decimal(value: Any) -> Any:
    if isinstance(value, (int, float, str)) and not isinstance(value, bool):
        try:
            return Decimal(str(value))
        except InvalidOperation as e:
            raise ValueError(f"not a number: {value!r}") from e
    return value


def coerce_values(collection: EntityCollection, values: Record) -> Record:
    """
    Convert JSON-shaped values to what the column types expect.

    Records read from a REST backend carry dates as ISO strings and
    amounts as numbers; SQL drivers want date/datetime/Decimal.

    Raises:
        InvalidRecordError: A value cannot be converted
    """
    table = schema.table_for(collection)
    coerced = {}
    for key, value in values.items():
        column = table.c[key]
        if value is None:
            coerced[key] = None
            continue
        try:
            if isinstance(column.type, DateTime):
                coerced[key] = _to_datetime(value)
            elif isinstance(column.type, Date):
                coerced[key] = _to_date(value)
            elif isinstance(column.type, Numeric):
                coerced[key] = _to_decimal(value)
            else:
                coerced[key] = value
        except ValueError as e:
            raise InvalidRecordError(
                f"Bad value for {table.name}.{key}: {value!r}",
                native_message=str(e),
            ) from e
    return coerced


# =============================================================================
# ADAPTER
# =============================================================================

class SqlAlchemyAdapter(ProviderAdapter):
    """
    Entity storage on a SQL database.

    Args:
        url: SQLAlchemy URL including the driver (postgresql+psycopg2://,
             mysql+pymysql://, sqlite:///path)
        provider_name: Name used in logs and migration details
        max_connections: Pool size for server databases
        operation_timeout: Seconds before an operation is abandoned
        connect_args: Driver-specific connect arguments (SSL)
    """

    def __init__(
        self,
        url: str,
        provider_name: str,
        max_connections: int = 10,
        operation_timeout: float = 10.0,
        connect_args: Optional[dict[str, Any]] = None,
    ):
        self._url = make_url(url)
        self._provider_name = provider_name
        self._timeout = operation_timeout
        self._engine = self._create_engine(max_connections, connect_args or {})
        self._closed = False

        # SQLite serializes writers; more than one in-flight insert
        # only produces "database is locked".
        if self.dialect == "sqlite":
            self.max_concurrency = 1
        else:
            self.max_concurrency = max_connections

    @property
    def provider_name(self) -> str:
        return self._provider_name

    @property
    def dialect(self) -> str:
        return self._url.get_backend_name()

    @property
    def engine(self) -> Engine:
        return self._engine

    def _create_engine(self, max_connections: int, connect_args: dict[str, Any]) -> Engine:
        if self.dialect == "sqlite":
            database = self._url.database
            if not database or database == ":memory:":
                return create_engine(
                    self._url,
                    connect_args={"check_same_thread": False, **connect_args},
                    poolclass=StaticPool,
                )
            Path(database).parent.mkdir(parents=True, exist_ok=True)
            return create_engine(
                self._url,
                connect_args={"check_same_thread": False, **connect_args},
            )

        return create_engine(
            self._url,
            pool_size=max_connections,
            max_overflow=0,
            pool_timeout=self._timeout,
            pool_pre_ping=True,
            pool_recycle=300,
            connect_args=connect_args,
        )

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def _translate(self, e: SQLAlchemyError) -> StorageError:
        native = str(getattr(e, "orig", None) or e)
        lowered = native.lower()

        if isinstance(e, IntegrityError):
            if any(marker in lowered for marker in _UNIQUE_MARKERS):
                return ConflictError(f"Unique constraint violated: {native}", native_message=native)
            return StorageError(f"Integrity error: {native}", native_message=native)

        if isinstance(e, OperationalError) and any(marker in lowered for marker in _AUTH_MARKERS):
            return CredentialsRejectedError(
                f"{self._provider_name} rejected credentials: {native}", native_message=native
            )

        if isinstance(e, OperationalError) and not any(
            marker in lowered for marker in _MISSING_TABLE_MARKERS
        ):
            return UnavailableError(
                f"{self._provider_name} unavailable: {native}", native_message=native
            )

        if isinstance(e, DBAPIError) and e.connection_invalidated:
            return UnavailableError(
                f"{self._provider_name} connection lost: {native}", native_message=native
            )

        return StorageError(f"{self._provider_name} error: {native}", native_message=native)

    def _guarded(self, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except SQLAlchemyError as e:
            raise self._translate(e) from e

    async def _run(self, operation: str, fn: Callable[[], T]) -> T:
        if self._closed:
            raise UnavailableError(f"{self._provider_name} adapter is closed")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._guarded, fn),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            logger.warning(
                "sql_operation_timeout",
                provider=self._provider_name,
                operation=operation,
                timeout=self._timeout,
            )
            raise UnavailableError(
                f"{self._provider_name} {operation} timed out after {self._timeout}s"
            ) from e

    @staticmethod
    def _key(collection: EntityCollection, id: RecordId) -> int:
        try:
            return int(id)
        except (TypeError, ValueError):
            raise NotFoundError(EntityCollection(collection).value, id) from None

    @staticmethod
    def _fetch(conn: Connection, collection: EntityCollection, key: int) -> Optional[Record]:
        table = schema.table_for(collection)
        row = conn.execute(select(table).where(table.c.id == key)).first()
        return dict(row._mapping) if row is not None else None

    def _prepare_values(self, collection: EntityCollection, record: Record) -> Record:
        values = {k: v for k, v in record.items() if k != "id"}
        unknown = schema.unknown_fields(collection, values)
        if unknown:
            raise InvalidRecordError(
                f"Unknown fields for {EntityCollection(collection).value}: {', '.join(unknown)}"
            )
        return coerce_values(collection, values)

    def _prepare_filter(self, collection: EntityCollection, filter: dict[str, Any]) -> Record:
        unknown = schema.unknown_fields(collection, filter)
        if unknown:
            raise InvalidRecordError(
                f"Unknown fields for {EntityCollection(collection).value}: {', '.join(unknown)}"
            )
        criteria = {k: v for k, v in filter.items() if k != "id"}
        criteria = coerce_values(collection, criteria)
        if "id" in filter:
            criteria["id"] = filter["id"]
        return criteria

    # -------------------------------------------------------------------------
    # ProviderAdapter
    # -------------------------------------------------------------------------

    async def list(
        self,
        collection: EntityCollection,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[Record]:
        table = schema.table_for(collection)
        criteria = {}
        if filter:
            criteria = self._prepare_filter(collection, filter)

        def _list():
            stmt = select(table).order_by(table.c.id)
            for key, value in criteria.items():
                stmt = stmt.where(table.c[key] == value)
            with self._engine.connect() as conn:
                return [dict(row._mapping) for row in conn.execute(stmt)]

        return await self._run("list", _list)

    async def get(self, collection: EntityCollection, id: RecordId) -> Record:
        key = self._key(collection, id)

        def _get():
            with self._engine.connect() as conn:
                return self._fetch(conn, collection, key)

        row = await self._run("get", _get)
        if row is None:
            raise NotFoundError(EntityCollection(collection).value, id)
        return row

    async def insert(self, collection: EntityCollection, record: Record) -> Record:
        table = schema.table_for(collection)
        values = self._prepare_values(collection, record)

        def _insert():
            with self._engine.begin() as conn:
                result = conn.execute(insert(table).values(**values))
                new_id = result.inserted_primary_key[0]
                return self._fetch(conn, collection, new_id)

        return await self._run("insert", _insert)

    async def update(
        self,
        collection: EntityCollection,
        id: RecordId,
        changes: Record,
    ) -> Record:
        table = schema.table_for(collection)
        key = self._key(collection, id)
        values = self._prepare_values(collection, changes)

        def _update():
            with self._engine.begin() as conn:
                if self._fetch(conn, collection, key) is None:
                    return None
                if values:
                    conn.execute(update(table).where(table.c.id == key).values(**values))
                return self._fetch(conn, collection, key)

        row = await self._run("update", _update)
        if row is None:
            raise NotFoundError(EntityCollection(collection).value, id)
        return row

    async def delete(self, collection: EntityCollection, id: RecordId) -> None:
        table = schema.table_for(collection)
        key = self._key(collection, id)

        def _delete():
            with self._engine.begin() as conn:
                return conn.execute(delete(table).where(table.c.id == key)).rowcount

        deleted = await self._run("delete", _delete)
        if not deleted:
            raise NotFoundError(EntityCollection(collection).value, id)

    async def ping(self) -> str:
        query = "SELECT sqlite_version()" if self.dialect == "sqlite" else "SELECT version()"

        def _ping():
            with self._engine.connect() as conn:
                return conn.execute(text(query)).scalar()

        version = await self._run("ping", _ping)
        return f"SQLite {version}" if self.dialect == "sqlite" else str(version)

    async def existing_collections(self) -> set[str]:
        def _tables():
            return set(inspect(self._engine).get_table_names())

        tables = await self._run("existing_collections", _tables)
        return {c.value for c in EntityCollection if c.value in tables}

    async def prepare(self) -> None:
        def _create():
            schema.metadata.create_all(self._engine)

        await self._run("prepare", _create)
        logger.info("sql_schema_prepared", provider=self._provider_name, dialect=self.dialect)

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await asyncio.to_thread(self._engine.dispose)
