from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import MetaData, Table, create_engine, delete, inspect, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from trailguard.constants import BOOKKEEPING_PREFIX
from trailguard.errors import ProviderError
from trailguard.schemas import (
    MysqlProviderConfig,
    PostgresProviderConfig,
    SqliteProviderConfig,
    UntrackedScanResult,
)
from trailguard.services.ledger import TrackedResource
from trailguard.services.providers.base import CleanupHandler, CleanupProvider

LOGGER = logging.getLogger("trailguard.providers.sql")

CREATED_AT_COLUMNS = ("created_at", "createdat", "created")
OWNER_COLUMNS = ("user_id", "userid", "owner_id", "author_id")


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _pick_column(columns: Sequence[str], candidates: Sequence[str]) -> Optional[str]:
    for column in columns:
        if column.lower() in candidates:
            return column
    return None


class SqlProvider(CleanupProvider):
    """Delete tracked rows from a relational database through SQLAlchemy."""

    def __init__(self, name: str, engine: Engine, default_schema: Optional[str] = None) -> None:
        self.name = name
        self.engine = engine
        self.default_schema = default_schema
        self.TYPE_MAPPINGS = {
            "row": f"{name}.delete_row",
            "user": f"{name}.delete_user",
            "custom": f"{name}.custom_delete",
        }

    def close(self) -> None:
        self.engine.dispose()

    def _schema_for(self, resource: Optional[TrackedResource] = None) -> Optional[str]:
        if self.engine.dialect.name == "sqlite":
            return None
        if resource is not None and resource.get("schema"):
            return str(resource.get("schema"))
        return self.default_schema

    def _qualified(self, table: str, schema: Optional[str]) -> str:
        preparer = self.engine.dialect.identifier_preparer
        quoted = preparer.quote(table)
        if schema:
            return f"{preparer.quote_schema(schema)}.{quoted}"
        return quoted

    def _delete_by_id(self, table: str, resource: TrackedResource) -> None:
        statement = text(f"DELETE FROM {self._qualified(table, self._schema_for(resource))} WHERE id = :id")
        with self.engine.begin() as connection:
            connection.execute(statement, {"id": resource.id})

    # Handlers ---------------------------------------------------------------------------
    def delete_row(self, resource: TrackedResource) -> None:
        table = resource.get("table")
        if not table:
            raise ProviderError(f"Missing table name for row {resource.id}")
        self._delete_by_id(str(table), resource)

    def delete_user(self, resource: TrackedResource) -> None:
        self._delete_by_id(str(resource.get("table") or "users"), resource)

    def custom_delete(self, resource: TrackedResource) -> None:
        query = resource.get("query")
        if not query:
            raise ProviderError(f"Missing query for custom delete of resource {resource.id}")
        params = resource.get("params")
        if params is None:
            params = [resource.id]
        with self.engine.begin() as connection:
            connection.exec_driver_sql(str(query), tuple(params))

    def methods(self) -> Dict[str, CleanupHandler]:
        return {
            "delete_row": self.delete_row,
            "delete_user": self.delete_user,
            "custom_delete": self.custom_delete,
        }

    # Sweep ------------------------------------------------------------------------------
    def cleanup_untracked(
        self,
        *,
        test_start_time: str,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        skip_user: bool = False,
    ) -> UntrackedScanResult:
        """Delete rows created since the run started that belong to ``user_id``.

        Only tables carrying both a created-at column and an owner column are touched.
        """
        result = UntrackedScanResult()
        if not user_id:
            LOGGER.info("No user id recorded for session %s; skipping %s sweep", session_id, self.name)
            return result

        since = _parse_timestamp(test_start_time)
        if self.engine.dialect.name == "sqlite":
            since = since.astimezone(timezone.utc).replace(tzinfo=None)
        schema = self._schema_for()
        inspector = inspect(self.engine)
        for table_name in inspector.get_table_names(schema=schema):
            if table_name.startswith(BOOKKEEPING_PREFIX):
                continue
            result.scanned += 1
            columns = [column["name"] for column in inspector.get_columns(table_name, schema=schema)]
            created_column = _pick_column(columns, CREATED_AT_COLUMNS)
            owner_column = _pick_column(columns, OWNER_COLUMNS)
            if not created_column or not owner_column or "id" not in columns:
                continue
            try:
                result.deleted.extend(self._sweep_table(table_name, schema, created_column, owner_column, since, user_id))
            except SQLAlchemyError as exc:
                LOGGER.warning("Error scanning table %s: %s", table_name, exc)
                result.failed.append(f"{table_name}:error")

        result.success = not result.failed
        LOGGER.info(
            "Untracked scan complete. Scanned: %d, Deleted: %d, Failed: %d",
            result.scanned,
            len(result.deleted),
            len(result.failed),
        )
        return result

    def _sweep_table(
        self,
        table_name: str,
        schema: Optional[str],
        created_column: str,
        owner_column: str,
        since: datetime,
        user_id: str,
    ) -> List[str]:
        table = Table(table_name, MetaData(), autoload_with=self.engine, schema=schema)
        condition = (table.c[created_column] >= since) & (table.c[owner_column] == user_id)
        with self.engine.begin() as connection:
            ids = [row[0] for row in connection.execute(select(table.c.id).where(condition))]
            if ids:
                connection.execute(delete(table).where(table.c.id.in_(ids)))
        return [f"{table_name}:{row_id}" for row_id in ids]


def create_sql_provider(config: Any) -> SqlProvider:
    if isinstance(config, SqliteProviderConfig):
        if config.readonly:
            url = f"sqlite:///file:{config.database}?mode=ro&uri=true"
        else:
            url = f"sqlite:///{config.database}"
        engine = create_engine(url, connect_args={"check_same_thread": False})
        return SqlProvider("sqlite", engine)
    if isinstance(config, (PostgresProviderConfig, MysqlProviderConfig)):
        if not config.url:
            raise ProviderError(f"{config.type} provider requires a connection url")
        engine = create_engine(config.url, pool_pre_ping=True)
        return SqlProvider(config.type, engine, default_schema=config.schema_name)
    raise ProviderError(f"Unsupported SQL provider config: {type(config).__name__}")
