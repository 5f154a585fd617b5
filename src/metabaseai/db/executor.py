#
#  Copyright (C) 2017-2025 Dremio Corporation
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.
#
"""
Operations shared by the direct and the proxied executors.

Subclasses only provide how a statement reaches the database (``_fetch`` and
``_execute``), everything else, policy enforcement included, lives here so
both connection modes behave the same.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type, Union

from metabaseai import log
from metabaseai.api.metabase.models import Engine
from metabaseai.config.settings import PolicyConfig
from metabaseai.db import relationships, statements
from metabaseai.db.catalog import Catalog, catalog_for
from metabaseai.db.models import (
    CatalogColumn,
    ColumnDetail,
    DDLResult,
    OwnedObject,
    OwnedObjectInventory,
    Relationship,
    TableDetail,
)
from metabaseai.db.operations import ConnectionMode, ObjectType, object_type_of
from metabaseai.db.policy import Operation, SecurityPolicy
from metabaseai.db.statements import ColumnSpec
from metabaseai.errors import ApprovalRequired, OperationTimeout

logger = log.logger(__name__)

_INVENTORY = (
    ("tables", Catalog.own_tables),
    ("views", Catalog.own_views),
    ("materialized_views", Catalog.own_materialized_views),
    ("indexes", Catalog.own_indexes),
)


class Executor(ABC):
    mode: ConnectionMode

    def __init__(
        self, database_id: int, engine: Engine, config: Optional[PolicyConfig] = None
    ):
        self.database_id = database_id
        self.engine = engine
        self.config = config if config is not None else PolicyConfig()
        self.catalog = catalog_for(engine)
        self.policy = SecurityPolicy(self.config, dialect=self.catalog.dialect)

    @property
    def prefix(self) -> str:
        return self.config.name_prefix

    # errors that only affect the statement that raised them
    @property
    @abstractmethod
    def catalog_errors(self) -> Tuple[Type[Exception], ...]:
        pass

    @abstractmethod
    async def connect(self):
        pass

    @abstractmethod
    async def close(self):
        pass

    @abstractmethod
    async def _fetch(self, sql: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def _execute(self, sql: str) -> DDLResult:
        pass

    async def _bounded(self, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.config.timeout)
        except asyncio.TimeoutError as e:
            raise OperationTimeout(
                f"Statement exceeded {self.config.max_execution_time_ms}ms"
            ) from e

    async def fetch(self, sql: str) -> List[Dict[str, Any]]:
        return await self._bounded(self._fetch(sql))

    async def fetch_value(self, sql: Optional[str], column: str) -> Any:
        if sql is None:
            return None
        rows = await self.fetch(sql)
        return rows[0].get(column) if rows else None

    def describe(self) -> Dict[str, Any]:
        return {
            "database_id": self.database_id,
            "engine": str(self.engine),
            "mode": str(self.mode),
            "prefix": self.prefix,
        }

    # -- guarded DDL ----------------------------------------------------------

    def _preview(self, operation: Operation, warning: Optional[str] = None):
        return DDLResult(
            success=True,
            dry_run=True,
            sql=operation.sql,
            mode=self.mode,
            operation=operation.type,
            object_name=operation.object_name,
            message="Dry run, nothing was executed",
            warning=warning,
        )

    def preview_ddl(self, sql: str) -> DDLResult:
        """Validate ``sql`` and describe what would run, without approval."""
        return self._preview(self.policy.validate(sql))

    async def object_exists(self, object_type: ObjectType, name: str) -> Optional[bool]:
        try:
            present = await self.fetch_value(
                self.catalog.object_exists(object_type, name), "present"
            )
        except self.catalog_errors as e:
            logger.warning(
                "existence_check_failed", object_name=name, error=str(e)
            )
            return None
        return None if present is None else bool(present)

    async def execute_ddl(
        self, sql: str, approved: bool = False, dry_run: Optional[bool] = None
    ) -> DDLResult:
        """Run one guarded statement.

        Args:
            sql: the statement
            approved: the caller confirmed execution
            dry_run: True asks for a preview regardless of approval

        Raises:
            PolicyViolation: the statement is rejected by the policy
            ApprovalRequired: approval is configured and ``approved`` is False
        """
        operation = self.policy.validate(sql)
        warning = None
        if operation.type.is_drop and self.config.check_drop_existence:
            exists = await self.object_exists(
                object_type_of(operation.type), operation.object_name
            )
            if exists is False:
                warning = f"{operation.object_name} does not exist, DROP is a no-op"
                logger.warning(
                    "drop_target_missing",
                    object_name=operation.object_name,
                    operation=str(operation.type),
                )

        if dry_run:
            return self._preview(operation, warning)
        if self.config.require_approval and not approved:
            raise ApprovalRequired(sql)
        if self.config.dry_run:
            return self._preview(operation, warning)

        result = await self._bounded(self._execute(sql))
        logger.info(
            "ddl_executed",
            database_id=self.database_id,
            mode=str(self.mode),
            operation=str(operation.type),
            object_name=operation.object_name,
        )
        return result.model_copy(
            update={
                "operation": operation.type,
                "object_name": operation.object_name,
                "warning": result.warning or warning,
            }
        )

    # -- statement helpers ----------------------------------------------------

    async def create_table(
        self,
        name: str,
        columns: Iterable[Union[ColumnSpec, Dict[str, Any]]],
        schema: Optional[str] = None,
        approved: bool = False,
        dry_run: Optional[bool] = None,
    ) -> DDLResult:
        columns = [ColumnSpec.model_validate(c) for c in columns]
        sql = statements.create_table(
            statements.ensure_prefix(name, self.prefix), columns, schema
        )
        return await self.execute_ddl(sql, approved=approved, dry_run=dry_run)

    async def create_view(
        self,
        name: str,
        select_sql: str,
        schema: Optional[str] = None,
        approved: bool = False,
        dry_run: Optional[bool] = None,
    ) -> DDLResult:
        sql = statements.create_view(
            statements.ensure_prefix(name, self.prefix), select_sql, schema
        )
        return await self.execute_ddl(sql, approved=approved, dry_run=dry_run)

    async def create_materialized_view(
        self,
        name: str,
        select_sql: str,
        schema: Optional[str] = None,
        approved: bool = False,
        dry_run: Optional[bool] = None,
    ) -> DDLResult:
        sql = statements.create_materialized_view(
            statements.ensure_prefix(name, self.prefix), select_sql, schema
        )
        return await self.execute_ddl(sql, approved=approved, dry_run=dry_run)

    async def create_index(
        self,
        name: str,
        table: str,
        columns: List[str],
        unique: bool = False,
        schema: Optional[str] = None,
        approved: bool = False,
        dry_run: Optional[bool] = None,
    ) -> DDLResult:
        sql = statements.create_index(
            statements.ensure_prefix(name, self.prefix), table, columns, unique, schema
        )
        return await self.execute_ddl(sql, approved=approved, dry_run=dry_run)

    async def drop_object(
        self,
        object_type: Union[ObjectType, str],
        name: str,
        schema: Optional[str] = None,
        approved: bool = False,
        dry_run: Optional[bool] = None,
    ) -> DDLResult:
        sql = statements.drop(
            ObjectType(object_type), statements.ensure_prefix(name, self.prefix), schema
        )
        return await self.execute_ddl(sql, approved=approved, dry_run=dry_run)

    # -- introspection --------------------------------------------------------

    async def get_table_ddl(self, name: str, schema: Optional[str] = None) -> Optional[str]:
        return await self.fetch_value(self.catalog.table_ddl(name, schema), "ddl")

    async def get_view_ddl(self, name: str, schema: Optional[str] = None) -> Optional[str]:
        return await self.fetch_value(self.catalog.view_ddl(name, schema), "ddl")

    async def list_own_objects(self) -> OwnedObjectInventory:
        inventory = OwnedObjectInventory()
        for category, query in _INVENTORY:
            if (sql := query(self.catalog, self.prefix)) is None:
                continue
            try:
                rows = await self.fetch(sql)
            except self.catalog_errors as e:
                logger.warning(
                    "catalog_category_unavailable",
                    category=category,
                    database_id=self.database_id,
                    error=str(e),
                )
                inventory.errors[category] = str(e)
                continue
            setattr(inventory, category, [OwnedObject.model_validate(r) for r in rows])
        return inventory

    async def get_schemas(self) -> List[str]:
        return [r["schema_name"] for r in await self.fetch(self.catalog.schemas())]

    async def get_current_schema(self) -> Optional[str]:
        return await self.fetch_value(self.catalog.current_schema(), "current_schema")

    async def explore_tables(
        self, schema: str, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        return await self.fetch(self.catalog.tables_overview(schema, limit))

    async def explore_schema_tables_detailed(
        self, schema: str, include_columns: bool = True, limit: Optional[int] = None
    ) -> List[TableDetail]:
        sql = self.catalog.tables_detailed(schema, limit) or self.catalog.tables_overview(
            schema, limit
        )
        tables = []
        for row in await self.fetch(sql):
            table = TableDetail(
                name=row["table_name"],
                type=row.get("table_type"),
                comment=row.get("table_comment"),
                size=row.get("table_size"),
            )
            if include_columns and (
                column_sql := self.catalog.columns_detailed(schema, table.name)
            ):
                table.columns = [
                    ColumnDetail(
                        name=c["column_name"],
                        type=c.get("data_type"),
                        nullable=c.get("is_nullable") == "YES",
                        default=c.get("column_default"),
                        length=c.get("character_maximum_length"),
                        precision=c.get("numeric_precision"),
                        scale=c.get("numeric_scale"),
                        comment=c.get("column_comment"),
                        is_primary_key=bool(c.get("is_primary_key")),
                        is_foreign_key=bool(c.get("is_foreign_key")),
                        foreign_table=c.get("foreign_table_name"),
                        foreign_column=c.get("foreign_column_name"),
                    )
                    for c in await self.fetch(column_sql)
                ]
            tables.append(table)
        return tables

    async def analyze_table_relationships(
        self, schema: str, table_names: Optional[List[str]] = None
    ) -> List[Relationship]:
        if (sql := self.catalog.foreign_keys(schema, table_names)) is None:
            return []
        return [
            Relationship.model_validate(row | {"confidence": 1.0})
            for row in await self.fetch(sql)
        ]

    async def suggest_virtual_relationships(
        self, schema: str, confidence_threshold: float = 0.7
    ) -> List[Relationship]:
        if (sql := self.catalog.schema_columns(schema)) is None:
            return []
        columns = [CatalogColumn.model_validate(r) for r in await self.fetch(sql)]
        return relationships.suggest(columns, confidence_threshold)
