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
import asyncio
import time
from functools import wraps
from typing import Any, Callable, ClassVar, Dict, List, Optional, Annotated

from aiohttp import ClientResponseError
from mcp.server.fastmcp.exceptions import ToolError

from metabaseai import log
from metabaseai.ai.assistant import LLMAssistant
from metabaseai.analytics import layout
from metabaseai.api.metabase.client import BiApiClient
from metabaseai.config import settings
from metabaseai.config.tools import ToolType
from metabaseai.db.manager import ConnectionManager, ExecutorHandle, get_manager
from metabaseai.db.models import Relationship
from metabaseai.db.operations import ConnectionMode, OperationType
from metabaseai.errors import (
    DatabaseConnectionError,
    MetabaseAIError,
    OperationTimeout,
    UnsupportedOperation,
)

logger = log.logger(__name__)

_SYSTEM_SCHEMAS = {"information_schema", "pg_catalog", "mysql", "performance_schema", "sys"}


def format_errors(fn: Callable) -> Callable:
    """Report failures to the agent as ``[category] ExceptionName: message``."""

    @wraps(fn)
    async def wrapper(*args, **kw):
        try:
            return await fn(*args, **kw)
        except MetabaseAIError as e:
            raise ToolError(f"[{e.category}] {e.__class__.__name__}: {e}") from e
        except ClientResponseError as e:
            raise ToolError(
                f"[infrastructure] {e.__class__.__name__}: HTTP {e.status} {e.message}"
            ) from e

    return wrapper


class Tools:
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = None

    def __init__(
        self,
        client: Optional[BiApiClient] = None,
        manager: Optional[ConnectionManager] = None,
        assistant: Optional[LLMAssistant] = None,
    ):
        self._client = client
        self._manager = manager
        self._assistant = assistant

    @property
    def client(self) -> BiApiClient:
        if self._client is None:
            self._client = BiApiClient()
        return self._client

    @property
    def manager(self) -> ConnectionManager:
        if self._manager is None:
            self._manager = get_manager()
        return self._manager

    @property
    def assistant(self) -> LLMAssistant:
        if self._assistant is None:
            self._assistant = LLMAssistant()
        return self._assistant

    async def handle(self, database_id: int) -> ExecutorHandle:
        return await self.manager.get_connection(self.client, database_id)

    async def run(self, database_id: int, operation: str, *args, **kw) -> Any:
        return await self.manager.execute_operation(
            await self.handle(database_id), operation, *args, **kw
        )

    async def generate_sql(self, description: str, database_id: int) -> str:
        tables = [
            {
                "name": t.name,
                "schema": t.schema_,
                "columns": [{"name": f.name, "type": f.base_type} for f in t.fields],
            }
            for t in await self.client.get_database_tables(database_id)
        ]
        return await self.assistant.generate_sql(description, tables)


# --------------------------------------------------------------------------------
# exploration


class ListDatabases(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_EXPLORATION

    async def invoke(self) -> List[Dict[str, Any]]:
        """Lists the databases connected to Metabase with their id, name and engine."""
        return [
            {"id": db.id, "name": db.name, "engine": db.engine}
            for db in await self.client.get_databases()
        ]


class GetDatabaseSchemas(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_EXPLORATION

    async def invoke(self, database_id: int) -> List[str]:
        """Lists the schemas Metabase knows for the given database id."""
        return await self.client.get_database_schemas(database_id)


class GetDatabaseTables(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_EXPLORATION

    async def invoke(self, database_id: int) -> List[Dict[str, Any]]:
        """Lists the tables of a database with their schema and column names.

        Args:
            database_id: the Metabase database id
        """
        return [
            {
                "id": t.id,
                "name": t.name,
                "schema": t.schema_,
                "display_name": t.display_name,
                "fields": [f.name for f in t.fields],
            }
            for t in await self.client.get_database_tables(database_id)
        ]


class RunSqlQuery(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_EXPLORATION

    async def invoke(
        self,
        database_id: int,
        sql: str,
        limit: int = 1000,
        approved: bool = False,
        dry_run: bool = True,
    ) -> Dict[str, Any]:
        """Runs a SQL statement through Metabase and returns the columns and rows.

        Anything other than a SELECT goes through the statement guard. CREATE
        and DROP need the object name prefix and statements that cannot be
        classified are rejected. Writes are only previewed unless dry_run is
        false and approved is true.

        Args:
            database_id: the Metabase database id
            sql: a single SQL statement
            limit: the maximum number of rows to return
            approved: set to true, after the user confirmed, to execute a write
            dry_run: for writes, only show what would be executed
        """
        if self.client.policy.classify(sql).type != OperationType.SELECT:
            if dry_run:
                result = await self.run(database_id, "previewDDL", sql)
            else:
                result = await self.run(database_id, "executeDDL", sql, approved=approved)
            return result.model_dump(mode="json")

        response = await self.client.run_native_query(database_id, sql)
        rows = response.data.rows
        return {
            "columns": response.data.column_names,
            "rows": rows[:limit],
            "row_count": len(rows),
            "truncated": len(rows) > limit,
        }


class TestQuerySpeed(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_EXPLORATION

    async def invoke(self, database_id: int, sql: str) -> Dict[str, Any]:
        """Runs a read only query and reports how long it took and how many rows it returned."""
        self.client.policy.check_read_only(sql)
        start = time.perf_counter()
        response = await self.client.run_query(database_id, sql)
        elapsed_ms = round((time.perf_counter() - start) * 1000, 1)
        if elapsed_ms < 1000:
            rating = "fast"
        elif elapsed_ms < 5000:
            rating = "moderate"
        else:
            rating = "slow"
        return {
            "elapsed_ms": elapsed_ms,
            "row_count": len(response.data.rows),
            "rating": rating,
        }


class GetConnectionInfo(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_EXPLORATION

    async def invoke(self, database_id: int) -> Dict[str, Any]:
        """Shows how the database behind a Metabase database id is reached. The password is never shown."""
        info = await self.client.get_database_connection_info(database_id)
        return info.redacted()


class CheckConnection(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_EXPLORATION

    async def invoke(self) -> Dict[str, Any]:
        """Checks that Metabase is reachable with the configured credentials and shows the signed in user."""
        user = await self.client.test_connection()
        return {
            "connected": True,
            "uri": self.client.config.uri,
            "user": user.get("email"),
            "is_superuser": user.get("is_superuser", False),
        }


# --------------------------------------------------------------------------------
# metabase objects


class ListQuestions(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_BI

    async def invoke(self, collection_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """Lists saved questions, optionally only those in one collection."""
        return [
            {
                "id": c.id,
                "name": c.name,
                "display": c.display,
                "collection_id": c.collection_id,
            }
            for c in await self.client.get_questions(collection_id)
        ]


class CreateQuestion(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_BI

    async def invoke(
        self,
        name: str,
        database_id: int,
        sql: str,
        description: Optional[str] = None,
        collection_id: Optional[int] = None,
        display: str = "table",
    ) -> Dict[str, Any]:
        """Saves a native SQL question in Metabase.

        Args:
            name: the question name
            database_id: the Metabase database id
            sql: a read only SQL query
            description: optional description
            collection_id: the collection to save into, the root collection if omitted
            display: the visualization, e.g. table, bar, line, pie, scalar
        """
        self.client.policy.check_read_only(sql)
        card = await self.client.create_sql_question(
            name, database_id, sql, description, collection_id, display
        )
        return card.model_dump(mode="json")


class CreateParametricQuestion(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_BI

    async def invoke(
        self,
        name: str,
        database_id: int,
        sql: str,
        parameters: List[Dict[str, Any]],
        description: Optional[str] = None,
        collection_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Saves a SQL question with filter parameters.

        The query references each parameter as {{name}}, optional clauses can be
        wrapped as [[AND column = {{name}}]].

        Args:
            name: the question name
            database_id: the Metabase database id
            sql: a read only SQL query using {{parameter}} placeholders
            parameters: list of objects with name, type (text, number, date), display_name and default
            description: optional description
            collection_id: the collection to save into
        """
        self.client.policy.check_read_only(sql)
        if missing := [p["name"] for p in parameters if "{{" + p["name"] + "}}" not in sql]:
            raise UnsupportedOperation(f"Parameters not referenced in the query: {missing}")
        card = await self.client.create_parametric_question(
            name, database_id, sql, parameters, description, collection_id
        )
        return card.model_dump(mode="json")


class ListDashboards(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_BI

    async def invoke(self) -> List[Dict[str, Any]]:
        """Lists Metabase dashboards."""
        return [
            {"id": d.id, "name": d.name, "collection_id": d.collection_id}
            for d in await self.client.get_dashboards()
        ]


class CreateDashboard(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_BI

    async def invoke(
        self,
        name: str,
        description: Optional[str] = None,
        collection_id: Optional[int] = None,
        card_ids: Optional[List[int]] = None,
    ) -> Dict[str, Any]:
        """Creates a dashboard and, optionally, places existing questions on it three per row."""
        dashboard = await self.client.create_dashboard(name, description, collection_id)
        for i, card_id in enumerate(card_ids or []):
            await self.client.add_card_to_dashboard(
                dashboard.id, card_id, *layout.grid_position(i)
            )
        return {"id": dashboard.id, "name": dashboard.name, "cards": card_ids or []}


class AddCardToDashboard(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_BI

    async def invoke(
        self,
        dashboard_id: int,
        card_id: int,
        row: int = 0,
        col: int = 0,
        size_x: int = 4,
        size_y: int = 4,
    ) -> Dict[str, Any]:
        """Places a saved question on a dashboard at the given position of the 12 column grid."""
        dashboard = await self.client.add_card_to_dashboard(
            dashboard_id, card_id, row, col, size_x, size_y
        )
        return {"id": dashboard_id, "cards": len(dashboard.dashcards)}


class AddDashboardFilter(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_BI

    async def invoke(
        self,
        dashboard_id: int,
        name: str,
        filter_type: str = "string/=",
        default: Optional[Any] = None,
    ) -> Dict[str, Any]:
        """Adds a filter to a dashboard.

        Args:
            dashboard_id: the dashboard id
            name: the filter label
            filter_type: a Metabase parameter type such as string/=, number/=, date/all-options, category
            default: optional default value
        """
        dashboard = await self.client.add_dashboard_filter(
            dashboard_id, name, filter_type, default
        )
        return {"id": dashboard_id, "parameters": dashboard.parameters}


class CreateExecutiveDashboard(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_BI

    async def invoke(
        self,
        name: str,
        database_id: int,
        schema: Optional[str] = None,
        collection_id: Optional[int] = None,
        days: int = 30,
    ) -> Dict[str, Any]:
        """Builds an executive dashboard: KPI cards, trend charts and tables derived
        from the sales, customer and product tables found in the schema."""
        if schema is None:
            candidates = [
                s
                for s in await self.client.get_database_schemas(database_id)
                if s.lower() not in _SYSTEM_SCHEMAS
            ]
            if not candidates:
                raise UnsupportedOperation(f"No usable schema in database {database_id}")
            schema = candidates[0]

        handle = await self.handle(database_id)
        tables = await self.manager.execute_operation(
            handle, "exploreSchemaTablesDetailed", schema, True, 10
        )
        questions = layout.executive_questions(schema, tables, handle.engine, days)
        if not questions:
            raise UnsupportedOperation(
                f"No sales, customer or product tables recognised in schema '{schema}'"
            )

        dashboard = await self.client.create_dashboard(
            name, f"Executive dashboard for {schema}", collection_id
        )
        cards, warnings = [], []
        for i, q in enumerate(questions):
            try:
                card = await self.client.create_sql_question(
                    q.name,
                    database_id,
                    q.sql,
                    f"Executive KPI - {q.name}",
                    collection_id,
                    q.display,
                )
                await self.client.add_card_to_dashboard(
                    dashboard.id, card.id, *layout.executive_position(i)
                )
                cards.append({"id": card.id, "name": q.name})
            except ClientResponseError as e:
                logger.warning("executive_card_failed", question=q.name, error=e.message)
                warnings.append(f"{q.name}: {e.message}")
        return {
            "id": dashboard.id,
            "name": dashboard.name,
            "schema": schema,
            "cards": cards,
            "warnings": warnings,
        }


class ListCollections(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_BI

    async def invoke(self) -> List[Dict[str, Any]]:
        """Lists Metabase collections."""
        return [
            {"id": c.id, "name": c.name, "location": c.location}
            for c in await self.client.get_collections()
        ]


class CreateCollection(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_BI

    async def invoke(
        self,
        name: str,
        description: Optional[str] = None,
        parent_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Creates a collection, nested under parent_id when given."""
        collection = await self.client.create_collection(name, description, parent_id)
        return collection.model_dump(mode="json")


class CreateMetric(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_BI

    async def invoke(
        self,
        name: str,
        table_id: int,
        aggregation: str = "count",
        field_id: Optional[int] = None,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Defines a reusable metric on a table.

        Args:
            name: the metric name
            table_id: the Metabase table id
            aggregation: count, sum, avg, min, max or distinct
            field_id: the field to aggregate, not needed for count
            description: optional description
        """
        if field_id is None and aggregation != "count":
            raise UnsupportedOperation(f"Aggregation '{aggregation}' needs a field_id")
        clause = [aggregation] if field_id is None else [aggregation, ["field", field_id, None]]
        return await self.client.create_metric(name, table_id, [clause], description)


class ListMetrics(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_BI

    async def invoke(self) -> List[Dict[str, Any]]:
        """Lists the metrics defined in Metabase."""
        return [
            {
                "id": m.get("id"),
                "name": m.get("name"),
                "table_id": m.get("table_id"),
                "description": m.get("description"),
            }
            for m in await self.client.get_metrics()
        ]


class ListModels(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_BI

    async def invoke(self) -> List[Dict[str, Any]]:
        """Lists Metabase models, the curated datasets questions can be built on."""
        return [
            {"id": m.id, "name": m.name, "collection_id": m.collection_id}
            for m in await self.client.get_models()
        ]


class CreateModel(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_BI

    async def invoke(
        self,
        name: str,
        database_id: int,
        sql: str,
        description: Optional[str] = None,
        collection_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Saves a read only SQL query as a Metabase model."""
        self.client.policy.check_read_only(sql)
        model = await self.client.create_model(
            name, database_id, sql, description, collection_id
        )
        return model.model_dump(mode="json")


# --------------------------------------------------------------------------------
# llm


class GenerateSql(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_AI

    async def invoke(self, description: str, database_id: int) -> Dict[str, Any]:
        """Writes a SQL query for a plain language description, using the tables of the database."""
        return {
            "description": description,
            "sql": await self.generate_sql(description, database_id),
        }


class OptimizeSql(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_AI

    async def invoke(self, sql: str) -> Dict[str, Any]:
        """Suggests a faster version of a query along with the changes made."""
        return await self.assistant.optimize_sql(sql)


class ExplainSql(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_AI

    async def invoke(self, sql: str) -> str:
        """Explains in plain language what a query does."""
        return await self.assistant.explain_sql(sql)


class SuggestVisualization(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_AI

    async def invoke(self, description: str, sql: str) -> Dict[str, Any]:
        """Suggests the Metabase visualization and settings that suit a question best."""
        return await self.assistant.suggest_visualization(description, sql)


class AnalyzeRequest(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_AI

    async def invoke(self, request: str) -> Dict[str, Any]:
        """Works out which kind of Metabase object (model, question, sql, metric,
        dashboard) a plain language request asks for, with its parameters."""
        return await self.assistant.analyze_request(request)


class CreateQuestionFromDescription(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_AI

    async def invoke(
        self,
        description: str,
        database_id: int,
        collection_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Writes the SQL for a plain language question, picks a visualization and
        saves it as a Metabase question."""
        sql = await self.generate_sql(description, database_id)
        self.client.policy.check_read_only(sql)
        suggestion = await self.assistant.suggest_visualization(description, sql)
        card = await self.client.create_sql_question(
            self.assistant.generate_name(description, "Question"),
            database_id,
            sql,
            description,
            collection_id,
        )
        if suggestion["visualization"] != "table":
            card = await self.client.update_card(
                card.id,
                {
                    "display": suggestion["visualization"],
                    "visualization_settings": suggestion["settings"],
                },
            )
        return card.model_dump(mode="json") | {
            "sql": sql,
            "reasoning": suggestion.get("reasoning"),
        }


class CreateModelFromDescription(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_AI

    async def invoke(
        self,
        description: str,
        database_id: int,
        collection_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Writes the SQL for a plain language description and saves it as a Metabase model."""
        sql = await self.generate_sql(description, database_id)
        self.client.policy.check_read_only(sql)
        model = await self.client.create_model(
            self.assistant.generate_name(description, "Model"),
            database_id,
            sql,
            description,
            collection_id,
        )
        return model.model_dump(mode="json") | {"sql": sql}


# --------------------------------------------------------------------------------
# guarded DDL


class DDLTool(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_DDL

    async def schema_choices(
        self, handle: ExecutorHandle, schema: Optional[str]
    ) -> Optional[Dict[str, Any]]:
        # a direct connection can list schemas, so ask rather than guess
        if schema is not None or handle.mode != ConnectionMode.direct:
            return None
        return {
            "schema_required": True,
            "message": "Pass schema to choose where the object is created",
            "schemas": await self.manager.execute_operation(handle, "getSchemas"),
            "current_schema": await self.manager.execute_operation(
                handle, "getCurrentSchema"
            ),
        }

    async def ddl(
        self, database_id: int, operation: str, schema: Optional[str], *args, **kw
    ) -> Dict[str, Any]:
        handle = await self.handle(database_id)
        if (choices := await self.schema_choices(handle, schema)) is not None:
            return choices
        result = await self.manager.execute_operation(
            handle, operation, *args, schema=schema, **kw
        )
        return result.model_dump(mode="json")


class CreateTable(DDLTool):
    async def invoke(
        self,
        database_id: int,
        name: str,
        columns: List[Dict[str, Any]],
        schema: Optional[str] = None,
        approved: bool = False,
        dry_run: bool = True,
    ) -> Dict[str, Any]:
        """Creates a table whose name carries the configured prefix (added when missing).

        Runs as a preview unless dry_run is false; executing also needs approved
        set to true after the user confirmed the statement.

        Args:
            database_id: the Metabase database id
            name: the table name
            columns: list of objects with name, type and optional constraints, e.g. {"name": "id", "type": "SERIAL", "constraints": "PRIMARY KEY"}
            schema: the schema to create the table in
            approved: the user approved the statement
            dry_run: only show the statement
        """
        return await self.ddl(
            database_id, "createTable", schema, name, columns,
            approved=approved, dry_run=dry_run,
        )


class CreateView(DDLTool):
    async def invoke(
        self,
        database_id: int,
        name: str,
        select_sql: str,
        schema: Optional[str] = None,
        approved: bool = False,
        dry_run: bool = True,
    ) -> Dict[str, Any]:
        """Creates a view over a SELECT query. The name gets the configured prefix.
        Executes only with dry_run false and approved true."""
        return await self.ddl(
            database_id, "createView", schema, name, select_sql,
            approved=approved, dry_run=dry_run,
        )


class CreateMaterializedView(DDLTool):
    async def invoke(
        self,
        database_id: int,
        name: str,
        select_sql: str,
        schema: Optional[str] = None,
        approved: bool = False,
        dry_run: bool = True,
    ) -> Dict[str, Any]:
        """Creates a PostgreSQL materialized view over a SELECT query. The name
        gets the configured prefix. Executes only with dry_run false and approved true."""
        return await self.ddl(
            database_id, "createMaterializedView", schema, name, select_sql,
            approved=approved, dry_run=dry_run,
        )


class CreateIndex(DDLTool):
    async def invoke(
        self,
        database_id: int,
        name: str,
        table: str,
        columns: List[str],
        unique: bool = False,
        schema: Optional[str] = None,
        approved: bool = False,
        dry_run: bool = True,
    ) -> Dict[str, Any]:
        """Creates an index on a table. The index name gets the configured prefix.
        Executes only with dry_run false and approved true."""
        return await self.ddl(
            database_id, "createIndex", schema, name, table, columns, unique,
            approved=approved, dry_run=dry_run,
        )


class GetTableDDL(DDLTool):
    async def invoke(
        self, database_id: int, name: str, schema: Optional[str] = None
    ) -> Dict[str, Any]:
        """Shows the CREATE TABLE statement of a table (PostgreSQL only)."""
        ddl = await self.run(database_id, "getTableDDL", name, schema)
        return {"name": name, "ddl": ddl, "found": ddl is not None}


class GetViewDDL(DDLTool):
    async def invoke(
        self, database_id: int, name: str, schema: Optional[str] = None
    ) -> Dict[str, Any]:
        """Shows the definition of a view or materialized view (PostgreSQL only)."""
        ddl = await self.run(database_id, "getViewDDL", name, schema)
        return {"name": name, "ddl": ddl, "found": ddl is not None}


class ListOwnObjects(DDLTool):
    async def invoke(self, database_id: int) -> Dict[str, Any]:
        """Lists the tables, views, materialized views and indexes carrying the configured prefix."""
        handle = await self.handle(database_id)
        inventory = await self.manager.execute_operation(handle, "listOwnObjects")
        return inventory.model_dump(mode="json") | {
            "prefix": handle.executor.prefix,
            "mode": str(handle.mode),
            "total": inventory.total,
        }


class DropOwnObject(DDLTool):
    async def invoke(
        self,
        database_id: int,
        object_type: str,
        name: str,
        schema: Optional[str] = None,
        approved: bool = False,
        dry_run: bool = True,
    ) -> Dict[str, Any]:
        """Drops a table, view, materialized_view or index created with the configured prefix.

        Objects without the prefix can never be dropped. Executes only with
        dry_run false and approved true.
        """
        result = await self.run(
            database_id, "dropObject", object_type, name, schema,
            approved=approved, dry_run=dry_run,
        )
        return result.model_dump(mode="json")


# --------------------------------------------------------------------------------
# relationships


class ExploreSchema(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_RELATIONSHIPS

    async def invoke(
        self, database_id: int, schema: str, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Lists the tables of a schema with their column counts. Works whether or not a direct connection is available."""
        return await self.run(database_id, "exploreTables", schema, limit)


class AnalyzeSchema(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_RELATIONSHIPS

    async def invoke(
        self,
        database_id: int,
        schema: str,
        include_columns: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Describes each table in a schema with its columns, types, keys and
        comments. Needs a direct database connection."""
        handle = await self.handle(database_id)
        if handle.mode != ConnectionMode.direct:
            raise DatabaseConnectionError(
                f"Database {database_id} has no direct connection, use ExploreSchema instead"
            )
        timeout = settings.instance().connections.schema_explore_timeout
        try:
            tables = await asyncio.wait_for(
                self.manager.execute_operation(
                    handle, "exploreSchemaTablesDetailed", schema, include_columns, limit
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise OperationTimeout(
                f"Exploring schema '{schema}' took longer than {timeout}s"
            ) from e
        return [t.model_dump(mode="json") for t in tables]


class DetectRelationships(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_RELATIONSHIPS

    async def invoke(
        self, database_id: int, schema: str, table_names: Optional[List[str]] = None
    ) -> List[Dict[str, Any]]:
        """Lists the foreign keys declared in a schema, optionally for some tables only."""
        relationships = await self.run(
            database_id, "analyzeTableRelationships", schema, table_names
        )
        return [r.model_dump(mode="json", exclude_none=True) for r in relationships]


class SuggestRelationships(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_RELATIONSHIPS

    async def invoke(
        self, database_id: int, schema: str, confidence_threshold: float = 0.7
    ) -> List[Dict[str, Any]]:
        """Suggests undeclared relationships from column names and types, each
        with a confidence between 0 and 1 and the reasoning behind it."""
        relationships = await self.run(
            database_id, "suggestVirtualRelationships", schema, confidence_threshold
        )
        return [r.model_dump(mode="json", exclude_none=True) for r in relationships]


class CreateRelationshipMappings(Tools):
    For: ClassVar[Annotated[ToolType, "The type of tool"]] = ToolType.FOR_RELATIONSHIPS

    async def invoke(
        self,
        database_id: int,
        relationships: List[Dict[str, Any]],
        confirmed: bool = False,
    ) -> Dict[str, Any]:
        """Records relationships as foreign keys in Metabase's metadata so joins
        and drill through work. Nothing is changed in the database itself.

        Args:
            database_id: the Metabase database id
            relationships: objects with source_table, source_column, target_table, target_column
            confirmed: must be true, after the user reviewed the list, to apply the mappings
        """
        relationships = [Relationship.model_validate(r) for r in relationships]
        if not confirmed:
            return {
                "confirmed": False,
                "message": "Review the mappings and call again with confirmed=true",
                "relationships": [r.model_dump(mode="json", exclude_none=True) for r in relationships],
            }

        fields = {
            (t.name, f.name): f.id
            for t in await self.client.get_database_tables(database_id)
            for f in t.fields
        }
        applied, skipped = [], []
        for r in relationships:
            source = fields.get((r.source_table, r.source_column))
            target = fields.get((r.target_table, r.target_column))
            mapping = f"{r.source_table}.{r.source_column} -> {r.target_table}.{r.target_column}"
            if source is None or target is None:
                skipped.append({"mapping": mapping, "reason": "field not found in Metabase"})
                continue
            await self.client.update_field(source, "type/FK", target)
            applied.append(mapping)
        logger.info(
            "relationship_mappings_applied",
            database_id=database_id,
            applied=len(applied),
            skipped=len(skipped),
        )
        return {"confirmed": True, "applied": applied, "skipped": skipped}


# --------------------------------------------------------------------------------


def get_for(tool: type) -> ToolType:
    return tool.For


def get_tools(For: ToolType = None) -> List[type]:
    if For is None:
        For = settings.instance().tools.server_mode
    return [
        t
        for t in Tools.__subclasses__() + DDLTool.__subclasses__()
        if t.For is not None and t is not DDLTool and (t.For & For) != 0
    ]


def system_prompt() -> str:
    policy = settings.instance().policy
    return f"""
You are helping a user explore and build on their Metabase instance and the
databases behind it.

- Start with ListDatabases, then GetDatabaseTables or ExploreSchema to learn
  the tables before writing SQL.
- Any table, view, materialized view or index you create or drop must be named
  with the prefix '{policy.name_prefix}'. The prefix is added for you when
  missing; objects without it can not be changed.
- DDL tools preview by default. Show the user the statement, and only after
  they agree call the tool again with dry_run=false and approved=true.
- Errors start with a category. [policy] means the request must change,
  [approval] means the user has to approve, [infrastructure] and [timeout]
  mean the system could not complete it.
- Relationship mappings only change Metabase metadata, and need confirmed=true.
"""
