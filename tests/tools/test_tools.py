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
from types import SimpleNamespace

import pytest
from aiohttp import ClientResponseError
from mcp.server.fastmcp.exceptions import ToolError
from unittest.mock import AsyncMock, Mock

from conftest import FakeDriver
from metabaseai.ai.assistant import LLMAssistant
from metabaseai.api.metabase.client import BiApiClient
from metabaseai.api.metabase.models import (
    Card,
    Dashboard,
    DatasetData,
    DatasetResponse,
    Engine,
    Table,
    TableField,
)
from metabaseai.config.tools import ToolType
from metabaseai.db.direct import DatabaseExecutor
from metabaseai.db.manager import ConnectionManager
from metabaseai.db.models import ColumnDetail, TableDetail
from metabaseai.db.policy import SecurityPolicy
from metabaseai.errors import (
    ApprovalRequired,
    DatabaseConnectionError,
    OperationNotAllowed,
    PrefixViolation,
    UnsupportedOperation,
)
from metabaseai.tools import tools

ALL_TOOLS = (
    ToolType.FOR_EXPLORATION
    | ToolType.FOR_BI
    | ToolType.FOR_AI
    | ToolType.FOR_DDL
    | ToolType.FOR_RELATIONSHIPS
)


def http_error(status, message):
    return ClientResponseError(
        request_info=Mock(), history=(), status=status, message=message
    )


@pytest.fixture
def driver():
    return FakeDriver(
        {
            "current_schema()": [{"current_schema": "public"}],
            "information_schema.schemata": [
                {"schema_name": "analytics"},
                {"schema_name": "public"},
            ],
        }
    )


@pytest.fixture
def client(postgres_info):
    client = AsyncMock()
    client.policy = SecurityPolicy()
    client.get_database_connection_info.return_value = postgres_info
    return client


@pytest.fixture
def manager(mock_settings_instance, driver):
    def factory(info, policy, masked_passwords=()):
        return DatabaseExecutor(
            info, policy, driver=driver, masked_passwords=masked_passwords
        )

    return ConnectionManager(direct_factory=factory)


@pytest.fixture
def proxy_client(client, postgres_info):
    client.get_database_connection_info.return_value = postgres_info.model_copy(
        update={"password": "**MetabasePass**"}
    )
    return client


class TestErrorFormatting:
    @pytest.mark.asyncio
    async def test_policy_error(self):
        async def fn():
            raise PrefixViolation("customers", "claude_ai_")

        with pytest.raises(ToolError, match=r"^\[policy\] PrefixViolation: .*claude_ai_"):
            await tools.format_errors(fn)()

    @pytest.mark.asyncio
    async def test_approval_error(self):
        async def fn():
            raise ApprovalRequired("CREATE TABLE claude_ai_t (id int)")

        with pytest.raises(ToolError, match=r"^\[approval\] ApprovalRequired"):
            await tools.format_errors(fn)()

    @pytest.mark.asyncio
    async def test_http_error(self):
        async def fn():
            raise http_error(503, "Service Unavailable")

        with pytest.raises(
            ToolError, match=r"^\[infrastructure\] ClientResponseError: HTTP 503"
        ):
            await tools.format_errors(fn)()

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        async def fn():
            raise KeyError("x")

        with pytest.raises(KeyError):
            await tools.format_errors(fn)()


class TestRegistry:
    def test_ddl_tools(self):
        names = {t.__name__ for t in tools.get_tools(ToolType.FOR_DDL)}
        assert "CreateTable" in names
        assert "DropOwnObject" in names
        assert "DDLTool" not in names
        assert "RunSqlQuery" not in names

    def test_combined_modes(self):
        combined = tools.get_tools(ToolType.FOR_EXPLORATION | ToolType.FOR_AI)
        names = {t.__name__ for t in combined}
        assert {"RunSqlQuery", "GenerateSql"} <= names
        assert all(tools.get_for(t) & (ToolType.FOR_EXPLORATION | ToolType.FOR_AI) for t in combined)

    def test_server_mode_default(self, mock_settings_instance):
        assert set(tools.get_tools()) == set(tools.get_tools(ToolType.FOR_EXPLORATION))

    def test_every_tool_documented(self):
        for t in tools.get_tools(ALL_TOOLS):
            assert t.invoke.__doc__, t.__name__

    def test_system_prompt_mentions_prefix(self, mock_settings_instance):
        assert "'claude_ai_'" in tools.system_prompt()


class TestRunSqlQuery:
    @pytest.mark.asyncio
    async def test_select_rows_truncated(self, client, manager):
        client.run_native_query.return_value = DatasetResponse(
            status="completed",
            data=DatasetData(cols=[{"name": "n"}], rows=[[1], [2], [3]]),
        )
        result = await tools.RunSqlQuery(client, manager).invoke(1, "SELECT n FROM t", limit=2)
        assert result == {"columns": ["n"], "rows": [[1], [2]], "row_count": 3, "truncated": True}

    @pytest.mark.asyncio
    async def test_ddl_previewed(self, client, manager, driver):
        result = await tools.RunSqlQuery(client, manager).invoke(
            1, "CREATE TABLE claude_ai_t (id int)"
        )
        assert result["dry_run"]
        assert driver.executed == []
        client.run_native_query.assert_not_called()

    @pytest.mark.asyncio
    async def test_ddl_needs_approval(self, client, manager, driver):
        with pytest.raises(ApprovalRequired):
            await tools.RunSqlQuery(client, manager).invoke(
                1, "CREATE TABLE claude_ai_t (id int)", dry_run=False
            )
        result = await tools.RunSqlQuery(client, manager).invoke(
            1, "CREATE TABLE claude_ai_t (id int)", dry_run=False, approved=True
        )
        assert result["status"] == "success"
        assert driver.executed == ["CREATE TABLE claude_ai_t (id int)"]

    @pytest.mark.asyncio
    async def test_unprefixed_ddl_rejected(self, client, manager):
        with pytest.raises(PrefixViolation):
            await tools.RunSqlQuery(client, manager).invoke(1, "DROP TABLE customers")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "sql, error",
        [
            ("/* c */ DROP TABLE customers", PrefixViolation),
            ("-- x\nDROP TABLE customers", PrefixViolation),
            ("ALTER TABLE customers DROP COLUMN email", UnsupportedOperation),
            ("DROP SCHEMA public CASCADE", UnsupportedOperation),
            ("DROP TABLE IF EXISTS claude_ai_a, customers", PrefixViolation),
        ],
    )
    @pytest.mark.parametrize("dry_run", [True, False])
    async def test_guard_cannot_be_bypassed(self, client, manager, driver, sql, error, dry_run):
        with pytest.raises(error):
            await tools.RunSqlQuery(client, manager).invoke(
                1, sql, dry_run=dry_run, approved=True
            )
        assert driver.executed == []
        client.run_native_query.assert_not_called()

    @pytest.mark.asyncio
    async def test_writes_previewed(self, client, manager, driver):
        result = await tools.RunSqlQuery(client, manager).invoke(1, "DELETE FROM orders")
        assert result["dry_run"]
        assert result["operation"] == "DELETE"
        assert driver.executed == []
        with pytest.raises(ApprovalRequired):
            await tools.RunSqlQuery(client, manager).invoke(
                1, "DELETE FROM orders", dry_run=False
            )
        client.run_native_query.assert_not_called()

    @pytest.mark.asyncio
    async def test_writing_cte_never_sent(self, mock_settings_instance, manager):
        http = AsyncMock()
        client = BiApiClient(http=http, policy=SecurityPolicy())
        with pytest.raises(OperationNotAllowed):
            await tools.RunSqlQuery(client, manager).invoke(
                1, "WITH d AS (DELETE FROM customers RETURNING *) SELECT * FROM d"
            )
        http.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_database_error_reported_as_infrastructure(self, client, manager, driver):
        driver.results["pg_class"] = PermissionError("permission denied for pg_class")
        with pytest.raises(ToolError, match=r"^\[infrastructure\] StatementError: permission denied"):
            await tools.format_errors(tools.GetTableDDL(client, manager).invoke)(
                1, "claude_ai_t"
            )


class TestDDLTools:
    @pytest.mark.asyncio
    async def test_schema_choices_in_direct_mode(self, client, manager, driver):
        result = await tools.CreateTable(client, manager).invoke(
            1, "sales", [{"name": "id", "type": "int"}]
        )
        assert result["schema_required"]
        assert result["schemas"] == ["analytics", "public"]
        assert result["current_schema"] == "public"
        assert driver.executed == []

    @pytest.mark.asyncio
    async def test_preview_with_schema(self, client, manager):
        result = await tools.CreateView(client, manager).invoke(
            1, "daily", "SELECT 1", schema="analytics"
        )
        assert result["status"] == "preview"
        assert result["sql"] == "CREATE VIEW analytics.claude_ai_daily AS SELECT 1"

    @pytest.mark.asyncio
    async def test_proxy_mode_skips_schema_choice(
        self, mock_settings_instance, proxy_client
    ):
        result = await tools.CreateIndex(proxy_client, ConnectionManager()).invoke(
            1, "by_day", "orders", ["day"]
        )
        assert result["mode"] == "proxy"
        assert result["dry_run"]

    @pytest.mark.asyncio
    async def test_drop_adds_prefix(self, client, manager, driver):
        result = await tools.DropOwnObject(client, manager).invoke(
            1, "table", "customers", dry_run=False, approved=True
        )
        assert driver.executed == ["DROP TABLE IF EXISTS claude_ai_customers"]
        assert result["object_name"] == "claude_ai_customers"

    @pytest.mark.asyncio
    async def test_list_own_objects(self, client, manager):
        result = await tools.ListOwnObjects(client, manager).invoke(1)
        assert result["prefix"] == "claude_ai_"
        assert result["mode"] == "direct"
        assert result["total"] == 0


class TestRelationshipTools:
    @pytest.mark.asyncio
    async def test_analyze_needs_direct(self, mock_settings_instance, proxy_client):
        with pytest.raises(DatabaseConnectionError):
            await tools.AnalyzeSchema(proxy_client, ConnectionManager()).invoke(1, "public")

    @pytest.mark.asyncio
    async def test_mappings_preview(self, client, manager):
        mapping = {
            "source_table": "orders",
            "source_column": "customer_id",
            "target_table": "customers",
            "target_column": "id",
        }
        result = await tools.CreateRelationshipMappings(client, manager).invoke(1, [mapping])
        assert not result["confirmed"]
        client.update_field.assert_not_called()

    @pytest.mark.asyncio
    async def test_mappings_applied(self, client, manager):
        client.get_database_tables.return_value = [
            Table(id=1, name="orders", fields=[TableField(id=11, name="customer_id")]),
            Table(id=2, name="customers", fields=[TableField(id=21, name="id")]),
        ]
        result = await tools.CreateRelationshipMappings(client, manager).invoke(
            1,
            [
                {"source_table": "orders", "source_column": "customer_id",
                 "target_table": "customers", "target_column": "id"},
                {"source_table": "orders", "source_column": "region_id",
                 "target_table": "regions", "target_column": "id"},
            ],
            confirmed=True,
        )
        client.update_field.assert_awaited_once_with(11, "type/FK", 21)
        assert result["applied"] == ["orders.customer_id -> customers.id"]
        assert result["skipped"][0]["mapping"] == "orders.region_id -> regions.id"


class TestBiTools:
    @pytest.mark.asyncio
    async def test_parametric_question_checks_placeholders(self, client, manager):
        with pytest.raises(UnsupportedOperation):
            await tools.CreateParametricQuestion(client, manager).invoke(
                "By region", 1, "SELECT * FROM orders", [{"name": "region"}]
            )
        client.create_parametric_question.assert_not_called()

    @pytest.mark.asyncio
    async def test_question_must_be_read_only(self, client, manager):
        with pytest.raises(OperationNotAllowed):
            await tools.CreateQuestion(client, manager).invoke("x", 1, "DELETE FROM orders")

    @pytest.mark.asyncio
    async def test_metric_needs_field(self, client, manager):
        with pytest.raises(UnsupportedOperation):
            await tools.CreateMetric(client, manager).invoke("Revenue", 3, "sum")
        await tools.CreateMetric(client, manager).invoke("Revenue", 3, "sum", field_id=8)
        assert client.create_metric.call_args.args[2] == [["sum", ["field", 8, None]]]

    @pytest.mark.asyncio
    async def test_dashboard_with_cards(self, client, manager):
        client.create_dashboard.return_value = Dashboard(id=9, name="Ops")
        result = await tools.CreateDashboard(client, manager).invoke("Ops", card_ids=[1, 2, 3, 4])
        assert result["cards"] == [1, 2, 3, 4]
        positions = [c.args[2:] for c in client.add_card_to_dashboard.call_args_list]
        assert positions == [(0, 0, 4, 4), (0, 4, 4, 4), (0, 8, 4, 4), (4, 0, 4, 4)]

    @pytest.mark.asyncio
    async def test_executive_dashboard(self, mock_settings_instance, client):
        client.get_database_schemas.return_value = ["information_schema", "shop"]
        client.create_dashboard.return_value = Dashboard(id=9, name="Exec")

        async def create_sql_question(name, *args):
            if name == "Total Customers":
                raise http_error(400, "Bad query")
            return Card(id=len(name), name=name)

        client.create_sql_question.side_effect = create_sql_question
        manager = AsyncMock()
        manager.get_connection.return_value = SimpleNamespace(engine=Engine.postgres)
        manager.execute_operation.return_value = [
            TableDetail(
                name="orders",
                columns=[ColumnDetail(name="amount", type="numeric")],
            ),
            TableDetail(name="customers"),
        ]

        result = await tools.CreateExecutiveDashboard(client, manager).invoke("Exec", 1)
        assert result["schema"] == "shop"
        assert [c["name"] for c in result["cards"]] == ["Total Revenue", "Total Orders"]
        assert result["warnings"] == ["Total Customers: Bad query"]
        assert manager.execute_operation.call_args.args[1:] == (
            "exploreSchemaTablesDetailed",
            "shop",
            True,
            10,
        )

    @pytest.mark.asyncio
    async def test_model_must_be_read_only(self, client, manager):
        with pytest.raises(OperationNotAllowed):
            await tools.CreateModel(client, manager).invoke(
                "Orders", 1, "/* tidy */ DROP TABLE orders"
            )
        client.create_model.assert_not_called()

    @pytest.mark.asyncio
    async def test_model_created(self, client, manager):
        client.create_model.return_value = Card(id=4, name="Orders", type="model")
        result = await tools.CreateModel(client, manager).invoke(
            "Orders", 1, "SELECT * FROM orders", collection_id=2
        )
        assert result["type"] == "model"
        client.create_model.assert_awaited_once_with(
            "Orders", 1, "SELECT * FROM orders", None, 2
        )

    @pytest.mark.asyncio
    async def test_list_models_and_metrics(self, client, manager):
        client.get_models.return_value = [Card(id=4, name="Orders", type="model")]
        client.get_metrics.return_value = [
            {"id": 1, "name": "Revenue", "table_id": 7, "definition": {}}
        ]
        assert await tools.ListModels(client, manager).invoke() == [
            {"id": 4, "name": "Orders", "collection_id": None}
        ]
        assert await tools.ListMetrics(client, manager).invoke() == [
            {"id": 1, "name": "Revenue", "table_id": 7, "description": None}
        ]

    @pytest.mark.asyncio
    async def test_check_connection(self, client, manager):
        client.config = SimpleNamespace(uri="https://metabase.example.com")
        client.test_connection.return_value = {"email": "analyst@example.com"}
        result = await tools.CheckConnection(client, manager).invoke()
        assert result == {
            "connected": True,
            "uri": "https://metabase.example.com",
            "user": "analyst@example.com",
            "is_superuser": False,
        }


@pytest.fixture
def assistant():
    assistant = AsyncMock()
    assistant.generate_name = LLMAssistant.generate_name
    return assistant


class TestAiTools:
    @pytest.mark.asyncio
    async def test_analyze_request(self, client, assistant):
        assistant.analyze_request.return_value = {"type": "dashboard", "details": {}}
        result = await tools.AnalyzeRequest(client, assistant=assistant).invoke(
            "a sales dashboard"
        )
        assert result["type"] == "dashboard"

    @pytest.mark.asyncio
    async def test_question_from_description(self, client, assistant):
        client.get_database_tables.return_value = [
            Table(id=1, name="orders", fields=[TableField(id=11, name="total")])
        ]
        client.create_sql_question.return_value = Card(id=6, name="q")
        client.update_card.return_value = Card(id=6, name="q", display="bar")
        assistant.generate_sql.return_value = "SELECT region, sum(total) FROM orders GROUP BY region"
        assistant.suggest_visualization.return_value = {
            "visualization": "bar",
            "settings": {"graph.dimensions": ["region"]},
            "reasoning": "compares regions",
        }

        result = await tools.CreateQuestionFromDescription(
            client, assistant=assistant
        ).invoke("total sales by region please", 1)

        name = client.create_sql_question.call_args.args[0]
        assert name == "total sales by region please - Question (AI Generated)"
        client.update_card.assert_awaited_once_with(
            6, {"display": "bar", "visualization_settings": {"graph.dimensions": ["region"]}}
        )
        assert result["display"] == "bar"
        assert result["reasoning"] == "compares regions"
        tables = assistant.generate_sql.call_args.args[1]
        assert tables[0]["columns"] == [{"name": "total", "type": None}]

    @pytest.mark.asyncio
    async def test_table_question_not_updated(self, client, assistant):
        client.get_database_tables.return_value = []
        client.create_sql_question.return_value = Card(id=6, name="q")
        assistant.generate_sql.return_value = "SELECT * FROM orders"
        assistant.suggest_visualization.return_value = {"visualization": "table", "settings": {}}
        await tools.CreateQuestionFromDescription(client, assistant=assistant).invoke(
            "all orders", 1
        )
        client.update_card.assert_not_called()

    @pytest.mark.asyncio
    async def test_generated_writes_never_saved(self, client, assistant):
        client.get_database_tables.return_value = []
        assistant.generate_sql.return_value = "DELETE FROM orders"
        with pytest.raises(OperationNotAllowed):
            await tools.CreateModelFromDescription(client, assistant=assistant).invoke(
                "remove old orders", 1
            )
        client.create_model.assert_not_called()

    @pytest.mark.asyncio
    async def test_model_from_description(self, client, assistant):
        client.get_database_tables.return_value = []
        client.create_model.return_value = Card(id=8, name="m", type="model")
        assistant.generate_sql.return_value = "SELECT * FROM orders"
        result = await tools.CreateModelFromDescription(client, assistant=assistant).invoke(
            "clean orders", 1, collection_id=3
        )
        client.create_model.assert_awaited_once_with(
            "clean orders - Model (AI Generated)", 1, "SELECT * FROM orders", "clean orders", 3
        )
        assert result["sql"] == "SELECT * FROM orders"
