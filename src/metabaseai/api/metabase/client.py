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
import uuid
from json import loads
from typing import Any, Dict, List, Optional

from aiohttp import ClientResponseError

from metabaseai import log
from metabaseai.api.metabase.models import (
    Card,
    Collection,
    ConnectionInfo,
    Dashboard,
    Database,
    DatabaseMetadata,
    DatasetResponse,
    Table,
)
from metabaseai.api.transport import MetabaseAsyncHttpClient
from metabaseai.config import settings
from metabaseai.db.policy import SecurityPolicy
from metabaseai.errors import NativeQueryError

logger = log.logger(__name__)

_DASHCARD_KEYS = (
    "id",
    "card_id",
    "row",
    "col",
    "size_x",
    "size_y",
    "parameter_mappings",
    "visualization_settings",
    "series",
    "dashboard_tab_id",
)


def _items(response: Any) -> List[Any]:
    # newer metabase versions wrap list endpoints in {"data": [...]}
    if isinstance(response, dict):
        return response.get("data", [])
    return response or []


def native_query(database_id: int, sql: str, template_tags: Dict = None) -> Dict:
    return {
        "database": database_id,
        "type": "native",
        "native": {"query": sql, "template-tags": template_tags or {}},
    }


class BiApiClient:
    """Metabase REST API, one method per endpoint used by the tools."""

    def __init__(
        self,
        http: Optional[MetabaseAsyncHttpClient] = None,
        policy: Optional[SecurityPolicy] = None,
    ):
        self.http = http if http is not None else MetabaseAsyncHttpClient()
        self.policy = (
            policy if policy is not None else SecurityPolicy(settings.instance().policy)
        )

    @property
    def config(self) -> settings.Metabase:
        return settings.instance().metabase

    async def test_connection(self) -> Dict[str, Any]:
        return await self.http.get("/api/user/current")

    # -- databases ------------------------------------------------------------

    async def get_databases(self) -> List[Database]:
        return [
            Database.model_validate(d) for d in _items(await self.http.get("/api/database"))
        ]

    async def get_database(self, database_id: int) -> Database:
        return await self.http.get(f"/api/database/{database_id}", deser=Database)

    async def get_database_schemas(self, database_id: int) -> List[str]:
        return await self.http.get(f"/api/database/{database_id}/schemas")

    async def get_database_metadata(self, database_id: int) -> DatabaseMetadata:
        return await self.http.get(
            f"/api/database/{database_id}/metadata", deser=DatabaseMetadata
        )

    async def get_database_tables(self, database_id: int) -> List[Table]:
        return (await self.get_database_metadata(database_id)).tables

    async def _recover_credentials(self, database_id: int) -> Optional[ConnectionInfo]:
        recovery = self.config.credential_recovery
        if not recovery.enabled or recovery.metadata_database_id is None:
            return None

        sql = (
            "SELECT name, engine, details FROM metabase_database "
            f"WHERE id = {int(database_id)}"
        )
        try:
            records = (
                await self.run_query(recovery.metadata_database_id, sql)
            ).data.records()
            if not records:
                return None
            row = records[0]
            details = row["details"]
            if isinstance(details, str):
                details = loads(details)
            return ConnectionInfo.from_details(
                database_id, row["name"], row["engine"], details, source="metadata_store"
            )
        except (NativeQueryError, ClientResponseError, ValueError, KeyError) as e:
            logger.warning(
                "credential_recovery_failed", database_id=database_id, error=str(e)
            )
            return None

    async def get_database_connection_info(self, database_id: int) -> ConnectionInfo:
        """Connection details for ``database_id``. When credential recovery is
        enabled the unmasked details in Metabase's application database are
        preferred over the API response, which masks passwords."""
        recovered = await self._recover_credentials(database_id)
        if (
            recovered is not None
            and recovered.password
            and recovered.password not in self.config.masked_password_sentinels
        ):
            return recovered

        db = await self.get_database(database_id)
        return ConnectionInfo.from_details(
            database_id, db.name, db.engine, db.details or {}, source="api"
        )

    # -- native queries -------------------------------------------------------

    async def run_query(
        self, database_id: int, sql: str, endpoint: str = "/api/dataset"
    ) -> DatasetResponse:
        response = await self.http.post(
            endpoint, native_query(database_id, sql), deser=DatasetResponse
        )
        if response.failed:
            raise NativeQueryError(response.error_message, sql=sql)
        return response

    async def run_native_query(self, database_id: int, sql: str) -> DatasetResponse:
        """Run an agent supplied query. Only a read only SELECT is sent."""
        self.policy.check_read_only(sql)
        return await self.run_query(database_id, sql)

    async def execute_sql_action(
        self, database_id: int, sql: str, endpoint: str
    ) -> Any:
        return await self.http.post(
            endpoint, {"database_id": database_id, "sql": sql, "type": "query"}
        )

    # -- cards ----------------------------------------------------------------

    async def get_cards(self, f: Optional[str] = None) -> List[Card]:
        params = {"f": f} if f else None
        return [
            Card.model_validate(c)
            for c in _items(await self.http.get("/api/card", params=params))
        ]

    async def get_questions(self, collection_id: Optional[int] = None) -> List[Card]:
        cards = await self.get_cards()
        if collection_id is not None:
            cards = [c for c in cards if c.collection_id == collection_id]
        return cards

    async def get_card(self, card_id: int) -> Card:
        return await self.http.get(f"/api/card/{card_id}", deser=Card)

    async def create_card(self, card: Dict[str, Any]) -> Card:
        card.setdefault("visualization_settings", {})
        card.setdefault("display", "table")
        return await self.http.post("/api/card", card, deser=Card)

    async def create_sql_question(
        self,
        name: str,
        database_id: int,
        sql: str,
        description: Optional[str] = None,
        collection_id: Optional[int] = None,
        display: str = "table",
        visualization_settings: Optional[Dict[str, Any]] = None,
    ) -> Card:
        return await self.create_card(
            {
                "name": name,
                "description": description,
                "dataset_query": native_query(database_id, sql),
                "display": display,
                "visualization_settings": visualization_settings or {},
                "collection_id": collection_id,
            }
        )

    async def create_question(
        self,
        name: str,
        dataset_query: Dict[str, Any],
        description: Optional[str] = None,
        collection_id: Optional[int] = None,
        display: str = "table",
        visualization_settings: Optional[Dict[str, Any]] = None,
    ) -> Card:
        return await self.create_card(
            {
                "name": name,
                "description": description,
                "dataset_query": dataset_query,
                "display": display,
                "visualization_settings": visualization_settings or {},
                "collection_id": collection_id,
            }
        )

    async def create_parametric_question(
        self,
        name: str,
        database_id: int,
        sql: str,
        parameters: List[Dict[str, Any]],
        description: Optional[str] = None,
        collection_id: Optional[int] = None,
        display: str = "table",
    ) -> Card:
        """``sql`` references parameters as ``{{name}}``; each parameter is a
        dict with name, type (text, number, date) and optional display_name
        and default."""
        tags = {}
        for p in parameters:
            tag = {
                "id": str(uuid.uuid4()),
                "name": p["name"],
                "display-name": p.get("display_name") or p["name"].replace("_", " ").title(),
                "type": p.get("type", "text"),
            }
            if p.get("default") is not None:
                tag["default"] = p["default"]
            tags[p["name"]] = tag
        return await self.create_card(
            {
                "name": name,
                "description": description,
                "dataset_query": native_query(database_id, sql, tags),
                "display": display,
                "collection_id": collection_id,
            }
        )

    async def update_card(self, card_id: int, changes: Dict[str, Any]) -> Card:
        return await self.http.put(f"/api/card/{card_id}", changes, deser=Card)

    async def get_models(self) -> List[Card]:
        return await self.get_cards("model")

    async def create_model(
        self,
        name: str,
        database_id: int,
        sql: str,
        description: Optional[str] = None,
        collection_id: Optional[int] = None,
    ) -> Card:
        return await self.create_card(
            {
                "name": name,
                "description": description,
                "dataset_query": native_query(database_id, sql),
                "type": "model",
                "collection_id": collection_id,
            }
        )

    # -- dashboards -----------------------------------------------------------

    async def get_dashboards(self) -> List[Dashboard]:
        return [
            Dashboard.model_validate(d)
            for d in _items(await self.http.get("/api/dashboard"))
        ]

    async def get_dashboard(self, dashboard_id: int) -> Dashboard:
        return await self.http.get(f"/api/dashboard/{dashboard_id}", deser=Dashboard)

    async def create_dashboard(
        self,
        name: str,
        description: Optional[str] = None,
        collection_id: Optional[int] = None,
        parameters: Optional[List[Dict[str, Any]]] = None,
    ) -> Dashboard:
        return await self.http.post(
            "/api/dashboard",
            {
                "name": name,
                "description": description,
                "collection_id": collection_id,
                "parameters": parameters or [],
            },
            deser=Dashboard,
        )

    async def update_dashboard(
        self, dashboard_id: int, changes: Dict[str, Any]
    ) -> Dashboard:
        return await self.http.put(
            f"/api/dashboard/{dashboard_id}", changes, deser=Dashboard
        )

    async def add_card_to_dashboard(
        self,
        dashboard_id: int,
        card_id: int,
        row: int = 0,
        col: int = 0,
        size_x: int = 4,
        size_y: int = 4,
        parameter_mappings: Optional[List[Dict[str, Any]]] = None,
    ) -> Dashboard:
        dashboard = await self.get_dashboard(dashboard_id)
        dashcards = [
            {k: v for k, v in dc.items() if k in _DASHCARD_KEYS}
            for dc in dashboard.dashcards
        ]
        # negative ids mark cards that metabase should create
        new_id = min([dc.get("id", 0) for dc in dashcards] + [0]) - 1
        dashcards.append(
            {
                "id": new_id,
                "card_id": card_id,
                "row": row,
                "col": col,
                "size_x": size_x,
                "size_y": size_y,
                "parameter_mappings": parameter_mappings or [],
                "visualization_settings": {},
            }
        )
        return await self.update_dashboard(dashboard_id, {"dashcards": dashcards})

    async def add_dashboard_filter(
        self,
        dashboard_id: int,
        name: str,
        filter_type: str = "string/=",
        default: Optional[Any] = None,
    ) -> Dashboard:
        dashboard = await self.get_dashboard(dashboard_id)
        slug = "_".join(name.lower().split())
        parameter = {
            "id": uuid.uuid4().hex[:8],
            "name": name,
            "slug": slug,
            "type": filter_type,
            "sectionId": filter_type.split("/")[0],
        }
        if default is not None:
            parameter["default"] = default
        return await self.update_dashboard(
            dashboard_id, {"parameters": dashboard.parameters + [parameter]}
        )

    # -- metrics, collections, fields -----------------------------------------

    async def get_metrics(self) -> List[Dict[str, Any]]:
        return _items(await self.http.get("/api/metric"))

    async def create_metric(
        self,
        name: str,
        table_id: int,
        aggregation: List[Any],
        description: Optional[str] = None,
        filter: Optional[List[Any]] = None,
    ) -> Dict[str, Any]:
        definition = {"source-table": table_id, "aggregation": aggregation}
        if filter:
            definition["filter"] = filter
        return await self.http.post(
            "/api/metric",
            {
                "name": name,
                "description": description,
                "table_id": table_id,
                "definition": definition,
            },
        )

    async def get_collections(self) -> List[Collection]:
        return [
            Collection.model_validate(c)
            for c in _items(await self.http.get("/api/collection"))
        ]

    async def create_collection(
        self,
        name: str,
        description: Optional[str] = None,
        parent_id: Optional[int] = None,
        color: str = "#509EE3",
    ) -> Collection:
        return await self.http.post(
            "/api/collection",
            {
                "name": name,
                "description": description,
                "parent_id": parent_id,
                "color": color,
            },
            deser=Collection,
        )

    async def update_field(
        self,
        field_id: int,
        semantic_type: Optional[str] = None,
        fk_target_field_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        return await self.http.put(
            f"/api/field/{field_id}",
            {"semantic_type": semantic_type, "fk_target_field_id": fk_target_field_id},
        )
