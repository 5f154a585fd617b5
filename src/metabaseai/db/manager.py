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
Per database choice between a direct connection and the Metabase proxy.

A handle is created the first time a database id is used and cached until
``disconnect`` or ``disconnect_all``. Direct connections are preferred; when
the credentials Metabase hands out are masked, or the database cannot be
reached, the handle falls back to executing through Metabase itself.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from metabaseai import log
from metabaseai.api.metabase.client import BiApiClient
from metabaseai.api.metabase.models import ConnectionInfo, Engine
from metabaseai.config import settings
from metabaseai.db.direct import DatabaseExecutor
from metabaseai.db.executor import Executor
from metabaseai.db.operations import ConnectionMode
from metabaseai.db.proxy import AmbiguousSuccessDetector, BiProxyExecutor
from metabaseai.errors import (
    CredentialsUnavailable,
    DatabaseConnectionError,
    UnsupportedOperation,
)

logger = log.logger(__name__)

OPERATIONS = {
    "createTable": "create_table",
    "createView": "create_view",
    "createMaterializedView": "create_materialized_view",
    "createIndex": "create_index",
    "dropObject": "drop_object",
    "getTableDDL": "get_table_ddl",
    "getViewDDL": "get_view_ddl",
    "listOwnObjects": "list_own_objects",
    "executeDDL": "execute_ddl",
    "previewDDL": "preview_ddl",
    "getSchemas": "get_schemas",
    "getCurrentSchema": "get_current_schema",
    "exploreTables": "explore_tables",
    "exploreSchemaTablesDetailed": "explore_schema_tables_detailed",
    "analyzeTableRelationships": "analyze_table_relationships",
    "suggestVirtualRelationships": "suggest_virtual_relationships",
}

DirectFactory = Callable[..., Executor]


@dataclass
class ExecutorHandle:
    database_id: int
    engine: Engine
    executor: Executor
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    closed: bool = False

    @property
    def mode(self) -> ConnectionMode:
        return self.executor.mode

    def describe(self) -> Dict[str, Any]:
        return self.executor.describe() | {"closed": self.closed}


class ConnectionManager:
    def __init__(
        self,
        config: Optional[settings.Settings] = None,
        direct_factory: DirectFactory = DatabaseExecutor,
    ):
        self.config = config or settings.instance() or settings.Settings()
        self.direct_factory = direct_factory
        self.handles: Dict[int, ExecutorHandle] = {}
        self._cache_lock = asyncio.Lock()
        # one per database id, held while that handle is being built
        self._build_locks: Dict[int, asyncio.Lock] = {}

    @property
    def policy(self) -> settings.PolicyConfig:
        return self.config.policy or settings.PolicyConfig()

    @property
    def metabase(self) -> settings.Metabase:
        return self.config.metabase or settings.Metabase()

    @property
    def prefer_direct(self) -> bool:
        return (self.config.connections or settings.Connections()).prefer_direct

    @property
    def serialize_handles(self) -> bool:
        return (self.config.connections or settings.Connections()).serialize_handles

    async def _direct(self, info: ConnectionInfo) -> Executor:
        executor = self.direct_factory(
            info, self.policy, masked_passwords=self.metabase.masked_password_sentinels
        )
        await executor.connect()
        return executor

    def _proxy(self, client: BiApiClient, database_id: int, engine: Engine) -> Executor:
        return BiProxyExecutor(
            client,
            database_id,
            engine,
            self.policy,
            detector=AmbiguousSuccessDetector(self.metabase.ambiguous_success_markers),
            endpoints=self.metabase.ddl_endpoints,
        )

    async def _build(self, client: BiApiClient, database_id: int) -> ExecutorHandle:
        info = None
        executor = None
        if self.prefer_direct:
            try:
                info = await client.get_database_connection_info(database_id)
                executor = await self._direct(info)
            except (CredentialsUnavailable, DatabaseConnectionError) as e:
                logger.info(
                    "direct_connection_unavailable",
                    database_id=database_id,
                    reason=e.__class__.__name__,
                    error=str(e),
                )

        if executor is None:
            engine = (
                info.engine
                if info is not None
                else Engine.parse((await client.get_database(database_id)).engine)
            )
            executor = self._proxy(client, database_id, engine)

        logger.info(
            "connection_handle_created",
            database_id=database_id,
            mode=str(executor.mode),
            engine=str(executor.engine),
        )
        return ExecutorHandle(database_id, executor.engine, executor)

    async def get_connection(
        self, client: BiApiClient, database_id: int
    ) -> ExecutorHandle:
        if (handle := self.handles.get(database_id)) is not None:
            return handle
        async with self._cache_lock:
            build_lock = self._build_locks.setdefault(database_id, asyncio.Lock())
        async with build_lock:
            if (handle := self.handles.get(database_id)) is None:
                handle = await self._build(client, database_id)
                async with self._cache_lock:
                    self.handles[database_id] = handle
            return handle

    async def execute_operation(
        self, handle: ExecutorHandle, operation: str, *args, **kw
    ) -> Any:
        """Run ``operation`` (for example ``createTable``) on whichever
        executor backs ``handle``."""
        if (method := OPERATIONS.get(operation)) is None:
            raise UnsupportedOperation(f"Unknown operation '{operation}'")

        fn = getattr(handle.executor, method)
        if not self.serialize_handles:
            return await self._call(handle, fn, *args, **kw)
        async with handle.lock:
            return await self._call(handle, fn, *args, **kw)

    @staticmethod
    async def _call(handle: ExecutorHandle, fn, *args, **kw):
        if handle.closed:
            raise DatabaseConnectionError(
                f"Connection handle for database {handle.database_id} is closed"
            )
        result = fn(*args, **kw)
        if asyncio.iscoroutine(result):
            return await result
        return result

    async def disconnect(self, handle: ExecutorHandle):
        async with self._cache_lock:
            if self.handles.get(handle.database_id) is handle:
                del self.handles[handle.database_id]
        if handle.closed:
            return
        handle.closed = True
        await handle.executor.close()

    async def disconnect_all(self):
        async with self._cache_lock:
            handles = list(self.handles.values())
            self.handles.clear()
        for handle in handles:
            if handle.closed:
                continue
            handle.closed = True
            try:
                await handle.executor.close()
            except Exception as e:
                logger.warning(
                    "disconnect_failed", database_id=handle.database_id, error=str(e)
                )


_manager: Optional[ConnectionManager] = None


def get_manager() -> ConnectionManager:
    global _manager
    if _manager is None:
        _manager = ConnectionManager()
    return _manager


def reset_manager():
    global _manager
    _manager = None
