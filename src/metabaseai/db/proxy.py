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
Executes through Metabase's native query API for databases whose
credentials cannot be used directly.
"""
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type

from aiohttp import ClientResponseError

from metabaseai import log
from metabaseai.api.metabase.client import BiApiClient
from metabaseai.api.metabase.models import Engine
from metabaseai.config.settings import DdlEndpoints, PolicyConfig
from metabaseai.db.executor import Executor
from metabaseai.db.models import DDLResult
from metabaseai.db.operations import ConnectionMode
from metabaseai.errors import NativeQueryError

logger = log.logger(__name__)

DEFAULT_AMBIGUOUS_MARKERS = ("Select statement did not produce a ResultSet",)


class AmbiguousSuccessDetector:
    """Recognises errors Metabase raises for statements that ran but returned
    no result set. Such a statement has already taken effect."""

    def __init__(self, markers: Iterable[str] = DEFAULT_AMBIGUOUS_MARKERS):
        self.markers = tuple(markers)

    def is_ambiguous_success(self, message: Optional[str]) -> bool:
        return bool(message) and any(m in message for m in self.markers)


def _message(e: Exception) -> str:
    if isinstance(e, ClientResponseError):
        return str(e.message)
    return str(e)


class BiProxyExecutor(Executor):
    mode = ConnectionMode.proxy

    def __init__(
        self,
        client: BiApiClient,
        database_id: int,
        engine: Engine,
        config: Optional[PolicyConfig] = None,
        detector: Optional[AmbiguousSuccessDetector] = None,
        endpoints: Optional[DdlEndpoints] = None,
    ):
        super().__init__(database_id, engine, config)
        self.client = client
        self.detector = detector if detector is not None else AmbiguousSuccessDetector()
        self.endpoints = endpoints if endpoints is not None else DdlEndpoints()

    @property
    def catalog_errors(self) -> Tuple[Type[Exception], ...]:
        return (NativeQueryError,)

    async def connect(self):
        pass

    async def close(self):
        pass

    async def _fetch(self, sql: str) -> List[Dict[str, Any]]:
        response = await self.client.run_query(self.database_id, sql)
        return response.data.records()

    def _ambiguous(self, sql: str, message: str) -> DDLResult:
        logger.warning(
            "ddl_ambiguous_success", database_id=self.database_id, error=message
        )
        return DDLResult(
            success=True,
            sql=sql,
            mode=self.mode,
            result={"rows": [], "cols": []},
            message="DDL executed via Metabase proxy",
            warning=f"Metabase reported '{message}', treated as success",
        )

    async def execute_ddl_operation(self, sql: str) -> DDLResult:
        """Send a statement that may not return rows.

        The primary endpoint is tried first, then the native dataset endpoint.
        Errors the detector recognises become a successful result carrying a
        warning.
        """
        if self.endpoints.primary:
            try:
                result = await self.client.execute_sql_action(
                    self.database_id, sql, endpoint=self.endpoints.primary
                )
                return DDLResult(
                    success=True,
                    sql=sql,
                    mode=self.mode,
                    result=result,
                    message="DDL executed via Metabase proxy",
                )
            except (ClientResponseError, NativeQueryError) as e:
                if self.detector.is_ambiguous_success(_message(e)):
                    return self._ambiguous(sql, _message(e))
                logger.info(
                    "primary_ddl_endpoint_failed",
                    endpoint=self.endpoints.primary,
                    error=_message(e),
                )

        try:
            response = await self.client.run_query(
                self.database_id, sql, endpoint=self.endpoints.secondary
            )
        except (ClientResponseError, NativeQueryError) as e:
            if self.detector.is_ambiguous_success(_message(e)):
                return self._ambiguous(sql, _message(e))
            raise
        return DDLResult(
            success=True,
            sql=sql,
            mode=self.mode,
            result=response.data.model_dump(),
            message="DDL executed via Metabase proxy",
        )

    async def _execute(self, sql: str) -> DDLResult:
        return await self.execute_ddl_operation(sql)
