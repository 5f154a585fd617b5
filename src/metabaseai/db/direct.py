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
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type

from metabaseai import log
from metabaseai.api.metabase.models import ConnectionInfo, Engine
from metabaseai.config.settings import PolicyConfig
from metabaseai.db.drivers import Driver, driver_for
from metabaseai.db.executor import Executor
from metabaseai.db.models import DDLResult
from metabaseai.db.operations import ConnectionMode
from metabaseai.errors import (
    CredentialsUnavailable,
    DatabaseConnectionError,
    StatementError,
)

logger = log.logger(__name__)

DEFAULT_MASKED_PASSWORDS = ("**MetabasePass**",)


class DatabaseExecutor(Executor):
    """Executes against the backing database over its own client protocol."""

    mode = ConnectionMode.direct

    def __init__(
        self,
        info: ConnectionInfo,
        config: Optional[PolicyConfig] = None,
        driver: Optional[Driver] = None,
        masked_passwords: Iterable[str] = DEFAULT_MASKED_PASSWORDS,
    ):
        if not info.password or info.password in set(masked_passwords):
            raise CredentialsUnavailable(
                f"No usable password for database {info.id} ({info.name})"
            )
        if info.engine == Engine.other and driver is None:
            raise DatabaseConnectionError(
                f"Direct connections are not supported for engine '{info.raw_engine}'"
            )
        super().__init__(info.id, info.engine, config)
        self.info = info
        self.driver = driver if driver is not None else driver_for(info.engine)

    @property
    def catalog_errors(self) -> Tuple[Type[Exception], ...]:
        return (StatementError,)

    @property
    def connected(self) -> bool:
        return self.driver.connected

    async def connect(self):
        if self.driver.connected:
            return
        await self.driver.connect(self.info, timeout=self.config.timeout)
        logger.info(
            "direct_connection_opened",
            database_id=self.database_id,
            engine=str(self.engine),
            host=self.info.host,
        )

    async def close(self):
        try:
            await self.driver.close()
        finally:
            logger.info("direct_connection_closed", database_id=self.database_id)

    async def _run(self, call, sql: str) -> Any:
        await self.connect()
        try:
            return await call(sql)
        except self.driver.query_errors as e:
            if not self.driver.connected:
                logger.warning(
                    "direct_connection_lost", database_id=self.database_id, error=str(e)
                )
                raise DatabaseConnectionError(
                    f"Lost connection to database {self.database_id}: {e}"
                ) from e
            raise StatementError(str(e), sql=sql) from e

    async def _fetch(self, sql: str) -> List[Dict[str, Any]]:
        return await self._run(self.driver.fetch, sql)

    async def _execute(self, sql: str) -> DDLResult:
        result = await self._run(self.driver.execute, sql)
        return DDLResult(success=True, sql=sql, result=result, mode=self.mode)

    def describe(self) -> Dict[str, Any]:
        return super().describe() | {"host": self.info.host, "database": self.info.database}
