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
import ssl
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple, Type

import aiomysql
import asyncpg

from metabaseai.api.metabase.models import ConnectionInfo, Engine
from metabaseai.errors import DatabaseConnectionError


class Driver(ABC):
    """Minimal async surface over one engine specific client connection."""

    # everything fetch and execute may raise for a failed statement; whether
    # the connection survived is read from connected afterwards
    query_errors: Tuple[Type[Exception], ...] = ()

    @abstractmethod
    async def connect(self, info: ConnectionInfo, timeout: Optional[float] = None):
        pass

    @abstractmethod
    async def fetch(self, sql: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def execute(self, sql: str) -> Any:
        pass

    @abstractmethod
    async def close(self):
        pass

    @property
    @abstractmethod
    def connected(self) -> bool:
        pass


class PostgresDriver(Driver):
    query_errors = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

    def __init__(self):
        self._conn: Optional[asyncpg.Connection] = None

    async def connect(self, info: ConnectionInfo, timeout: Optional[float] = None):
        try:
            self._conn = await asyncpg.connect(
                host=info.host,
                port=info.port,
                user=info.user,
                password=info.password,
                database=info.database,
                ssl="require" if info.ssl else None,
                timeout=timeout or 60,
            )
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise DatabaseConnectionError(
                f"Unable to connect to postgres at {info.host}:{info.port}: {e}"
            ) from e

    async def fetch(self, sql: str) -> List[Dict[str, Any]]:
        return [dict(r) for r in await self._conn.fetch(sql)]

    async def execute(self, sql: str) -> Any:
        return {"status": await self._conn.execute(sql)}

    async def close(self):
        if self._conn is not None and not self._conn.is_closed():
            await self._conn.close()
        self._conn = None

    @property
    def connected(self) -> bool:
        return self._conn is not None and not self._conn.is_closed()


class MySqlDriver(Driver):
    query_errors = (aiomysql.Error, OSError)

    def __init__(self):
        self._conn: Optional[aiomysql.Connection] = None

    async def connect(self, info: ConnectionInfo, timeout: Optional[float] = None):
        try:
            self._conn = await aiomysql.connect(
                host=info.host,
                port=info.port,
                user=info.user,
                password=info.password or "",
                db=info.database,
                ssl=ssl.create_default_context() if info.ssl else None,
                connect_timeout=timeout or 60,
                autocommit=True,
            )
        except (OSError, aiomysql.Error) as e:
            raise DatabaseConnectionError(
                f"Unable to connect to mysql at {info.host}:{info.port}: {e}"
            ) from e

    async def fetch(self, sql: str) -> List[Dict[str, Any]]:
        async with self._conn.cursor(aiomysql.DictCursor) as cursor:
            await cursor.execute(sql)
            return list(await cursor.fetchall())

    async def execute(self, sql: str) -> Any:
        async with self._conn.cursor() as cursor:
            await cursor.execute(sql)
            return {"rowcount": cursor.rowcount}

    async def close(self):
        if self._conn is not None:
            self._conn.close()
        self._conn = None

    @property
    def connected(self) -> bool:
        return self._conn is not None and not self._conn.closed


def driver_for(engine: Engine) -> Driver:
    match engine:
        case Engine.postgres:
            return PostgresDriver()
        case Engine.mysql:
            return MySqlDriver()
    raise DatabaseConnectionError(f"No direct driver for engine '{engine}'")
