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
from enum import StrEnum, auto
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

_DEFAULT_PORTS = {"postgres": 5432, "mysql": 3306}


class Engine(StrEnum):
    postgres = auto()
    mysql = auto()
    other = auto()

    @classmethod
    def parse(cls, engine: Optional[str]) -> "Engine":
        match (engine or "").lower():
            case "postgres" | "postgresql":
                return cls.postgres
            case "mysql" | "mariadb":
                return cls.mysql
        return cls.other


class ConnectionInfo(BaseModel):
    """Connection details for the database behind a Metabase database id."""

    id: int
    name: str
    engine: Engine
    raw_engine: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)
    ssl: bool = False
    additional_options: Optional[str] = None
    tunnel_enabled: bool = False
    source: Literal["metadata_store", "api"] = "api"
    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_details(
        cls,
        id: int,
        name: str,
        engine: str,
        details: Dict[str, Any],
        source: Literal["metadata_store", "api"] = "api",
    ) -> "ConnectionInfo":
        parsed = Engine.parse(engine)
        port = details.get("port") or _DEFAULT_PORTS.get(parsed)
        return cls(
            id=id,
            name=name,
            engine=parsed,
            raw_engine=engine,
            host=details.get("host"),
            port=int(port) if port is not None else None,
            database=details.get("dbname") or details.get("db"),
            user=details.get("user"),
            password=details.get("password"),
            ssl=bool(details.get("ssl", False)),
            additional_options=details.get("additional-options"),
            tunnel_enabled=bool(details.get("tunnel-enabled", False)),
            source=source,
        )

    @property
    def connection_string(self) -> str:
        scheme = "postgresql" if self.engine == Engine.postgres else self.engine.value
        return f"{scheme}://{self.user}:***@{self.host}:{self.port}/{self.database}"

    def redacted(self) -> Dict[str, Any]:
        d = self.model_dump(mode="json")
        d["password"] = "***HIDDEN***" if self.password else None
        d["connection_string"] = self.connection_string
        return d


class MetabaseObject(BaseModel):
    model_config = ConfigDict(extra="allow")


class Database(MetabaseObject):
    id: int
    name: str
    engine: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    is_sample: Optional[bool] = None


class TableField(MetabaseObject):
    id: int
    name: str
    display_name: Optional[str] = None
    base_type: Optional[str] = None
    database_type: Optional[str] = None
    semantic_type: Optional[str] = None
    fk_target_field_id: Optional[int] = None


class Table(MetabaseObject):
    id: int
    name: str
    schema_: Optional[str] = Field(default=None, alias="schema")
    display_name: Optional[str] = None
    description: Optional[str] = None
    entity_type: Optional[str] = None
    fields: List[TableField] = Field(default_factory=list)


class DatabaseMetadata(MetabaseObject):
    id: int
    name: str
    engine: Optional[str] = None
    tables: List[Table] = Field(default_factory=list)


class Card(MetabaseObject):
    id: int
    name: str
    description: Optional[str] = None
    display: Optional[str] = None
    type: Optional[str] = None
    collection_id: Optional[int] = None
    database_id: Optional[int] = None


class Dashboard(MetabaseObject):
    id: int
    name: str
    description: Optional[str] = None
    collection_id: Optional[int] = None
    dashcards: List[Dict[str, Any]] = Field(default_factory=list)
    parameters: List[Dict[str, Any]] = Field(default_factory=list)


class Collection(MetabaseObject):
    id: Any
    name: str
    description: Optional[str] = None
    location: Optional[str] = None


class DatasetData(MetabaseObject):
    rows: List[List[Any]] = Field(default_factory=list)
    cols: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def column_names(self) -> List[str]:
        return [c.get("name") for c in self.cols]

    def records(self) -> List[Dict[str, Any]]:
        names = self.column_names
        return [dict(zip(names, row)) for row in self.rows]


class DatasetResponse(MetabaseObject):
    status: Optional[str] = None
    error: Optional[Any] = None
    row_count: Optional[int] = None
    running_time: Optional[int] = None
    data: DatasetData = Field(default_factory=DatasetData)

    @property
    def failed(self) -> bool:
        return self.status == "failed" or (self.error is not None and not self.data.cols)

    @property
    def error_message(self) -> str:
        if isinstance(self.error, dict):
            return str(self.error.get("message", self.error))
        return str(self.error)
