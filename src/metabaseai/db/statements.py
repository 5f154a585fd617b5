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
Composition of the DDL statements the executors issue. Every created or
dropped name gets the configured prefix prepended when it is missing.
"""
import re
from typing import List, Optional, Sequence

from pydantic import BaseModel, Field

from metabaseai.db.operations import ObjectType
from metabaseai.errors import InvalidIdentifier

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*$")


class ColumnSpec(BaseModel):
    name: str
    type: str
    constraints: Optional[str] = Field(
        default=None, description="e.g. NOT NULL, PRIMARY KEY, DEFAULT 0"
    )

    def render(self) -> str:
        column = f"{identifier(self.name)} {self.type.strip()}"
        if self.constraints:
            column = f"{column} {self.constraints.strip()}"
        return column


def identifier(name: str) -> str:
    if not name or not _IDENTIFIER.match(name):
        raise InvalidIdentifier(f"'{name}' is not a valid identifier")
    return name


def ensure_prefix(name: str, prefix: str) -> str:
    identifier(name)
    return name if name.startswith(prefix) else f"{prefix}{name}"


def qualified(name: str, schema: Optional[str] = None) -> str:
    return f"{identifier(schema)}.{name}" if schema else name


def create_table(
    name: str, columns: Sequence[ColumnSpec], schema: Optional[str] = None
) -> str:
    if not columns:
        raise InvalidIdentifier("At least one column is required")
    cols = ",\n  ".join(c.render() for c in columns)
    return f"CREATE TABLE {qualified(name, schema)} (\n  {cols}\n)"


def create_view(name: str, select_sql: str, schema: Optional[str] = None) -> str:
    return f"CREATE VIEW {qualified(name, schema)} AS {_body(select_sql)}"


def create_materialized_view(
    name: str, select_sql: str, schema: Optional[str] = None
) -> str:
    return f"CREATE MATERIALIZED VIEW {qualified(name, schema)} AS {_body(select_sql)}"


def create_index(
    name: str,
    table: str,
    columns: List[str],
    unique: bool = False,
    schema: Optional[str] = None,
) -> str:
    if not columns:
        raise InvalidIdentifier("At least one index column is required")
    cols = ", ".join(identifier(c) for c in columns)
    return (
        f"CREATE {'UNIQUE ' if unique else ''}INDEX {name} "
        f"ON {qualified(identifier(table), schema)} ({cols})"
    )


def drop(object_type: ObjectType, name: str, schema: Optional[str] = None) -> str:
    return f"DROP {object_type.keyword} IF EXISTS {qualified(name, schema)}"


def _body(select_sql: str) -> str:
    return select_sql.strip().rstrip(";").strip()
