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
from enum import StrEnum
from typing import Optional


class OperationType(StrEnum):
    CREATE_TABLE = "CREATE_TABLE"
    CREATE_VIEW = "CREATE_VIEW"
    CREATE_MATERIALIZED_VIEW = "CREATE_MATERIALIZED_VIEW"
    CREATE_INDEX = "CREATE_INDEX"
    DROP_TABLE = "DROP_TABLE"
    DROP_VIEW = "DROP_VIEW"
    DROP_MATERIALIZED_VIEW = "DROP_MATERIALIZED_VIEW"
    DROP_INDEX = "DROP_INDEX"
    SELECT = "SELECT"
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"

    @property
    def is_create(self) -> bool:
        return self.startswith("CREATE_")

    @property
    def is_drop(self) -> bool:
        return self.startswith("DROP_")


class ObjectType(StrEnum):
    table = "table"
    view = "view"
    materialized_view = "materialized_view"
    index = "index"

    @property
    def keyword(self) -> str:
        return self.value.replace("_", " ").upper()


class ConnectionMode(StrEnum):
    direct = "direct"
    proxy = "proxy"


_OPERATION_OBJECTS = {
    OperationType.CREATE_TABLE: ObjectType.table,
    OperationType.DROP_TABLE: ObjectType.table,
    OperationType.CREATE_VIEW: ObjectType.view,
    OperationType.DROP_VIEW: ObjectType.view,
    OperationType.CREATE_MATERIALIZED_VIEW: ObjectType.materialized_view,
    OperationType.DROP_MATERIALIZED_VIEW: ObjectType.materialized_view,
    OperationType.CREATE_INDEX: ObjectType.index,
    OperationType.DROP_INDEX: ObjectType.index,
}


def object_type_of(op: OperationType) -> Optional[ObjectType]:
    return _OPERATION_OBJECTS.get(op)
