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
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from metabaseai.db.operations import ConnectionMode, OperationType


class DDLResult(BaseModel):
    success: bool = True
    sql: str
    dry_run: bool = False
    mode: ConnectionMode
    operation: Optional[OperationType] = None
    object_name: Optional[str] = None
    result: Optional[Any] = None
    message: Optional[str] = None
    warning: Optional[str] = None

    @computed_field
    @property
    def status(self) -> str:
        if self.dry_run:
            return "preview"
        return "success" if self.success else "failed"


class OwnedObject(BaseModel):
    name: str
    schema_name: Optional[str] = None
    table_name: Optional[str] = None
    model_config = ConfigDict(extra="ignore")


class OwnedObjectInventory(BaseModel):
    tables: List[OwnedObject] = Field(default_factory=list)
    views: List[OwnedObject] = Field(default_factory=list)
    materialized_views: List[OwnedObject] = Field(default_factory=list)
    indexes: List[OwnedObject] = Field(default_factory=list)
    errors: Dict[str, str] = Field(default_factory=dict)

    @property
    def total(self) -> int:
        return (
            len(self.tables)
            + len(self.views)
            + len(self.materialized_views)
            + len(self.indexes)
        )


class RelationshipType(StrEnum):
    one_to_many = "one-to-many"
    many_to_one = "many-to-one"
    one_to_one = "one-to-one"
    many_to_many = "many-to-many"


class Relationship(BaseModel):
    source_table: str
    source_column: str
    target_table: str
    target_column: str
    relationship_type: RelationshipType = RelationshipType.many_to_one
    confidence: Optional[float] = None
    reasoning: Optional[str] = None
    constraint_name: Optional[str] = None
    update_rule: Optional[str] = None
    delete_rule: Optional[str] = None


class ColumnDetail(BaseModel):
    name: str
    type: Optional[str] = None
    nullable: bool = True
    default: Optional[str] = None
    length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    comment: Optional[str] = None
    is_primary_key: bool = False
    is_foreign_key: bool = False
    foreign_table: Optional[str] = None
    foreign_column: Optional[str] = None


class TableDetail(BaseModel):
    name: str
    type: Optional[str] = None
    comment: Optional[str] = None
    size: Optional[str] = None
    columns: List[ColumnDetail] = Field(default_factory=list)


class CatalogColumn(BaseModel):
    table_name: str
    column_name: str
    data_type: Optional[str] = None
    is_primary_key: bool = False
