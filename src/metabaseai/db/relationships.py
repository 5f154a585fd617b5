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
Naming heuristics for relationships that are not declared as foreign keys.
"""
from typing import Iterable, List, Optional, Set

from metabaseai.db.models import CatalogColumn, Relationship, RelationshipType

TABLE_ID_PATTERN = 0.95
SAME_NAME = 0.9
ID_SUFFIX = 0.8
TABLE_NAME_PREFIX = 0.7
SAME_TYPE = 0.5


def singular_forms(table: str) -> Set[str]:
    table = table.lower()
    forms = {table}
    if table.endswith("ies"):
        forms.add(table[:-3] + "y")
    if table.endswith("es"):
        forms.add(table[:-2])
    if table.endswith("s"):
        forms.add(table[:-1])
    return forms


def score(source: CatalogColumn, target: CatalogColumn) -> Optional[float]:
    """Confidence that ``source`` references ``target``, or None when the
    pair is not a candidate at all."""
    if (
        not target.is_primary_key
        or source.table_name == target.table_name
        or source.column_name.lower() == "id"
        or (source.data_type or "").lower() != (target.data_type or "").lower()
    ):
        return None

    column = source.column_name.lower()
    forms = singular_forms(target.table_name)
    if target.column_name.lower() == "id" and column in {f"{f}_id" for f in forms}:
        return TABLE_ID_PATTERN
    if column == target.column_name.lower():
        return SAME_NAME
    if column.endswith("_id"):
        return ID_SUFFIX
    if any(column.startswith(f) for f in forms):
        return TABLE_NAME_PREFIX
    return SAME_TYPE


def reasoning(confidence: float, source: CatalogColumn, target: CatalogColumn) -> str:
    if confidence >= TABLE_ID_PATTERN:
        return (
            f"Strong match: {source.column_name} follows the <table>_id pattern "
            f"for {target.table_name}.{target.column_name}"
        )
    if confidence >= SAME_NAME:
        return "Very likely: Column names match exactly"
    if confidence >= ID_SUFFIX:
        return (
            f"Likely: {source.column_name} appears to reference primary key "
            f"of {target.table_name}"
        )
    if confidence >= TABLE_NAME_PREFIX:
        return f"Possible: Column name suggests relationship with {target.table_name}"
    return "Low confidence: Data types match but naming unclear"


def suggest(columns: Iterable[CatalogColumn], threshold: float = 0.7) -> List[Relationship]:
    columns = list(columns)
    keys = [c for c in columns if c.is_primary_key]
    suggestions = []
    for source in columns:
        for target in keys:
            confidence = score(source, target)
            if confidence is None or confidence < threshold:
                continue
            suggestions.append(
                Relationship(
                    source_table=source.table_name,
                    source_column=source.column_name,
                    target_table=target.table_name,
                    target_column=target.column_name,
                    relationship_type=RelationshipType.many_to_one,
                    confidence=confidence,
                    reasoning=reasoning(confidence, source, target),
                )
            )
    suggestions.sort(key=lambda r: (-r.confidence, r.source_table, r.source_column))
    return suggestions
