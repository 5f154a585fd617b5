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
System catalog queries used for introspection. The text is shared by the
direct and the proxied executors, so values are rendered as escaped literals
rather than bound parameters.
"""
from typing import Iterable, Optional

from metabaseai.api.metabase.models import Engine
from metabaseai.db.operations import ObjectType


class Catalog:
    """Catalog queries for one engine. A method returning ``None`` means the
    engine has no equivalent and callers treat the answer as empty."""

    engine: Engine = Engine.other
    dialect: Optional[str] = None
    system_schemas = ("information_schema",)

    def literal(self, value) -> str:
        return "'" + str(value).replace("'", "''") + "'"

    def like_prefix(self, prefix: str) -> str:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        return self.literal(f"{escaped}%")

    def _in(self, values: Iterable[str]) -> str:
        return ", ".join(self.literal(v) for v in values)

    def table_ddl(self, name: str, schema: Optional[str] = None) -> Optional[str]:
        return None

    def view_ddl(self, name: str, schema: Optional[str] = None) -> Optional[str]:
        return None

    def own_tables(self, prefix: str) -> Optional[str]:
        return None

    def own_views(self, prefix: str) -> Optional[str]:
        return None

    def own_materialized_views(self, prefix: str) -> Optional[str]:
        return None

    def own_indexes(self, prefix: str) -> Optional[str]:
        return None

    def object_exists(self, object_type: ObjectType, name: str) -> Optional[str]:
        return None

    def schemas(self) -> str:
        return (
            "SELECT schema_name FROM information_schema.schemata "
            f"WHERE schema_name NOT IN ({self._in(self.system_schemas)}) "
            "ORDER BY schema_name"
        )

    def current_schema(self) -> Optional[str]:
        return None

    def tables_overview(self, schema: str, limit: Optional[int] = None) -> str:
        return (
            "SELECT t.table_name AS table_name, t.table_type AS table_type, "
            "COUNT(c.column_name) AS column_count "
            "FROM information_schema.tables t "
            "LEFT JOIN information_schema.columns c "
            "ON c.table_schema = t.table_schema AND c.table_name = t.table_name "
            f"WHERE t.table_schema = {self.literal(schema)} "
            "GROUP BY t.table_name, t.table_type ORDER BY t.table_name"
            + (f" LIMIT {int(limit)}" if limit else "")
        )

    def tables_detailed(self, schema: str, limit: Optional[int] = None) -> Optional[str]:
        return None

    def columns_detailed(self, schema: str, table: str) -> Optional[str]:
        return None

    def schema_columns(self, schema: str) -> Optional[str]:
        return None

    def foreign_keys(
        self, schema: str, tables: Optional[Iterable[str]] = None
    ) -> Optional[str]:
        return None


class PostgresCatalog(Catalog):
    engine = Engine.postgres
    dialect = "postgres"
    system_schemas = ("information_schema", "pg_catalog", "pg_toast")

    def table_ddl(self, name: str, schema: Optional[str] = None) -> str:
        return (
            "SELECT 'CREATE TABLE ' || n.nspname || '.' || c.relname || ' (' || "
            "string_agg(a.attname || ' ' || format_type(a.atttypid, a.atttypmod) || "
            "CASE WHEN a.attnotnull THEN ' NOT NULL' ELSE '' END, ', ' "
            "ORDER BY a.attnum) || ');' AS ddl "
            "FROM pg_class c "
            "JOIN pg_namespace n ON n.oid = c.relnamespace "
            "JOIN pg_attribute a ON a.attrelid = c.oid "
            "AND a.attnum > 0 AND NOT a.attisdropped "
            f"WHERE c.relkind IN ('r', 'p') AND c.relname = {self.literal(name)}"
            + (f" AND n.nspname = {self.literal(schema)}" if schema else "")
            + " GROUP BY n.nspname, c.relname"
        )

    def view_ddl(self, name: str, schema: Optional[str] = None) -> str:
        view_schema = f" AND schemaname = {self.literal(schema)}" if schema else ""
        return (
            "SELECT 'CREATE VIEW ' || schemaname || '.' || viewname || ' AS ' "
            "|| definition AS ddl FROM pg_views "
            f"WHERE viewname = {self.literal(name)}{view_schema} "
            "UNION ALL "
            "SELECT 'CREATE MATERIALIZED VIEW ' || schemaname || '.' || matviewname "
            "|| ' AS ' || definition AS ddl FROM pg_matviews "
            f"WHERE matviewname = {self.literal(name)}{view_schema}"
        )

    def own_tables(self, prefix: str) -> str:
        return (
            "SELECT table_name AS name, table_schema AS schema_name "
            "FROM information_schema.tables "
            f"WHERE table_type = 'BASE TABLE' AND table_name LIKE {self.like_prefix(prefix)} "
            "ORDER BY table_schema, table_name"
        )

    def own_views(self, prefix: str) -> str:
        return (
            "SELECT table_name AS name, table_schema AS schema_name "
            "FROM information_schema.views "
            f"WHERE table_name LIKE {self.like_prefix(prefix)} "
            "ORDER BY table_schema, table_name"
        )

    def own_materialized_views(self, prefix: str) -> str:
        return (
            "SELECT matviewname AS name, schemaname AS schema_name FROM pg_matviews "
            f"WHERE matviewname LIKE {self.like_prefix(prefix)} "
            "ORDER BY schemaname, matviewname"
        )

    def own_indexes(self, prefix: str) -> str:
        return (
            "SELECT indexname AS name, schemaname AS schema_name, tablename AS table_name "
            f"FROM pg_indexes WHERE indexname LIKE {self.like_prefix(prefix)} "
            "ORDER BY schemaname, indexname"
        )

    def object_exists(self, object_type: ObjectType, name: str) -> str:
        match object_type:
            case ObjectType.table:
                source = f"information_schema.tables WHERE table_name = {self.literal(name)}"
            case ObjectType.view:
                source = f"information_schema.views WHERE table_name = {self.literal(name)}"
            case ObjectType.materialized_view:
                source = f"pg_matviews WHERE matviewname = {self.literal(name)}"
            case ObjectType.index:
                source = f"pg_indexes WHERE indexname = {self.literal(name)}"
        return f"SELECT EXISTS (SELECT 1 FROM {source}) AS present"

    def current_schema(self) -> str:
        return "SELECT current_schema() AS current_schema"

    def tables_detailed(self, schema: str, limit: Optional[int] = None) -> str:
        return (
            "SELECT t.table_name, t.table_type, "
            "obj_description(c.oid, 'pg_class') AS table_comment, "
            "pg_size_pretty(pg_total_relation_size(c.oid)) AS table_size "
            "FROM information_schema.tables t "
            "LEFT JOIN pg_namespace n ON n.nspname = t.table_schema "
            "LEFT JOIN pg_class c ON c.relname = t.table_name AND c.relnamespace = n.oid "
            f"WHERE t.table_schema = {self.literal(schema)} "
            "ORDER BY t.table_name" + (f" LIMIT {int(limit)}" if limit else "")
        )

    def columns_detailed(self, schema: str, table: str) -> str:
        s = self.literal(schema)
        return (
            "SELECT c.column_name, c.data_type, c.is_nullable, c.column_default, "
            "c.character_maximum_length, c.numeric_precision, c.numeric_scale, "
            "col_description(pgc.oid, c.ordinal_position) AS column_comment, "
            "pk.column_name IS NOT NULL AS is_primary_key, "
            "fk.column_name IS NOT NULL AS is_foreign_key, "
            "fk.foreign_table_name, fk.foreign_column_name "
            "FROM information_schema.columns c "
            "LEFT JOIN pg_namespace pgn ON pgn.nspname = c.table_schema "
            "LEFT JOIN pg_class pgc ON pgc.relname = c.table_name "
            "AND pgc.relnamespace = pgn.oid "
            "LEFT JOIN (SELECT ku.table_name, ku.column_name "
            "FROM information_schema.table_constraints tc "
            "JOIN information_schema.key_column_usage ku "
            "ON tc.constraint_name = ku.constraint_name AND tc.table_schema = ku.table_schema "
            f"WHERE tc.constraint_type = 'PRIMARY KEY' AND tc.table_schema = {s}) pk "
            "ON pk.table_name = c.table_name AND pk.column_name = c.column_name "
            "LEFT JOIN (SELECT DISTINCT kcu.table_name, kcu.column_name, "
            "ccu.table_name AS foreign_table_name, ccu.column_name AS foreign_column_name "
            "FROM information_schema.table_constraints tc "
            "JOIN information_schema.key_column_usage kcu "
            "ON tc.constraint_name = kcu.constraint_name AND tc.table_schema = kcu.table_schema "
            "JOIN information_schema.constraint_column_usage ccu "
            "ON ccu.constraint_name = tc.constraint_name AND ccu.table_schema = tc.table_schema "
            f"WHERE tc.constraint_type = 'FOREIGN KEY' AND tc.table_schema = {s}) fk "
            "ON fk.table_name = c.table_name AND fk.column_name = c.column_name "
            f"WHERE c.table_schema = {s} AND c.table_name = {self.literal(table)} "
            "ORDER BY c.ordinal_position"
        )

    def schema_columns(self, schema: str) -> str:
        return (
            "SELECT c.table_name, c.column_name, c.data_type, "
            "EXISTS (SELECT 1 FROM information_schema.table_constraints tc "
            "JOIN information_schema.key_column_usage ku "
            "ON tc.constraint_name = ku.constraint_name AND tc.table_schema = ku.table_schema "
            "WHERE tc.constraint_type = 'PRIMARY KEY' AND tc.table_schema = c.table_schema "
            "AND tc.table_name = c.table_name AND ku.column_name = c.column_name"
            ") AS is_primary_key "
            "FROM information_schema.columns c "
            "JOIN information_schema.tables t ON t.table_schema = c.table_schema "
            "AND t.table_name = c.table_name AND t.table_type = 'BASE TABLE' "
            f"WHERE c.table_schema = {self.literal(schema)} "
            "ORDER BY c.table_name, c.ordinal_position"
        )

    def foreign_keys(
        self, schema: str, tables: Optional[Iterable[str]] = None
    ) -> str:
        table_filter = f" AND tc.table_name IN ({self._in(tables)})" if tables else ""
        return (
            "SELECT DISTINCT tc.table_name AS source_table, kcu.column_name AS source_column, "
            "ccu.table_name AS target_table, ccu.column_name AS target_column, "
            "tc.constraint_name, rc.update_rule, rc.delete_rule "
            "FROM information_schema.table_constraints tc "
            "JOIN information_schema.key_column_usage kcu "
            "ON tc.constraint_name = kcu.constraint_name AND tc.table_schema = kcu.table_schema "
            "JOIN information_schema.constraint_column_usage ccu "
            "ON ccu.constraint_name = tc.constraint_name AND ccu.table_schema = tc.table_schema "
            "JOIN information_schema.referential_constraints rc "
            "ON rc.constraint_name = tc.constraint_name AND rc.constraint_schema = tc.table_schema "
            f"WHERE tc.constraint_type = 'FOREIGN KEY' AND tc.table_schema = {self.literal(schema)}"
            f"{table_filter} ORDER BY source_table, source_column"
        )


class MySqlCatalog(Catalog):
    """No materialized views and no DDL reconstruction on MySQL."""

    engine = Engine.mysql
    dialect = "mysql"
    system_schemas = ("information_schema", "mysql", "performance_schema", "sys")

    def literal(self, value) -> str:
        escaped = str(value).replace("\\", "\\\\").replace("'", "''")
        return f"'{escaped}'"

    def like_prefix(self, prefix: str) -> str:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        # the literal itself eats one level of backslashes
        return "'" + escaped.replace("\\", "\\\\").replace("'", "''") + "%'"

    def own_tables(self, prefix: str) -> str:
        return (
            "SELECT table_name AS name, table_schema AS schema_name "
            "FROM information_schema.tables "
            "WHERE table_type = 'BASE TABLE' AND table_schema = DATABASE() "
            f"AND table_name LIKE {self.like_prefix(prefix)} ORDER BY table_name"
        )

    def own_views(self, prefix: str) -> str:
        return (
            "SELECT table_name AS name, table_schema AS schema_name "
            "FROM information_schema.views WHERE table_schema = DATABASE() "
            f"AND table_name LIKE {self.like_prefix(prefix)} ORDER BY table_name"
        )

    def own_indexes(self, prefix: str) -> str:
        return (
            "SELECT DISTINCT index_name AS name, table_schema AS schema_name, "
            "table_name AS table_name FROM information_schema.statistics "
            "WHERE table_schema = DATABASE() "
            f"AND index_name LIKE {self.like_prefix(prefix)} ORDER BY index_name"
        )

    def object_exists(self, object_type: ObjectType, name: str) -> Optional[str]:
        match object_type:
            case ObjectType.table:
                source = f"information_schema.tables WHERE table_name = {self.literal(name)}"
            case ObjectType.view:
                source = f"information_schema.views WHERE table_name = {self.literal(name)}"
            case ObjectType.index:
                source = f"information_schema.statistics WHERE index_name = {self.literal(name)}"
            case _:
                return None
        return (
            f"SELECT EXISTS (SELECT 1 FROM {source} "
            "AND table_schema = DATABASE()) AS present"
        )

    def current_schema(self) -> str:
        return "SELECT DATABASE() AS current_schema"

    def schema_columns(self, schema: str) -> str:
        return (
            "SELECT table_name AS table_name, column_name AS column_name, "
            "data_type AS data_type, column_key = 'PRI' AS is_primary_key "
            f"FROM information_schema.columns WHERE table_schema = {self.literal(schema)} "
            "ORDER BY table_name, ordinal_position"
        )

    def foreign_keys(
        self, schema: str, tables: Optional[Iterable[str]] = None
    ) -> str:
        table_filter = f" AND kcu.table_name IN ({self._in(tables)})" if tables else ""
        return (
            "SELECT kcu.table_name AS source_table, kcu.column_name AS source_column, "
            "kcu.referenced_table_name AS target_table, "
            "kcu.referenced_column_name AS target_column, "
            "kcu.constraint_name AS constraint_name, rc.update_rule AS update_rule, "
            "rc.delete_rule AS delete_rule "
            "FROM information_schema.key_column_usage kcu "
            "JOIN information_schema.referential_constraints rc "
            "ON rc.constraint_name = kcu.constraint_name "
            "AND rc.constraint_schema = kcu.table_schema "
            f"WHERE kcu.table_schema = {self.literal(schema)} "
            f"AND kcu.referenced_table_name IS NOT NULL{table_filter} "
            "ORDER BY source_table, source_column"
        )


def catalog_for(engine: Engine) -> Catalog:
    match engine:
        case Engine.postgres:
            return PostgresCatalog()
        case Engine.mysql:
            return MySqlCatalog()
    return Catalog()
