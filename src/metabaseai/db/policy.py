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
Statement guard for SQL issued on behalf of an agent.

Classification is prefix pattern matching over the statement with leading
comments removed, not a parse. Anything that cannot be classified is
rejected. Nothing in this module performs I/O.
"""
import re
from dataclasses import dataclass
from typing import List, Optional, Pattern, Tuple

import sqlglot
from sqlglot.errors import TokenError
from sqlglot.tokens import TokenType

from metabaseai.config.settings import PolicyConfig
from metabaseai.db.operations import OperationType
from metabaseai.errors import (
    DangerousOperation,
    MultipleStatements,
    NameExtractionError,
    OperationNotAllowed,
    PrefixViolation,
    UnsupportedOperation,
)

# checked in order, first match wins
_STATEMENT_PATTERNS: List[Tuple[Pattern, OperationType]] = [
    (re.compile(p), op)
    for p, op in (
        (r"^CREATE\s+MATERIALIZED\s+VIEW\b", OperationType.CREATE_MATERIALIZED_VIEW),
        (r"^CREATE\s+(?:OR\s+REPLACE\s+)?VIEW\b", OperationType.CREATE_VIEW),
        (r"^CREATE\s+(?:UNIQUE\s+)?INDEX\b", OperationType.CREATE_INDEX),
        (r"^CREATE\s+TABLE\b", OperationType.CREATE_TABLE),
        (r"^DROP\s+MATERIALIZED\s+VIEW\b", OperationType.DROP_MATERIALIZED_VIEW),
        (r"^DROP\s+VIEW\b", OperationType.DROP_VIEW),
        (r"^DROP\s+INDEX\b", OperationType.DROP_INDEX),
        (r"^DROP\s+TABLE\b", OperationType.DROP_TABLE),
        (r"^(?:SELECT|WITH)\b", OperationType.SELECT),
        (r"^INSERT\b", OperationType.INSERT),
        (r"^UPDATE\b", OperationType.UPDATE),
        (r"^DELETE\b", OperationType.DELETE),
    )
]

# /*! ... */ is executed by mysql, so it is never treated as a comment
_COMMENT = r"--[^\n]*|#[^\n]*|/\*(?!!).*?\*/"
_LEADING_COMMENTS = re.compile(rf"(?:\s+|{_COMMENT})*", re.DOTALL)
_COMMENTS = re.compile(_COMMENT, re.DOTALL)

_NAME = r'((?:"[^"]+"|`[^`]+`|\w+)(?:\.(?:"[^"]+"|`[^`]+`|\w+))*)'

_NAME_PATTERNS = {
    op: re.compile(p + _NAME, re.IGNORECASE)
    for op, p in (
        (OperationType.CREATE_TABLE, r"CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?"),
        (OperationType.CREATE_VIEW, r"CREATE\s+(?:OR\s+REPLACE\s+)?VIEW\s+"),
        (
            OperationType.CREATE_MATERIALIZED_VIEW,
            r"CREATE\s+MATERIALIZED\s+VIEW\s+(?:IF\s+NOT\s+EXISTS\s+)?",
        ),
        (
            OperationType.CREATE_INDEX,
            r"CREATE\s+(?:UNIQUE\s+)?INDEX\s+(?:CONCURRENTLY\s+)?(?:IF\s+NOT\s+EXISTS\s+)?",
        ),
        (OperationType.DROP_TABLE, r"DROP\s+TABLE\s+(?:IF\s+EXISTS\s+)?"),
        (OperationType.DROP_VIEW, r"DROP\s+VIEW\s+(?:IF\s+EXISTS\s+)?"),
        (
            OperationType.DROP_MATERIALIZED_VIEW,
            r"DROP\s+MATERIALIZED\s+VIEW\s+(?:IF\s+EXISTS\s+)?",
        ),
        (
            OperationType.DROP_INDEX,
            r"DROP\s+INDEX\s+(?:CONCURRENTLY\s+)?(?:IF\s+EXISTS\s+)?",
        ),
    )
}

_NAME_PART = re.compile(r'"[^"]+"|`[^`]+`|\w+')

# what may follow the dropped name: mysql's ON <table>, RESTRICT, a semicolon
_DROP_TAIL = re.compile(rf"\s*(?:ON\s+{_NAME}\s*)?(?:RESTRICT\s*)?;?\s*", re.IGNORECASE)
_DROP_LIST_ITEM = re.compile(rf"\s*,\s*{_NAME}", re.IGNORECASE)

# token types that make a SELECT write something
_WRITE_TOKENS = {
    TokenType.INSERT,
    TokenType.UPDATE,
    TokenType.DELETE,
    TokenType.MERGE,
    TokenType.CREATE,
    TokenType.DROP,
    TokenType.ALTER,
    TokenType.INTO,
}


def strip_leading_comments(sql: str) -> str:
    return sql[_LEADING_COMMENTS.match(sql).end():]


def _unqualified(name: str) -> str:
    return _NAME_PART.findall(name)[-1].strip('"`')


@dataclass(frozen=True)
class Operation:
    type: OperationType
    object_name: Optional[str]
    schema: Optional[str]
    sql: str


class SecurityPolicy:
    # matched as plain substrings of the upper cased statement, so identifiers
    # such as grant_date are rejected as well
    DANGEROUS_KEYWORDS = (
        "DROP DATABASE",
        "DROP SCHEMA",
        "TRUNCATE",
        "ALTER SYSTEM",
        "CREATE USER",
        "DROP USER",
        "GRANT",
        "REVOKE",
    )

    def __init__(self, config: Optional[PolicyConfig] = None, dialect: str = None):
        self.config = config if config is not None else PolicyConfig()
        self.dialect = dialect

    @staticmethod
    def classify_type(sql: str) -> OperationType:
        normalized = strip_leading_comments(sql).upper().rstrip()
        for pattern, op in _STATEMENT_PATTERNS:
            if pattern.match(normalized):
                return op
        raise UnsupportedOperation(
            f"Unsupported statement: {normalized[:40]}", sql=sql
        )

    @staticmethod
    def requires_prefix(op: OperationType) -> bool:
        return op.is_create or op.is_drop

    @staticmethod
    def _match_name(sql: str, op: OperationType) -> Tuple[re.Match, str]:
        if (pattern := _NAME_PATTERNS.get(op)) is None:
            raise NameExtractionError(
                f"Cannot extract object name for {op}", sql=sql
            )
        statement = strip_leading_comments(sql).rstrip()
        if (m := pattern.match(statement)) is None:
            raise NameExtractionError(
                "Could not extract object name from SQL", sql=sql
            )
        return m, statement

    @classmethod
    def split_name(cls, sql: str, op: OperationType) -> Tuple[Optional[str], str]:
        m, _ = cls._match_name(sql, op)
        parts = [p.strip('"`') for p in _NAME_PART.findall(m.group(1))]
        schema = parts[-2] if len(parts) > 1 else None
        return schema, parts[-1]

    @classmethod
    def extract_object_name(cls, sql: str, op: OperationType) -> str:
        """Name of the object the statement creates or drops, without any
        schema qualifier."""
        return cls.split_name(sql, op)[1]

    @classmethod
    def classify(cls, sql: str) -> Operation:
        op = cls.classify_type(sql)
        schema = name = None
        if cls.requires_prefix(op):
            schema, name = cls.split_name(sql, op)
        return Operation(type=op, object_name=name, schema=schema, sql=sql)

    def _tokens(self, sql: str):
        try:
            return sqlglot.tokenize(sql, read=self.dialect)
        except TokenError as e:
            raise DangerousOperation(f"Unable to tokenize statement: {e}", sql=sql)

    def check_single_statement(self, sql: str):
        seen_separator = False
        for token in self._tokens(sql):
            if token.token_type == TokenType.SEMICOLON:
                seen_separator = True
            elif seen_separator:
                raise MultipleStatements(
                    "Only a single statement may be executed per call", sql=sql
                )

    def check_dangerous(self, sql: str):
        if "/*!" in sql:
            raise DangerousOperation("Executable comments are not allowed", sql=sql)
        upper = sql.upper()
        for keyword in self.DANGEROUS_KEYWORDS:
            if keyword in upper:
                raise DangerousOperation(
                    f"Dangerous operation not allowed: {keyword}", sql=sql
                )

    def check_no_writes(self, sql: str):
        writes = sorted(
            {t.text.upper() for t in self._tokens(sql) if t.token_type in _WRITE_TOKENS}
        )
        if writes:
            raise OperationNotAllowed(
                f"Query would write data: {', '.join(writes)}", sql=sql
            )

    def check_single_target(self, sql: str, operation: Operation):
        """A DROP names exactly one object and leaves dependent objects alone."""
        m, statement = self._match_name(sql, operation.type)
        tail = _COMMENTS.sub(" ", statement[m.end():])
        listed = []
        while (item := _DROP_LIST_ITEM.match(tail)) is not None:
            listed.append(_unqualified(item.group(1)))
            tail = tail[item.end():]
        for name in listed:
            if not name.startswith(self.config.name_prefix):
                raise PrefixViolation(name, self.config.name_prefix, sql)
        if listed:
            raise OperationNotAllowed(
                "Only one object may be dropped per statement", sql=sql
            )
        if re.search(r"\bCASCADE\b", tail, re.IGNORECASE):
            raise DangerousOperation(
                "CASCADE would also drop objects without the prefix", sql=sql
            )
        if not _DROP_TAIL.fullmatch(tail):
            raise UnsupportedOperation(
                f"Unexpected text after {operation.object_name}: {tail.strip()[:40]}",
                sql=sql,
            )

    def validate(self, sql: str) -> Operation:
        """Check a statement against the configured policy.

        Args:
            sql: the statement as it would be sent to the database

        Returns:
            The classified Operation

        Raises:
            UnsupportedOperation, NameExtractionError, PrefixViolation,
            OperationNotAllowed, DangerousOperation, MultipleStatements
        """
        operation = self.classify(sql)
        if self.requires_prefix(operation.type) and not operation.object_name.startswith(
            self.config.name_prefix
        ):
            raise PrefixViolation(operation.object_name, self.config.name_prefix, sql)
        if operation.type.is_drop:
            self.check_single_target(sql, operation)

        if operation.type not in self.config.allowed_operations:
            raise OperationNotAllowed(
                f"Operation not allowed: {operation.type}", sql=sql
            )
        if operation.type == OperationType.SELECT:
            self.check_no_writes(sql)

        self.check_dangerous(sql)
        self.check_single_statement(sql)
        return operation

    def check_read_only(self, sql: str) -> Operation:
        operation = self.classify(sql)
        if operation.type != OperationType.SELECT:
            raise OperationNotAllowed(
                f"Only SELECT statements are allowed here, not {operation.type}", sql=sql
            )
        self.check_no_writes(sql)
        self.check_dangerous(sql)
        self.check_single_statement(sql)
        return operation
