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
from typing import Optional


class MetabaseAIError(Exception):
    category = "infrastructure"


class PolicyViolation(MetabaseAIError):
    """A statement was rejected before anything was sent to the database."""

    category = "policy"

    def __init__(self, message: str, sql: Optional[str] = None):
        super().__init__(message)
        self.sql = sql


class UnsupportedOperation(PolicyViolation):
    pass


class NameExtractionError(PolicyViolation):
    pass


class PrefixViolation(PolicyViolation):
    def __init__(self, object_name: str, prefix: str, sql: Optional[str] = None):
        super().__init__(
            f"Object name '{object_name}' must start with prefix '{prefix}'", sql
        )
        self.object_name = object_name
        self.prefix = prefix


class OperationNotAllowed(PolicyViolation):
    pass


class DangerousOperation(PolicyViolation):
    pass


class MultipleStatements(PolicyViolation):
    pass


class InvalidIdentifier(PolicyViolation):
    pass


class ApprovalRequired(MetabaseAIError):
    category = "approval"

    def __init__(self, sql: str):
        super().__init__(
            "Operation requires approval, re-invoke with approved=true to execute"
        )
        self.sql = sql


class CredentialsUnavailable(MetabaseAIError):
    category = "credentials"


class DatabaseConnectionError(MetabaseAIError, ConnectionError):
    pass


class OperationTimeout(MetabaseAIError):
    category = "timeout"


class LLMResponseError(MetabaseAIError):
    pass


class StatementError(MetabaseAIError):
    """The database rejected a statement. The connection is still usable."""

    def __init__(self, message: str, sql: Optional[str] = None):
        super().__init__(message)
        self.sql = sql


class NativeQueryError(StatementError):
    """Metabase accepted the request but the query itself failed."""
