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
import pytest

from metabaseai.config.settings import PolicyConfig
from metabaseai.db.operations import OperationType
from metabaseai.db.policy import SecurityPolicy
from metabaseai.errors import (
    DangerousOperation,
    MultipleStatements,
    NameExtractionError,
    OperationNotAllowed,
    PrefixViolation,
    UnsupportedOperation,
)


@pytest.fixture
def policy():
    return SecurityPolicy(PolicyConfig())


@pytest.mark.parametrize(
    "sql, expected",
    [
        ("create table claude_ai_t (id int)", OperationType.CREATE_TABLE),
        ("  CREATE VIEW claude_ai_v AS SELECT 1", OperationType.CREATE_VIEW),
        ("CREATE OR REPLACE VIEW claude_ai_v AS SELECT 1", OperationType.CREATE_VIEW),
        (
            "CREATE MATERIALIZED VIEW claude_ai_mv AS SELECT 1",
            OperationType.CREATE_MATERIALIZED_VIEW,
        ),
        ("CREATE UNIQUE INDEX claude_ai_i ON t (a)", OperationType.CREATE_INDEX),
        ("DROP MATERIALIZED VIEW claude_ai_mv", OperationType.DROP_MATERIALIZED_VIEW),
        ("drop index claude_ai_i", OperationType.DROP_INDEX),
        ("SELECT 1", OperationType.SELECT),
        ("WITH t AS (SELECT 1) SELECT * FROM t", OperationType.SELECT),
        ("DELETE FROM t", OperationType.DELETE),
    ],
)
def test_classify_type(sql, expected):
    assert SecurityPolicy.classify_type(sql) == expected


def test_unknown_statement_unsupported():
    with pytest.raises(UnsupportedOperation):
        SecurityPolicy.classify_type("ALTER TABLE t ADD COLUMN x int")
    with pytest.raises(UnsupportedOperation):
        SecurityPolicy.classify_type("/* unterminated DROP TABLE customers")


@pytest.mark.parametrize(
    "sql",
    [
        "/* c */ DROP TABLE customers",
        "-- x\nDROP TABLE customers",
        "  /* a */ -- b\n  drop table customers",
        "# note\nDROP TABLE customers",
    ],
)
def test_leading_comments_ignored(sql):
    operation = SecurityPolicy.classify(sql)
    assert operation.type == OperationType.DROP_TABLE
    assert operation.object_name == "customers"


def test_name_in_leading_comment_not_used():
    operation = SecurityPolicy.classify("/* DROP TABLE claude_ai_x */ DROP TABLE customers")
    assert operation.object_name == "customers"


@pytest.mark.parametrize(
    "sql, op, schema, name",
    [
        (
            "CREATE TABLE IF NOT EXISTS claude_ai_sales (id int)",
            OperationType.CREATE_TABLE,
            None,
            "claude_ai_sales",
        ),
        (
            'CREATE VIEW analytics."claude_ai_v" AS SELECT 1',
            OperationType.CREATE_VIEW,
            "analytics",
            "claude_ai_v",
        ),
        (
            "CREATE INDEX CONCURRENTLY IF NOT EXISTS claude_ai_idx ON t (a)",
            OperationType.CREATE_INDEX,
            None,
            "claude_ai_idx",
        ),
        (
            "DROP TABLE IF EXISTS `shop`.`claude_ai_t`",
            OperationType.DROP_TABLE,
            "shop",
            "claude_ai_t",
        ),
    ],
)
def test_split_name(sql, op, schema, name):
    assert SecurityPolicy.split_name(sql, op) == (schema, name)
    assert SecurityPolicy.extract_object_name(sql, op) == name


def test_name_extraction_failure():
    with pytest.raises(NameExtractionError):
        SecurityPolicy.split_name("CREATE TABLE (id int)", OperationType.CREATE_TABLE)
    with pytest.raises(NameExtractionError):
        SecurityPolicy.split_name("SELECT 1", OperationType.SELECT)


class TestValidate:
    def test_prefixed_create_accepted(self, policy):
        operation = policy.validate("CREATE TABLE claude_ai_sales (id int)")
        assert operation.type == OperationType.CREATE_TABLE
        assert operation.object_name == "claude_ai_sales"

    def test_prefix_checked_on_unqualified_name(self, policy):
        operation = policy.validate("CREATE TABLE public.claude_ai_sales (id int)")
        assert operation.schema == "public"
        with pytest.raises(PrefixViolation) as e:
            policy.validate("CREATE TABLE claude_ai.sales (id int)")
        assert e.value.object_name == "sales"

    def test_qualified_drop_accepted(self, policy):
        operation = policy.validate("DROP TABLE public.claude_ai_test")
        assert operation.type == OperationType.DROP_TABLE
        assert operation.object_name == "claude_ai_test"

    def test_drop_without_prefix_rejected(self, policy):
        with pytest.raises(PrefixViolation):
            policy.validate("DROP TABLE customers")

    def test_prefix_is_case_sensitive(self, policy):
        with pytest.raises(PrefixViolation):
            policy.validate("CREATE TABLE CLAUDE_AI_sales (id int)")

    def test_custom_prefix(self):
        policy = SecurityPolicy(PolicyConfig(name_prefix="tmp_"))
        assert policy.validate("CREATE VIEW tmp_v AS SELECT 1").object_name == "tmp_v"
        with pytest.raises(PrefixViolation):
            policy.validate("CREATE VIEW claude_ai_v AS SELECT 1")

    def test_disallowed_operation(self):
        policy = SecurityPolicy(
            PolicyConfig(allowed_operations={OperationType.CREATE_TABLE})
        )
        with pytest.raises(OperationNotAllowed):
            policy.validate("DROP TABLE claude_ai_t")

    @pytest.mark.parametrize(
        "sql",
        [
            "CREATE TABLE claude_ai_t AS SELECT * FROM users; DROP DATABASE prod",
            "CREATE VIEW claude_ai_grants AS SELECT grant_date FROM t",
            "CREATE VIEW claude_ai_v AS SELECT 1 -- truncate later",
        ],
    )
    def test_dangerous_substrings(self, policy, sql):
        with pytest.raises(DangerousOperation):
            policy.validate(sql)

    def test_select_is_not_prefix_checked(self, policy):
        assert policy.validate("SELECT * FROM customers").object_name is None

    def test_multiple_statements_rejected(self, policy):
        with pytest.raises(MultipleStatements):
            policy.validate("CREATE TABLE claude_ai_t (id int); SELECT 1")

    def test_trailing_semicolon_allowed(self, policy):
        policy.validate("CREATE TABLE claude_ai_t (id int);")

    def test_semicolon_in_literal_allowed(self, policy):
        policy.validate("CREATE VIEW claude_ai_v AS SELECT 'a;b' AS c")

    def test_unsupported_statement(self, policy):
        with pytest.raises(UnsupportedOperation):
            policy.validate("ALTER TABLE claude_ai_t ADD COLUMN x int")

    @pytest.mark.parametrize(
        "sql",
        [
            "/* c */ DROP TABLE customers",
            "-- x\nDROP TABLE customers",
        ],
    )
    def test_commented_drop_prefix_checked(self, policy, sql):
        with pytest.raises(PrefixViolation):
            policy.validate(sql)

    @pytest.mark.parametrize(
        "sql, error",
        [
            ("ALTER TABLE customers DROP COLUMN email", UnsupportedOperation),
            ("DROP SCHEMA public CASCADE", UnsupportedOperation),
        ],
    )
    def test_unclassified_statements_rejected(self, policy, sql, error):
        with pytest.raises(error):
            policy.validate(sql)

    @pytest.mark.parametrize(
        "sql",
        [
            "DROP TABLE IF EXISTS claude_ai_a, customers",
            "DROP TABLE claude_ai_a , public.customers",
            "DROP VIEW claude_ai_v /* x */, customers",
        ],
    )
    def test_drop_list_names_all_checked(self, policy, sql):
        with pytest.raises(PrefixViolation) as e:
            policy.validate(sql)
        assert e.value.object_name == "customers"

    def test_drop_one_object_per_statement(self, policy):
        with pytest.raises(OperationNotAllowed):
            policy.validate("DROP TABLE claude_ai_a, claude_ai_b")

    def test_drop_cascade_rejected(self, policy):
        with pytest.raises(DangerousOperation):
            policy.validate("DROP TABLE claude_ai_a CASCADE")

    @pytest.mark.parametrize(
        "sql",
        [
            "DROP TABLE claude_ai_a RESTRICT;",
            "DROP INDEX claude_ai_idx ON orders",
            "DROP VIEW IF EXISTS claude_ai_v; -- done",
        ],
    )
    def test_drop_tail_accepted(self, policy, sql):
        assert policy.validate(sql).type.is_drop

    def test_drop_trailing_text_rejected(self, policy):
        with pytest.raises(UnsupportedOperation):
            policy.validate("DROP TABLE claude_ai_a WHATEVER")

    def test_executable_comment_rejected(self, policy):
        with pytest.raises(DangerousOperation):
            policy.validate("CREATE TABLE claude_ai_t (id int) /*!50000 , x int */")

    def test_writing_cte_rejected(self, policy):
        with pytest.raises(OperationNotAllowed):
            policy.validate("WITH d AS (DELETE FROM customers RETURNING *) SELECT * FROM d")


class TestReadOnly:
    @pytest.mark.parametrize(
        "sql",
        [
            "SELECT 1",
            "WITH t AS (SELECT 1) SELECT * FROM t",
            "select * from orders;",
            "-- daily totals\nSELECT day, sum(total) FROM orders GROUP BY day",
        ],
    )
    def test_accepted(self, policy, sql):
        assert policy.check_read_only(sql).type == OperationType.SELECT

    @pytest.mark.parametrize(
        "sql, error",
        [
            ("DELETE FROM orders", OperationNotAllowed),
            ("CREATE TABLE claude_ai_t (id int)", OperationNotAllowed),
            ("/* c */ DROP TABLE customers", OperationNotAllowed),
            ("ALTER TABLE customers DROP COLUMN email", UnsupportedOperation),
            ("WITH d AS (DELETE FROM orders RETURNING *) SELECT * FROM d", OperationNotAllowed),
            ("SELECT * INTO orders_copy FROM orders", OperationNotAllowed),
            ("SELECT 1; SELECT 2", MultipleStatements),
        ],
    )
    def test_rejected(self, policy, sql, error):
        with pytest.raises(error):
            policy.check_read_only(sql)
