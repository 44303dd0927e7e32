"""
Regression tests for the SQL policy validator.

Each test names the rejection category it expects. No DB required, uses a
mock allowlist.
"""

import unittest

from schema_allowlist import SchemaAllowlist
from sql_policy_validator import (
    ErrorKind,
    QueryMode,
    SQLPolicyValidator,
    VALIDATION_CATEGORY,
    is_pure_aggregate,
)

import sqlglot


MOCK_POLICY = {
    "allowlist": {
        "app_data": {
            "users": {
                "id": {"description": "Surrogate key"},
                "username": {"description": "Public handle"},
                "last_login": {"description": "Last login timestamp"},
            },
            "orders": {
                "id": {"description": "Order id"},
                "user_id": {"description": "Owning user"},
                "sku": {"description": "Product code"},
                "qty": {"description": "Units ordered"},
            },
        }
    }
}


class ValidatorTestCase(unittest.TestCase):

    def setUp(self):
        self.allowlist = SchemaAllowlist.from_dict(MOCK_POLICY)
        self.validator = SQLPolicyValidator(self.allowlist)

    def db(self, sql):
        return self.validator.validate(sql, QueryMode.DATABASE)

    def artifact(self, sql):
        return self.validator.validate(sql, QueryMode.ARTIFACT)

    def assertRejected(self, decision, kind):
        self.assertFalse(decision.ok, f"expected {kind.value}, query was accepted")
        self.assertEqual(decision.error_kind, kind, decision.error)
        self.assertTrue(decision.hint)


class TestSyntaxAndShape(ValidatorTestCase):

    def test_empty_query(self):
        self.assertRejected(self.db(""), ErrorKind.INVALID_SYNTAX)
        self.assertRejected(self.db("   "), ErrorKind.INVALID_SYNTAX)

    def test_unbalanced_parenthesis(self):
        decision = self.db("SELECT id FROM app_data.users WHERE (id = 1 LIMIT 5")
        self.assertRejected(decision, ErrorKind.INVALID_SYNTAX)

    def test_statement_stacking(self):
        decision = self.db("SELECT 1; DROP TABLE app_data.users")
        self.assertRejected(decision, ErrorKind.BATCH_NOT_ALLOWED)

    def test_trailing_semicolon_is_single_statement(self):
        self.assertTrue(self.db("SELECT id FROM app_data.users LIMIT 5;").ok)

    def test_delete(self):
        decision = self.db("DELETE FROM app_data.users")
        self.assertRejected(decision, ErrorKind.FORBIDDEN_STATEMENT_TYPE)
        self.assertIn("DELETE", decision.error)

    def test_other_statement_kinds(self):
        for sql in (
            "INSERT INTO app_data.users (id) VALUES (1)",
            "UPDATE app_data.users SET username = 'x'",
            "DROP TABLE app_data.users",
            "CREATE TABLE app_data.x (id INT)",
        ):
            with self.subTest(sql=sql):
                self.assertRejected(self.db(sql), ErrorKind.FORBIDDEN_STATEMENT_TYPE)

    def test_select_into(self):
        decision = self.db("SELECT id INTO app_data.copy FROM app_data.users LIMIT 5")
        self.assertRejected(decision, ErrorKind.FORBIDDEN_STATEMENT_TYPE)

    def test_blocked_function(self):
        decision = self.db("SELECT pg_read_file('/etc/passwd') LIMIT 1")
        self.assertRejected(decision, ErrorKind.FORBIDDEN_FUNCTION)
        self.assertIn("PG_READ_FILE", decision.error)

    def test_response_shape(self):
        response = self.db("DELETE FROM app_data.users").to_response()
        self.assertEqual(response["category"], VALIDATION_CATEGORY)
        self.assertEqual(response["kind"], "ForbiddenStatementType")
        self.assertIn("error", response)
        self.assertIn("hint", response)


class TestDatabaseMode(ValidatorTestCase):

    def test_allowlisted_query_passes(self):
        decision = self.db("SELECT id, username FROM app_data.users LIMIT 10")
        self.assertTrue(decision.ok)
        self.assertIsNone(decision.error_kind)
        self.assertEqual(sorted(str(t) for t in decision.tables), ["app_data.users"])

    def test_table_not_allowed(self):
        decision = self.db("SELECT * FROM app_data.secrets LIMIT 5")
        self.assertRejected(decision, ErrorKind.TABLE_NOT_ALLOWED)
        self.assertIn("app_data.secrets", decision.error)

    def test_table_hidden_in_subquery_not_allowed(self):
        sql = """
        SELECT username FROM app_data.users
        WHERE id IN (SELECT user_id FROM app_data.secrets)
        LIMIT 5
        """
        self.assertRejected(self.db(sql), ErrorKind.TABLE_NOT_ALLOWED)

    def test_table_hidden_in_cte_not_allowed(self):
        sql = """
        WITH s AS (SELECT id FROM app_data.secrets)
        SELECT id FROM s LIMIT 5
        """
        self.assertRejected(self.db(sql), ErrorKind.TABLE_NOT_ALLOWED)

    def test_table_matching_is_case_insensitive(self):
        self.assertTrue(self.db("SELECT id FROM APP_DATA.Users LIMIT 1").ok)

    def test_unqualified_table_strict(self):
        decision = self.db("SELECT id FROM users LIMIT 5")
        self.assertRejected(decision, ErrorKind.EXTRACTION_FAILED)
        self.assertIn("app_data.", decision.hint)

    def test_unqualified_table_lenient(self):
        validator = SQLPolicyValidator(
            self.allowlist, require_schema=False, default_schema="app_data"
        )
        self.assertTrue(validator.validate("SELECT id FROM users LIMIT 5", QueryMode.DATABASE).ok)

    def test_column_not_allowed(self):
        decision = self.db("SELECT password FROM app_data.users LIMIT 5")
        self.assertRejected(decision, ErrorKind.COLUMN_NOT_ALLOWED)

    def test_alias_cannot_launder_a_column(self):
        decision = self.db("SELECT password AS username FROM app_data.users LIMIT 5")
        self.assertRejected(decision, ErrorKind.COLUMN_NOT_ALLOWED)

    def test_disallowed_column_in_predicate(self):
        decision = self.db("SELECT id FROM app_data.users WHERE password = 'x' LIMIT 5")
        self.assertRejected(decision, ErrorKind.COLUMN_NOT_ALLOWED)

    def test_qualified_column_checked_against_its_own_table(self):
        sql = """
        SELECT u.sku FROM app_data.users u
        JOIN app_data.orders o ON u.id = o.user_id
        LIMIT 5
        """
        self.assertRejected(self.db(sql), ErrorKind.COLUMN_NOT_ALLOWED)

    def test_query_alias_may_be_referenced(self):
        sql = """
        SELECT user_id, count(*) AS n FROM app_data.orders
        GROUP BY user_id ORDER BY n DESC LIMIT 5
        """
        self.assertTrue(self.db(sql).ok)

    def test_star_passes_column_check(self):
        self.assertTrue(self.db("SELECT * FROM app_data.users LIMIT 5").ok)

    def test_explicit_join_passes(self):
        sql = """
        SELECT u.username, o.sku FROM app_data.users u
        JOIN app_data.orders o ON u.id = o.user_id
        LIMIT 10
        """
        self.assertTrue(self.db(sql).ok)

    def test_comma_join_rejected(self):
        sql = "SELECT u.id FROM app_data.users u, app_data.orders o LIMIT 5"
        self.assertRejected(self.db(sql), ErrorKind.IMPLICIT_JOIN_REJECTED)

    def test_cross_join_rejected(self):
        sql = "SELECT u.id FROM app_data.users u CROSS JOIN app_data.orders o LIMIT 5"
        self.assertRejected(self.db(sql), ErrorKind.IMPLICIT_JOIN_REJECTED)

    def test_limit_required(self):
        self.assertRejected(
            self.db("SELECT id FROM app_data.users"),
            ErrorKind.LIMIT_REQUIRED,
        )

    def test_grouped_non_aggregate_projection_needs_limit(self):
        sql = "SELECT user_id, count(*) FROM app_data.orders GROUP BY user_id"
        self.assertRejected(self.db(sql), ErrorKind.LIMIT_REQUIRED)

    def test_pure_aggregate_needs_no_limit(self):
        self.assertTrue(self.db("SELECT count(*) FROM app_data.orders").ok)
        self.assertTrue(self.db("SELECT count(*) AS n, max(qty) FROM app_data.orders").ok)

    def test_missing_allowlist_is_internal_failure(self):
        validator = SQLPolicyValidator(None)
        decision = validator.validate("SELECT id FROM app_data.users LIMIT 1", QueryMode.DATABASE)
        self.assertRejected(decision, ErrorKind.INTERNAL_ALLOWLIST_LOOKUP_FAILURE)


class TestArtifactMode(ValidatorTestCase):

    def test_artifact_query_passes(self):
        self.assertTrue(self.artifact("SELECT sku, qty FROM artifact LIMIT 5").ok)

    def test_other_table_out_of_scope(self):
        decision = self.artifact("SELECT * FROM orders LIMIT 5")
        self.assertRejected(decision, ErrorKind.OUT_OF_SCOPE_TABLE)

    def test_qualified_artifact_out_of_scope(self):
        decision = self.artifact("SELECT * FROM main.artifact LIMIT 5")
        self.assertRejected(decision, ErrorKind.OUT_OF_SCOPE_TABLE)

    def test_artifact_limit_required(self):
        self.assertRejected(self.artifact("SELECT sku FROM artifact"), ErrorKind.LIMIT_REQUIRED)

    def test_artifact_aggregate(self):
        self.assertTrue(self.artifact("SELECT count(*) FROM artifact").ok)

    def test_artifact_rejects_dml(self):
        self.assertRejected(
            self.artifact("DELETE FROM artifact"),
            ErrorKind.FORBIDDEN_STATEMENT_TYPE,
        )

    def test_artifact_column_references(self):
        allowed = ["id", "sku", "qty"]
        ok = self.validator.check_column_references(
            "SELECT a.sku FROM artifact a LIMIT 5", allowed, QueryMode.ARTIFACT
        )
        self.assertTrue(ok.ok)

        rejected = self.validator.check_column_references(
            "SELECT cost AS sku FROM artifact LIMIT 5", allowed, QueryMode.ARTIFACT
        )
        self.assertRejected(rejected, ErrorKind.COLUMN_NOT_ALLOWED)


class TestColumnScoping(ValidatorTestCase):
    """Output aliases resolve only where SQL resolves them."""

    # --- Alias reuse must not hide a real column ---

    def test_alias_shadowing_in_select_list(self):
        sql = "SELECT password AS username, 1 AS password FROM app_data.users LIMIT 2"
        self.assertRejected(self.db(sql), ErrorKind.COLUMN_NOT_ALLOWED)

    def test_alias_shadowing_in_where(self):
        sql = "SELECT 1 AS password FROM app_data.users WHERE password = 'x' LIMIT 1"
        self.assertRejected(self.db(sql), ErrorKind.COLUMN_NOT_ALLOWED)

    def test_alias_shadowing_in_group_by(self):
        sql = """
        SELECT 1 AS password, count(*) AS n FROM app_data.users
        GROUP BY password LIMIT 5
        """
        self.assertRejected(self.db(sql), ErrorKind.COLUMN_NOT_ALLOWED)

    def test_alias_inside_order_by_expression(self):
        sql = "SELECT 1 AS password FROM app_data.users ORDER BY password || '' LIMIT 1"
        self.assertRejected(self.db(sql), ErrorKind.COLUMN_NOT_ALLOWED)

    def test_artifact_alias_shadowing(self):
        decision = self.validator.check_column_references(
            "SELECT cost AS sku, 1 AS cost FROM artifact LIMIT 2",
            ["id", "sku", "qty"],
            QueryMode.ARTIFACT,
        )
        self.assertRejected(decision, ErrorKind.COLUMN_NOT_ALLOWED)

    def test_base_table_column_rename_list(self):
        decision = self.validator.check_column_references(
            "SELECT x FROM artifact AS a(x, y) LIMIT 2",
            ["id", "sku", "qty"],
            QueryMode.ARTIFACT,
        )
        self.assertRejected(decision, ErrorKind.COLUMN_NOT_ALLOWED)

    # --- Derived tables and CTEs ---

    def test_derived_table_exposes_its_aliases(self):
        sql = "SELECT t.n, n FROM (SELECT count(*) AS n FROM app_data.orders) t LIMIT 1"
        self.assertTrue(self.db(sql).ok)

    def test_cte_exposes_its_aliases(self):
        sql = """
        WITH recent AS (SELECT user_id AS uid FROM app_data.orders)
        SELECT uid FROM recent ORDER BY uid LIMIT 5
        """
        self.assertTrue(self.db(sql).ok)

    def test_derived_rename_is_checked_inside(self):
        sql = "SELECT username FROM (SELECT password AS username FROM app_data.users) t LIMIT 5"
        self.assertRejected(self.db(sql), ErrorKind.COLUMN_NOT_ALLOWED)

    def test_derived_star_exposes_only_allowlisted_columns(self):
        sql = "SELECT t.password FROM (SELECT * FROM app_data.users) t LIMIT 5"
        self.assertRejected(self.db(sql), ErrorKind.COLUMN_NOT_ALLOWED)
        sql = "SELECT username FROM (SELECT * FROM app_data.users) t LIMIT 5"
        self.assertTrue(self.db(sql).ok)

    # --- Qualifiers resolve innermost first ---

    def test_correlated_reference(self):
        sql = """
        SELECT u.username FROM app_data.users u
        WHERE EXISTS (SELECT 1 FROM app_data.orders o WHERE o.user_id = u.id)
        LIMIT 5
        """
        self.assertTrue(self.db(sql).ok)

    def test_inner_qualifier_shadows_outer(self):
        sql = """
        SELECT o.sku FROM app_data.orders o
        WHERE o.id IN (SELECT o.sku FROM app_data.users o)
        LIMIT 5
        """
        self.assertRejected(self.db(sql), ErrorKind.COLUMN_NOT_ALLOWED)

    def test_unknown_qualifier(self):
        sql = "SELECT x.id FROM app_data.users u LIMIT 5"
        self.assertRejected(self.db(sql), ErrorKind.COLUMN_NOT_ALLOWED)


class TestPureAggregate(unittest.TestCase):

    def test_detection(self):
        cases = [
            ("SELECT count(*) FROM t", True),
            ("SELECT sum(x) AS total, avg(y) FROM t", True),
            ("SELECT x, count(*) FROM t GROUP BY x", False),
            ("SELECT upper(x) FROM t", False),
            ("SELECT x FROM t", False),
        ]
        for sql, expected in cases:
            with self.subTest(sql=sql):
                self.assertEqual(is_pure_aggregate(sqlglot.parse_one(sql)), expected)


if __name__ == "__main__":
    unittest.main()
