"""
Tests for artifact schema fingerprinting.
"""

import unittest

from schema_allowlist import SchemaAllowlist
from schema_fingerprint import identify_table, score_tables


POLICY = {
    "allowlist": {
        "app_data": {
            "users": {
                "id": {"description": "Surrogate key"},
                "username": {"description": "Public handle"},
                "email": {"description": "Contact address"},
            },
            "orders": {
                "id": {"description": "Order id"},
                "sku": {"description": "Product code"},
                "qty": {"description": "Units"},
            },
        }
    }
}


class TestIdentifyTable(unittest.TestCase):

    def setUp(self):
        self.allowlist = SchemaAllowlist.from_dict(POLICY)

    def test_unique_winner(self):
        self.assertEqual(
            identify_table(["id", "sku", "qty", "cost"], self.allowlist),
            "app_data.orders",
        )

    def test_headers_are_trimmed_and_lower_cased(self):
        self.assertEqual(
            identify_table(["  SKU ", "Qty"], self.allowlist),
            "app_data.orders",
        )

    def test_tie_fails_closed(self):
        self.assertIsNone(identify_table(["id"], self.allowlist))
        self.assertIsNone(identify_table(["id", "sku", "email"], self.allowlist))

    def test_no_overlap(self):
        self.assertIsNone(identify_table(["foo", "bar"], self.allowlist))
        self.assertIsNone(identify_table([], self.allowlist))

    def test_empty_allowlist(self):
        self.assertIsNone(identify_table(["id"], SchemaAllowlist.from_dict({"allowlist": {}})))

    def test_scores(self):
        self.assertEqual(
            score_tables(["id", "username", "id"], self.allowlist),
            {"app_data.orders": 1, "app_data.users": 2},
        )

    def test_deterministic(self):
        headers = ["username", "email", "id", "sku"]
        results = {identify_table(headers, self.allowlist) for _ in range(5)}
        self.assertEqual(results, {"app_data.users"})


if __name__ == "__main__":
    unittest.main()
