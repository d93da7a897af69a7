# type: ignore
"""
Tests for generated attribute values.
"""

import unittest
from unittest.mock import patch

from ldapbook.autovalues import (
    AutovalueError,
    Autovalues,
    Expression,
    render,
    substitute,
    tokenize,
)

VALUES = {"givenname": "John", "sn": "Smith", "mail": "jsmith@example.com"}


class TestPlainTemplates(unittest.TestCase):

    def test_substitute(self):
        self.assertEqual(substitute("{givenname}.{SN}", VALUES), "John.Smith")

    def test_unknown_placeholders_are_empty(self):
        self.assertEqual(render("{givenname}{nickname}", VALUES), "John")


class TestExpressions(unittest.TestCase):
    """Test expression templates."""

    def test_functions(self):
        self.assertEqual(render("lower('{givenname}')", VALUES), "john")
        self.assertEqual(render("strtoupper('{sn}')", VALUES), "SMITH")
        self.assertEqual(render("ucfirst('smith')", VALUES), "Smith")
        self.assertEqual(render("ucwords('jane van doe')", VALUES), "Jane Van Doe")
        self.assertEqual(render("trim('  x ')", VALUES), "x")
        self.assertEqual(render("replace('{mail}', '@example.com', '')", VALUES), "jsmith")

    def test_substr(self):
        self.assertEqual(render("substr('{givenname}', 0, 1)", VALUES), "J")
        self.assertEqual(render("substr('{sn}', -3)", VALUES), "ith")
        self.assertEqual(render("substr('{sn}', 1, -1)", VALUES), "mit")

    def test_concatenation(self):
        self.assertEqual(
            render("lower(substr('{givenname}', 0, 1) . '{sn}')", VALUES), "jsmith"
        )
        self.assertEqual(render("trim('{givenname}' + ' ' + '{sn}')", VALUES), "John Smith")

    def test_hashes(self):
        self.assertEqual(render("md5('')", VALUES), "d41d8cd98f00b204e9800998ecf8427e")
        self.assertEqual(
            render("sha1('')", VALUES), "da39a3ee5e6b4b0d3255bfef95601890afd80709"
        )

    @patch("ldapbook.autovalues.time.time")
    def test_microtime(self, mock_time):
        mock_time.return_value = 1700000000.25
        self.assertEqual(render("microtime()", VALUES), "0.25000000 1700000000")

    def test_uniqid(self):
        value = render("uniqid('u')", VALUES)
        self.assertTrue(value.startswith("u"))
        self.assertEqual(len(value), 14)

    def test_unknown_function(self):
        with self.assertRaises(AutovalueError):
            Expression("system('rm')")

    def test_unbalanced_parentheses(self):
        with self.assertRaises(AutovalueError):
            Expression("lower('{sn}'")
        with self.assertRaises(AutovalueError):
            Expression("lower('{sn}'))")

    def test_unexpected_characters(self):
        with self.assertRaises(AutovalueError):
            tokenize("lower('{sn}'); exit()")

    def test_tokens(self):
        self.assertEqual(
            tokenize("lower({sn}, 2)"),
            [
                ("name", "lower"),
                ("op", "("),
                ("placeholder", "{sn}"),
                ("op", ","),
                ("number", "2"),
                ("op", ")"),
            ],
        )


class TestAutovalues(unittest.TestCase):
    """Test Autovalues.apply()."""

    def test_fills_missing_attributes(self):
        autovalues = Autovalues({"uid": "lower('{givenName}.{sn}')", "displayName": "{givenname} {sn}"})
        attributes = {"givenname": ["John"], "sn": ["Smith"]}
        autovalues.apply(attributes)
        self.assertEqual(attributes["uid"], ["john.smith"])
        self.assertEqual(attributes["displayname"], ["John Smith"])

    def test_existing_values_win(self):
        attributes = {"uid": ["jsmith"], "sn": ["Smith"]}
        Autovalues({"uid": "lower('{sn}')"}).apply(attributes)
        self.assertEqual(attributes["uid"], ["jsmith"])

    def test_generated_values_feed_later_rules(self):
        attributes = {"sn": ["Smith"]}
        Autovalues({"uid": "lower('{sn}')", "mail": "{uid}@example.com"}).apply(attributes)
        self.assertEqual(attributes["mail"], ["smith@example.com"])

    def test_failing_rule_is_skipped(self):
        attributes = {"sn": ["Smith"]}
        with self.assertLogs("ldapbook.autovalues", level="WARNING"):
            Autovalues({"uid": "nope('{sn}')"}).apply(attributes)
        self.assertNotIn("uid", attributes)

    def test_covers(self):
        autovalues = Autovalues({"UID": "x"})
        self.assertTrue(autovalues.covers("uid"))
        self.assertFalse(Autovalues({}))
