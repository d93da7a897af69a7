# type: ignore
"""
Tests for building search filters.
"""

import unittest

from ldapbook.exceptions import ErrorKind, SearchError
from ldapbook.filters import (
    MATCH_NOTHING,
    FilterBuilder,
    MatchMode,
    SearchSpec,
    matches,
    wrap_filter,
)
from ldapbook.options import SourceOptions
from ldapbook.schema import SchemaMapper

FIELDMAP = {
    "name": "cn",
    "surname": "sn",
    "firstname": "givenName",
    "email:work": "mail",
    "email:home": "otherMailbox",
    "phone": "telephoneNumber",
}


def make_builder(base_filter=None, search_fields=None, fuzzy_search=True):
    options = SourceOptions({"fieldmap": FIELDMAP}, name="test")
    return FilterBuilder(
        SchemaMapper(options).build(),
        search_fields=search_fields,
        base_filter=base_filter,
        fuzzy_search=fuzzy_search,
    )


class TestMatchModes(unittest.TestCase):
    """Test the wildcards each match mode adds."""

    def setUp(self):
        self.builder = make_builder()

    def test_partial(self):
        self.assertEqual(self.builder.build(SearchSpec("name", "an")), "(cn=*an*)")

    def test_prefix(self):
        self.assertEqual(
            self.builder.build(SearchSpec("name", "an", MatchMode.PREFIX)), "(cn=an*)"
        )

    def test_strict(self):
        self.assertEqual(
            self.builder.build(SearchSpec("name", "an", MatchMode.STRICT)), "(cn=an)"
        )

    def test_no_wildcards_without_fuzzy_search(self):
        builder = make_builder(fuzzy_search=False)
        self.assertEqual(builder.build(SearchSpec("name", "an")), "(cn=an)")

    def test_empty_value_is_a_presence_check(self):
        self.assertEqual(self.builder.build(SearchSpec("name", "")), "(cn=*)")

    def test_empty_strict_value_matches_nothing(self):
        self.assertEqual(
            self.builder.build(SearchSpec("name", "", MatchMode.STRICT)), MATCH_NOTHING
        )
        builder = make_builder(fuzzy_search=False)
        self.assertEqual(builder.build(SearchSpec(["name", "surname"], "")), MATCH_NOTHING)

    def test_wildcards_never_repeat(self):
        for mode in MatchMode:
            with self.subTest(mode=mode):
                self.assertNotIn("**", self.builder.build(SearchSpec("name", "*an*", mode)))


class TestFieldCombination(unittest.TestCase):
    """Test how fields and values combine."""

    def setUp(self):
        self.builder = make_builder()

    def test_several_fields_are_ored(self):
        self.assertEqual(
            self.builder.build(SearchSpec(["name", "surname"], "an")),
            "(|(cn=*an*)(sn=*an*))",
        )

    def test_attributes_of_one_field_are_ored(self):
        self.assertEqual(
            self.builder.build(SearchSpec("email", "jane")),
            "(|(mail=*jane*)(othermailbox=*jane*))",
        )

    def test_parallel_values_are_anded(self):
        self.assertEqual(
            self.builder.build(
                SearchSpec(["firstname", "surname"], ["Jane", "Doe"], MatchMode.STRICT)
            ),
            "(&(givenname=Jane)(sn=Doe))",
        )

    def test_parallel_values_skip_empty_values(self):
        self.assertEqual(
            self.builder.build(SearchSpec(["firstname", "surname"], ["", "Doe"])),
            "(sn=*Doe*)",
        )

    def test_unknown_field_matches_nothing(self):
        self.assertEqual(self.builder.build(SearchSpec("nickname", "jd")), MATCH_NOTHING)

    def test_unknown_parallel_field_fails_the_conjunction(self):
        result = self.builder.build(SearchSpec(["surname", "nickname"], ["Doe", "jd"]))
        self.assertIn("(sn=*Doe*)", result)
        self.assertIn("(!(objectClass=*))", result)
        self.assertTrue(result.startswith("(&"))

    def test_required_fields_are_anded(self):
        result = self.builder.build(SearchSpec("name", "an", required=["email", "phone"]))
        self.assertTrue(result.startswith("(&"))
        self.assertIn("(|(mail=*)(othermailbox=*))", result)
        self.assertIn("(telephonenumber=*)", result)
        self.assertTrue(result.endswith("(cn=*an*))"))

    def test_required_field_already_searched_is_skipped(self):
        self.assertEqual(
            self.builder.build(SearchSpec("name", "an", required=["name"])), "(cn=*an*)"
        )

    def test_special_characters_are_escaped(self):
        result = self.builder.build(SearchSpec("name", "a(b)c", MatchMode.STRICT))
        self.assertNotIn("a(b)c", result)
        self.assertTrue(result.startswith("(cn=a"))


class TestFullText(unittest.TestCase):
    """Test searches on the full-text fields."""

    def test_full_text_uses_search_fields(self):
        builder = make_builder(search_fields=["name", "mail"])
        self.assertEqual(
            builder.build(SearchSpec("*", "jane")), "(|(cn=*jane*)(mail=*jane*))"
        )

    def test_full_text_without_search_fields(self):
        builder = make_builder()
        with self.assertRaises(SearchError) as cm:
            builder.build(SearchSpec("*", "jane"))
        self.assertEqual(cm.exception.detail, "nofulltextsearch")
        self.assertEqual(cm.exception.kind, ErrorKind.SEARCH)


class TestBaseFilter(unittest.TestCase):

    def test_base_filter_is_anded(self):
        builder = make_builder(base_filter="(objectClass=inetOrgPerson)")
        self.assertEqual(
            builder.build(SearchSpec("name", "an")),
            "(&(objectClass=inetOrgPerson)(cn=*an*))",
        )

    def test_wrap_filter(self):
        self.assertEqual(wrap_filter(None, "(cn=a)"), "(cn=a)")
        self.assertEqual(wrap_filter("objectClass=person", "(cn=a)"), "(&(objectClass=person)(cn=a))")
        self.assertEqual(
            wrap_filter("(|(objectClass=person)(objectClass=group))", "(cn=a)"),
            "(&(|(objectClass=person)(objectClass=group))(cn=a))",
        )


class TestMatches(unittest.TestCase):

    def test_matches(self):
        self.assertTrue(matches("Staff", "taf"))
        self.assertFalse(matches("Staff", "taf", MatchMode.STRICT))
        self.assertTrue(matches("Staff", "STAFF", MatchMode.STRICT))
        self.assertTrue(matches("Staff", "st", MatchMode.PREFIX))
        self.assertFalse(matches("Staff", "af", MatchMode.PREFIX))
