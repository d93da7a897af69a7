# type: ignore
"""
Tests for converting directory entries to logical records and back.
"""

import unittest

from ldapbook.client import DirectoryEntry
from ldapbook.codec import GROUP, PERSON, RecordCodec, flat_column_values, is_empty
from ldapbook.encoding import dn_encode
from ldapbook.options import SourceOptions
from ldapbook.schema import SchemaMapper

FIELDMAP = {
    "name": "cn",
    "surname": "sn",
    "firstname": "givenName",
    "email": "mail:*",
    "phone:work": "telephoneNumber",
    "phone:mobile": "mobile",
    "street": "street",
    "locality": "l",
    "zipcode": "postalCode",
    "country": "c",
}

DN = "cn=Jane Doe,ou=people,dc=example,dc=com"


def make_codec(fieldmap=None, **kwargs):
    options = SourceOptions({"fieldmap": fieldmap or FIELDMAP}, name="test")
    return RecordCodec(SchemaMapper(options).build(), **kwargs)


class TestDecode(unittest.TestCase):
    """Test RecordCodec.decode()."""

    def setUp(self):
        self.codec = make_codec()

    def test_single_values_become_scalars(self):
        record = self.codec.decode(
            DirectoryEntry(DN, {"objectClass": ["inetOrgPerson"], "cn": ["Jane Doe"], "mail": ["jane@example.com"]})
        )
        self.assertEqual(record.kind, PERSON)
        self.assertFalse(record.readonly)
        self.assertEqual(record.id, dn_encode(DN))
        self.assertEqual(record["name"], "Jane Doe")
        self.assertEqual(record["email"], "jane@example.com")

    def test_multiple_values_stay_lists(self):
        record = self.codec.decode(
            DirectoryEntry(DN, {"mail": ["jane@example.com", "jd@example.com"]})
        )
        self.assertEqual(record["email"], ["jane@example.com", "jd@example.com"])
        self.assertEqual(record.raw["mail"], ["jane@example.com", "jd@example.com"])

    def test_name_fields_are_always_scalar(self):
        record = self.codec.decode(DirectoryEntry(DN, {"cn": ["Jane Doe", "J. Doe"]}))
        self.assertEqual(record["name"], "Jane Doe")
        self.assertEqual(record.raw["cn"], ["Jane Doe"])

    def test_subtyped_fields(self):
        record = self.codec.decode(
            DirectoryEntry(DN, {"telephoneNumber": ["555-1234"], "mobile": ["555-9876"]})
        )
        self.assertEqual(record["phone:work"], "555-1234")
        self.assertEqual(record["phone:mobile"], "555-9876")

    def test_address_parts_are_grouped(self):
        record = self.codec.decode(
            DirectoryEntry(
                DN,
                {
                    "street": ["1 Main St", "2 Side St"],
                    "l": ["Springfield", "Shelbyville"],
                    "postalCode": ["12345"],
                },
            )
        )
        self.assertEqual(
            record["address"],
            [
                {"street": "1 Main St", "locality": "Springfield", "zipcode": "12345"},
                {"street": "2 Side St", "locality": "Shelbyville"},
            ],
        )
        self.assertNotIn("street", record)

    def test_mail_domain_is_appended(self):
        codec = make_codec(mail_domain="example.com")
        record = codec.decode(DirectoryEntry(DN, {"mail": ["jane"]}))
        self.assertEqual(record["email"], "jane@example.com")
        self.assertEqual(record.raw["mail"], ["jane"])

    def test_group_entries(self):
        codec = make_codec(group_name_attr="ou")
        record = codec.decode(
            DirectoryEntry(
                "cn=staff,ou=groups,dc=example,dc=com",
                {"objectClass": ["top", "groupOfNames"], "ou": ["Staff"], "cn": ["staff"]},
            )
        )
        self.assertEqual(record.kind, GROUP)
        self.assertTrue(record.readonly)
        self.assertEqual(record.name, "Staff")

    def test_empty_values_are_ignored(self):
        record = self.codec.decode(DirectoryEntry(DN, {"cn": ["Jane Doe"], "sn": [""]}))
        self.assertNotIn("surname", record)
        self.assertNotIn("sn", record.raw)

    def test_serialized_address_is_split(self):
        codec = make_codec({"name": "cn", "address": "postalAddress:1:$"})
        record = codec.decode(
            DirectoryEntry(DN, {"postalAddress": ["1 Main St$Springfield$12345$US"]})
        )
        self.assertEqual(
            record["address"],
            [
                {
                    "street": "1 Main St",
                    "locality": "Springfield",
                    "zipcode": "12345",
                    "country": "US",
                }
            ],
        )


class TestEncode(unittest.TestCase):
    """Test RecordCodec.encode()."""

    def setUp(self):
        self.codec = make_codec()

    def test_simple_values(self):
        data = self.codec.encode({"name": "Jane Doe", "surname": "Doe", "email": ["a@example.com", "b@example.com"]})
        self.assertEqual(data["cn"], ["Jane Doe"])
        self.assertEqual(data["sn"], ["Doe"])
        self.assertEqual(data["mail"], ["a@example.com", "b@example.com"])

    def test_empty_values_are_dropped(self):
        data = self.codec.encode({"name": "Jane Doe", "surname": "", "firstname": None, "email": ["", None]})
        self.assertEqual(data, {"cn": ["Jane Doe"]})

    def test_values_are_stringified(self):
        data = self.codec.encode({"phone:work": 5551234})
        self.assertEqual(data["telephonenumber"], ["5551234"])

    def test_base_value_is_promoted_to_first_subtype(self):
        data = self.codec.encode({"phone": "555-1234"})
        self.assertEqual(data["telephonenumber"], ["555-1234"])
        self.assertNotIn("mobile", data)

    def test_subtype_value_wins_over_base_value(self):
        data = self.codec.encode({"phone": "555-1234", "phone:work": "555-0000"})
        self.assertEqual(data["telephonenumber"], ["555-0000"])
        self.assertEqual(data["mobile"], ["555-1234"])

    def test_bare_column_gathers_subtype_values(self):
        data = self.codec.encode({"email:work": "jane@work.example.com", "email:home": "jane@example.com"})
        self.assertEqual(data["mail"], ["jane@work.example.com", "jane@example.com"])

    def test_composite_address_is_flattened(self):
        data = self.codec.encode(
            {
                "address:home": [
                    {"street": "1 Main St", "locality": "Springfield", "zipcode": "12345", "country": "US"},
                ]
            }
        )
        self.assertEqual(data["street"], ["1 Main St"])
        self.assertEqual(data["l"], ["Springfield"])
        self.assertEqual(data["postalcode"], ["12345"])
        self.assertEqual(data["c"], ["US"])

    def test_serialized_address_is_joined(self):
        codec = make_codec({"name": "cn", "address": "postalAddress:1:$"})
        data = codec.encode(
            {"address": [{"street": "1 Main St", "locality": "Springfield", "zipcode": "", "country": "US"}]}
        )
        self.assertEqual(data["postaladdress"], ["1 Main St$Springfield$$US"])

    def test_empty_serialized_address_is_dropped(self):
        codec = make_codec({"name": "cn", "address": "postalAddress:1:$"})
        data = codec.encode({"name": "Jane", "address": [{"street": "", "locality": ""}]})
        self.assertNotIn("postaladdress", data)

    def test_binary_values_are_kept(self):
        codec = make_codec({"name": "cn", "photo": "jpegPhoto"})
        data = codec.encode({"photo": b"\xff\xd8\xff"})
        self.assertEqual(data["jpegphoto"], [b"\xff\xd8\xff"])


class TestRoundTrip(unittest.TestCase):
    """encode(decode(entry)) keeps every mapped attribute value."""

    def test_round_trip(self):
        codec = make_codec()
        attributes = {
            "cn": ["Jane Doe"],
            "sn": ["Doe"],
            "givenname": ["Jane"],
            "mail": ["jane@example.com", "jd@example.com"],
            "telephonenumber": ["555-1234"],
            "mobile": ["555-9876"],
            "street": ["1 Main St"],
            "l": ["Springfield"],
            "postalcode": ["12345"],
            "c": ["US"],
        }
        record = codec.decode(DirectoryEntry(DN, {"objectclass": ["inetOrgPerson"], **attributes}))
        self.assertEqual(codec.encode(record.values), attributes)

    def test_serialized_round_trip_is_byte_identical(self):
        codec = make_codec({"name": "cn", "address": "postalAddress:1:$"})
        stored = "1 Main St$Springfield$12345$US"
        record = codec.decode(DirectoryEntry(DN, {"cn": ["Jane"], "postalAddress": [stored]}))
        self.assertEqual(codec.encode(record.values)["postaladdress"], [stored])


class TestHelpers(unittest.TestCase):

    def test_is_empty(self):
        self.assertTrue(is_empty(None))
        self.assertTrue(is_empty(""))
        self.assertTrue(is_empty(["", None]))
        self.assertTrue(is_empty({}))
        self.assertFalse(is_empty(0))
        self.assertFalse(is_empty(["x"]))

    def test_flat_column_values(self):
        data = {"email": "a@example.com", "email:work": ["b@example.com", "a@example.com"], "emailish": "x"}
        self.assertEqual(flat_column_values("email", data), ["a@example.com", "b@example.com"])
