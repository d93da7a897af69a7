# type: ignore
"""
Tests for the LdapAddressbook facade, against an in-memory directory.
"""

import logging
import unittest
from unittest.mock import patch

import django
from django.conf import settings

if not settings.configured:
    settings.configure(
        CACHES={"default": {"BACKEND": "django.core.cache.backends.locmem.LocMemCache"}},
    )
    try:
        django.setup()
    except Exception:  # noqa: BLE001
        pass

from ldapbook.addressbook import LdapAddressbook  # noqa: E402
from ldapbook.cache import MemoryCache  # noqa: E402
from ldapbook.encoding import dn_encode  # noqa: E402
from ldapbook.exceptions import (  # noqa: E402
    DirectoryConnectionError,
    ErrorKind,
    ErrorState,
    SaveError,
    SearchError,
    ValidationError,
)
from ldapbook.testing import InMemoryDirectoryClient  # noqa: E402

PEOPLE = "ou=people,dc=example,dc=com"
GROUPS = "ou=groups,dc=example,dc=com"
JANE = f"cn=Jane Doe,{PEOPLE}"
JOHN = f"cn=John Smith,{PEOPLE}"
STAFF = f"cn=staff,{GROUPS}"

CONFIG = {
    "name": "Corporate",
    "hosts": ["ldap.example.com"],
    "base_dn": PEOPLE,
    "bind_dn": "cn=admin,dc=example,dc=com",
    "bind_pass": "secret",
    "writable": True,
    "rdn": "cn",
    "required_fields": ["sn", "givenName"],
    "filter": "(objectClass=inetOrgPerson)",
    "sort": "cn",
    "fieldmap": {
        "name": "cn",
        "surname": "sn",
        "firstname": "givenName",
        "email": "mail",
        "country": "c",
    },
    "sub_fields": {"c": "country"},
    "search_fields": ["name", "email"],
    "groups": {"base_dn": GROUPS, "filter": "(objectClass=groupOfNames)"},
    "cache": "memory",
}

JANE_DATA = {
    "name": "Jane Doe",
    "surname": "Doe",
    "firstname": "Jane",
    "email": "jane@example.com",
    "country": "US",
}


def directory():
    return InMemoryDirectoryClient(
        entries={
            JANE: {
                "objectClass": ["top", "inetOrgPerson"],
                "cn": ["Jane Doe"],
                "sn": ["Doe"],
                "givenName": ["Jane"],
                "mail": ["jane@example.com"],
            },
            f"c=US,{JANE}": {"objectClass": ["country"], "c": ["US"]},
            JOHN: {
                "objectClass": ["top", "inetOrgPerson"],
                "cn": ["John Smith"],
                "sn": ["Smith"],
                "givenName": ["John"],
            },
            STAFF: {
                "objectClass": ["top", "groupOfNames"],
                "cn": ["staff"],
                "member": [JANE],
            },
        },
        credentials={"cn=admin,dc=example,dc=com": "secret"},
    )


class AddressbookTestCase(unittest.TestCase):

    config = CONFIG

    def setUp(self):
        self.client = directory()
        self.book = LdapAddressbook(dict(self.config), client=self.client, cache=MemoryCache())
        self.book.connect()

    def members(self, dn=STAFF):
        return self.client.entries[dn.lower()].get("member")


class TestConnect(unittest.TestCase):

    def test_connect_failure_is_recorded(self):
        book = LdapAddressbook(
            dict(CONFIG), client=InMemoryDirectoryClient(hosts=[]), cache=MemoryCache()
        )
        with self.assertRaises(DirectoryConnectionError):
            book.connect()
        self.assertEqual(book.last_error, ErrorState(ErrorKind.CONNECTION, "connectionfailed"))

    def test_close(self):
        client = directory()
        book = LdapAddressbook(dict(CONFIG), client=client, cache=MemoryCache())
        book.connect()
        book.close()
        self.assertFalse(book.connector.ready)
        self.assertIsNone(client.connected)

    @patch("django.conf.settings.LDAP_ADDRESSBOOKS", {"corporate": CONFIG}, create=True)
    def test_from_settings(self):
        book = LdapAddressbook.from_settings("corporate", client=directory(), cache=MemoryCache())
        self.assertEqual(book.name, "Corporate")
        self.assertFalse(book.readonly)
        self.assertEqual(repr(book), "<LdapAddressbook: Corporate>")

    def test_debug(self):
        LdapAddressbook(dict(CONFIG), client=directory(), cache=MemoryCache(), debug=True)
        self.assertEqual(logging.getLogger("ldapbook").level, logging.DEBUG)
        LdapAddressbook(dict(CONFIG), client=directory(), cache=MemoryCache())
        self.assertEqual(logging.getLogger("ldapbook").level, logging.NOTSET)


class TestListAndSearch(AddressbookTestCase):
    """Test listing and searching contacts."""

    def test_list_records(self):
        self.client.script_search(CONFIG["filter"], [JOHN, JANE])
        window = self.book.list_records()
        self.assertEqual([r["name"] for r in window], ["Jane Doe", "John Smith"])
        self.assertIs(self.book.get_result(), window)

    def test_search(self):
        filterstr = "(&(objectClass=inetOrgPerson)(cn=*Jane*))"
        self.client.script_search(filterstr, [JANE])
        window = self.book.search("name", "Jane")
        self.assertEqual(self.book.get_search_set(), filterstr)
        self.assertEqual(window.total, 1)
        self.assertEqual(window.records[0]["email"], "jane@example.com")

    def test_full_text_search(self):
        self.book.search("*", "jane", select=False)
        filterstr = self.client.calls_to("search")[0][1]
        self.assertIn("(cn=*jane*)", filterstr)
        self.assertIn("(mail=*jane*)", filterstr)

    def test_search_without_select_only_counts(self):
        self.client.script_search("(&(objectClass=inetOrgPerson)(cn=*o*))", [JANE, JOHN])
        window = self.book.search("name", "o", select=False)
        self.assertEqual(window.total, 2)
        self.assertEqual(len(window), 0)
        self.assertTrue(self.client.calls_to("search")[0][5])

    def test_search_by_id(self):
        window = self.book.search("ID", f"{dn_encode(JANE)},{dn_encode(JOHN)},résumé")
        self.assertEqual([r["name"] for r in window], ["Jane Doe", "John Smith"])
        self.assertEqual(window.total, 2)

    def test_full_text_search_without_search_fields(self):
        book = LdapAddressbook(
            {**CONFIG, "search_fields": []}, client=self.client, cache=MemoryCache()
        )
        with self.assertRaises(SearchError):
            book.search("*", "jane")
        self.assertEqual(book.last_error, ErrorState(ErrorKind.SEARCH, "nofulltextsearch"))


class TestGetRecord(AddressbookTestCase):

    def test_sub_entry_attributes_are_merged(self):
        record = self.book.get_record(dn_encode(JANE))
        self.assertEqual(record["name"], "Jane Doe")
        self.assertEqual(record["country"], "US")
        self.assertEqual(self.book.get_result().records, [record])

    def test_missing_record(self):
        self.assertIsNone(self.book.get_record(dn_encode(f"cn=Nobody,{PEOPLE}")))
        self.assertIsNone(self.book.get_result())


class TestValidate(AddressbookTestCase):
    """Test LdapAddressbook.validate()."""

    def test_autofix_fills_names(self):
        save_data = {"name": "Jane Doe", "email": "jane@example.com"}
        self.assertTrue(self.book.validate(save_data, autofix=True))
        self.assertEqual(save_data["surname"], "Doe")
        self.assertEqual(save_data["firstname"], "Jane")
        self.assertIsNone(self.book.last_error)

    def test_missing_required_fields(self):
        with self.assertRaises(ValidationError) as cm:
            self.book.validate({"name": "Jane Doe"})
        self.assertEqual(cm.exception.missing, ["givenname", "sn"])
        self.assertEqual(self.book.last_error, ErrorState(ErrorKind.VALIDATE, "formincomplete"))

    def test_single_word_name_only_fixes_surname(self):
        with self.assertRaises(ValidationError) as cm:
            self.book.validate({"name": "Cher"}, autofix=True)
        self.assertEqual(cm.exception.missing, ["givenname"])

    def test_bad_email(self):
        with self.assertRaises(ValidationError) as cm:
            self.book.validate({**JANE_DATA, "email": "jane"})
        self.assertEqual(cm.exception.detail, "emailformaterror")

    def test_missing_name(self):
        with self.assertRaises(ValidationError) as cm:
            self.book.validate({"surname": "Doe", "firstname": "Jane"})
        self.assertEqual(cm.exception.detail, "nonamewarning")

    def test_success_clears_last_error(self):
        with self.assertRaises(ValidationError):
            self.book.validate({})
        self.book.validate(dict(JANE_DATA))
        self.assertIsNone(self.book.last_error)


class TestInsert(AddressbookTestCase):

    def test_insert(self):
        record_id = self.book.insert({"name": "Ann Lee", "surname": "Lee", "firstname": "Ann"})
        self.assertEqual(record_id, dn_encode(f"cn=Ann Lee,{PEOPLE}"))
        self.assertEqual(self.book.get_record(record_id)["surname"], "Lee")

    def test_insert_into_the_selected_group(self):
        self.book.set_group(dn_encode(STAFF))
        self.book.insert({"name": "Ann Lee", "surname": "Lee", "firstname": "Ann"})
        self.assertEqual(self.members(), [JANE, f"cn=Ann Lee,{PEOPLE}"])

    def test_readonly_source(self):
        book = LdapAddressbook(
            {**CONFIG, "writable": False}, client=self.client, cache=MemoryCache()
        )
        self.assertTrue(book.readonly)
        with self.assertRaises(SaveError):
            book.insert({"name": "Ann Lee", "surname": "Lee", "firstname": "Ann"})
        self.assertEqual(book.last_error.kind, ErrorKind.SAVING)
        self.assertEqual(self.client.calls_to("add"), [])


class TestUpdate(AddressbookTestCase):
    """Test LdapAddressbook.update()."""

    def test_rename_moves_group_memberships(self):
        new_id = self.book.update(dn_encode(JANE), {**JANE_DATA, "name": "Jane Roe"})
        new_dn = f"cn=Jane Roe,{PEOPLE}"
        self.assertEqual(new_id, dn_encode(new_dn))
        self.assertEqual(self.members(), [new_dn])
        self.assertIn(f"c=US,{new_dn}".lower(), self.client.entries)
        self.assertEqual(self.book.get_record(new_id)["country"], "US")

    def test_unchanged_record(self):
        record_id = dn_encode(JANE)
        self.assertEqual(self.book.update(record_id, dict(JANE_DATA)), record_id)
        for method in ("add", "delete", "rename", "mod_add", "mod_replace", "mod_delete"):
            self.assertEqual(self.client.calls_to(method), [])

    def test_modify(self):
        self.book.update(dn_encode(JANE), {**JANE_DATA, "email": "jd@example.com"})
        self.assertEqual(self.client.entries[JANE.lower()].get("mail"), ["jd@example.com"])
        self.assertEqual(self.members(), [JANE])

    def test_missing_record(self):
        with self.assertRaises(SaveError):
            self.book.update(dn_encode(f"cn=Nobody,{PEOPLE}"), dict(JANE_DATA))


class TestDelete(AddressbookTestCase):

    def test_delete_removes_memberships(self):
        self.assertEqual(self.book.delete([dn_encode(JANE)]), 1)
        self.assertNotIn(JANE.lower(), self.client.entries)
        self.assertNotIn(f"c=us,{JANE}".lower(), self.client.entries)
        self.assertEqual(self.members(), [])

    def test_failed_membership_cleanup_is_logged(self):
        self.client.fail = {"mod_delete"}
        with self.assertLogs("ldapbook.addressbook", level="WARNING"):
            self.assertEqual(self.book.delete([dn_encode(JANE)]), 1)
        self.assertNotIn(JANE.lower(), self.client.entries)
        self.assertIsNone(self.book.last_error)

    def test_bad_ids_are_skipped(self):
        self.assertEqual(self.book.delete(f"résumé,{dn_encode(JOHN)}"), 1)

    def test_delete_all(self):
        self.assertEqual(self.book.delete_all(), 2)
        self.assertEqual(set(self.client.entries), {STAFF.lower()})


class TestGroups(AddressbookTestCase):

    def test_list_groups(self):
        self.assertEqual(
            self.book.list_groups(),
            [{"id": dn_encode(STAFF), "name": "staff", "email": [], "virtual": False}],
        )

    def test_group_listing(self):
        self.book.set_group(dn_encode(STAFF))
        window = self.book.list_records()
        self.assertEqual([r["name"] for r in window], ["Jane Doe"])

    def test_record_groups(self):
        self.assertEqual(self.book.get_record_groups(dn_encode(JANE)), {dn_encode(STAFF): "staff"})

    def test_group_changes(self):
        group = self.book.create_group("Friends")
        self.assertEqual(group["name"], "Friends")
        self.assertEqual(self.book.add_to_group(group["id"], dn_encode(JOHN)), 1)
        self.assertEqual(self.members(f"cn=Friends,{GROUPS}"), [JOHN])
        self.assertEqual(self.book.remove_from_group(group["id"], [dn_encode(JOHN)]), 1)
        self.assertTrue(self.book.delete_group(group["id"]))
