# mypy: disable-error-code="attr-defined"
"""
Test suite for DirectoryManager using python-ldap-faker.

python-ldap-faker gives us an in-memory directory behind ``ldap.initialize``,
so these tests exercise real searches and modifications without a server.
"""

import unittest
from unittest.mock import patch

import django
import ldap
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from ldap_faker.unittest import LDAPFakerMixin

LDAP_SERVERS = {
    "default": {
        "basedn": "ou=users,dc=example,dc=com",
        "read": {
            "url": "ldap://localhost:389",
            "user": "cn=admin,dc=example,dc=com",
            "password": "admin",
            "timeout": 15.0,
            "sizelimit": 1000,
            "follow_referrals": False,
        },
        "write": {
            "url": "ldap://localhost:389",
            "user": "cn=admin,dc=example,dc=com",
            "password": "admin",
            "timeout": 15.0,
            "follow_referrals": False,
        },
    }
}

# Configure Django settings before the manager reads them
if not settings.configured:
    settings.configure(LDAP_SERVERS=LDAP_SERVERS)
    django.setup()

from ldapquery.entries import Entry  # noqa: E402
from ldapquery.managers import (  # noqa: E402
    DirectoryManager,
    atomic,
    find_rejected_modification,
)
from ldapquery.modifications import BatchModification, ModificationType  # noqa: E402

TEST_OBJECTS = [
    (
        "cn=admin,dc=example,dc=com",
        {
            "cn": [b"admin"],
            "userpassword": [b"admin"],
            "objectclass": [b"simpleSecurityObject", b"organizationalRole", b"top"],
        },
    ),
    (
        "uid=alice,ou=users,dc=example,dc=com",
        {
            "uid": [b"alice"],
            "cn": [b"Alice Johnson"],
            "sn": [b"Johnson"],
            "mail": [b"alice@example.com"],
            "objectclass": [b"inetOrgPerson", b"top"],
        },
    ),
    (
        "uid=bob,ou=users,dc=example,dc=com",
        {
            "uid": [b"bob"],
            "cn": [b"Bob Smith"],
            "sn": [b"Smith"],
            "objectclass": [b"inetOrgPerson", b"top"],
        },
    ),
    (
        "uid=carol,ou=users,dc=example,dc=com",
        {
            "uid": [b"carol"],
            "cn": [b"Carol Jones"],
            "sn": [b"Jones"],
            "mail": [b"carol@example.com"],
            "objectclass": [b"inetOrgPerson", b"top"],
        },
    ),
]


class TestDirectoryManagerConfig(unittest.TestCase):
    """Test reading settings.LDAP_SERVERS."""

    def test_basedn_from_settings(self):
        with patch("django.conf.settings.LDAP_SERVERS", LDAP_SERVERS):
            manager = DirectoryManager()
        self.assertEqual(manager.basedn, "ou=users,dc=example,dc=com")

    def test_basedn_override(self):
        with patch("django.conf.settings.LDAP_SERVERS", LDAP_SERVERS):
            manager = DirectoryManager(basedn="dc=example,dc=com")
        self.assertEqual(manager.basedn, "dc=example,dc=com")

    def test_unknown_server(self):
        with patch("django.conf.settings.LDAP_SERVERS", LDAP_SERVERS):
            with self.assertRaises(ImproperlyConfigured):
                DirectoryManager("missing")

    def test_missing_write_config(self):
        servers = {"default": {"read": LDAP_SERVERS["default"]["read"]}}
        with patch("django.conf.settings.LDAP_SERVERS", servers):
            with self.assertRaises(ImproperlyConfigured):
                DirectoryManager()

    def test_no_servers(self):
        with patch("django.conf.settings.LDAP_SERVERS", {}):
            with self.assertRaises(ImproperlyConfigured):
                DirectoryManager()

    def test_query_is_bound(self):
        with patch("django.conf.settings.LDAP_SERVERS", LDAP_SERVERS):
            manager = DirectoryManager()
        query = manager.query()
        self.assertIs(query.manager, manager)
        self.assertEqual(query.get_dn(), "ou=users,dc=example,dc=com")

    def test_rejected_modification_is_found_by_attribute(self):
        mods = [
            BatchModification("cn", ModificationType.REPLACE, ["x"]),
            BatchModification("mail", ModificationType.ADD, ["x"]),
        ]
        error = ldap.TYPE_OR_VALUE_EXISTS(
            {"desc": "Type or value exists", "info": "mail: value #0 provided more than once"}
        )
        self.assertIs(find_rejected_modification(error, mods), mods[1])
        error = ldap.NO_SUCH_OBJECT({"desc": "No such object"})
        self.assertIsNone(find_rejected_modification(error, mods))

    def test_rejected_modification_matches_whole_attribute_names(self):
        mods = [
            BatchModification("l", ModificationType.REPLACE, ["Pasadena"]),
            BatchModification("mail", ModificationType.REPLACE, ["x"]),
        ]
        error = ldap.CONSTRAINT_VIOLATION(
            {"desc": "Constraint violation", "info": "mail: value exceeds size limit"}
        )
        self.assertIs(find_rejected_modification(error, mods), mods[1])
        short = [
            BatchModification("o", ModificationType.REPLACE, ["x"]),
            BatchModification("c", ModificationType.REPLACE, ["x"]),
        ]
        error = ldap.NO_SUCH_OBJECT({"desc": "No such object"})
        self.assertIsNone(find_rejected_modification(error, short))

    def test_rejected_modification_found_in_message_body(self):
        mods = [
            BatchModification("cn", ModificationType.REPLACE, ["x"]),
            BatchModification("givenName", ModificationType.REPLACE, ["x"]),
        ]
        error = ldap.OBJECT_CLASS_VIOLATION(
            {
                "desc": "Object class violation",
                "info": "attribute 'givenname' not allowed",
            }
        )
        self.assertIs(find_rejected_modification(error, mods), mods[1])


class TestDirectoryManagerWithFaker(LDAPFakerMixin, unittest.TestCase):
    """Test searching and modifying entries in a fake directory."""

    ldap_modules = ["ldapquery"]

    def setUp(self):
        super().setUp()
        self.settings_patcher = patch("django.conf.settings.LDAP_SERVERS", LDAP_SERVERS)
        self.settings_patcher.start()
        self.manager = DirectoryManager()

        # Clear the fake LDAP directory before each test
        self.server_factory.default.raw_objects.clear()  # type: ignore[attr-defined]
        self.server_factory.default.objects.clear()  # type: ignore[attr-defined]
        for dn, attrs in TEST_OBJECTS:
            self.server_factory.default.register_object((dn, attrs))  # type: ignore[attr-defined]

    def tearDown(self):
        self.settings_patcher.stop()
        super().tearDown()

    def test_search(self):
        results = self.manager.search("(uid=alice)", ["uid", "cn"])
        self.assertEqual(len(results), 1)
        dn, attrs = results[0]
        self.assertEqual(dn, "uid=alice,ou=users,dc=example,dc=com")
        self.assertEqual(attrs["cn"], [b"Alice Johnson"])

    def test_search_sizelimit(self):
        results = self.manager.search("(objectclass=inetOrgPerson)", ["uid"], sizelimit=2)
        self.assertEqual(len(results), 2)

    def test_search_requires_basedn(self):
        self.manager.basedn = None
        with self.assertRaises(ValueError):
            self.manager.search("(uid=alice)", ["uid"])

    def test_connection_is_released(self):
        self.manager.search("(uid=alice)", ["uid"])
        self.assertFalse(self.manager.has_connection())

    def test_atomic_reuses_connection(self):
        class SearchTwiceManager(DirectoryManager):
            @atomic(key="read")
            def search_twice(self):
                connection = self.connection
                self.search("(uid=alice)", ["uid"])
                return connection is self.connection

        manager = SearchTwiceManager()
        self.assertTrue(manager.search_twice())
        self.assertFalse(manager.has_connection())

    def test_query_get(self):
        entries = (
            self.manager.query()
            .select("uid", "mail")
            .where("objectclass", "inetOrgPerson")
            .where_has("mail")
            .get()
        )
        uids = sorted(entry.get_first_attribute("uid") for entry in entries)
        self.assertEqual(uids, ["alice", "carol"])
        self.assertTrue(all(isinstance(entry, Entry) for entry in entries))

    def test_query_or_where(self):
        entries = (
            self.manager.query()
            .select("uid")
            .or_where("uid", "alice")
            .or_where("uid", "bob")
            .get()
        )
        uids = sorted(entry.get_first_attribute("uid") for entry in entries)
        self.assertEqual(uids, ["alice", "bob"])

    def test_query_first(self):
        entry = self.manager.query().select("uid", "sn").where("sn", "Smith").first()
        self.assertEqual(entry.dn, "uid=bob,ou=users,dc=example,dc=com")
        self.assertIsNone(
            self.manager.query().select("uid").where("sn", "Nobody").first()
        )

    def test_find(self):
        entry = self.manager.find("uid=alice,ou=users,dc=example,dc=com")
        self.assertEqual(entry.get_first_attribute("sn"), "Johnson")
        self.assertFalse(entry.is_dirty())

    def test_find_missing(self):
        self.assertIsNone(self.manager.find("uid=nobody,ou=users,dc=example,dc=com"))

    def test_modify(self):
        dn = "uid=bob,ou=users,dc=example,dc=com"
        self.manager.modify(
            dn,
            [
                BatchModification("mail", ModificationType.ADD, ["bob@example.com"]),
                {"attrib": "sn", "modtype": 3, "values": ["Smithers"]},
            ],
        )
        entry = self.manager.find(dn)
        self.assertEqual(entry["mail"], ["bob@example.com"])
        self.assertEqual(entry["sn"], ["Smithers"])

    def test_modify_nothing(self):
        self.manager.modify("uid=bob,ou=users,dc=example,dc=com", [])

    def test_modify_failure(self):
        dn = "uid=nobody,ou=users,dc=example,dc=com"
        mods = [BatchModification("sn", ModificationType.REPLACE, ["x"])]
        with self.assertRaises(DirectoryManager.ModificationFailed) as cm:
            self.manager.modify(dn, mods)
        self.assertEqual(cm.exception.dn, dn)
        self.assertEqual(cm.exception.modifications, mods)
        self.assertIsInstance(cm.exception.error, ldap.NO_SUCH_OBJECT)

    def test_update(self):
        dn = "uid=alice,ou=users,dc=example,dc=com"
        entry = self.manager.find(dn)
        entry["mail"] = None
        entry["sn"] = "Cooper"
        entry["title"] = "Engineer"
        self.assertTrue(self.manager.update(entry))
        self.assertFalse(entry.is_dirty())
        self.assertEqual(entry.get_modifications(), [])

        reloaded = self.manager.find(dn)
        self.assertNotIn("mail", reloaded)
        self.assertEqual(reloaded["sn"], ["Cooper"])
        self.assertEqual(reloaded["title"], ["Engineer"])

    def test_update_without_changes(self):
        entry = self.manager.find("uid=alice,ou=users,dc=example,dc=com")
        self.assertFalse(self.manager.update(entry))

    def test_update_requires_dn(self):
        with self.assertRaises(ValueError):
            self.manager.update(Entry({"cn": "foo"}))

    def test_update_requires_existing_entry(self):
        entry = Entry({"sn": "Cooper"}, dn="uid=alice,ou=users,dc=example,dc=com")
        with self.assertRaises(ValueError):
            self.manager.update(entry)

    def test_update_applies_queued_modifications(self):
        dn = "uid=bob,ou=users,dc=example,dc=com"
        entry = self.manager.find(dn)
        entry.add_modification(
            BatchModification("title", ModificationType.ADD, ["Engineer"])
        )
        entry["sn"] = "Smithers"
        self.assertTrue(self.manager.update(entry))
        self.assertEqual(entry["title"], ["Engineer"])
        self.assertEqual(entry["sn"], ["Smithers"])
        self.assertFalse(entry.is_dirty())
        self.assertEqual(entry.get_modifications(), [])

        reloaded = self.manager.find(dn)
        self.assertEqual(reloaded["title"], ["Engineer"])
        self.assertEqual(reloaded.to_dict(), entry.to_dict())


if __name__ == "__main__":
    unittest.main()
