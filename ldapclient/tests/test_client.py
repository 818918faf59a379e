"""
Tests for the public operations against a fake directory server from
python-ldap-faker.
"""

import unittest
from unittest.mock import Mock

import ldap
from ldap.controls.readentry import PostReadControl, PreReadControl
from ldap_faker.unittest import LDAPFakerMixin

from ldapclient import ALL, add, bind, connect, delete, get, modify
from ldapclient.client import read_results
from ldapclient.exceptions import SearchError, WriteError
from ldapclient.pool import ConnectionPool

ADMIN_DN = "cn=admin,dc=example,dc=com"
ALICE_DN = "uid=alice,ou=people,dc=example,dc=com"
BOB_DN = "uid=bob,ou=people,dc=example,dc=com"

DIRECTORY = [
    [
        ADMIN_DN,
        {
            "cn": [b"admin"],
            "userPassword": [b"admin"],
            "objectclass": [b"simpleSecurityObject", b"organizationalRole", b"top"],
        },
    ],
    [
        "ou=people,dc=example,dc=com",
        {
            "ou": [b"people"],
            "objectclass": [b"organizationalUnit", b"top"],
        },
    ],
    [
        ALICE_DN,
        {
            "uid": [b"alice"],
            "cn": [b"Alice Johnson"],
            "sn": [b"Johnson"],
            "mail": [b"alice@example.com"],
            "telephoneNumber": [b"111", b"222"],
            "userPassword": [b"password"],
            "objectclass": [b"inetOrgPerson", b"top"],
        },
    ],
]


class FakeDirectoryTestCase(LDAPFakerMixin, unittest.TestCase):
    """Base class that loads :py:data:`DIRECTORY` and opens a pool bound as admin."""

    ldap_modules = ["ldapclient"]

    def setUp(self):
        super().setUp()
        self.server_factory.default.raw_objects.clear()  # type: ignore[attr-defined]
        self.server_factory.default.objects.clear()  # type: ignore[attr-defined]
        for dn, attrs in DIRECTORY:
            self.server_factory.default.register_object((dn, attrs))  # type: ignore[attr-defined]
        self.pool = connect(host="localhost", bind_dn=ADMIN_DN, password="admin", num_connections=2)

    def tearDown(self):
        self.pool.close()
        super().tearDown()


class TestGet(FakeDirectoryTestCase):

    def test_get(self):
        entry = get(self.pool, ALICE_DN)
        self.assertEqual(entry["dn"], ALICE_DN)
        self.assertEqual(entry["uid"], "alice")
        self.assertEqual(entry["telephoneNumber"], ["111", "222"])
        self.assertEqual(entry["objectclass"], {"inetOrgPerson", "top"})

    def test_get_selected_attributes(self):
        entry = get(self.pool, ALICE_DN, ["cn", "mail"])
        self.assertEqual(entry, {"dn": ALICE_DN, "cn": "Alice Johnson", "mail": "alice@example.com"})

    def test_get_missing_entry_is_none(self):
        self.assertIsNone(get(self.pool, "uid=nobody,ou=people,dc=example,dc=com"))

    def test_get_connection_goes_back_to_pool(self):
        get(self.pool, ALICE_DN)
        get(self.pool, ALICE_DN)
        self.assertEqual(self.pool.open_connections, 2)

    def test_get_invalid_dn_raises(self):
        with self.assertRaises(SearchError) as cm:
            get(self.pool, "not a dn")
        self.assertEqual(cm.exception.code, 34)


class TestAdd(FakeDirectoryTestCase):

    def test_add(self):
        result = add(
            self.pool,
            BOB_DN,
            {
                "objectClass": {"inetOrgPerson", "top"},
                "uid": "bob",
                "cn": "Bob Smith",
                "sn": "Smith",
                "telephoneNumber": ["333", "444"],
            },
        )
        self.assertEqual(result, {"code": 0, "name": "Success"})
        entry = get(self.pool, BOB_DN)
        self.assertEqual(entry["cn"], "Bob Smith")
        self.assertEqual(entry["telephoneNumber"], ["333", "444"])
        self.assertEqual(entry["objectClass"], {"inetOrgPerson", "top"})

    def test_get_result_can_be_added_under_a_new_dn(self):
        entry = get(self.pool, ALICE_DN)
        entry["uid"] = "alice2"
        add(self.pool, "uid=alice2,ou=people,dc=example,dc=com", entry)
        self.assertEqual(get(self.pool, "uid=alice2,ou=people,dc=example,dc=com")["cn"], "Alice Johnson")

    def test_add_existing_raises(self):
        with self.assertLogs("django-ldapclient", level="WARNING"), self.assertRaises(WriteError):
            add(self.pool, ALICE_DN, {"uid": "alice", "objectClass": "top"})

    def test_anonymous_add_is_refused(self):
        pool = connect(host="localhost")
        with self.assertRaises(WriteError) as cm:
            add(pool, BOB_DN, {"uid": "bob", "objectClass": "top"})
        self.assertEqual(cm.exception.code, 50)
        self.assertEqual(cm.exception.name, "Insufficient access")
        pool.close()


class TestModify(FakeDirectoryTestCase):

    def test_delete_one_value_leaves_scalar(self):
        result = modify(self.pool, ALICE_DN, {"delete": {"telephoneNumber": "111"}})
        self.assertEqual(result, {"code": 0, "name": "Success"})
        self.assertEqual(get(self.pool, ALICE_DN)["telephoneNumber"], "222")

    def test_delete_all_values(self):
        modify(self.pool, ALICE_DN, {"delete": {"telephoneNumber": ALL}})
        self.assertNotIn("telephoneNumber", get(self.pool, ALICE_DN))

    def test_add_replace_and_delete_together(self):
        modify(
            self.pool,
            ALICE_DN,
            {
                "add": {"mail": "ajohnson@example.com"},
                "replace": {"sn": "Smith", "cn": "Alice Smith"},
                "delete": {"telephoneNumber": ["111", "222"]},
            },
        )
        entry = get(self.pool, ALICE_DN)
        self.assertEqual(entry["mail"], ["alice@example.com", "ajohnson@example.com"])
        self.assertEqual(entry["sn"], "Smith")
        self.assertEqual(entry["cn"], "Alice Smith")
        self.assertFalse(entry.get("telephoneNumber"))

    def test_modify_is_atomic(self):
        with self.assertRaises(WriteError):
            modify(
                self.pool,
                ALICE_DN,
                {"add": {"mail": "alice@example.com"}, "replace": {"sn": "Smith"}},
            )
        self.assertEqual(get(self.pool, ALICE_DN)["sn"], "Johnson")

    def test_modify_missing_entry_raises(self):
        with self.assertRaises(WriteError) as cm:
            modify(self.pool, BOB_DN, {"replace": {"sn": "Smith"}})
        self.assertEqual(cm.exception.name, "No such object")

    def test_unknown_section_raises_value_error(self):
        with self.assertRaises(ValueError):
            modify(self.pool, ALICE_DN, {"append": {"mail": "x"}})

    def test_empty_modification_does_not_contact_server(self):
        pool = ConnectionPool(Mock())
        with self.assertLogs("django-ldapclient", level="DEBUG"):
            self.assertEqual(modify(pool, ALICE_DN, {}), {"code": 0, "name": "Success"})
        pool.connector.assert_not_called()


class TestDelete(FakeDirectoryTestCase):

    def test_delete(self):
        self.assertEqual(delete(self.pool, ALICE_DN), {"code": 0, "name": "Success"})
        self.assertIsNone(get(self.pool, ALICE_DN))

    def test_delete_missing_raises(self):
        with self.assertRaises(WriteError):
            delete(self.pool, BOB_DN)

    def test_delete_unknown_option_raises(self):
        with self.assertRaises(ValueError):
            delete(self.pool, ALICE_DN, {"post_read": ["cn"]})


class TestBind(FakeDirectoryTestCase):

    def test_good_password(self):
        self.assertTrue(bind(self.pool, ALICE_DN, "password"))

    def test_bad_password(self):
        with self.assertLogs("django-ldapclient", level="INFO") as logs:
            self.assertFalse(bind(self.pool, ALICE_DN, "wrong"))
        self.assertIn("ldapclient.bind.failed", logs.output[0])
        self.assertNotIn("wrong", logs.output[0])

    def test_unknown_dn(self):
        self.assertFalse(bind(self.pool, BOB_DN, "password"))

    def test_empty_password_is_refused(self):
        self.assertFalse(bind(self.pool, ALICE_DN, ""))

    def test_pool_identity_is_restored(self):
        self.assertTrue(bind(self.pool, ALICE_DN, "password"))
        with self.pool.connection() as conn:
            self.assertEqual(conn.whoami_s(), f"dn: {ADMIN_DN}")
        self.assertEqual(self.pool.open_connections, 2)


class MockPoolTestCase(unittest.TestCase):
    """Base class for paths the fake directory does not cover."""

    def setUp(self):
        self.conn = Mock()
        self.connector = Mock(return_value=self.conn)
        self.pool = ConnectionPool(self.connector, size=1)


class TestReadControls(MockPoolTestCase):

    def test_read_results_without_controls(self):
        self.assertEqual(read_results(None), {"code": 0, "name": "Success"})
        self.assertEqual(read_results((ldap.RES_MODIFY, [], 3, [])), {"code": 0, "name": "Success"})

    def test_modify_with_pre_and_post_read(self):
        pre = PreReadControl()
        pre.dn, pre.entry = ALICE_DN, {"uidNumber": [b"1001"]}
        post = PostReadControl()
        post.dn, post.entry = ALICE_DN, {"uidNumber": [b"1002"]}
        self.conn.modify_ext_s.return_value = (ldap.RES_MODIFY, [], 3, [pre, post])
        result = modify(
            self.pool,
            ALICE_DN,
            {"increment": {"uidNumber": 1}, "pre_read": ["uidNumber"], "post_read": ["uidNumber"]},
        )
        self.assertEqual(
            result,
            {
                "code": 0,
                "name": "Success",
                "pre_read": {"uidNumber": "1001"},
                "post_read": {"uidNumber": "1002"},
            },
        )
        dn, modlist = self.conn.modify_ext_s.call_args.args
        self.assertEqual(dn, ALICE_DN)
        self.assertEqual(modlist, [(ldap.MOD_INCREMENT, "uidNumber", [b"1"])])

    def test_add_with_post_read(self):
        post = PostReadControl()
        post.dn, post.entry = BOB_DN, {"entryUUID": [b"5f1c"], "objectClass": [b"top"]}
        self.conn.add_ext_s.return_value = (ldap.RES_ADD, [], 2, [post])
        result = add(self.pool, BOB_DN, {"uid": "bob"}, post_read=["entryUUID", "objectClass"])
        self.assertEqual(result["post_read"], {"entryUUID": "5f1c", "objectClass": {"top"}})
        self.assertNotIn("pre_read", result)

    def test_delete_with_pre_read(self):
        pre = PreReadControl()
        pre.dn, pre.entry = BOB_DN, {"cn": [b"Bob Smith"]}
        self.conn.delete_ext_s.return_value = (ldap.RES_DELETE, [], 2, [pre])
        result = delete(self.pool, BOB_DN, {"pre_read": ["cn"]})
        self.assertEqual(result["pre_read"], {"cn": "Bob Smith"})


class TestConnectionHandling(MockPoolTestCase):

    def test_get_unreadable_entry_is_none(self):
        self.conn.search_s.side_effect = ldap.INSUFFICIENT_ACCESS({"result": 50, "desc": "Insufficient access"})
        self.assertIsNone(get(self.pool, ALICE_DN))
        self.assertEqual(self.pool.open_connections, 1)

    def test_server_down_releases_connection_as_defunct(self):
        self.conn.modify_s.side_effect = ldap.SERVER_DOWN({"result": -1, "desc": "Can't contact LDAP server"})
        with self.assertRaises(WriteError):
            modify(self.pool, ALICE_DN, {"replace": {"sn": "Smith"}})
        self.conn.unbind_s.assert_called_once_with()
        self.assertEqual(self.pool.open_connections, 0)

    def test_bind_failure_to_restore_identity_discards_connection(self):
        self.pool.connector = Mock(side_effect=[self.conn])
        self.pool.connector.bind.side_effect = ldap.SERVER_DOWN({"desc": "Can't contact LDAP server"})
        self.assertTrue(bind(self.pool, ALICE_DN, "password"))
        self.conn.unbind_s.assert_called_once_with()
        self.assertEqual(self.pool.open_connections, 0)
