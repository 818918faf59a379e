"""
Tests for building connection pools from Django settings.
"""

from unittest.mock import patch

import django
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.test import SimpleTestCase, override_settings

from ldapclient.conf import connect_from_settings, get_connect_options
from ldapclient.exceptions import ConfigurationError

# Configure Django settings for testing
if not settings.configured:
    settings.configure()
    django.setup()

LDAP_SERVERS = {
    "default": {
        "host": ["ldap1.example.com", "ldap2.example.com:3389"],
        "bind_dn": "cn=reader,dc=example,dc=com",
        "password": "secret",
        "num_connections": 4,
        "start_tls": True,
    },
    "broken": {
        "host": "ldap.example.com",
        "pool_size": 4,
    },
    "not_a_dict": "ldap://ldap.example.com",
}


@override_settings(LDAP_SERVERS=LDAP_SERVERS)
class TestConf(SimpleTestCase):

    def test_get_connect_options(self):
        options = get_connect_options()
        self.assertEqual(options.host, ["ldap1.example.com", "ldap2.example.com:3389"])
        self.assertEqual(options.bind_dn, "cn=reader,dc=example,dc=com")
        self.assertEqual(options.num_connections, 4)
        self.assertTrue(options.start_tls)
        self.assertFalse(options.ssl)

    def test_overrides(self):
        self.assertEqual(get_connect_options("default", num_connections=1).num_connections, 1)

    def test_missing_key(self):
        with self.assertRaises(ConfigurationError) as cm:
            get_connect_options("nope")
        self.assertIn("'nope'", str(cm.exception))

    def test_invalid_config(self):
        for name in ("broken", "not_a_dict"):
            with self.subTest(name=name), self.assertRaises(ImproperlyConfigured):
                get_connect_options(name)

    def test_connect_from_settings(self):
        with patch("ldapclient.ldap.initialize") as initialize:
            pool = connect_from_settings()
        # Several hosts: nothing is opened until the pool is used
        initialize.assert_not_called()
        self.assertEqual(pool.size, 4)
        self.assertEqual(pool.connector.options.bind_dn, "cn=reader,dc=example,dc=com")
        self.assertEqual(len(pool.connector.server_set), 2)


class TestMissingSetting(SimpleTestCase):

    def test_no_ldap_servers(self):
        with self.assertRaises(ConfigurationError) as cm:
            get_connect_options()
        self.assertIn("settings.LDAP_SERVERS does not exist!", str(cm.exception))
