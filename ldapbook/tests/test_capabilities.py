# type: ignore
"""
Tests for ServerCapabilities.
"""

import unittest
from unittest.mock import Mock, patch

import ldap

from ldapbook.capabilities import ServerCapabilities


class TestServerCapabilities(unittest.TestCase):
    """Test server control detection."""

    def setUp(self):
        """Set up test fixtures."""
        self.mock_connection = Mock()
        self.key = "ldap://ldap.example.com:389"
        ServerCapabilities.clear_cache()

    def tearDown(self):
        ServerCapabilities.clear_cache()

    def test_supported_controls(self):
        """Test reading supportedControl from the Root DSE."""
        self.mock_connection.search_s.return_value = [
            ("", {
                "supportedControl": [
                    ServerCapabilities.VLV_OID.encode(),
                    ServerCapabilities.SORTING_OID.encode(),
                ]
            })
        ]
        self.assertTrue(
            ServerCapabilities.supports(self.mock_connection, ServerCapabilities.VLV_OID, self.key)
        )
        self.assertTrue(
            ServerCapabilities.supports(self.mock_connection, ServerCapabilities.SORTING_OID, self.key)
        )

    def test_attribute_name_case(self):
        """Active Directory returns the attribute in a different case."""
        self.mock_connection.search_s.return_value = [
            ("", {"SUPPORTEDCONTROL": [ServerCapabilities.VLV_OID.encode()]})
        ]
        self.assertTrue(
            ServerCapabilities.supports(self.mock_connection, ServerCapabilities.VLV_OID, self.key)
        )

    def test_control_not_supported(self):
        self.mock_connection.search_s.return_value = [
            ("", {"supportedControl": [ServerCapabilities.SORTING_OID.encode()]})
        ]
        self.assertFalse(
            ServerCapabilities.supports(self.mock_connection, ServerCapabilities.VLV_OID, self.key)
        )

    def test_results_are_cached(self):
        """Test that the Root DSE is read once per server."""
        self.mock_connection.search_s.return_value = [("", {"supportedControl": []})]
        ServerCapabilities.supported_controls(self.mock_connection, self.key)
        ServerCapabilities.supported_controls(self.mock_connection, self.key)
        self.assertEqual(self.mock_connection.search_s.call_count, 1)
        ServerCapabilities.supported_controls(self.mock_connection, "ldap://other:389")
        self.assertEqual(self.mock_connection.search_s.call_count, 2)

    @patch("ldapbook.capabilities.time.time")
    def test_cache_expires(self, mock_time):
        """Test that cached capabilities expire after the TTL."""
        self.mock_connection.search_s.return_value = [("", {"supportedControl": []})]
        mock_time.return_value = 1000.0
        ServerCapabilities.supported_controls(self.mock_connection, self.key)
        mock_time.return_value = 1000.0 + ServerCapabilities.ttl
        ServerCapabilities.supported_controls(self.mock_connection, self.key)
        self.assertEqual(self.mock_connection.search_s.call_count, 2)

    def test_clear_cache_for_one_server(self):
        self.mock_connection.search_s.return_value = [("", {"supportedControl": []})]
        ServerCapabilities.supported_controls(self.mock_connection, self.key)
        ServerCapabilities.supported_controls(self.mock_connection, "other")
        ServerCapabilities.clear_cache(self.key)
        self.assertNotIn(self.key, ServerCapabilities._server_cache)
        self.assertIn("other", ServerCapabilities._server_cache)

    def test_rootdse_error(self):
        """Test that a failed Root DSE read means no controls."""
        self.mock_connection.search_s.side_effect = ldap.NO_SUCH_OBJECT({"desc": "No such object"})
        with self.assertLogs("ldapbook.capabilities", level="WARNING"):
            controls = ServerCapabilities.supported_controls(self.mock_connection, self.key)
        self.assertEqual(controls, set())

    def test_server_down_is_raised(self):
        self.mock_connection.search_s.side_effect = ldap.SERVER_DOWN({"desc": "Can't contact LDAP server"})
        with self.assertRaises(ldap.SERVER_DOWN):
            ServerCapabilities.supported_controls(self.mock_connection, self.key)
        self.assertNotIn(self.key, ServerCapabilities._server_cache)
