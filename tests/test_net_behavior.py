import socket
import unittest
from unittest.mock import patch

from chatoneverything import config, net


class _FakeAddr:
    def __init__(self, family, address: str):
        """Initialize fake psutil address entry used by net helper tests."""
        self.family = family
        self.address = address


class _FakeStat:
    def __init__(self, isup: bool):
        self.isup = isup


class NetBehaviorTests(unittest.TestCase):
    def setUp(self):
        """Prepare test preconditions for each test case."""
        self._old_header = config.TRUSTED_PROXY_HEADER
        self._old_xff = config.TRUST_FORWARDED_FOR
        self._old_suffixes = list(config.TUNNEL_HOST_SUFFIXES)
        config.TRUSTED_PROXY_HEADER = "cf-connecting-ip"
        config.TRUST_FORWARDED_FOR = True
        config.TUNNEL_HOST_SUFFIXES = ["trycloudflare.com"]

    def tearDown(self):
        """Clean up resources created by each test case."""
        config.TRUSTED_PROXY_HEADER = self._old_header
        config.TRUST_FORWARDED_FOR = self._old_xff
        config.TUNNEL_HOST_SUFFIXES = self._old_suffixes

    def test_normalize_ip_strips_mapped_prefix(self):
        """Validate scenario: ipv4-mapped ipv6 prefix is stripped."""
        self.assertEqual(net.normalize_ip(" ::ffff:192.168.1.9 "), "192.168.1.9")
        self.assertEqual(net.normalize_ip("::1"), "::1")
        self.assertEqual(net.normalize_ip(None), "")

    def test_trusted_proxy_header_wins(self):
        """Validate scenario: trusted proxy header takes priority over forwarded-for and peer."""
        headers = {"cf-connecting-ip": "203.0.113.7", "x-forwarded-for": "198.51.100.1"}
        self.assertEqual(net.resolve_client_ip(headers, "127.0.0.1"), "203.0.113.7")

    def test_forwarded_for_uses_first_hop(self):
        """Validate scenario: forwarded-for resolves to its first entry."""
        headers = {"x-forwarded-for": "198.51.100.1, 10.0.0.2"}
        self.assertEqual(net.resolve_client_ip(headers, "127.0.0.1"), "198.51.100.1")

    def test_peer_used_when_forwarded_for_not_trusted(self):
        """Validate scenario: forwarded-for is ignored when not trusted."""
        config.TRUST_FORWARDED_FOR = False
        headers = {"x-forwarded-for": "198.51.100.1"}
        self.assertEqual(net.resolve_client_ip(headers, "::ffff:10.0.0.5"), "10.0.0.5")

    def test_tunnel_detection_by_header_or_host(self):
        """Validate scenario: tunnel requests are detected by proxy header or tunnel host."""
        self.assertTrue(net.is_tunnel_request({"cf-connecting-ip": "203.0.113.7"}))
        self.assertTrue(net.is_tunnel_request({"host": "abc-def.trycloudflare.com"}))
        self.assertFalse(net.is_tunnel_request({"host": "192.168.1.10:8766"}))

    def test_get_local_ip_prefers_private_lan_over_vpn(self):
        """Validate scenario: private lan address is preferred over vpn interfaces."""
        addrs = {
            "lo": [_FakeAddr(socket.AF_INET, "127.0.0.1")],
            "tun0": [_FakeAddr(socket.AF_INET, "10.8.0.2")],
            "eth0": [_FakeAddr(socket.AF_INET, "192.168.1.20")],
            "eth1": [_FakeAddr(socket.AF_INET, "192.168.5.5")],
        }
        stats = {"lo": _FakeStat(True), "tun0": _FakeStat(True), "eth0": _FakeStat(True), "eth1": _FakeStat(False)}
        with (
            patch.object(net.psutil, "net_if_addrs", return_value=addrs),
            patch.object(net.psutil, "net_if_stats", return_value=stats),
        ):
            self.assertEqual(net.get_local_ip(), "192.168.1.20")

    def test_get_local_ip_falls_back_to_route_probe(self):
        """Validate scenario: route probe is used when no interface qualifies."""
        with (
            patch.object(net.psutil, "net_if_addrs", return_value={}),
            patch.object(net.psutil, "net_if_stats", return_value={}),
            patch.object(net, "_probe_route_ip", return_value="10.1.2.3"),
        ):
            self.assertEqual(net.get_local_ip(), "10.1.2.3")


if __name__ == "__main__":
    unittest.main()
