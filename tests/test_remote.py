import ipaddress
import socket

import pytest

from clusteragent.util.remote import get_remote_host


def _ips(*values):
    return [ipaddress.ip_address(v) for v in values]


@pytest.mark.parametrize(
    "hostname,resolves_to,remote_address,expected",
    [
        ("host-with-dns", _ips("1.1.1.1"), "1.1.1.1:31412", "host-with-dns"),
        ("host-with-multiple-dns", _ips("1.1.1.1", "1.1.1.2"), "1.1.1.1:31412", "host-with-multiple-dns"),
        ("host-without-dns", None, "1.1.1.2:31241", "1.1.1.2"),
        ("host-with-wrong-dns", _ips("1.1.1.3"), "1.1.1.4:41232", "1.1.1.4"),
    ],
)
def test_get_remote_host(hostname, resolves_to, remote_address, expected):
    assert get_remote_host(lambda _name: resolves_to, hostname, remote_address) == expected


def test_lookup_failure_returns_ip():
    def lookup(_name):
        raise socket.gaierror("unknown host")

    assert get_remote_host(lookup, "somehost", "1.1.1.4:41232") == "1.1.1.4"


def test_ipv6_remote_address():
    assert get_remote_host(lambda _name: ["::1"], "localhost", "[::1]:8080") == "localhost"


def test_ipv4_mapped_address_matches():
    assert get_remote_host(lambda _name: ["::ffff:1.1.1.1"], "mapped", "1.1.1.1:80") == "mapped"


def test_bad_remote_address():
    assert get_remote_host(lambda _name: ["1.1.1.1"], "host", "no-port-here") == ""