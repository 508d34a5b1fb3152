"""Rendering of the node's csr.conf.template."""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable

_HEAD = """
[ req ]
default_bits = 2048
prompt = no
default_md = sha256
req_extensions = req_ext
distinguished_name = dn

[ dn ]
C = GB
ST = Canonical
L = Canonical
O = Canonical
OU = Canonical
CN = 127.0.0.1

[ req_ext ]
subjectAltName = @alt_names

[ alt_names ]
"""

_TAIL = """
#MOREIPS

[ v3_ext ]
authorityKeyIdentifier=keyid,issuer:always
basicConstraints=CA:FALSE
keyUsage=keyEncipherment,dataEncipherment,digitalSignature
extendedKeyUsage=serverAuth,clientAuth
subjectAltName=@alt_names
"""

_DEFAULT_IPS = ("127.0.0.1", "10.152.183.1")
_DEFAULT_DNS = (
    "kubernetes",
    "kubernetes.default",
    "kubernetes.default.svc",
    "kubernetes.default.svc.cluster",
    "kubernetes.default.svc.cluster.local",
)


def _is_ip(value: str) -> bool:
    if "%" in value:
        return False
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def generate_csr_conf(extra_sans: Iterable[str] | None) -> bytes:
    """Render csr.conf.template with the default SANs plus extra_sans."""
    ips = list(_DEFAULT_IPS)
    dns = list(_DEFAULT_DNS)
    for san in extra_sans or ():
        (ips if _is_ip(san) else dns).append(san)

    dns_lines = "".join(f"DNS.{i} = {name}\n" for i, name in enumerate(dns))
    ip_lines = "".join(f"IP.{i} = {ip}\n" for i, ip in enumerate(ips))
    return (_HEAD + dns_lines + "\n\n" + ip_lines + _TAIL).encode("utf-8")