"""Client identity resolution for throttling.

Turns a request into throttle keys:

- The client IP is the connecting address unless that address is a trusted
  proxy (exact IP or CIDR entry), in which case the first ``X-Forwarded-For``
  hop and then ``X-Real-IP`` are honoured, each only if it parses as an IP
  address.
- IP-tier keys are ``sha1(ip|METHOD|path)``; account-tier keys are
  ``"acct:" + sha1(value|METHOD|path)`` so the two never collide.

Malformed proxy entries and unparsable addresses never match; nothing in
this module raises on bad input.
"""

from __future__ import annotations

import hashlib
import ipaddress
from typing import Iterable

from starlette.requests import Request

UNKNOWN_IP = "0.0.0.0"
ACCOUNT_KEY_PREFIX = "acct:"


def _packed(address: str) -> bytes | None:
    try:
        return ipaddress.ip_address(address.strip()).packed
    except ValueError:
        return None


def _prefix_matches(ip: bytes, subnet: bytes, mask_bits: int) -> bool:
    """Compare the leading ``mask_bits`` bits of two packed addresses."""

    whole_bytes, rest_bits = divmod(mask_bits, 8)

    if ip[:whole_bytes] != subnet[:whole_bytes]:
        return False
    if rest_bits == 0:
        return True

    mask = (0xFF << (8 - rest_bits)) & 0xFF
    return (ip[whole_bytes] & mask) == (subnet[whole_bytes] & mask)


def ip_in_cidr(ip: str, cidr: str) -> bool:
    """Return whether ``ip`` falls inside ``cidr`` (``address/prefix``).

    IPv6 prefixes are clamped to 0-128. An IPv4 prefix of 0 or less matches
    any IPv4 address and one above 32 matches nothing. Mixed families and
    malformed input never match.
    """

    subnet, sep, bits = cidr.partition("/")
    if not sep or not subnet.strip():
        return False

    try:
        mask_bits = int(bits.strip())
    except ValueError:
        return False

    ip_bytes = _packed(ip)
    subnet_bytes = _packed(subnet)
    if ip_bytes is None or subnet_bytes is None or len(ip_bytes) != len(subnet_bytes):
        return False

    if len(ip_bytes) == 16:
        return _prefix_matches(ip_bytes, subnet_bytes, max(0, min(128, mask_bits)))

    if mask_bits <= 0:
        return True
    if mask_bits > 32:
        return False
    return _prefix_matches(ip_bytes, subnet_bytes, mask_bits)


def is_trusted_proxy(address: str, trusted_proxies: Iterable[str]) -> bool:
    """Return whether the connecting ``address`` is on the proxy allowlist."""

    if not address:
        return False

    proxies = [p for p in trusted_proxies if isinstance(p, str) and p]
    if address in proxies:
        return True

    return any("/" in proxy and ip_in_cidr(address, proxy) for proxy in proxies)


def sha1_hex(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()


class ClientIdentityResolver:
    """Derives client IPs and throttle keys from Starlette requests."""

    def __init__(self, trusted_proxies: Iterable[str] = ()) -> None:
        self._trusted_proxies = tuple(trusted_proxies)

    @property
    def trusted_proxies(self) -> tuple[str, ...]:
        return self._trusted_proxies

    @staticmethod
    def remote_address(request: Request) -> str:
        client = request.client
        if client is None or not client.host:
            return UNKNOWN_IP
        return client.host

    @staticmethod
    def request_path(request: Request) -> str:
        # url.path never carries the query string.
        return request.url.path or "/"

    def client_ip(self, request: Request) -> str:
        remote = self.remote_address(request)
        if not is_trusted_proxy(remote, self._trusted_proxies):
            return remote

        first_hop = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
        if _packed(first_hop) is not None:
            return first_hop

        real_ip = request.headers.get("X-Real-IP", "").strip()
        if _packed(real_ip) is not None:
            return real_ip

        return remote

    def ip_key(self, request: Request) -> str:
        identity = "|".join((self.client_ip(request), request.method, self.request_path(request)))
        return sha1_hex(identity)

    def account_key(self, request: Request, value: object) -> str | None:
        """Build the account-tier key from a submitted field value.

        Returns ``None`` for non-string or blank values, which skips the
        account tier for this request.
        """

        if not isinstance(value, str):
            return None

        normalized = value.strip().lower()
        if not normalized:
            return None

        identity = "|".join((normalized, request.method, self.request_path(request)))
        return ACCOUNT_KEY_PREFIX + sha1_hex(identity)
