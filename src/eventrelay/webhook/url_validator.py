"""Webhook URL validation for SSRF protection.

URLs are checked when a subscription is written and again before every
delivery attempt, so a hostname that starts resolving to an internal address
after it was saved is still refused.
"""

import asyncio
import ipaddress
import re
import socket
from typing import Any
from urllib.parse import urlparse

import httpcore
import httpx

# Private and reserved IP ranges that should be blocked
BLOCKED_IP_RANGES = [
    # "This" network and unspecified
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("::/128"),
    # Loopback
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("::1/128"),
    # Private networks (RFC 1918)
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    # Unique local addresses (RFC 4193)
    ipaddress.ip_network("fc00::/7"),
    # Link-local
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("fe80::/10"),
    # Cloud metadata services
    ipaddress.ip_network("169.254.169.254/32"),  # AWS, GCP, Azure metadata
    # Carrier-grade NAT (RFC 6598)
    ipaddress.ip_network("100.64.0.0/10"),
    # Documentation/test ranges
    ipaddress.ip_network("192.0.2.0/24"),
    ipaddress.ip_network("198.51.100.0/24"),
    ipaddress.ip_network("203.0.113.0/24"),
    # Multicast
    ipaddress.ip_network("224.0.0.0/4"),
    ipaddress.ip_network("ff00::/8"),
    # Reserved and broadcast
    ipaddress.ip_network("240.0.0.0/4"),
]

# Blocked hostnames
BLOCKED_HOSTNAMES = {
    "localhost",
    "localhost.localdomain",
    "ip6-localhost",
    "ip6-loopback",
    "metadata.google.internal",  # GCP metadata
    "metadata.azure.com",
    "metadata",  # Common metadata alias
}

_NUMERIC_HOST = re.compile(r"^\d+$")
_OCTAL_LABEL = re.compile(r"^0\d")
_HEX_LABEL = re.compile(r"^0x[0-9a-f]*$")


class URLValidationError(ValueError):
    """Raised when a webhook URL is malformed or not allowed."""

    pass


class SSRFError(URLValidationError):
    """Raised when a URL is blocked due to SSRF protection."""

    pass


class HostResolutionError(URLValidationError):
    """Raised when a webhook hostname does not resolve."""

    pass


def is_ip_blocked(ip_str: str) -> bool:
    """Check if an IP address is in a blocked range.

    IPv4-mapped IPv6 addresses are checked against the IPv4 ranges.

    Args:
        ip_str: IP address as string

    Returns:
        True if the IP is blocked, False otherwise
    """
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        # Invalid IP address format
        return False

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return any(ip.version == network.version and ip in network for network in BLOCKED_IP_RANGES)


def normalize_hostname(hostname: str) -> str:
    """Lowercase a hostname and drop a trailing root dot."""
    return hostname.lower().rstrip(".")


def is_domain_allowed(host: str, allowed_domains: list[str] | set[str] | None) -> bool:
    """Check if a host is in (or under) an allowlisted internal domain."""
    host_lower = normalize_hostname(host)
    for allowed in allowed_domains or ():
        allowed = normalize_hostname(allowed)
        if host_lower == allowed or host_lower.endswith("." + allowed):
            return True
    return False


def validate_webhook_url(
    url: str,
    resolve_dns: bool = True,
    allow_http: bool = False,
    allowed_internal_domains: list[str] | None = None,
) -> str:
    """Validate a webhook URL for SSRF protection.

    Args:
        url: The URL to validate
        resolve_dns: Whether to resolve DNS and check every resolved IP
        allow_http: Accept plain http:// URLs as well as https://
        allowed_internal_domains: Domains that bypass the address checks

    Returns:
        The URL, unchanged

    Raises:
        URLValidationError: If the URL is malformed or uses a disallowed form
        SSRFError: If the URL targets a blocked host or address
        HostResolutionError: If the hostname does not resolve
    """
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError as e:
        raise URLValidationError(f"Invalid URL format: {e}") from e

    allowed_schemes = ("https", "http") if allow_http else ("https",)
    if parsed.scheme not in allowed_schemes:
        expected = " or ".join(allowed_schemes)
        raise URLValidationError(f"URL scheme must be {expected}, got: {parsed.scheme or 'none'}")

    if parsed.username or parsed.password:
        raise URLValidationError("URL must not include credentials")

    if not parsed.hostname:
        raise URLValidationError("URL must have a hostname")

    hostname = normalize_hostname(parsed.hostname)

    if is_domain_allowed(hostname, allowed_internal_domains):
        return url

    if hostname in BLOCKED_HOSTNAMES:
        raise SSRFError(f"Hostname '{hostname}' is blocked")

    # Literal IP addresses need no resolution
    try:
        ipaddress.ip_address(hostname)
    except ValueError:
        pass
    else:
        if is_ip_blocked(hostname):
            raise SSRFError(f"IP address '{hostname}' is in a blocked range")
        return url

    # Integer, octal and hex encodings of IPv4 addresses
    if _NUMERIC_HOST.match(hostname):
        raise URLValidationError("Numeric hostname not allowed")
    first_label = hostname.split(".")[0]
    if _OCTAL_LABEL.match(first_label) or _HEX_LABEL.match(first_label):
        raise URLValidationError("Octal or hex hostname notation not allowed")

    if not resolve_dns:
        return url

    try:
        addrinfo = socket.getaddrinfo(
            hostname,
            port or (443 if parsed.scheme == "https" else 80),
            proto=socket.IPPROTO_TCP,
        )
    except socket.gaierror as e:
        raise HostResolutionError(f"Hostname '{hostname}' does not resolve") from e

    if not addrinfo:
        raise HostResolutionError(f"Hostname '{hostname}' does not resolve")

    for _family, _, _, _, sockaddr in addrinfo:
        ip_str = str(sockaddr[0])
        if is_ip_blocked(ip_str):
            raise SSRFError(f"Hostname '{hostname}' resolves to blocked IP '{ip_str}'")

    return url


async def validate_webhook_url_async(
    url: str,
    resolve_dns: bool = True,
    allow_http: bool = False,
    allowed_internal_domains: list[str] | None = None,
) -> str:
    """Validate a webhook URL without blocking the event loop on DNS."""
    return await asyncio.to_thread(
        validate_webhook_url,
        url,
        resolve_dns,
        allow_http,
        allowed_internal_domains,
    )


def is_url_safe(
    url: str,
    resolve_dns: bool = True,
    allow_http: bool = False,
) -> tuple[bool, str | None]:
    """Check if a URL is safe for webhook delivery.

    Returns:
        Tuple of (is_safe, error_message)
    """
    try:
        validate_webhook_url(url, resolve_dns=resolve_dns, allow_http=allow_http)
        return True, None
    except URLValidationError as e:
        return False, str(e)


class SSRFSafeAsyncConnectionPool(httpcore.AsyncConnectionPool):
    """Connection pool that validates resolved IPs to prevent DNS rebinding attacks.

    This prevents TOCTOU (Time-Of-Check-Time-Of-Use) attacks where DNS returns
    a safe IP during validation but a malicious IP (e.g., 127.0.0.1) at connection time.
    """

    def __init__(
        self,
        allowed_internal_domains: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._allowed_domains = {normalize_hostname(d) for d in (allowed_internal_domains or [])}

    async def handle_async_request(self, request: httpcore.Request) -> httpcore.Response:
        """Handle request with IP validation at connection time."""
        host = request.url.host
        if host is None:
            raise SSRFError("Request has no host")

        # Decode host if bytes
        if isinstance(host, bytes):
            host = host.decode("ascii")

        if is_domain_allowed(host, self._allowed_domains):
            return await super().handle_async_request(request)

        if normalize_hostname(host) in BLOCKED_HOSTNAMES:
            raise SSRFError(f"Hostname '{host}' is blocked")

        try:
            ipaddress.ip_address(host)
        except ValueError:
            # Not an IP, resolve DNS and validate asynchronously
            port = request.url.port or (443 if request.url.scheme == b"https" else 80)
            try:
                loop = asyncio.get_running_loop()
                addrinfo = await loop.getaddrinfo(host, port, proto=socket.IPPROTO_TCP)
            except socket.gaierror:
                # Let the actual connection fail with proper error
                addrinfo = []
            for _family, _, _, _, sockaddr in addrinfo:
                ip_str = str(sockaddr[0])
                if is_ip_blocked(ip_str):
                    raise SSRFError(f"Hostname '{host}' resolves to blocked IP '{ip_str}'")
        else:
            if is_ip_blocked(host):
                raise SSRFError(f"IP address '{host}' is in a blocked range")

        return await super().handle_async_request(request)


class SSRFSafeTransport(httpx.AsyncHTTPTransport):
    """HTTP transport that prevents SSRF via DNS rebinding attacks.

    Use this transport when creating httpx.AsyncClient to ensure that
    IP validation happens at connection time, not just at request time.
    """

    def __init__(
        self,
        allowed_internal_domains: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        # Replace the internal connection pool with our SSRF-safe version
        self._pool = SSRFSafeAsyncConnectionPool(
            allowed_internal_domains=allowed_internal_domains,
            **kwargs,
        )


def create_ssrf_safe_client(
    timeout: float = 30.0,
    limits: httpx.Limits | None = None,
    allowed_internal_domains: list[str] | None = None,
) -> httpx.AsyncClient:
    """Create an httpx client with SSRF protection at connection time.

    Redirects are never followed: a 3xx could point the request at an
    internal address after validation has passed.
    """
    transport = SSRFSafeTransport(allowed_internal_domains=allowed_internal_domains)
    return httpx.AsyncClient(
        transport=transport,
        timeout=timeout,
        limits=limits or httpx.Limits(max_connections=100, max_keepalive_connections=20),
        follow_redirects=False,
    )
