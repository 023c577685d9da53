"""URL validation and SSRF protection for enrichment targets.

Every check here is pure string inspection: nothing resolves DNS or opens a
socket, so a rejected URL never causes network egress.
"""
from __future__ import annotations

import ipaddress
import re
from typing import Any, Optional
from urllib.parse import urlsplit

from company_enrichment.services.enrichment.types import (
    NormalizedTarget,
    PayloadValidationResult,
    UrlValidationResult,
)

MAX_URL_LENGTH = 2048
MAX_URLS_PER_REQUEST = 3
MAX_PAYLOAD_SIZE = 10_000

BLOCKED_HOSTNAMES = frozenset(
    {
        "localhost",
        "localhost.localdomain",
        "local",
        "127.0.0.1",
        "0.0.0.0",
        "::1",
        "metadata",
        "metadata.google",
        "metadata.google.internal",
        "169.254.169.254",
        "metadata.azure.com",
        "instance-data",
        "instance-data.ec2.internal",
        "kubernetes.default",
        "kubernetes.default.svc",
        "kubernetes.default.svc.cluster.local",
    }
)

BLOCKED_TLDS = frozenset(
    {
        "local",
        "internal",
        "localhost",
        "localdomain",
        "invalid",
        "example",
        "test",
        "intranet",
        "corp",
        "home",
        "lan",
    }
)

SUSPICIOUS_LABELS = frozenset(
    {
        "admin",
        "internal",
        "intranet",
        "private",
        "secret",
        "api",
        "staging",
        "dev",
        "test",
        "debug",
    }
)

# Ranges ipaddress does not flag as private on every interpreter version.
_EXTRA_BLOCKED_NETWORKS = (
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("100.64.0.0/10"),  # carrier-grade NAT
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
)

_SCHEME_RE = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.\-]*)://")
_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_NUMERIC_LABEL_RE = re.compile(r"^(0x[0-9a-f]+|\d+)$", re.IGNORECASE)


def _reject(reason: str) -> UrlValidationResult:
    return UrlValidationResult(target=None, error=reason)


def normalize_domain(domain: str) -> str:
    """Lowercase, drop a trailing dot and a leading ``www.``.

    Used for both cache reads and writes; the two must agree.
    """
    value = str(domain or "").strip().lower().rstrip(".")
    if value.startswith("www."):
        value = value[4:]
    return value


def company_name_from_domain(domain: str) -> str:
    label = normalize_domain(domain).split(".")[0]
    if not label:
        return "Unknown"
    return label.replace("-", " ").title()


def is_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(_UUID_RE.match(value))


def _is_blocked_ip(ip: ipaddress._BaseAddress) -> bool:
    mapped = getattr(ip, "ipv4_mapped", None)
    if mapped is not None:
        ip = mapped
    if (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
    ):
        return True
    return any(ip.version == net.version and ip in net for net in _EXTRA_BLOCKED_NETWORKS)


def _parse_ip(hostname: str) -> Optional[ipaddress._BaseAddress]:
    try:
        return ipaddress.ip_address(hostname)
    except ValueError:
        return None


def _looks_numeric_host(hostname: str) -> bool:
    # 0x7f.1, 2130706433.0 and friends: IP-ish but not parseable as a clean address.
    labels = [label for label in hostname.split(".") if label]
    return bool(labels) and _NUMERIC_LABEL_RE.match(labels[-1]) is not None


def _has_suspicious_pattern(hostname: str) -> bool:
    if "%" in hostname:
        return True
    if any(ord(ch) <= 0x20 or ord(ch) >= 0x7F for ch in hostname):
        return True
    if ".." in hostname:
        return True
    labels = hostname.split(".")
    if len(labels) <= 2 and labels[0] in SUSPICIOUS_LABELS:
        return True
    return False


def _hostname_of(candidate: str) -> str:
    try:
        return str(urlsplit(candidate).hostname or "").lower()
    except ValueError:
        return ""


def validate_enrichment_url(url_input: Any, max_length: int = MAX_URL_LENGTH) -> UrlValidationResult:
    """Validate and normalise a company URL.

    Returns a result holding either a :class:`NormalizedTarget` or a specific
    human-readable rejection reason. Never raises.
    """
    if not isinstance(url_input, str) or not url_input.strip():
        return _reject("URL is required")

    trimmed = url_input.strip()
    if len(trimmed) > max_length:
        return _reject(f"URL exceeds maximum length of {max_length} characters")

    scheme_match = _SCHEME_RE.match(trimmed)
    if scheme_match:
        scheme = scheme_match.group(1).lower()
        if scheme not in ("http", "https"):
            return _reject("Only http and https URLs are supported")
        candidate = "https://" + trimmed[scheme_match.end():]
    else:
        candidate = f"https://{trimmed}"

    if "." not in trimmed:
        if _hostname_of(candidate) in BLOCKED_HOSTNAMES:
            return _reject("Internal or reserved addresses are not allowed")
        return _reject("Invalid URL: must contain a valid domain")

    try:
        parsed = urlsplit(candidate)
        hostname = str(parsed.hostname or "").lower().rstrip(".")
        port = parsed.port
        username = parsed.username
        password = parsed.password
    except ValueError:
        return _reject("Invalid URL format")

    if not hostname:
        return _reject("Invalid URL format")

    if not hostname.isascii():
        try:
            hostname = hostname.encode("idna").decode("ascii")
        except UnicodeError:
            return _reject("Invalid URL format")

    if hostname in BLOCKED_HOSTNAMES:
        return _reject("Internal or reserved addresses are not allowed")

    ip = _parse_ip(hostname)
    if ip is not None:
        if _is_blocked_ip(ip):
            return _reject("Private/internal IP addresses are not allowed")
    elif _looks_numeric_host(hostname):
        return _reject("Obfuscated or malformed IP addresses are not allowed")

    if ip is None:
        if "." not in hostname:
            return _reject("Invalid URL: must contain a valid domain")
        tld = hostname.rsplit(".", 1)[-1]
        if tld in BLOCKED_TLDS:
            return _reject("Invalid or internal domain TLD")

    if username or password:
        return _reject("URLs with credentials are not allowed")

    if port is not None and port != 443:
        return _reject("Non-standard ports are not allowed")

    if ip is None and _has_suspicious_pattern(hostname):
        return _reject("Suspicious URL pattern detected")

    if ip is not None and ip.version == 6:
        origin = f"https://[{hostname}]"
    else:
        origin = f"https://{hostname}"
    domain = normalize_domain(hostname)
    return UrlValidationResult(
        target=NormalizedTarget(
            origin=origin,
            domain=domain,
            company_name=company_name_from_domain(domain),
        )
    )


def validate_payload(body: Any, max_urls: int = MAX_URLS_PER_REQUEST) -> PayloadValidationResult:
    """Shape check for the enrichment request body."""
    if not isinstance(body, dict):
        return PayloadValidationResult(False, "Invalid request body")

    urls = body.get("urls")
    if urls is None or not isinstance(urls, list):
        return PayloadValidationResult(False, "urls array is required")
    if len(urls) == 0:
        return PayloadValidationResult(False, "urls array must not be empty")
    if len(urls) > max_urls:
        return PayloadValidationResult(False, f"Maximum {max_urls} URLs per request")
    if any(not isinstance(url, str) for url in urls):
        return PayloadValidationResult(False, "All URLs must be strings")

    workspace_id = body.get("workspaceId")
    if workspace_id is not None and workspace_id != "":
        if not isinstance(workspace_id, str):
            return PayloadValidationResult(False, "workspaceId must be a string")
        if not is_uuid(workspace_id):
            return PayloadValidationResult(False, "Invalid workspaceId format")

    use_cache = body.get("useCache")
    if use_cache is not None and not isinstance(use_cache, bool):
        return PayloadValidationResult(False, "useCache must be a boolean")

    provider = body.get("provider")
    if provider is not None and provider not in ("primary", "fallback"):
        return PayloadValidationResult(False, "provider must be 'primary' or 'fallback'")

    return PayloadValidationResult(True, None)


def check_payload_size(content_length: Optional[str], max_bytes: int = MAX_PAYLOAD_SIZE) -> PayloadValidationResult:
    """Reject oversized bodies from the Content-Length header, before parsing."""
    if content_length is None or str(content_length).strip() == "":
        return PayloadValidationResult(True, None)
    try:
        size = int(str(content_length).strip())
    except ValueError:
        return PayloadValidationResult(False, "Invalid Content-Length header")
    if size < 0:
        return PayloadValidationResult(False, "Invalid Content-Length header")
    if size > max_bytes:
        return PayloadValidationResult(False, f"Request body exceeds maximum size of {max_bytes} bytes")
    return PayloadValidationResult(True, None)
